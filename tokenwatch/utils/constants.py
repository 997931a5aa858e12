"""
System-wide Constants for TokenWatch
"""

from enum import Enum
from typing import Dict, Tuple

# ============= Version Info =============
VERSION = "1.0.0"
PROJECT_NAME = "TokenWatch"

# ============= Enums =============

class RiskLevel(Enum):
    """Risk level buckets, ordered from safest to worst"""
    MINIMAL = "MINIMAL"
    LOW = "LOW"
    MODERATE = "MODERATE"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @classmethod
    def from_value(cls, value: str, default: "RiskLevel" = None) -> "RiskLevel":
        """Parse a level name case-insensitively, falling back to default"""
        try:
            return cls(str(value).upper())
        except ValueError:
            return default if default is not None else cls.MODERATE


class MetadataStatus(Enum):
    """Completeness of a token's symbol/name metadata"""
    PENDING = "pending"
    COMPLETE = "complete"


class Category(Enum):
    """Field categories refreshed independently"""
    MARKET = "market"
    METADATA = "metadata"


class SellAction(Enum):
    """Sell recommendation derived from velocity and model signals"""
    HOLD = "HOLD"
    SELL = "SELL"
    PANIC_SELL = "PANIC_SELL"


class BadgeState(Enum):
    """Single UI badge summarising a token's condition"""
    SELL_NOW = "SELL_NOW"
    SELL = "SELL"
    RUGGED = "RUGGED"
    PUMPING = "PUMPING"
    VOLATILE = "VOLATILE"
    WATCHING = "WATCHING"


# ============= Risk Buckets =============

# Lower bounds on a probability-like score, checked top down
RISK_LEVEL_THRESHOLDS: Tuple[Tuple[float, RiskLevel], ...] = (
    (0.8, RiskLevel.CRITICAL),
    (0.6, RiskLevel.HIGH),
    (0.4, RiskLevel.MODERATE),
    (0.2, RiskLevel.LOW),
)

# ============= Velocity Horizons =============

HORIZONS: Dict[str, int] = {
    '1m': 60,
    '5m': 300,
    '30m': 1800,
}
HORIZON_TOLERANCE_SECONDS = 5

# ============= Identifiers =============

# Solana style base58 addresses
BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
MIN_ADDRESS_LENGTH = 32
MAX_ADDRESS_LENGTH = 44

# ============= API =============

MAX_BATCH_SIZE = 50
TOKEN_UPDATE_EVENT = "token_update"
