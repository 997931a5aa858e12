"""
Helper utilities shared across TokenWatch
"""

import math
import re
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Iterable, Optional, Pattern, Tuple

from tokenwatch.utils.constants import BASE58_ALPHABET, MIN_ADDRESS_LENGTH, MAX_ADDRESS_LENGTH
from tokenwatch.utils.errors import MalformedInputError

_BASE58_CHARS = frozenset(BASE58_ALPHABET)


def utc_now() -> datetime:
    """Timezone aware current UTC time"""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes coming back from the database as UTC"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def safe_float(value: Any, default: float = 0.0) -> float:
    """
    Convert provider values (often strings) to float

    Args:
        value: Raw value
        default: Returned for None, empty or unparseable input

    Returns:
        Parsed finite float, never NaN or infinity
    """
    if value is None or value == '':
        return default
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(result):
        return default
    return result


def safe_int(value: Any, default: int = 0) -> int:
    """Convert to int via float so '12.0' parses"""
    return int(safe_float(value, float(default)))


def percent_change(current: float, historical: float) -> float:
    """(current - historical) / historical * 100, zero without a usable baseline"""
    if historical <= 0:
        return 0.0
    return (current - historical) / historical * 100


def is_valid_address(value: Any) -> bool:
    """Check for a base58 address of plausible length"""
    if not isinstance(value, str):
        return False
    if not MIN_ADDRESS_LENGTH <= len(value) <= MAX_ADDRESS_LENGTH:
        return False
    return all(ch in _BASE58_CHARS for ch in value)


def validate_token_id(token_id: Any) -> str:
    """Return the token identifier or raise MalformedInputError"""
    if not token_id:
        raise MalformedInputError('token', token_id, 'missing')
    if not is_valid_address(token_id):
        raise MalformedInputError('token', token_id, 'not a base58 address')
    return token_id


def validate_wallet_id(wallet_id: Any, required: bool = False) -> Optional[str]:
    """Return the wallet identifier (None when optional and absent) or raise"""
    if not wallet_id:
        if required:
            raise MalformedInputError('wallet', wallet_id, 'missing')
        return None
    if not is_valid_address(wallet_id):
        raise MalformedInputError('wallet', wallet_id, 'not a base58 address')
    return wallet_id


def isoformat(value: Optional[datetime]) -> Optional[str]:
    """ISO-8601 string or None"""
    return value.isoformat() if value else None


@lru_cache(maxsize=32)
def _compile_patterns(patterns: Tuple[str, ...]) -> Tuple[Pattern, ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


def matches_bonding_curve(token_id: str, patterns: Iterable[str]) -> bool:
    """True if the token id follows a bonding-curve platform naming pattern"""
    return any(p.search(token_id) for p in _compile_patterns(tuple(patterns)))
