"""
Data models for TokenWatch

Plain dataclasses shared by the store, the orchestrator and the API layer.
Numeric snapshot fields default to zero (never None) so downstream arithmetic
is always total.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional

import orjson

from tokenwatch.utils.constants import (
    BadgeState, MetadataStatus, RiskLevel, SellAction
)
from tokenwatch.utils.errors import SerializationError
from tokenwatch.utils.helpers import isoformat, utc_now


@dataclass
class TokenSnapshot:
    """Latest known merged state of a token across all categories"""
    token_id: str
    price: float = 0.0
    liquidity: float = 0.0
    market_cap: float = 0.0
    volume_24h: float = 0.0
    holder_count: int = 0
    price_change_24h: float = 0.0
    symbol: str = ''
    name: str = ''
    logo_uri: Optional[str] = None
    decimals: Optional[int] = None
    metadata_status: MetadataStatus = MetadataStatus.PENDING
    price_updated_at: Optional[datetime] = None
    metadata_updated_at: Optional[datetime] = None
    source: str = ''
    created_at: Optional[datetime] = None

    def copy(self) -> "TokenSnapshot":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tokenMint': self.token_id,
            'symbol': self.symbol,
            'name': self.name,
            'logoUri': self.logo_uri,
            'decimals': self.decimals,
            'metadataStatus': self.metadata_status.value,
            'price': self.price,
            'liquidity': self.liquidity,
            'marketCap': self.market_cap,
            'volume24h': self.volume_24h,
            'holderCount': self.holder_count,
            'priceChange24h': self.price_change_24h,
            'priceUpdatedAt': isoformat(self.price_updated_at),
            'metadataUpdatedAt': isoformat(self.metadata_updated_at),
            'dataSource': self.source,
        }


@dataclass
class HistorySample:
    """One append-only price/liquidity observation"""
    token_id: str
    price: float
    liquidity: float
    market_cap: float
    recorded_at: datetime
    source: str = ''


@dataclass
class MarketData:
    """Normalized price/liquidity/market result from a price provider"""
    source: str
    price: float = 0.0
    liquidity: float = 0.0
    market_cap: float = 0.0
    volume_24h: float = 0.0
    price_change_24h: float = 0.0
    holder_count: int = 0
    # Provider-specific extras (pool address, curve progress, ...)
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TokenMetadata:
    """Normalized symbol/name result from a metadata provider"""
    source: str
    symbol: str = ''
    name: str = ''
    logo_uri: Optional[str] = None
    decimals: Optional[int] = None


@dataclass
class VelocityRecord:
    """Percentage change per horizon; 0 when no sample fits the horizon"""
    token_id: str
    price: Dict[str, float] = field(default_factory=dict)
    liquidity: Dict[str, float] = field(default_factory=dict)
    flash_rug: bool = False
    rapid_drain: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'price': dict(self.price),
            'liquidity': dict(self.liquidity),
            'alerts': {
                'flashRug': self.flash_rug,
                'rapidDrain': self.rapid_drain,
            },
        }


@dataclass
class MLPrediction:
    """Upstream model output, consumed as an opaque signal"""
    token_id: str
    probability: float
    confidence: float = 0.0
    time_to_rug_seconds: Optional[float] = None
    risk_factors: List[str] = field(default_factory=list)
    features: Dict[str, Any] = field(default_factory=dict)
    model_version: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class RiskRecord:
    """Rule based, model based and blended risk for a token"""
    token_id: str
    rule_risk_score: float = 0.0
    rule_risk_level: RiskLevel = RiskLevel.MINIMAL
    ml_probability: Optional[float] = None
    ml_confidence: Optional[float] = None
    ml_time_to_rug: Optional[float] = None
    ml_risk_level: Optional[RiskLevel] = None
    top_risk_factors: List[str] = field(default_factory=list)
    hybrid_risk_score: float = 0.0
    risk_level: RiskLevel = RiskLevel.MINIMAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            'score': self.hybrid_risk_score,
            'level': self.risk_level.value,
            'ruleScore': self.rule_risk_score,
            'ruleLevel': self.rule_risk_level.value,
            'mlProbability': self.ml_probability,
            'mlConfidence': self.ml_confidence,
            'mlTimeToRug': self.ml_time_to_rug,
            'mlRiskLevel': self.ml_risk_level.value if self.ml_risk_level else None,
            'topRiskFactors': list(self.top_risk_factors),
        }


@dataclass
class ProtectionRecord:
    """Per token+wallet protection settings, owned by another service"""
    token_id: str
    wallet_id: str
    monitoring_active: bool = False
    mempool_monitoring_enabled: bool = False
    risk_threshold: RiskLevel = RiskLevel.HIGH
    alerts_count: int = 0
    trigger_count: int = 0
    last_threat_detected_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'active': self.monitoring_active,
            'mempoolEnabled': self.mempool_monitoring_enabled,
            'riskThreshold': self.risk_threshold.value,
            'alertsCount': self.alerts_count,
            'triggerCount': self.trigger_count,
            'lastThreatDetectedAt': isoformat(self.last_threat_detected_at),
        }


@dataclass
class SellSignal:
    action: SellAction = SellAction.HOLD
    confidence: int = 0
    urgency: str = 'NONE'
    reason: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return {
            'action': self.action.value,
            'confidence': self.confidence,
            'urgency': self.urgency,
            'reason': self.reason,
        }


@dataclass
class TokenState:
    """
    Assembled answer to "what is token X for wallet W right now"

    Snapshot plus derived velocity and risk, plus protection flags when a
    wallet was given.
    """
    snapshot: TokenSnapshot
    velocity: VelocityRecord
    risk: RiskRecord
    wallet_id: Optional[str] = None
    protection: Optional[ProtectionRecord] = None
    sell_signal: SellSignal = field(default_factory=SellSignal)
    badge_state: Optional[BadgeState] = None
    refreshed: bool = False
    unrefreshed_categories: List[str] = field(default_factory=list)
    generated_at: datetime = field(default_factory=utc_now)

    @property
    def token_id(self) -> str:
        return self.snapshot.token_id

    @property
    def is_monitored(self) -> bool:
        return bool(self.protection and self.protection.monitoring_active)

    @property
    def data_version(self) -> datetime:
        """Time of the newest underlying data, used to order pushes"""
        stamps = [t for t in (self.snapshot.price_updated_at,
                              self.snapshot.metadata_updated_at) if t is not None]
        return max(stamps) if stamps else self.generated_at

    def to_dict(self) -> Dict[str, Any]:
        data = self.snapshot.to_dict()
        data.update({
            'walletAddress': self.wallet_id,
            'velocity': self.velocity.to_dict(),
            'risk': self.risk.to_dict(),
            'sellSignal': self.sell_signal.to_dict(),
            'badgeState': self.badge_state.value if self.badge_state else None,
            'monitoring': self.protection.to_dict() if self.protection else None,
            'isMonitored': self.is_monitored,
            'refreshed': self.refreshed,
            'unrefreshed': list(self.unrefreshed_categories),
            'lastUpdate': self.generated_at.isoformat(),
        })
        return data

    def to_push_dict(self) -> Dict[str, Any]:
        """
        Wallet-neutral form for live subscribers

        Protection belongs to the requesting wallet only, so the wallet fields
        are dropped and a badge that came from protection is cleared.
        """
        data = self.to_dict()
        for key in ('walletAddress', 'monitoring', 'isMonitored'):
            data.pop(key, None)
        if self.badge_state == BadgeState.WATCHING:
            data['badgeState'] = None
        return data

    def to_json(self) -> bytes:
        """Encode for the wire; raises SerializationError instead of dropping fields"""
        try:
            return orjson.dumps(self.to_dict())
        except (TypeError, orjson.JSONEncodeError) as e:
            raise SerializationError(
                f"Cannot encode state for {self.token_id}: {e}",
                {'token': self.token_id}
            ) from e
