"""
Derived Metrics Calculator

Velocity over fixed horizons from the history ledger, rule based risk from
velocity alerts, and the hybrid blend with the upstream model probability.
Everything here is a pure function of snapshot + history + prediction.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from tokenwatch.config.config_manager import MetricsConfig
from tokenwatch.data.storage.models import (
    HistorySample, MLPrediction, ProtectionRecord, RiskRecord, SellSignal,
    TokenSnapshot, VelocityRecord
)
from tokenwatch.utils.constants import (
    RISK_LEVEL_THRESHOLDS, BadgeState, RiskLevel, SellAction
)
from tokenwatch.utils.helpers import percent_change, utc_now

logger = logging.getLogger(__name__)


def risk_level_from_probability(p: float) -> RiskLevel:
    """Bucket a probability-like score in [0, 1]"""
    for threshold, level in RISK_LEVEL_THRESHOLDS:
        if p >= threshold:
            return level
    return RiskLevel.MINIMAL


def hybrid_risk_score(rule_score: float, ml_probability: Optional[float],
                      rule_weight: float = 0.4, ml_weight: float = 0.6) -> float:
    """
    Blend rule and model risk into 0..100

    Without a model signal the rule score stands alone.
    """
    if ml_probability is None:
        blended = rule_score
    else:
        blended = rule_weight * rule_score + ml_weight * ml_probability * 100
    return min(100.0, max(0.0, blended))


class DerivedMetricsCalculator:
    """Computes VelocityRecord, RiskRecord, sell signal and badge"""

    def __init__(self, config: Optional[MetricsConfig] = None):
        self.config = config or MetricsConfig()

    # ------------------------------------------------------------------
    # Velocity
    # ------------------------------------------------------------------

    def _find_baseline(self, samples: List[HistorySample], horizon: int,
                       now: datetime, attr: str) -> Optional[float]:
        """First sample (newest first) within tolerance of the horizon with a positive value"""
        tolerance = self.config.tolerance_seconds
        for sample in samples:
            age = (now - sample.recorded_at).total_seconds()
            if abs(age - horizon) > tolerance:
                continue
            value = getattr(sample, attr)
            if value > 0:
                return value
        return None

    def calculate_velocity(self, snapshot: TokenSnapshot,
                           history: Iterable[HistorySample],
                           now: Optional[datetime] = None) -> VelocityRecord:
        """
        Percentage change of price and liquidity per horizon

        Args:
            snapshot: Merged current snapshot
            history: Samples for the token (any order)
            now: Reference time, defaults to current UTC

        Returns:
            VelocityRecord; a horizon with no sample in its tolerance band is 0
        """
        now = now or utc_now()
        samples = sorted(history, key=lambda s: s.recorded_at, reverse=True)
        record = VelocityRecord(token_id=snapshot.token_id)

        for label, horizon in self.config.horizons.items():
            for attr, current, target in (
                ('price', snapshot.price, record.price),
                ('liquidity', snapshot.liquidity, record.liquidity),
            ):
                baseline = self._find_baseline(samples, horizon, now, attr)
                target[label] = percent_change(current, baseline) if baseline else 0.0

        record.flash_rug = record.liquidity.get('5m', 0.0) <= -self.config.flash_rug_drop_pct
        record.rapid_drain = record.liquidity.get('30m', 0.0) <= -self.config.rapid_drain_drop_pct
        return record

    # ------------------------------------------------------------------
    # Risk
    # ------------------------------------------------------------------

    def rule_risk(self, snapshot: TokenSnapshot,
                  velocity: VelocityRecord) -> Tuple[float, List[str]]:
        """
        Rule based score: the maximum over triggered rules

        Returns:
            (score 0..100, triggered factor names)
        """
        rules = []
        if snapshot.price_updated_at is not None and snapshot.liquidity < 1:
            rules.append((100.0, 'Liquidity removed'))
        if velocity.flash_rug:
            rules.append((100.0, 'Flash rug detected'))
        if velocity.rapid_drain:
            rules.append((90.0, 'Rapid drain alert'))
        if velocity.price.get('5m', 0.0) < -30:
            rules.append((70.0, 'Price collapse'))
        if velocity.liquidity.get('5m', 0.0) < -10:
            rules.append((60.0, 'Rapid liquidity drain'))
        if snapshot.holder_count == 0 and snapshot.market_cap > 0:
            rules.append((30.0, 'No holder data'))

        if not rules:
            return 0.0, []
        score = max(score for score, _ in rules)
        factors = [name for _, name in sorted(rules, key=lambda r: -r[0])]
        return score, factors

    def top_risk_factors(self, prediction: Optional[MLPrediction],
                         rule_factors: List[str]) -> List[str]:
        """Upstream factors, then rule factors, then generic model notes; deduplicated and capped"""
        limit = self.config.max_risk_factors
        factors: List[str] = []

        def add(factor: str):
            if factor and factor not in factors and len(factors) < limit:
                factors.append(factor)

        if prediction:
            for factor in prediction.risk_factors[:limit]:
                add(factor)
        for factor in rule_factors:
            add(factor)
        if prediction:
            add(f"ML probability: {prediction.probability * 100:.0f}%")
            if prediction.confidence < 0.5:
                add('Low model confidence')
        return factors

    def calculate_risk(self, snapshot: TokenSnapshot, velocity: VelocityRecord,
                       prediction: Optional[MLPrediction] = None) -> RiskRecord:
        rule_score, rule_factors = self.rule_risk(snapshot, velocity)
        ml_probability = None
        if prediction is not None:
            ml_probability = min(1.0, max(0.0, prediction.probability))

        hybrid = hybrid_risk_score(
            rule_score, ml_probability,
            self.config.rule_weight, self.config.ml_weight
        )

        return RiskRecord(
            token_id=snapshot.token_id,
            rule_risk_score=rule_score,
            rule_risk_level=risk_level_from_probability(rule_score / 100),
            ml_probability=ml_probability,
            ml_confidence=prediction.confidence if prediction else None,
            ml_time_to_rug=prediction.time_to_rug_seconds if prediction else None,
            ml_risk_level=(risk_level_from_probability(ml_probability)
                           if ml_probability is not None else None),
            top_risk_factors=self.top_risk_factors(prediction, rule_factors),
            hybrid_risk_score=hybrid,
            risk_level=risk_level_from_probability(hybrid / 100),
        )

    # ------------------------------------------------------------------
    # Sell signal / badge
    # ------------------------------------------------------------------

    def sell_signal(self, velocity: VelocityRecord,
                    ml_probability: Optional[float] = None) -> SellSignal:
        """HOLD / SELL / PANIC_SELL from short-horizon liquidity moves"""
        liq_1m = velocity.liquidity.get('1m', 0.0)
        liq_5m = velocity.liquidity.get('5m', 0.0)
        ml = ml_probability or 0.0

        if liq_5m <= -90:
            return SellSignal(SellAction.PANIC_SELL, 95, 'CRITICAL', 'Liquidity collapsed')
        if liq_1m <= -15:
            return SellSignal(SellAction.PANIC_SELL, 95, 'CRITICAL', 'Flash rug in progress')
        if liq_1m <= -10:
            return SellSignal(SellAction.SELL, 90, 'HIGH',
                              f"Rapid drain: {abs(liq_1m):.1f}% liquidity in 1m")
        if liq_5m <= -50:
            return SellSignal(SellAction.SELL, 85, 'HIGH',
                              f"Liquidity down {abs(liq_5m):.1f}% in 5m")
        if ml > 0.8 and liq_5m <= -10:
            return SellSignal(SellAction.SELL, 80, 'HIGH', 'High model risk with liquidity drain')
        if liq_5m <= -25:
            return SellSignal(SellAction.SELL, 75, 'MEDIUM',
                              f"Sustained drain: {abs(liq_5m):.1f}% in 5m")
        if ml > 0.85:
            return SellSignal(SellAction.SELL, 70, 'MEDIUM', 'Very high model risk')
        return SellSignal()

    def badge_state(self, snapshot: TokenSnapshot, velocity: VelocityRecord,
                    signal: SellSignal,
                    protection: Optional[ProtectionRecord] = None) -> Optional[BadgeState]:
        if signal.action == SellAction.PANIC_SELL:
            return BadgeState.SELL_NOW
        if signal.action == SellAction.SELL:
            return BadgeState.SELL

        price_5m = velocity.price.get('5m', 0.0)
        if snapshot.price_updated_at is not None and snapshot.liquidity < 1:
            return BadgeState.RUGGED
        if price_5m >= 20:
            return BadgeState.PUMPING
        if abs(price_5m) >= 10:
            return BadgeState.VOLATILE
        if protection and protection.monitoring_active:
            return BadgeState.WATCHING
        return None
