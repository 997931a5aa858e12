"""
Freshness Evaluator - decides whether a snapshot warrants a live fetch

Categories are evaluated independently so the orchestrator only refreshes
what is actually stale.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set

from tokenwatch.config.config_manager import FreshnessConfig
from tokenwatch.data.storage.models import TokenSnapshot
from tokenwatch.utils.constants import Category, MetadataStatus
from tokenwatch.utils.helpers import matches_bonding_curve, utc_now

logger = logging.getLogger(__name__)


@dataclass
class FreshnessReport:
    """Which categories are stale, and why"""
    stale: Set[Category] = field(default_factory=set)
    reasons: Dict[Category, List[str]] = field(default_factory=dict)

    @property
    def needs_fetch(self) -> bool:
        return bool(self.stale)

    def is_stale(self, category: Category) -> bool:
        return category in self.stale

    def _mark(self, category: Category, reason: str) -> None:
        self.stale.add(category)
        self.reasons.setdefault(category, []).append(reason)


class FreshnessEvaluator:
    """Staleness policy for token snapshots"""

    def __init__(self, config: Optional[FreshnessConfig] = None):
        self.config = config or FreshnessConfig()
        self._placeholder_symbols = {s.upper() for s in self.config.placeholder_symbols}
        self._placeholder_names = {n.lower() for n in self.config.placeholder_names}

    def is_bonding_curve_token(self, token_id: str) -> bool:
        return matches_bonding_curve(token_id, self.config.bonding_curve_patterns)

    def is_placeholder_symbol(self, symbol: Optional[str]) -> bool:
        return not symbol or symbol.strip().upper() in self._placeholder_symbols

    def is_placeholder_name(self, name: Optional[str]) -> bool:
        return not name or name.strip().lower() in self._placeholder_names

    def metadata_complete(self, symbol: Optional[str], name: Optional[str]) -> bool:
        """Both symbol and name are real values"""
        return not self.is_placeholder_symbol(symbol) and not self.is_placeholder_name(name)

    def evaluate(self, token_id: str, snapshot: Optional[TokenSnapshot],
                 now: Optional[datetime] = None) -> FreshnessReport:
        """
        Evaluate a snapshot

        Args:
            token_id: Token identifier (used for the bonding-curve rule)
            snapshot: Current snapshot, or None if the token was never seen
            now: Evaluation time, defaults to current UTC

        Returns:
            FreshnessReport listing stale categories
        """
        report = FreshnessReport()
        now = now or utc_now()

        if snapshot is None:
            report._mark(Category.MARKET, 'no snapshot')
            report._mark(Category.METADATA, 'no snapshot')
            return report

        for reason in self._market_reasons(token_id, snapshot, now):
            report._mark(Category.MARKET, reason)

        if self.is_placeholder_symbol(snapshot.symbol):
            report._mark(Category.METADATA, 'placeholder symbol')
        if self.is_placeholder_name(snapshot.name):
            report._mark(Category.METADATA, 'placeholder name')
        if snapshot.metadata_status != MetadataStatus.COMPLETE:
            report._mark(Category.METADATA, 'metadata pending')

        if report.needs_fetch:
            logger.debug(f"{token_id} stale: {report.reasons}")
        return report

    def _market_reasons(self, token_id: str, snapshot: TokenSnapshot,
                        now: datetime) -> List[str]:
        reasons = []
        if self.is_bonding_curve_token(token_id):
            reasons.append('bonding-curve token')
        if snapshot.price <= 0:
            reasons.append('no price')
        elif snapshot.price < self.config.min_valid_price:
            reasons.append('implausible price')
        if snapshot.liquidity <= 0:
            reasons.append('no liquidity')
        if snapshot.market_cap <= 0:
            reasons.append('no market cap')
        if snapshot.volume_24h <= 0:
            reasons.append('no volume')
        if snapshot.holder_count == 0:
            reasons.append('no holders')

        if snapshot.price_updated_at is None:
            reasons.append('never updated')
        else:
            age = (now - snapshot.price_updated_at).total_seconds()
            if age > self.config.market_max_age_seconds:
                reasons.append(f"age {age:.0f}s")
        return reasons
