"""
Aggregation Orchestrator

Per request: LOAD_SNAPSHOT -> EVALUATE_FRESHNESS -> [FETCH_LIVE] -> MERGE ->
PERSIST -> COMPUTE_DERIVED -> RESPOND. The orchestrator is the only writer of
snapshots and history, and serializes those writes per token.
"""

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from tokenwatch.config.config_manager import DatabaseConfig
from tokenwatch.config.rate_limiter import RateLimiter
from tokenwatch.core.event_bus import Event, EventBus, EventType
from tokenwatch.core.fetcher import FetchOutcome, MultiSourceFetcher
from tokenwatch.core.freshness import FreshnessEvaluator
from tokenwatch.core.metrics import DerivedMetricsCalculator
from tokenwatch.data.storage.base import TokenStore
from tokenwatch.data.storage.cache import CacheManager
from tokenwatch.data.storage.models import (
    HistorySample, MarketData, TokenMetadata, TokenSnapshot, TokenState, VelocityRecord
)
from tokenwatch.utils.constants import MAX_BATCH_SIZE, Category, MetadataStatus, RiskLevel
from tokenwatch.utils.errors import MalformedInputError, PersistenceError
from tokenwatch.utils.helpers import utc_now, validate_token_id, validate_wallet_id

logger = logging.getLogger(__name__)

MARKET_FIELDS = ('price', 'liquidity', 'market_cap', 'volume_24h', 'holder_count')


def merge_market_data(snapshot: TokenSnapshot, data: MarketData, now: datetime) -> bool:
    """
    Copy meaningfully present market fields onto the snapshot

    Zero or missing values never overwrite existing ones.

    Returns:
        True if any field changed
    """
    changed = False
    for attr in MARKET_FIELDS:
        value = getattr(data, attr)
        if value and value > 0 and value != getattr(snapshot, attr):
            setattr(snapshot, attr, value)
            changed = True
    if data.price_change_24h and data.price_change_24h != snapshot.price_change_24h:
        snapshot.price_change_24h = data.price_change_24h
        changed = True
    if changed:
        snapshot.price_updated_at = now
        snapshot.source = data.source
    return changed


def merge_metadata(snapshot: TokenSnapshot, data: TokenMetadata, now: datetime,
                   evaluator: FreshnessEvaluator) -> bool:
    """Copy non-placeholder metadata onto the snapshot; returns True if anything changed"""
    changed = False
    if not evaluator.is_placeholder_symbol(data.symbol) and data.symbol != snapshot.symbol:
        snapshot.symbol = data.symbol
        changed = True
    if not evaluator.is_placeholder_name(data.name) and data.name != snapshot.name:
        snapshot.name = data.name
        changed = True
    if data.logo_uri and data.logo_uri != snapshot.logo_uri:
        snapshot.logo_uri = data.logo_uri
        changed = True
    if data.decimals is not None and data.decimals != snapshot.decimals:
        snapshot.decimals = data.decimals
        changed = True

    if (snapshot.metadata_status != MetadataStatus.COMPLETE
            and evaluator.metadata_complete(snapshot.symbol, snapshot.name)):
        snapshot.metadata_status = MetadataStatus.COMPLETE
        changed = True
    if changed:
        snapshot.metadata_updated_at = now
    return changed


@dataclass
class TokenStateError:
    """Per-token failure inside a batch"""
    token_id: str
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return {'tokenMint': self.token_id, 'error': self.error}


class AggregationOrchestrator:
    """Answers GetTokenState / GetTokenStates"""

    def __init__(self, store: TokenStore, fetcher: MultiSourceFetcher,
                 evaluator: FreshnessEvaluator, calculator: DerivedMetricsCalculator,
                 rate_limiter: Optional[RateLimiter] = None,
                 event_bus: Optional[EventBus] = None,
                 cache: Optional[CacheManager] = None,
                 database_config: Optional[DatabaseConfig] = None,
                 max_batch_size: int = MAX_BATCH_SIZE):
        self.store = store
        self.fetcher = fetcher
        self.evaluator = evaluator
        self.calculator = calculator
        self.rate_limiter = rate_limiter
        self.event_bus = event_bus
        self.cache = cache
        self.database_config = database_config or DatabaseConfig()
        self.max_batch_size = max_batch_size

        # token id -> [lock, waiters]; entries are dropped when nobody holds them
        self._locks: Dict[str, List[Any]] = {}
        self._background: Set[asyncio.Task] = set()

        self.stats = defaultdict(int)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def get_token_state(self, token_id: str,
                              wallet_id: Optional[str] = None) -> TokenState:
        """
        Current state of a token, refreshing stale categories first

        Args:
            token_id: Token identifier
            wallet_id: Optional wallet for protection flags

        Returns:
            Assembled TokenState

        Raises:
            MalformedInputError: invalid token or wallet identifier
        """
        token_id = validate_token_id(token_id)
        wallet_id = validate_wallet_id(wallet_id)
        self.stats['requests'] += 1

        async with self._token_lock(token_id):
            snapshot, refreshed, unrefreshed = await self._refresh(token_id)

        state = await self._assemble(snapshot, wallet_id, refreshed, unrefreshed)
        self._publish(state)
        return state

    async def get_token_states(self, token_ids: List[str],
                               wallet_id: str) -> List[Union[TokenState, TokenStateError]]:
        """
        Batched form of get_token_state

        Identifiers are de-duplicated (first occurrence wins). A failure on one
        token yields a TokenStateError entry instead of failing the batch.
        """
        if not isinstance(token_ids, list) or not token_ids:
            raise MalformedInputError('tokens', token_ids, 'expected a non-empty list')
        wallet_id = validate_wallet_id(wallet_id, required=True)
        unique = list(dict.fromkeys(token_ids))
        if len(unique) > self.max_batch_size:
            raise MalformedInputError(
                'tokens', len(unique), f"at most {self.max_batch_size} tokens per batch"
            )
        for token_id in unique:
            validate_token_id(token_id)

        results = await asyncio.gather(
            *(self.get_token_state(token_id, wallet_id) for token_id in unique),
            return_exceptions=True,
        )

        states: List[Union[TokenState, TokenStateError]] = []
        for token_id, result in zip(unique, results):
            if isinstance(result, Exception):
                logger.error(f"Aggregation failed for {token_id}: {result}")
                states.append(TokenStateError(token_id, 'aggregation_failed'))
            elif isinstance(result, BaseException):
                raise result
            else:
                states.append(result)
        return states

    async def close(self):
        """Wait for background cache writes"""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # ------------------------------------------------------------------
    # Per-token critical section
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _token_lock(self, token_id: str):
        entry = self._locks.get(token_id)
        if entry is None:
            entry = self._locks[token_id] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._locks.pop(token_id, None)

    # ------------------------------------------------------------------
    # LOAD -> EVALUATE -> FETCH -> MERGE -> PERSIST
    # ------------------------------------------------------------------

    async def _refresh(self, token_id: str) -> Tuple[TokenSnapshot, bool, List[str]]:
        now = utc_now()
        existing = await self._load_snapshot(token_id)
        report = self.evaluator.evaluate(token_id, existing, now)
        snapshot = existing.copy() if existing else TokenSnapshot(token_id=token_id, created_at=now)

        if not report.needs_fetch:
            return snapshot, False, []

        to_fetch: List[Category] = []
        unrefreshed: List[str] = []
        for category in (Category.MARKET, Category.METADATA):
            if not report.is_stale(category):
                continue
            if self._allow_refresh(token_id, category):
                to_fetch.append(category)
            else:
                unrefreshed.append(category.value)

        if not to_fetch:
            return snapshot, False, unrefreshed

        outcomes: List[FetchOutcome] = await asyncio.gather(
            *(self.fetcher.fetch(token_id, category) for category in to_fetch)
        )

        changed = False
        market_refreshed = False
        for outcome in outcomes:
            if not outcome.succeeded:
                unrefreshed.append(outcome.category.value)
                self._emit(EventType.TOKEN_REFRESH_FAILED, token_id, {
                    'category': outcome.category.value,
                    'failures': outcome.failures,
                })
                continue
            if outcome.category == Category.MARKET:
                # A confirmed-unchanged quote is still a refresh: restart the age
                # and record a history sample for the velocity baselines
                merge_market_data(snapshot, outcome.data, now)
                snapshot.price_updated_at = now
                snapshot.source = outcome.data.source
                changed = market_refreshed = True
            elif merge_metadata(snapshot, outcome.data, now, self.evaluator):
                changed = True

        if changed:
            await self._persist(snapshot, market_refreshed, now, to_fetch)
        return snapshot, changed, unrefreshed

    def _allow_refresh(self, token_id: str, category: Category) -> bool:
        if self.rate_limiter is None:
            return True
        allowed = self.rate_limiter.try_acquire(token_id, f"refresh:{category.value}")
        if not allowed:
            self.stats['refresh_rate_limited'] += 1
        return allowed

    async def _load_snapshot(self, token_id: str) -> Optional[TokenSnapshot]:
        try:
            return await self.store.get_snapshot(token_id)
        except PersistenceError as e:
            logger.error(f"Snapshot read failed for {token_id}: {e}")
            return None

    async def _persist(self, snapshot: TokenSnapshot, market_refreshed: bool,
                       now: datetime, fetched: List[Category]) -> None:
        token_id = snapshot.token_id
        try:
            await self.store.upsert_snapshot(snapshot)
        except PersistenceError as e:
            self.stats['persistence_failures'] += 1
            logger.error(f"Snapshot write failed for {token_id}, serving unsaved result: {e}")
            self._emit(EventType.PERSISTENCE_FAILED, token_id, {'error': str(e)})
            # Let the next request retry instead of waiting out the refresh window
            if self.rate_limiter:
                for category in fetched:
                    self.rate_limiter.release(token_id, f"refresh:{category.value}")
            return

        if market_refreshed and (snapshot.price > 0 or snapshot.liquidity > 0):
            try:
                await self.store.append_history(HistorySample(
                    token_id=token_id,
                    price=snapshot.price,
                    liquidity=snapshot.liquidity,
                    market_cap=snapshot.market_cap,
                    recorded_at=now,
                    source=snapshot.source,
                ))
            except PersistenceError as e:
                self.stats['persistence_failures'] += 1
                logger.error(f"History append failed for {token_id}: {e}")

    # ------------------------------------------------------------------
    # COMPUTE_DERIVED -> RESPOND
    # ------------------------------------------------------------------

    async def _assemble(self, snapshot: TokenSnapshot, wallet_id: Optional[str],
                        refreshed: bool, unrefreshed: List[str]) -> TokenState:
        token_id = snapshot.token_id
        now = utc_now()

        prediction = await self._read_optional(self.store.get_ml_prediction(token_id),
                                               'ml prediction', token_id)
        protection = None
        if wallet_id:
            protection = await self._read_optional(
                self.store.get_protection(token_id, wallet_id), 'protection', token_id
            )

        velocity = await self._velocity(snapshot, now)
        risk = self.calculator.calculate_risk(snapshot, velocity, prediction)
        signal = self.calculator.sell_signal(velocity, risk.ml_probability)
        badge = self.calculator.badge_state(snapshot, velocity, signal, protection)

        state = TokenState(
            snapshot=snapshot,
            velocity=velocity,
            risk=risk,
            wallet_id=wallet_id,
            protection=protection,
            sell_signal=signal,
            badge_state=badge,
            refreshed=refreshed,
            unrefreshed_categories=unrefreshed,
            generated_at=now,
        )

        if self.cache is not None:
            self._spawn(self._cache_derived(state))
        return state

    async def _velocity(self, snapshot: TokenSnapshot, now: datetime) -> VelocityRecord:
        since = now - timedelta(seconds=self.database_config.history_lookback_seconds)
        try:
            history = await self.store.get_history(
                snapshot.token_id, since, self.database_config.history_limit
            )
        except PersistenceError as e:
            logger.error(f"History read failed for {snapshot.token_id}: {e}")
            cached = await self._cached_velocity(snapshot.token_id)
            if cached is not None:
                return cached
            history = []
        return self.calculator.calculate_velocity(snapshot, history, now)

    async def _cached_velocity(self, token_id: str) -> Optional[VelocityRecord]:
        if self.cache is None:
            return None
        data = await self.cache.get('velocity', token_id)
        if not isinstance(data, dict):
            return None
        alerts = data.get('alerts') or {}
        return VelocityRecord(
            token_id=token_id,
            price=dict(data.get('price') or {}),
            liquidity=dict(data.get('liquidity') or {}),
            flash_rug=bool(alerts.get('flashRug')),
            rapid_drain=bool(alerts.get('rapidDrain')),
        )

    async def _cache_derived(self, state: TokenState) -> None:
        await self.cache.set('velocity', state.token_id, state.velocity.to_dict())
        await self.cache.set('risk', state.token_id, state.risk.to_dict())

    async def _read_optional(self, coro, what: str, token_id: str):
        """Collaborator-owned reads degrade to None"""
        try:
            return await coro
        except PersistenceError as e:
            logger.warning(f"{what} read failed for {token_id}: {e}")
            return None

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _publish(self, state: TokenState) -> None:
        if not state.refreshed:
            return
        self._emit(EventType.TOKEN_UPDATED, state.token_id, state)
        if state.risk.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
            self._emit(EventType.HIGH_RISK_DETECTED, state.token_id, {
                'level': state.risk.risk_level.value,
                'score': state.risk.hybrid_risk_score,
                'factors': state.risk.top_risk_factors,
            })

    def _emit(self, event_type: EventType, token_id: str, data: Any) -> None:
        if self.event_bus is None:
            return
        self.event_bus.emit(Event(
            event_type=event_type,
            data=data,
            token_id=token_id,
            source='AggregationOrchestrator',
        ))

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
