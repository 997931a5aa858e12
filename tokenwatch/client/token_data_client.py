"""
TokenDataClient - consumer side of TokenWatch

Coalesces lookups, deduplicates concurrent identical requests, falls back to
an older fetch path on failure and fans live updates out to listeners. No
public method raises: a lookup that cannot be satisfied yields None.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from tokenwatch.client.backoff import BackoffPolicy
from tokenwatch.client.live_connection import LiveConnection
from tokenwatch.client.overrides import PendingOverrides
from tokenwatch.client.transport import HttpTransport
from tokenwatch.config.config_manager import ClientConfig
from tokenwatch.utils.errors import TransportError

logger = logging.getLogger(__name__)

TokenData = Dict[str, Any]
Fallback = Callable[[str, Optional[str]], Awaitable[Optional[TokenData]]]
Listener = Callable[[str, TokenData], Any]


class TokenDataClient:
    """One instance per process or session"""

    def __init__(self, transport: HttpTransport,
                 connection: Optional[LiveConnection] = None,
                 fallback: Optional[Fallback] = None,
                 coalesce_threshold: int = 3,
                 overrides: Optional[PendingOverrides] = None,
                 debounce: float = 0.0):
        """
        Args:
            transport: REST transport
            connection: Live push channel, optional
            fallback: Older unified-fetch path used when the transport fails
            coalesce_threshold: Up to this many tokens are fetched one call each;
                more go through a single batch call
            overrides: Optimistic local writes applied over server data
            debounce: Seconds to coalesce listener notifications per token
        """
        self.transport = transport
        self.connection = connection
        self.fallback = fallback
        self.coalesce_threshold = coalesce_threshold
        self.overrides = overrides or PendingOverrides()
        self.debounce = debounce

        self._in_flight: Dict[Tuple[str, Optional[str]], asyncio.Future] = {}
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._debounce_timers: Dict[str, asyncio.TimerHandle] = {}
        self._debounced: Dict[str, TokenData] = {}
        self._tasks: Set[asyncio.Task] = set()

        self.stats = defaultdict(int)

        if self.connection is not None:
            self.connection.on_update = self._handle_update

    @classmethod
    def from_config(cls, base_url: str, config: Optional[ClientConfig] = None,
                    live_url: Optional[str] = None,
                    fallback: Optional[Fallback] = None) -> 'TokenDataClient':
        """Build transport, live connection and overrides from ClientConfig"""
        config = config or ClientConfig()
        connection = None
        if live_url:
            connection = LiveConnection(live_url, BackoffPolicy(
                initial=config.initial_reconnect_delay,
                maximum=config.max_reconnect_delay,
            ))
        return cls(
            transport=HttpTransport(base_url, timeout=config.request_timeout_seconds),
            connection=connection,
            fallback=fallback,
            coalesce_threshold=config.coalesce_threshold,
            overrides=PendingOverrides(config.optimistic_grace_seconds),
            debounce=config.debounce_seconds,
        )

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_token(self, token_id: str,
                        wallet_id: Optional[str] = None) -> Optional[TokenData]:
        """Current data for one token, or None"""
        key = (token_id, wallet_id)
        future = self._in_flight.get(key)
        if future is None:
            future = self._track_in_flight(key, self._lookup(token_id, wallet_id))
        else:
            self.stats['deduplicated'] += 1
        return await asyncio.shield(future)

    async def get_tokens(self, token_ids: List[str],
                         wallet_id: Optional[str] = None) -> Dict[str, Optional[TokenData]]:
        """
        Data for several tokens

        Returns:
            token id -> data (None where nothing could be fetched)
        """
        unique = list(dict.fromkeys(t for t in token_ids if t))
        if not unique:
            return {}

        pending: Dict[str, asyncio.Future] = {}
        to_fetch: List[str] = []
        for token_id in unique:
            existing = self._in_flight.get((token_id, wallet_id))
            if existing is not None:
                self.stats['deduplicated'] += 1
                pending[token_id] = existing
            else:
                to_fetch.append(token_id)

        if len(to_fetch) > self.coalesce_threshold:
            batch = asyncio.ensure_future(self._lookup_batch(to_fetch, wallet_id))
            self._tasks.add(batch)
            batch.add_done_callback(self._tasks.discard)
            for token_id in to_fetch:
                pending[token_id] = self._track_in_flight(
                    (token_id, wallet_id), self._pick(batch, token_id)
                )
        else:
            for token_id in to_fetch:
                pending[token_id] = self._track_in_flight(
                    (token_id, wallet_id), self._lookup(token_id, wallet_id)
                )

        values = await asyncio.gather(*(asyncio.shield(f) for f in pending.values()))
        return {token_id: value for token_id, value in zip(pending, values)}

    def _track_in_flight(self, key: Tuple[str, Optional[str]], coro) -> asyncio.Future:
        future = asyncio.ensure_future(coro)
        self._in_flight[key] = future

        def _done(f, key=key):
            if self._in_flight.get(key) is f:
                del self._in_flight[key]

        future.add_done_callback(_done)
        return future

    async def _lookup(self, token_id: str, wallet_id: Optional[str]) -> Optional[TokenData]:
        self.stats['lookups'] += 1
        try:
            data = await self.transport.get_token(token_id, wallet_id)
        except TransportError as e:
            logger.warning(f"Lookup failed for {token_id}: {e}")
            return await self._fallback(token_id, wallet_id)
        except Exception as e:
            logger.error(f"Unexpected lookup error for {token_id}: {e}", exc_info=True)
            return await self._fallback(token_id, wallet_id)
        return self._apply_overrides(token_id, data)

    async def _lookup_batch(self, token_ids: List[str],
                            wallet_id: Optional[str]) -> Dict[str, Optional[TokenData]]:
        self.stats['batch_lookups'] += 1
        results: Dict[str, Optional[TokenData]] = {}
        try:
            entries = await self.transport.get_tokens(token_ids, wallet_id)
        except TransportError as e:
            logger.warning(f"Batch lookup of {len(token_ids)} tokens failed: {e}")
            entries = []
        except Exception as e:
            logger.error(f"Unexpected batch lookup error: {e}", exc_info=True)
            entries = []

        for entry in entries:
            if not isinstance(entry, dict) or entry.get('error'):
                continue
            token_id = entry.get('tokenMint')
            if token_id in token_ids:
                results[token_id] = self._apply_overrides(token_id, entry)

        missing = [t for t in token_ids if t not in results]
        if missing:
            recovered = await asyncio.gather(*(self._fallback(t, wallet_id) for t in missing))
            results.update(zip(missing, recovered))
        return results

    @staticmethod
    async def _pick(batch: asyncio.Future, token_id: str) -> Optional[TokenData]:
        results = await asyncio.shield(batch)
        return results.get(token_id)

    async def _fallback(self, token_id: str, wallet_id: Optional[str]) -> Optional[TokenData]:
        if self.fallback is None:
            self.stats['empty_results'] += 1
            return None
        self.stats['fallbacks'] += 1
        try:
            data = await self.fallback(token_id, wallet_id)
        except Exception as e:
            logger.error(f"Fallback lookup failed for {token_id}: {e}", exc_info=True)
            return None
        if data is None:
            return None
        return self._apply_overrides(token_id, data)

    # ------------------------------------------------------------------
    # Optimistic state
    # ------------------------------------------------------------------

    def set_optimistic(self, token_id: str, field: str, value: Any) -> None:
        """Record a local write that wins over server data for the grace period"""
        self.overrides.set(token_id, field, value)

    def _apply_overrides(self, token_id: str, data: TokenData) -> TokenData:
        return self.overrides.apply(token_id, data)

    # ------------------------------------------------------------------
    # Live updates
    # ------------------------------------------------------------------

    async def add_listener(self, token_id: str, listener: Listener) -> None:
        first = not self._listeners[token_id]
        self._listeners[token_id].append(listener)
        if first and self.connection is not None:
            await self.connection.subscribe(token_id)

    async def remove_listener(self, token_id: str, listener: Listener) -> None:
        listeners = self._listeners.get(token_id)
        if not listeners or listener not in listeners:
            return
        listeners.remove(listener)
        if listeners:
            return
        del self._listeners[token_id]
        self._cancel_debounce(token_id)
        if self.connection is not None:
            await self.connection.unsubscribe(token_id)

    async def _handle_update(self, token_id: str, data: TokenData) -> None:
        if token_id not in self._listeners:
            return
        data = self._apply_overrides(token_id, data)
        if self.debounce <= 0:
            self._notify(token_id, data)
            return
        self._debounced[token_id] = data
        self._cancel_debounce(token_id, keep_data=True)
        loop = asyncio.get_running_loop()
        self._debounce_timers[token_id] = loop.call_later(
            self.debounce, self._flush_debounced, token_id
        )

    def _flush_debounced(self, token_id: str) -> None:
        self._debounce_timers.pop(token_id, None)
        data = self._debounced.pop(token_id, None)
        if data is not None:
            self._notify(token_id, data)

    def _cancel_debounce(self, token_id: str, keep_data: bool = False) -> None:
        handle = self._debounce_timers.pop(token_id, None)
        if handle is not None:
            handle.cancel()
        if not keep_data:
            self._debounced.pop(token_id, None)

    def _notify(self, token_id: str, data: TokenData) -> None:
        self.stats['notifications'] += 1
        for listener in list(self._listeners.get(token_id, [])):
            try:
                result = listener(token_id, data)
            except Exception as e:
                logger.error(f"Listener for {token_id} failed: {e}", exc_info=True)
                continue
            if asyncio.iscoroutine(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._listener_done)

    def _listener_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Async listener failed: {task.exception()}")

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Cancel timers, in-flight lookups and listener tasks"""
        for token_id in list(self._debounce_timers):
            self._cancel_debounce(token_id)
        pending = list(self._in_flight.values()) + list(self._tasks)
        for future in pending:
            future.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._in_flight.clear()
        self._tasks.clear()
        self._listeners.clear()
        if self.connection is not None:
            await self.connection.close()
        await self.transport.close()
