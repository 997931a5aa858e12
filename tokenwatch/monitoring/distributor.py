"""
Realtime Distributor (server side)

Tracks which subscriber connections care about which tokens and fans token
updates out to exactly those subscribers. Delivery goes through an injected
``emit(subscriber_id, event, payload)`` coroutine so the distributor does not
depend on a particular transport.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from tokenwatch.core.event_bus import Event
from tokenwatch.data.storage.models import TokenState
from tokenwatch.utils.constants import TOKEN_UPDATE_EVENT

logger = logging.getLogger(__name__)

EmitFn = Callable[[str, str, Dict[str, Any]], Awaitable[Any]]


@dataclass
class Subscription:
    """One subscriber's interests and what it was last sent"""
    subscriber_id: str
    tokens: Set[str] = field(default_factory=set)
    last_delivery: Dict[str, datetime] = field(default_factory=dict)


class RealtimeDistributor:
    """Interest map plus fire-and-forget fan-out"""

    def __init__(self, emit: EmitFn, delivery_timeout: float = 5.0):
        self._emit = emit
        self.delivery_timeout = delivery_timeout

        self.interests: Dict[str, Set[str]] = {}
        self.subscriptions: Dict[str, Subscription] = {}
        self._pending: Set[asyncio.Task] = set()

        self.stats = {
            'delivered': 0,
            'failed': 0,
            'suppressed': 0,
        }

    # ------------------------------------------------------------------
    # Interest management
    # ------------------------------------------------------------------

    def subscribe(self, subscriber_id: str, token_id: str) -> bool:
        """
        Register interest; idempotent

        Returns:
            True if the interest is new
        """
        subscribers = self.interests.setdefault(token_id, set())
        if subscriber_id in subscribers:
            return False
        subscribers.add(subscriber_id)

        subscription = self.subscriptions.get(subscriber_id)
        if subscription is None:
            subscription = self.subscriptions[subscriber_id] = Subscription(subscriber_id)
        subscription.tokens.add(token_id)
        logger.debug(f"{subscriber_id} subscribed to {token_id}")
        return True

    def unsubscribe(self, subscriber_id: str, token_id: str) -> bool:
        """
        Drop interest; idempotent. Empty entries are removed on both sides.

        Returns:
            True if an interest was removed
        """
        subscribers = self.interests.get(token_id)
        if not subscribers or subscriber_id not in subscribers:
            return False
        subscribers.discard(subscriber_id)
        if not subscribers:
            del self.interests[token_id]

        subscription = self.subscriptions.get(subscriber_id)
        if subscription is not None:
            subscription.tokens.discard(token_id)
            subscription.last_delivery.pop(token_id, None)
            if not subscription.tokens:
                del self.subscriptions[subscriber_id]
        logger.debug(f"{subscriber_id} unsubscribed from {token_id}")
        return True

    def remove_subscriber(self, subscriber_id: str) -> int:
        """Drop every interest of a closed connection; returns how many were removed"""
        subscription = self.subscriptions.get(subscriber_id)
        if subscription is None:
            return 0
        removed = 0
        for token_id in list(subscription.tokens):
            if self.unsubscribe(subscriber_id, token_id):
                removed += 1
        return removed

    def subscribers_for(self, token_id: str) -> Set[str]:
        return set(self.interests.get(token_id, ()))

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    def publish(self, token_id: str, payload: Dict[str, Any],
                version: Optional[datetime] = None) -> int:
        """
        Schedule delivery to every interested subscriber and return at once

        Args:
            token_id: Token identifier
            payload: JSON-ready token state
            version: Data timestamp; a subscriber already sent this version
                or a newer one is skipped

        Returns:
            Number of deliveries scheduled
        """
        scheduled = 0
        message = {'tokenMint': token_id, 'data': payload}
        for subscriber_id in self.subscribers_for(token_id):
            subscription = self.subscriptions.get(subscriber_id)
            if subscription is None:
                continue
            if version is not None:
                last = subscription.last_delivery.get(token_id)
                if last is not None and version <= last:
                    self.stats['suppressed'] += 1
                    continue
                subscription.last_delivery[token_id] = version

            task = asyncio.create_task(self._deliver(subscriber_id, token_id, message))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
            scheduled += 1
        return scheduled

    async def _deliver(self, subscriber_id: str, token_id: str, message: Dict[str, Any]):
        try:
            await asyncio.wait_for(
                self._emit(subscriber_id, TOKEN_UPDATE_EVENT, message),
                timeout=self.delivery_timeout,
            )
            self.stats['delivered'] += 1
        except asyncio.TimeoutError:
            self.stats['failed'] += 1
            logger.warning(f"Delivery of {token_id} to {subscriber_id} timed out")
        except Exception as e:
            self.stats['failed'] += 1
            logger.warning(f"Delivery of {token_id} to {subscriber_id} failed: {e}")

    async def handle_token_updated(self, event: Event) -> None:
        """EventBus handler for TOKEN_UPDATED"""
        state: TokenState = event.data
        if not self.interests.get(state.token_id):
            return
        self.publish(state.token_id, state.to_push_dict(), state.data_version)

    async def close(self):
        """Cancel deliveries still in flight"""
        for task in list(self._pending):
            task.cancel()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        self._pending.clear()

    def get_stats(self) -> Dict[str, Any]:
        return dict(
            self.stats,
            tokens=len(self.interests),
            subscribers=len(self.subscriptions),
            in_flight=len(self._pending),
        )
