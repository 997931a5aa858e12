"""
Event Bus - decoupled communication between the orchestrator and consumers
"""

import asyncio
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from tokenwatch.utils.helpers import utc_now

logger = logging.getLogger(__name__)


class EventType(Enum):
    """System event types"""
    # Aggregation events
    TOKEN_UPDATED = "token_updated"
    TOKEN_REFRESH_FAILED = "token_refresh_failed"
    PERSISTENCE_FAILED = "persistence_failed"

    # Risk events
    HIGH_RISK_DETECTED = "high_risk_detected"


@dataclass
class Event:
    """Event data structure"""
    event_type: EventType
    data: Any
    token_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    source: Optional[str] = None


@dataclass
class EventSubscription:
    """Subscription to events"""
    subscriber_id: str
    event_type: EventType
    callback: Callable
    async_handler: bool = True


class EventBus:
    """
    In-process event bus

    ``emit`` only enqueues, so publishers are never blocked by slow handlers.
    A background task dispatches to subscribers; handler failures go to the
    dead letter queue and never reach the publisher.
    """

    def __init__(self, max_queue_size: int = 10000, max_dead_letters: int = 1000):
        self.subscribers: Dict[EventType, List[EventSubscription]] = defaultdict(list)
        self.event_queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self.dead_letter_queue: List[Tuple[Event, Exception]] = []
        self.max_dead_letters = max_dead_letters

        self.stats = {
            'events_emitted': 0,
            'events_processed': 0,
            'events_dropped': 0,
            'handler_errors': 0,
            'by_type': defaultdict(int),
        }

        self.processing_task: Optional[asyncio.Task] = None
        self.is_running = False

    async def start(self):
        """Start event processing"""
        if not self.is_running:
            self.is_running = True
            self.processing_task = asyncio.create_task(self._process_events())
            logger.info("Event bus started")

    async def stop(self):
        """Drain pending events and stop"""
        if not self.is_running:
            return
        await self.event_queue.join()
        self.is_running = False
        if self.processing_task:
            self.processing_task.cancel()
            try:
                await self.processing_task
            except asyncio.CancelledError:
                pass
            self.processing_task = None
        logger.info("Event bus stopped")

    def emit(self, event: Event) -> bool:
        """
        Queue an event for delivery

        Returns:
            False if the queue was full and the event was dropped
        """
        try:
            self.event_queue.put_nowait(event)
        except asyncio.QueueFull:
            self.stats['events_dropped'] += 1
            logger.warning(f"Event queue full, dropping {event.event_type.value}")
            return False
        self.stats['events_emitted'] += 1
        self.stats['by_type'][event.event_type] += 1
        return True

    def subscribe(self, event_type: EventType, callback: Callable,
                  subscriber_id: Optional[str] = None) -> str:
        """
        Register a handler

        Args:
            event_type: Type of event to subscribe to
            callback: Sync or async callable taking the Event
            subscriber_id: Optional subscriber identifier

        Returns:
            Subscription ID
        """
        subscriber_id = subscriber_id or str(uuid.uuid4())
        self.subscribers[event_type].append(EventSubscription(
            subscriber_id=subscriber_id,
            event_type=event_type,
            callback=callback,
            async_handler=asyncio.iscoroutinefunction(callback),
        ))
        return subscriber_id

    def unsubscribe(self, subscriber_id: str, event_type: Optional[EventType] = None):
        event_types = [event_type] if event_type else list(self.subscribers)
        for et in event_types:
            self.subscribers[et] = [
                sub for sub in self.subscribers[et]
                if sub.subscriber_id != subscriber_id
            ]

    async def _process_events(self):
        while self.is_running:
            event = await self.event_queue.get()
            try:
                await self._handle_event(event)
                self.stats['events_processed'] += 1
            finally:
                self.event_queue.task_done()

    async def _handle_event(self, event: Event):
        for subscription in list(self.subscribers.get(event.event_type, [])):
            try:
                if subscription.async_handler:
                    await subscription.callback(event)
                else:
                    subscription.callback(event)
            except Exception as e:
                self.stats['handler_errors'] += 1
                logger.error(f"Subscriber {subscription.subscriber_id} error on "
                             f"{event.event_type.value}: {e}")
                self.dead_letter_queue.append((event, e))
                if len(self.dead_letter_queue) > self.max_dead_letters:
                    self.dead_letter_queue = self.dead_letter_queue[-self.max_dead_letters:]

    def get_stats(self) -> Dict:
        return {
            'events_emitted': self.stats['events_emitted'],
            'events_processed': self.stats['events_processed'],
            'events_dropped': self.stats['events_dropped'],
            'handler_errors': self.stats['handler_errors'],
            'queue_size': self.event_queue.qsize(),
            'by_type': {k.value: v for k, v in self.stats['by_type'].items()},
        }
