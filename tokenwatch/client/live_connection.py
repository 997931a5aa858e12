"""
Live push channel to the TokenWatch Socket.IO server

Exactly one connection is kept open. Every subscribed token is re-sent on each
(re)connect, and a dropped connection is retried on the BackoffPolicy schedule
until ``close()`` is called.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import socketio

from tokenwatch.client.backoff import BackoffPolicy
from tokenwatch.utils.constants import TOKEN_UPDATE_EVENT

logger = logging.getLogger(__name__)

UpdateHandler = Callable[[str, Dict[str, Any]], Awaitable[None]]


def default_client_factory() -> socketio.AsyncClient:
    # Reconnection is driven by LiveConnection, not by the library
    return socketio.AsyncClient(reconnection=False)


class LiveConnection:
    """Socket.IO client with replay-on-reconnect"""

    def __init__(self, url: str, backoff: Optional[BackoffPolicy] = None,
                 client_factory: Callable[[], Any] = default_client_factory,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 on_update: Optional[UpdateHandler] = None):
        self.url = url
        self.backoff = backoff or BackoffPolicy()
        self.client_factory = client_factory
        self.sleep = sleep
        self.on_update = on_update

        self.client = None
        self.connected = False
        self.subscriptions: Set[str] = set()
        self._reconnect_task: Optional[asyncio.Task] = None
        self._closed = False

        self.stats = {
            'connects': 0,
            'disconnects': 0,
            'failed_connects': 0,
            'updates': 0,
        }

    async def start(self) -> None:
        self._closed = False
        if not await self._connect():
            self._schedule_reconnect()

    async def close(self) -> None:
        self._closed = True
        task = self._reconnect_task
        self._reconnect_task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self.client is not None:
            client, self.client = self.client, None
            await client.disconnect()
        self.connected = False

    async def subscribe(self, token_id: str) -> None:
        self.subscriptions.add(token_id)
        if self.connected:
            await self._send('subscribe', token_id)

    async def unsubscribe(self, token_id: str) -> None:
        if token_id not in self.subscriptions:
            return
        self.subscriptions.discard(token_id)
        if self.connected:
            await self._send('unsubscribe', token_id)

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    def _new_client(self):
        client = self.client_factory()

        async def on_disconnect(*args):
            # Replaced clients are torn down silently
            if client is self.client:
                await self._on_disconnect()

        client.on('connect', self._on_connect)
        client.on('disconnect', on_disconnect)
        client.on(TOKEN_UPDATE_EVENT, self._on_token_update)
        return client

    async def _connect(self) -> bool:
        if self.client is not None:
            old, self.client = self.client, None
            await old.disconnect()
        self.client = self._new_client()
        try:
            await self.client.connect(self.url)
        except socketio.exceptions.ConnectionError as e:
            self.stats['failed_connects'] += 1
            logger.warning(f"Live connection to {self.url} failed: {e}")
            return False
        return True

    def _schedule_reconnect(self) -> None:
        if self._closed:
            return
        task = self._reconnect_task
        if task and not task.done() and task is not asyncio.current_task():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        while not self._closed:
            delay = self.backoff.next_delay()
            logger.info(f"Reconnecting to {self.url} in {delay:.0f}s")
            await self.sleep(delay)
            if self._closed:
                return
            if await self._connect():
                return

    async def _send(self, event: str, token_id: str) -> None:
        try:
            await self.client.emit(event, {'tokenMint': token_id})
        except socketio.exceptions.SocketIOError as e:
            # The next connect replays the full subscription set
            logger.warning(f"Could not send {event} for {token_id}: {e}")

    # ------------------------------------------------------------------
    # Socket.IO handlers
    # ------------------------------------------------------------------

    async def _on_connect(self):
        self.connected = True
        self.stats['connects'] += 1
        self.backoff.reset()
        logger.info(f"Live connection open, replaying {len(self.subscriptions)} subscriptions")
        for token_id in list(self.subscriptions):
            await self._send('subscribe', token_id)

    async def _on_disconnect(self):
        self.connected = False
        self.stats['disconnects'] += 1
        if not self._closed:
            logger.warning("Live connection lost")
            self._schedule_reconnect()

    async def _on_token_update(self, message):
        if not isinstance(message, dict) or not message.get('tokenMint'):
            logger.debug(f"Ignoring malformed update: {message!r}")
            return
        self.stats['updates'] += 1
        if self.on_update is not None:
            await self.on_update(message['tokenMint'], message.get('data') or {})
