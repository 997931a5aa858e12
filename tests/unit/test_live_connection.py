# tests/unit/test_live_connection.py
"""
Unit tests for LiveConnection
"""
import asyncio
from typing import Dict, List

import pytest
import socketio

from tokenwatch.client.backoff import BackoffPolicy
from tokenwatch.client.live_connection import LiveConnection
from tokenwatch.utils.constants import TOKEN_UPDATE_EVENT

from tests.fixtures.mock_data import OTHER_TOKEN, TOKEN


class FakeSocketClient:
    """Stands in for socketio.AsyncClient"""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.handlers: Dict[str, object] = {}
        self.emitted: List[tuple] = []
        self.connected = False

    def on(self, event, handler):
        self.handlers[event] = handler

    async def connect(self, url):
        if self.fail:
            raise socketio.exceptions.ConnectionError("refused")
        self.connected = True
        await self.handlers['connect']()

    async def disconnect(self):
        if self.connected:
            self.connected = False
            await self.handlers['disconnect']()

    async def emit(self, event, data):
        self.emitted.append((event, data))

    async def drop(self):
        """Server side close"""
        self.connected = False
        await self.handlers['disconnect']('transport close')


class ClientFactory:
    def __init__(self, failures: int = 0):
        self.failures = failures
        self.clients: List[FakeSocketClient] = []

    def __call__(self):
        client = FakeSocketClient(fail=len(self.clients) < self.failures)
        self.clients.append(client)
        return client


async def instant_sleep(delay):
    await asyncio.sleep(0)


@pytest.mark.unit
class TestLiveConnection:

    @pytest.mark.asyncio
    async def test_subscriptions_are_sent_once_connected(self):
        factory = ClientFactory()
        connection = LiveConnection('http://ws.test', client_factory=factory, sleep=instant_sleep)

        await connection.subscribe(TOKEN)
        await connection.start()
        await connection.subscribe(OTHER_TOKEN)
        await connection.unsubscribe(TOKEN)

        assert factory.clients[0].emitted == [
            ('subscribe', {'tokenMint': TOKEN}),
            ('subscribe', {'tokenMint': OTHER_TOKEN}),
            ('unsubscribe', {'tokenMint': TOKEN}),
        ]
        assert connection.subscriptions == {OTHER_TOKEN}
        await connection.close()

    @pytest.mark.asyncio
    async def test_reconnect_backoff_schedule(self):
        delays = []
        six_attempts = asyncio.Event()

        async def recording_sleep(delay):
            delays.append(delay)
            if len(delays) == 6:
                six_attempts.set()
                await asyncio.Event().wait()

        connection = LiveConnection(
            'http://ws.test',
            backoff=BackoffPolicy(initial=1, maximum=30),
            client_factory=ClientFactory(failures=100),
            sleep=recording_sleep,
        )

        await connection.start()
        await asyncio.wait_for(six_attempts.wait(), timeout=1)
        await connection.close()

        assert delays == [1, 2, 4, 8, 16, 30]
        assert not connection.connected

    @pytest.mark.asyncio
    async def test_reconnect_replays_and_resets_backoff(self):
        factory = ClientFactory()
        backoff = BackoffPolicy(initial=1, maximum=30)
        connection = LiveConnection('http://ws.test', backoff=backoff,
                                    client_factory=factory, sleep=instant_sleep)
        await connection.subscribe(TOKEN)
        await connection.subscribe(OTHER_TOKEN)
        await connection.start()

        await factory.clients[0].drop()
        await connection._reconnect_task

        assert len(factory.clients) == 2
        assert connection.connected
        assert sorted(d['tokenMint'] for _, d in factory.clients[1].emitted) == sorted([TOKEN, OTHER_TOKEN])
        assert backoff.current == 1
        await connection.close()

    @pytest.mark.asyncio
    async def test_close_stops_reconnecting(self):
        factory = ClientFactory()
        connection = LiveConnection('http://ws.test', client_factory=factory, sleep=instant_sleep)
        await connection.start()

        await connection.close()

        assert connection._reconnect_task is None
        assert len(factory.clients) == 1
        assert not factory.clients[0].connected

    @pytest.mark.asyncio
    async def test_updates_are_forwarded(self):
        received = []

        async def on_update(token_id, data):
            received.append((token_id, data))

        factory = ClientFactory()
        connection = LiveConnection('http://ws.test', client_factory=factory,
                                    sleep=instant_sleep, on_update=on_update)
        await connection.start()
        handler = factory.clients[0].handlers[TOKEN_UPDATE_EVENT]

        await handler({'tokenMint': TOKEN, 'data': {'price': 2.0}})
        await handler({'data': {}})
        await handler("garbage")

        assert received == [(TOKEN, {'price': 2.0})]
        assert connection.stats['updates'] == 1
        await connection.close()
