# tests/unit/test_client.py
"""
Unit tests for TokenDataClient
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from tokenwatch.client.overrides import PendingOverrides
from tokenwatch.client.token_data_client import TokenDataClient
from tokenwatch.config.config_manager import ClientConfig
from tokenwatch.utils.errors import TransportError

from tests.fixtures.mock_data import OTHER_TOKEN, PUMP_TOKEN, TOKEN, WALLET

FOURTH_TOKEN = "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263"


def payload(token_id, **extra):
    data = {'tokenMint': token_id, 'price': 1.0, 'isMonitored': False}
    data.update(extra)
    return data


@pytest.fixture
def transport():
    transport = MagicMock()
    transport.get_token = AsyncMock(side_effect=lambda token_id, wallet_id=None: payload(token_id))
    transport.get_tokens = AsyncMock(
        side_effect=lambda token_ids, wallet_id=None: [payload(t) for t in token_ids]
    )
    transport.close = AsyncMock()
    return transport


@pytest.fixture
def connection():
    connection = MagicMock()
    connection.subscribe = AsyncMock()
    connection.unsubscribe = AsyncMock()
    connection.close = AsyncMock()
    return connection


@pytest.mark.unit
class TestLookups:
    """Test cases for coalescing, deduplication and fallback"""

    @pytest.mark.asyncio
    async def test_three_tokens_use_individual_lookups(self, transport):
        client = TokenDataClient(transport)

        result = await client.get_tokens([TOKEN, OTHER_TOKEN, PUMP_TOKEN], WALLET)

        assert set(result) == {TOKEN, OTHER_TOKEN, PUMP_TOKEN}
        assert transport.get_token.await_count == 3
        transport.get_tokens.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_four_tokens_use_one_batch(self, transport):
        client = TokenDataClient(transport)
        tokens = [TOKEN, OTHER_TOKEN, PUMP_TOKEN, FOURTH_TOKEN]

        result = await client.get_tokens(tokens, WALLET)

        assert list(result) == tokens
        assert all(result[t]['tokenMint'] == t for t in tokens)
        transport.get_tokens.assert_awaited_once_with(tokens, WALLET)
        transport.get_token.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_duplicate_tokens_count_once(self, transport):
        client = TokenDataClient(transport)

        result = await client.get_tokens([TOKEN, TOKEN, OTHER_TOKEN, OTHER_TOKEN], WALLET)

        assert len(result) == 2
        assert transport.get_token.await_count == 2

    @pytest.mark.asyncio
    async def test_concurrent_identical_lookups_share_one_call(self, transport):
        gate = asyncio.Event()

        async def slow_get(token_id, wallet_id=None):
            await gate.wait()
            return payload(token_id)

        transport.get_token = AsyncMock(side_effect=slow_get)
        client = TokenDataClient(transport)

        first = asyncio.ensure_future(client.get_token(TOKEN, WALLET))
        second = asyncio.ensure_future(client.get_token(TOKEN, WALLET))
        await asyncio.sleep(0)
        gate.set()
        results = await asyncio.gather(first, second)

        assert results[0] == results[1]
        assert transport.get_token.await_count == 1
        assert client.stats['deduplicated'] == 1
        assert client._in_flight == {}

    @pytest.mark.asyncio
    async def test_different_wallets_are_separate_lookups(self, transport):
        client = TokenDataClient(transport)

        await asyncio.gather(client.get_token(TOKEN, WALLET), client.get_token(TOKEN, None))

        assert transport.get_token.await_count == 2

    @pytest.mark.asyncio
    async def test_failure_without_fallback_returns_none(self, transport):
        transport.get_token = AsyncMock(side_effect=TransportError("HTTP 503", status=503))
        client = TokenDataClient(transport)

        assert await client.get_token(TOKEN) is None
        assert await client.get_tokens([TOKEN]) == {TOKEN: None}

    @pytest.mark.asyncio
    async def test_failure_uses_fallback(self, transport):
        transport.get_token = AsyncMock(side_effect=TransportError("connection refused"))
        fallback = AsyncMock(return_value={'tokenMint': TOKEN, 'price': 0.9})
        client = TokenDataClient(transport, fallback=fallback)

        result = await client.get_token(TOKEN, WALLET)

        assert result == {'tokenMint': TOKEN, 'price': 0.9}
        fallback.assert_awaited_once_with(TOKEN, WALLET)

    @pytest.mark.asyncio
    async def test_never_raises(self, transport):
        transport.get_token = AsyncMock(side_effect=RuntimeError("unexpected"))
        transport.get_tokens = AsyncMock(side_effect=RuntimeError("unexpected"))
        fallback = AsyncMock(side_effect=ValueError("legacy path broken"))
        client = TokenDataClient(transport, fallback=fallback)

        assert await client.get_token(TOKEN) is None
        result = await client.get_tokens([TOKEN, OTHER_TOKEN, PUMP_TOKEN, FOURTH_TOKEN])
        assert result == {TOKEN: None, OTHER_TOKEN: None, PUMP_TOKEN: None, FOURTH_TOKEN: None}

    @pytest.mark.asyncio
    async def test_batch_errors_fall_back_per_token(self, transport):
        transport.get_tokens = AsyncMock(return_value=[
            payload(TOKEN),
            {'tokenMint': OTHER_TOKEN, 'error': 'aggregation_failed'},
            payload(PUMP_TOKEN),
            payload(FOURTH_TOKEN),
        ])
        fallback = AsyncMock(return_value=None)
        client = TokenDataClient(transport, fallback=fallback)

        result = await client.get_tokens([TOKEN, OTHER_TOKEN, PUMP_TOKEN, FOURTH_TOKEN])

        assert result[OTHER_TOKEN] is None
        assert result[TOKEN]['tokenMint'] == TOKEN
        fallback.assert_awaited_once_with(OTHER_TOKEN, None)

    @pytest.mark.asyncio
    async def test_optimistic_value_wins_over_lookup(self, transport):
        client = TokenDataClient(transport)
        client.set_optimistic(TOKEN, 'isMonitored', True)

        result = await client.get_token(TOKEN)

        assert result['isMonitored'] is True


@pytest.mark.unit
class TestListeners:
    """Test cases for live update fan-out"""

    @pytest.mark.asyncio
    async def test_first_listener_subscribes_last_unsubscribes(self, transport, connection):
        client = TokenDataClient(transport, connection=connection)
        first, second = MagicMock(), MagicMock()

        await client.add_listener(TOKEN, first)
        await client.add_listener(TOKEN, second)
        await client.remove_listener(TOKEN, first)
        connection.unsubscribe.assert_not_awaited()
        await client.remove_listener(TOKEN, second)

        connection.subscribe.assert_awaited_once_with(TOKEN)
        connection.unsubscribe.assert_awaited_once_with(TOKEN)

    @pytest.mark.asyncio
    async def test_updates_reach_listeners(self, transport, connection):
        client = TokenDataClient(transport, connection=connection)
        received = []
        await client.add_listener(TOKEN, lambda token_id, data: received.append(data))

        await connection.on_update(TOKEN, {'price': 2.0})
        await connection.on_update(OTHER_TOKEN, {'price': 9.0})

        assert received == [{'price': 2.0}]

    @pytest.mark.asyncio
    async def test_stale_echo_does_not_beat_local_write(self, transport, connection):
        client = TokenDataClient(transport, connection=connection,
                                 overrides=PendingOverrides(grace_period=5.0))
        received = []
        await client.add_listener(TOKEN, lambda token_id, data: received.append(data))

        client.set_optimistic(TOKEN, 'isMonitored', True)
        await connection.on_update(TOKEN, {'isMonitored': False, 'price': 2.0})

        assert received == [{'isMonitored': True, 'price': 2.0}]

    @pytest.mark.asyncio
    async def test_failing_listener_is_isolated(self, transport, connection):
        client = TokenDataClient(transport, connection=connection)
        received = []

        def broken(token_id, data):
            raise RuntimeError("listener bug")

        await client.add_listener(TOKEN, broken)
        await client.add_listener(TOKEN, lambda token_id, data: received.append(data))

        await connection.on_update(TOKEN, {'price': 2.0})

        assert received == [{'price': 2.0}]

    @pytest.mark.asyncio
    async def test_debounce_keeps_latest_update(self, transport, connection):
        client = TokenDataClient(transport, connection=connection, debounce=0.02)
        received = []
        await client.add_listener(TOKEN, lambda token_id, data: received.append(data['price']))

        for price in (1.0, 2.0, 3.0):
            await connection.on_update(TOKEN, {'price': price})
        assert received == []

        await asyncio.sleep(0.05)
        assert received == [3.0]

    @pytest.mark.asyncio
    async def test_close_cancels_timers(self, transport, connection):
        client = TokenDataClient(transport, connection=connection, debounce=0.02)
        received = []
        await client.add_listener(TOKEN, lambda token_id, data: received.append(data))
        await connection.on_update(TOKEN, {'price': 1.0})

        await client.close()
        await asyncio.sleep(0.05)

        assert received == []
        assert client._debounce_timers == {}
        connection.close.assert_awaited_once()
        transport.close.assert_awaited_once()


@pytest.mark.unit
def test_from_config():
    config = ClientConfig(coalesce_threshold=5, debounce_seconds=0.1, optimistic_grace_seconds=2)

    client = TokenDataClient.from_config('http://localhost:8080/', config, live_url='http://localhost:8080')

    assert client.coalesce_threshold == 5
    assert client.debounce == 0.1
    assert client.overrides.grace_period == 2
    assert client.transport.base_url == 'http://localhost:8080'
    assert client.connection.backoff.maximum == 30
