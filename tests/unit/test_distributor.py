# tests/unit/test_distributor.py
"""
Unit tests for RealtimeDistributor
"""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from tokenwatch.core.event_bus import Event, EventBus, EventType
from tokenwatch.core.fetcher import MultiSourceFetcher
from tokenwatch.core.orchestrator import AggregationOrchestrator
from tokenwatch.data.storage.models import ProtectionRecord, RiskRecord, TokenState, VelocityRecord
from tokenwatch.monitoring.distributor import RealtimeDistributor
from tokenwatch.utils.constants import TOKEN_UPDATE_EVENT

from tests.fixtures.mock_data import OTHER_TOKEN, TOKEN, WALLET


def token_state(snapshot):
    return TokenState(
        snapshot=snapshot,
        velocity=VelocityRecord(token_id=snapshot.token_id),
        risk=RiskRecord(token_id=snapshot.token_id),
        refreshed=True,
    )


@pytest.mark.unit
class TestRealtimeDistributor:
    """Test cases for interest tracking and fan-out"""

    @pytest.fixture
    def emit(self):
        return AsyncMock()

    @pytest.fixture
    def distributor(self, emit):
        return RealtimeDistributor(emit, delivery_timeout=0.05)

    def test_subscribe_is_idempotent(self, distributor):
        assert distributor.subscribe('sid-1', TOKEN)
        assert not distributor.subscribe('sid-1', TOKEN)

        assert distributor.subscribers_for(TOKEN) == {'sid-1'}

    def test_unsubscribe_cleans_up(self, distributor):
        distributor.subscribe('sid-1', TOKEN)

        assert distributor.unsubscribe('sid-1', TOKEN)
        assert not distributor.unsubscribe('sid-1', TOKEN)
        assert distributor.interests == {}
        assert distributor.subscriptions == {}

    def test_remove_subscriber(self, distributor):
        distributor.subscribe('sid-1', TOKEN)
        distributor.subscribe('sid-1', OTHER_TOKEN)
        distributor.subscribe('sid-2', TOKEN)

        assert distributor.remove_subscriber('sid-1') == 2
        assert distributor.remove_subscriber('sid-1') == 0
        assert distributor.subscribers_for(TOKEN) == {'sid-2'}
        assert OTHER_TOKEN not in distributor.interests

    @pytest.mark.asyncio
    async def test_one_delivery_per_subscriber(self, distributor, emit):
        distributor.subscribe('sid-1', TOKEN)
        distributor.subscribe('sid-2', TOKEN)
        distributor.subscribe('sid-3', OTHER_TOKEN)

        scheduled = distributor.publish(TOKEN, {'price': 1.5})
        await asyncio.gather(*distributor._pending)

        assert scheduled == 2
        assert emit.await_count == 2
        recipients = {call.args[0] for call in emit.await_args_list}
        assert recipients == {'sid-1', 'sid-2'}
        assert emit.await_args_list[0].args[1] == TOKEN_UPDATE_EVENT
        assert emit.await_args_list[0].args[2] == {'tokenMint': TOKEN, 'data': {'price': 1.5}}

    @pytest.mark.asyncio
    async def test_older_versions_are_suppressed(self, distributor, emit, fresh_snapshot):
        distributor.subscribe('sid-1', TOKEN)
        version = fresh_snapshot.price_updated_at

        assert distributor.publish(TOKEN, {}, version) == 1
        assert distributor.publish(TOKEN, {}, version) == 0
        assert distributor.publish(TOKEN, {}, version - timedelta(seconds=1)) == 0
        assert distributor.publish(TOKEN, {}, version + timedelta(seconds=1)) == 1
        await asyncio.gather(*distributor._pending)

        assert emit.await_count == 2
        assert distributor.stats['suppressed'] == 2

    @pytest.mark.asyncio
    async def test_slow_subscriber_does_not_block_publish(self, emit):
        async def slow_emit(sid, event, payload):
            if sid == 'slow':
                await asyncio.sleep(1)
            await emit(sid, event, payload)

        distributor = RealtimeDistributor(slow_emit, delivery_timeout=0.05)
        distributor.subscribe('slow', TOKEN)
        distributor.subscribe('fast', TOKEN)

        distributor.publish(TOKEN, {'price': 1.5})
        await asyncio.gather(*distributor._pending)

        emit.assert_awaited_once()
        assert distributor.stats['delivered'] == 1
        assert distributor.stats['failed'] == 1

    @pytest.mark.asyncio
    async def test_delivery_errors_are_contained(self, distributor, emit):
        emit.side_effect = ConnectionResetError("gone")
        distributor.subscribe('sid-1', TOKEN)

        distributor.publish(TOKEN, {})
        await asyncio.gather(*distributor._pending)

        assert distributor.stats['failed'] == 1

    @pytest.mark.asyncio
    async def test_handle_token_updated(self, distributor, emit, fresh_snapshot):
        distributor.subscribe('sid-1', TOKEN)
        state = token_state(fresh_snapshot)

        await distributor.handle_token_updated(Event(EventType.TOKEN_UPDATED, state, TOKEN))
        await asyncio.gather(*distributor._pending)

        payload = emit.await_args.args[2]
        assert payload['tokenMint'] == TOKEN
        assert payload['data']['price'] == 1.5

    @pytest.mark.asyncio
    async def test_updates_without_interest_are_ignored(self, distributor, emit, fresh_snapshot):
        await distributor.handle_token_updated(
            Event(EventType.TOKEN_UPDATED, token_state(fresh_snapshot), TOKEN)
        )

        emit.assert_not_awaited()
        assert distributor._pending == set()

    @pytest.mark.asyncio
    async def test_pushes_carry_no_wallet_protection(
            self, distributor, emit, memory_store, evaluator, calculator,
            price_provider, metadata_provider):
        memory_store.set_protection(ProtectionRecord(
            token_id=TOKEN, wallet_id=WALLET, monitoring_active=True, alerts_count=7
        ))
        bus = EventBus()
        fetcher = MultiSourceFetcher([price_provider], [metadata_provider], timeout=1.0,
                                     is_metadata_complete=evaluator.metadata_complete)
        orchestrator = AggregationOrchestrator(memory_store, fetcher, evaluator, calculator,
                                               event_bus=bus)
        distributor.subscribe('other-wallet-sid', TOKEN)

        state = await orchestrator.get_token_state(TOKEN, WALLET)
        assert state.to_dict()['badgeState'] == 'WATCHING'

        event = bus.event_queue.get_nowait()
        await distributor.handle_token_updated(event)
        await asyncio.gather(*distributor._pending)

        sid, _, payload = emit.await_args.args
        data = payload['data']
        assert sid == 'other-wallet-sid'
        assert data['tokenMint'] == TOKEN
        assert data['price'] == 1.5
        assert 'walletAddress' not in data
        assert 'monitoring' not in data
        assert 'isMonitored' not in data
        assert data['badgeState'] is None
