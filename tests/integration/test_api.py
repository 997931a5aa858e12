# tests/integration/test_api.py
"""
Integration tests for the REST surface and the HTTP transport
"""
import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from tokenwatch.client.token_data_client import TokenDataClient
from tokenwatch.client.transport import HttpTransport
from tokenwatch.core.event_bus import EventBus
from tokenwatch.data.storage.models import ProtectionRecord
from tokenwatch.monitoring.api import TokenWatchServer
from tokenwatch.utils.errors import TransportError

from tests.fixtures.mock_data import OTHER_TOKEN, TOKEN, WALLET


@pytest.fixture
def server(orchestrator):
    return TokenWatchServer(orchestrator, event_bus=EventBus())


@pytest_asyncio.fixture
async def http(server):
    client = TestClient(TestServer(server.app))
    await client.start_server()
    yield client
    await client.close()


@pytest.mark.integration
class TestRestApi:

    @pytest.mark.asyncio
    async def test_health(self, http):
        response = await http.get('/health')
        body = await response.json()

        assert response.status == 200
        assert body['status'] == 'ok'
        assert 'realtime' in body
        assert 'events' in body

    @pytest.mark.asyncio
    async def test_get_token(self, http, memory_store):
        memory_store.set_protection(
            ProtectionRecord(token_id=TOKEN, wallet_id=WALLET, monitoring_active=True)
        )

        response = await http.get(f'/api/v2/tokens/{TOKEN}', params={'wallet': WALLET})
        body = await response.json()

        assert response.status == 200
        assert body['tokenMint'] == TOKEN
        assert body['price'] == 1.5
        assert body['symbol'] == 'WSOL'
        assert body['isMonitored'] is True
        assert body['refreshed'] is True

    @pytest.mark.asyncio
    async def test_bad_token_is_400(self, http):
        response = await http.get('/api/v2/tokens/0xnot-a-token')
        body = await response.json()

        assert response.status == 400
        assert body['error'] == 'malformed_input'
        assert body['field'] == 'token'

    @pytest.mark.asyncio
    async def test_batch(self, http):
        response = await http.post('/api/v2/tokens/batch', json={
            'tokens': [TOKEN, OTHER_TOKEN, TOKEN],
            'wallet': WALLET,
        })
        body = await response.json()

        assert response.status == 200
        assert body['count'] == 2
        assert [t['tokenMint'] for t in body['tokens']] == [TOKEN, OTHER_TOKEN]

    @pytest.mark.asyncio
    async def test_batch_requires_wallet(self, http):
        response = await http.post('/api/v2/tokens/batch', json={'tokens': [TOKEN]})
        body = await response.json()

        assert response.status == 400
        assert body['field'] == 'wallet'

    @pytest.mark.asyncio
    async def test_batch_invalid_json(self, http):
        response = await http.post('/api/v2/tokens/batch', data=b'{not json',
                                   headers={'Content-Type': 'application/json'})
        body = await response.json()

        assert response.status == 400
        assert body['error'] == 'malformed_input'


@pytest.mark.integration
class TestTransport:

    @pytest.mark.asyncio
    async def test_round_trip(self, http):
        transport = HttpTransport(str(http.make_url('/')))
        try:
            single = await transport.get_token(TOKEN, WALLET)
            batch = await transport.get_tokens([TOKEN, OTHER_TOKEN], WALLET)
        finally:
            await transport.close()

        assert single['tokenMint'] == TOKEN
        assert [t['tokenMint'] for t in batch] == [TOKEN, OTHER_TOKEN]

    @pytest.mark.asyncio
    async def test_http_error_raises_transport_error(self, http):
        transport = HttpTransport(str(http.make_url('/')))
        try:
            with pytest.raises(TransportError) as exc_info:
                await transport.get_token('0xnot-a-token')
        finally:
            await transport.close()

        assert exc_info.value.status == 400

    @pytest.mark.asyncio
    async def test_client_over_live_server(self, http):
        client = TokenDataClient(HttpTransport(str(http.make_url('/'))))
        try:
            result = await client.get_tokens([TOKEN, OTHER_TOKEN], WALLET)
        finally:
            await client.close()

        assert result[TOKEN]['price'] == 1.5
        assert result[OTHER_TOKEN]['tokenMint'] == OTHER_TOKEN
