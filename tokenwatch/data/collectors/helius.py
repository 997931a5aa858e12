"""
Helius DAS getAsset RPC
On-chain asset metadata, first choice for symbol/name
"""

import logging
from typing import Any, Optional

import aiohttp

from tokenwatch.config.rate_limiter import RateLimiter
from tokenwatch.data.collectors.base import HttpCollector, MetadataProvider
from tokenwatch.data.storage.models import TokenMetadata
from tokenwatch.utils.errors import ProviderUnavailableError

logger = logging.getLogger(__name__)


def parse_asset(payload: Any) -> Optional[TokenMetadata]:
    """Normalize a getAsset JSON-RPC response"""
    if not isinstance(payload, dict):
        return None
    if payload.get('error'):
        raise ProviderUnavailableError('helius', f"rpc error: {payload['error']}")

    result = payload.get('result')
    if not isinstance(result, dict):
        return None

    content = result.get('content') or {}
    metadata = content.get('metadata') or {}
    links = content.get('links') or {}
    files = content.get('files') or []
    token_info = result.get('token_info') or {}

    logo = links.get('image') or metadata.get('image')
    if not logo and files and isinstance(files[0], dict):
        logo = files[0].get('uri') or files[0].get('cdn_uri')

    decimals = token_info.get('decimals')
    return TokenMetadata(
        source='helius',
        symbol=(metadata.get('symbol') or token_info.get('symbol') or '').strip(),
        name=(metadata.get('name') or '').strip(),
        logo_uri=logo,
        decimals=int(decimals) if isinstance(decimals, (int, float)) else None,
    )


class HeliusMetadataCollector(HttpCollector, MetadataProvider):
    name = 'helius'

    def __init__(self, rpc_url: str, api_key: Optional[str],
                 session: Optional[aiohttp.ClientSession] = None,
                 rate_limiter: Optional[RateLimiter] = None,
                 timeout: float = 8.0):
        super().__init__(session=session, rate_limiter=rate_limiter, timeout=timeout)
        self.rpc_url = rpc_url
        self.api_key = api_key

    def supports(self, token_id: str) -> bool:
        return bool(self.api_key)

    async def fetch_metadata(self, token_id: str) -> Optional[TokenMetadata]:
        payload = await self._make_request(
            'POST',
            self.rpc_url,
            params={'api-key': self.api_key},
            json_body={
                'jsonrpc': '2.0',
                'id': 'tokenwatch',
                'method': 'getAsset',
                'params': {'id': token_id},
            },
        )
        return parse_asset(payload)
