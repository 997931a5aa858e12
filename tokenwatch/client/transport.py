"""
HTTP transport for the TokenWatch REST API
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp
import orjson

from tokenwatch.utils.errors import TransportError

logger = logging.getLogger(__name__)


class HttpTransport:
    """Thin aiohttp wrapper; every failure is raised as TransportError"""

    def __init__(self, base_url: str, session: Optional[aiohttp.ClientSession] = None,
                 timeout: float = 10.0):
        self.base_url = base_url.rstrip('/')
        self.session = session
        self._owns_session = session is None
        self.timeout = timeout

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._owns_session = True
        return self.session

    async def close(self):
        if self.session and self._owns_session:
            await self.session.close()
            self.session = None

    async def _request(self, method: str, path: str,
                       params: Optional[Dict] = None,
                       payload: Optional[Dict] = None) -> Any:
        session = await self._ensure_session()
        url = f"{self.base_url}{path}"
        try:
            async with session.request(
                method, url, params=params,
                data=orjson.dumps(payload) if payload is not None else None,
                headers={'Content-Type': 'application/json'} if payload is not None else None,
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as response:
                body = await response.read()
                if response.status < 200 or response.status >= 300:
                    raise TransportError(
                        f"{method} {path} returned HTTP {response.status}",
                        status=response.status,
                    )
                try:
                    return orjson.loads(body)
                except orjson.JSONDecodeError as e:
                    raise TransportError(f"{method} {path}: unparseable body") from e
        except asyncio.TimeoutError as e:
            raise TransportError(f"{method} {path} timed out") from e
        except aiohttp.ClientError as e:
            raise TransportError(f"{method} {path} failed: {e}") from e

    async def get_token(self, token_id: str, wallet_id: Optional[str] = None) -> Dict[str, Any]:
        params = {'wallet': wallet_id} if wallet_id else None
        return await self._request('GET', f"/api/v2/tokens/{token_id}", params=params)

    async def get_tokens(self, token_ids: List[str],
                         wallet_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Batched lookup; entries that failed server-side carry an ``error`` key"""
        data = await self._request('POST', '/api/v2/tokens/batch',
                                   payload={'tokens': token_ids, 'wallet': wallet_id})
        if not isinstance(data, dict) or not isinstance(data.get('tokens'), list):
            raise TransportError("batch response missing 'tokens'")
        return data['tokens']
