"""
Jupiter price API
Single-price oracle used as a price-only fallback
"""

import logging
from typing import Any, Optional

import aiohttp

from tokenwatch.config.rate_limiter import RateLimiter
from tokenwatch.data.collectors.base import HttpCollector, PriceProvider
from tokenwatch.data.storage.models import MarketData
from tokenwatch.utils.helpers import safe_float

logger = logging.getLogger(__name__)


def parse_price(payload: Any, token_id: str) -> Optional[MarketData]:
    """{'data': {token: {'price': ...}}} -> MarketData with price only"""
    if not isinstance(payload, dict):
        return None
    entry = (payload.get('data') or {}).get(token_id)
    if not isinstance(entry, dict):
        return None
    price = safe_float(entry.get('price'))
    if price <= 0:
        return None
    return MarketData(source='jupiter', price=price)


class JupiterPriceCollector(HttpCollector, PriceProvider):
    name = 'jupiter'

    def __init__(self, base_url: str,
                 session: Optional[aiohttp.ClientSession] = None,
                 rate_limiter: Optional[RateLimiter] = None,
                 timeout: float = 8.0):
        super().__init__(session=session, rate_limiter=rate_limiter, timeout=timeout)
        self.base_url = base_url

    async def fetch_market_data(self, token_id: str) -> Optional[MarketData]:
        payload = await self._make_request('GET', self.base_url, params={'ids': token_id})
        return parse_price(payload, token_id)
