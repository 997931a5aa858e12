"""
pump.fun bonding-curve provider

The search API reports market cap, holders and curve progress but rarely a
usable liquidity figure, so liquidity is derived:

1. migrated with a known pool: the Raydium pool's TVL
2. curve progress known: linear interpolation between the curve's virtual
   liquidity bounds, converted to USD
3. otherwise: a fixed fraction of market cap (post- vs pre-migration)

Price falls back to market cap / total supply.
"""

import logging
from typing import Any, Dict, List, Optional

import aiohttp

from tokenwatch.config.config_manager import BondingCurveConfig
from tokenwatch.config.rate_limiter import RateLimiter
from tokenwatch.data.collectors.base import HttpCollector, PriceProvider
from tokenwatch.data.storage.models import MarketData
from tokenwatch.utils.errors import ProviderUnavailableError
from tokenwatch.utils.helpers import matches_bonding_curve, safe_float, safe_int

logger = logging.getLogger(__name__)


def select_token(payload: Any, token_id: str) -> Optional[Dict]:
    """Exact mint match from the search results, else the first hit"""
    if isinstance(payload, dict):
        items = payload.get('data') or payload.get('tokens') or []
    elif isinstance(payload, list):
        items = payload
    else:
        return None
    items = [i for i in items if isinstance(i, dict)]
    for item in items:
        if item.get('coinMint') == token_id or item.get('mint') == token_id:
            return item
    return items[0] if items else None


def normalize_progress(value: Any) -> Optional[float]:
    """Curve progress as a 0..1 fraction; accepts 0..1 or 0..100 input"""
    if value is None or value == '':
        return None
    progress = safe_float(value, -1.0)
    if progress < 0:
        return None
    if progress > 1:
        progress = progress / 100
    return min(progress, 1.0)


def is_migrated(item: Dict) -> bool:
    return bool(item.get('complete') or item.get('graduationDate') or item.get('raydiumPool'))


def parse_raydium_tvl(payload: Any) -> float:
    if not isinstance(payload, dict):
        return 0.0
    pools = payload.get('data') or []
    if not isinstance(pools, list) or not pools or not isinstance(pools[0], dict):
        return 0.0
    return safe_float(pools[0].get('tvl'))


class PumpFunCollector(HttpCollector, PriceProvider):
    """Bonding-curve market data for platform tokens"""

    name = 'pumpfun'

    def __init__(self, search_url: str, rapidapi_host: str, rapidapi_key: Optional[str],
                 raydium_pool_url: str, curve: BondingCurveConfig,
                 patterns: List[str],
                 session: Optional[aiohttp.ClientSession] = None,
                 rate_limiter: Optional[RateLimiter] = None,
                 timeout: float = 8.0):
        super().__init__(session=session, rate_limiter=rate_limiter, timeout=timeout)
        self.search_url = search_url
        self.rapidapi_host = rapidapi_host
        self.rapidapi_key = rapidapi_key
        self.raydium_pool_url = raydium_pool_url
        self.curve = curve
        self.patterns = list(patterns)

    def supports(self, token_id: str) -> bool:
        return bool(self.rapidapi_key) and matches_bonding_curve(token_id, self.patterns)

    async def fetch_market_data(self, token_id: str) -> Optional[MarketData]:
        payload = await self._make_request(
            'GET',
            self.search_url,
            params={'term': token_id},
            headers={
                'x-rapidapi-host': self.rapidapi_host,
                'x-rapidapi-key': self.rapidapi_key or '',
            },
        )
        item = select_token(payload, token_id)
        if item is None:
            return None

        pool_tvl = 0.0
        pool_address = item.get('poolAddress') or item.get('raydiumPool')
        if is_migrated(item) and pool_address:
            pool_tvl = await self.get_pool_tvl(pool_address)

        return self.build_market_data(item, pool_tvl)

    async def get_pool_tvl(self, pool_address: str) -> float:
        """Raydium pool TVL; 0 when the lookup fails so the estimate takes over"""
        try:
            payload = await self._make_request(
                'GET', self.raydium_pool_url,
                params={'ids': pool_address}, subject='raydium'
            )
        except ProviderUnavailableError as e:
            logger.warning(f"Raydium pool lookup failed for {pool_address}: {e}")
            return 0.0
        return parse_raydium_tvl(payload)

    def build_market_data(self, item: Dict, pool_tvl: float = 0.0) -> MarketData:
        market_cap = safe_float(item.get('marketCap') or item.get('usd_market_cap'))
        price = safe_float(item.get('currentMarketPrice') or item.get('priceUsd'))
        if price <= 0 and market_cap > 0:
            price = market_cap / self.curve.total_supply

        migrated = is_migrated(item)
        progress = normalize_progress(item.get('bondingCurveProgress'))
        liquidity = safe_float(item.get('liquidity'))
        method = 'reported'
        if liquidity <= 0:
            liquidity, method = self.estimate_liquidity(market_cap, migrated, progress, pool_tvl)

        return MarketData(
            source='pumpfun',
            price=price,
            liquidity=liquidity,
            market_cap=market_cap,
            volume_24h=safe_float(item.get('volume') or item.get('volume24h')),
            holder_count=safe_int(item.get('numHolders') or item.get('holders')),
            extra={
                'migrated': migrated,
                'bonding_curve_progress': progress,
                'pool_address': item.get('poolAddress') or item.get('raydiumPool'),
                'liquidity_method': method,
            },
        )

    def estimate_liquidity(self, market_cap: float, migrated: bool,
                           progress: Optional[float], pool_tvl: float = 0.0):
        """
        Derive USD liquidity when the API does not report it

        Returns:
            (liquidity, method) where method names the branch taken
        """
        if migrated:
            if pool_tvl > 0:
                return pool_tvl, 'pool_tvl'
            return market_cap * self.curve.post_migration_liquidity_ratio, 'market_cap_ratio'

        if progress is not None:
            span = self.curve.virtual_liquidity_end - self.curve.virtual_liquidity_start
            native = self.curve.virtual_liquidity_start + progress * span
            return native * self.curve.native_usd_rate, 'curve_progress'

        return market_cap * self.curve.pre_migration_liquidity_ratio, 'market_cap_ratio'
