"""
DexScreener API Integration
Aggregator-style multi-pair price/liquidity source and metadata fallback
"""

import logging
from typing import Any, Dict, List, Optional

import aiohttp

from tokenwatch.config.rate_limiter import RateLimiter
from tokenwatch.data.collectors.base import HttpCollector, MetadataProvider, PriceProvider
from tokenwatch.data.storage.models import MarketData, TokenMetadata
from tokenwatch.utils.helpers import safe_float

logger = logging.getLogger(__name__)


def extract_pairs(payload: Any) -> List[Dict]:
    """Pairs list from either the legacy {'pairs': [...]} shape or a bare list"""
    if isinstance(payload, dict):
        pairs = payload.get('pairs') or []
    elif isinstance(payload, list):
        pairs = payload
    else:
        pairs = []
    return [p for p in pairs if isinstance(p, dict)]


def pair_liquidity(pair: Dict) -> float:
    liquidity = pair.get('liquidity') or {}
    return safe_float(liquidity.get('usd')) if isinstance(liquidity, dict) else 0.0


def select_best_pair(pairs: List[Dict]) -> Optional[Dict]:
    """
    Pick the pair with the highest reported USD liquidity

    A token can trade in many pools; the deepest one gives the most
    representative price.
    """
    if not pairs:
        return None
    return max(pairs, key=pair_liquidity)


def parse_market_data(payload: Any) -> Optional[MarketData]:
    """Normalize a DexScreener tokens response into MarketData"""
    pair = select_best_pair(extract_pairs(payload))
    if pair is None:
        return None

    volume = pair.get('volume') or {}
    price_change = pair.get('priceChange') or {}
    market_cap = safe_float(pair.get('marketCap')) or safe_float(pair.get('fdv'))

    return MarketData(
        source='dexscreener',
        price=safe_float(pair.get('priceUsd')),
        liquidity=pair_liquidity(pair),
        market_cap=market_cap,
        volume_24h=safe_float(volume.get('h24')),
        price_change_24h=safe_float(price_change.get('h24')),
        extra={
            'pair_address': pair.get('pairAddress'),
            'dex_id': pair.get('dexId'),
        },
    )


def parse_metadata(payload: Any, token_id: str) -> Optional[TokenMetadata]:
    """Token info embedded in the pair whose base token is the requested one"""
    pairs = extract_pairs(payload)
    matching = [
        p for p in pairs
        if (p.get('baseToken') or {}).get('address') == token_id
    ]
    pair = select_best_pair(matching or pairs)
    if pair is None:
        return None

    base = pair.get('baseToken') or {}
    if matching:
        token = base
    else:
        quote = pair.get('quoteToken') or {}
        token = quote if quote.get('address') == token_id else base
    info = pair.get('info') or {}

    return TokenMetadata(
        source='dexscreener',
        symbol=(token.get('symbol') or '').strip(),
        name=(token.get('name') or '').strip(),
        logo_uri=info.get('imageUrl'),
    )


class DexScreenerCollector(HttpCollector, PriceProvider, MetadataProvider):
    """DexScreener token pairs lookup"""

    name = 'dexscreener'

    def __init__(self, base_url: str,
                 session: Optional[aiohttp.ClientSession] = None,
                 rate_limiter: Optional[RateLimiter] = None,
                 timeout: float = 8.0):
        super().__init__(session=session, rate_limiter=rate_limiter, timeout=timeout)
        self.base_url = base_url.rstrip('/')

    async def get_token_pairs(self, token_id: str) -> Any:
        return await self._make_request('GET', f"{self.base_url}/{token_id}")

    async def fetch_market_data(self, token_id: str) -> Optional[MarketData]:
        data = parse_market_data(await self.get_token_pairs(token_id))
        if data is None:
            logger.debug(f"DexScreener has no pairs for {token_id}")
        return data

    async def fetch_metadata(self, token_id: str) -> Optional[TokenMetadata]:
        return parse_metadata(await self.get_token_pairs(token_id), token_id)
