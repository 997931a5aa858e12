"""
Provider capability interfaces and shared HTTP plumbing

Each concrete collector normalizes one external API into MarketData or
TokenMetadata. Every failure mode (timeout, non-2xx, unparseable body) is
raised as ProviderUnavailableError so the fetcher can fall through to the
next provider.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import aiohttp

from tokenwatch.config.rate_limiter import RateLimiter
from tokenwatch.data.storage.models import MarketData, TokenMetadata
from tokenwatch.utils.errors import ProviderRateLimitedError, ProviderUnavailableError

logger = logging.getLogger(__name__)


class HttpCollector:
    """aiohttp session handling, pacing and error translation"""

    name = 'http'

    def __init__(self, session: Optional[aiohttp.ClientSession] = None,
                 rate_limiter: Optional[RateLimiter] = None,
                 timeout: float = 8.0):
        self.session = session
        self._owns_session = session is None
        self.rate_limiter = rate_limiter
        self.timeout = timeout

        # Statistics
        self.stats = {
            'total_requests': 0,
            'successful_requests': 0,
            'failed_requests': 0,
        }

    async def initialize(self):
        """Create a private session unless one was injected"""
        if not self.session:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._owns_session = True

    async def close(self):
        if self.session and self._owns_session:
            await self.session.close()
            self.session = None

    async def _make_request(self, method: str, url: str,
                            params: Optional[Dict] = None,
                            json_body: Optional[Dict] = None,
                            headers: Optional[Dict] = None,
                            subject: Optional[str] = None) -> Any:
        """
        Make an API request and return the decoded JSON body

        Args:
            method: HTTP method
            url: Full URL
            params: Query parameters
            json_body: JSON payload for POST
            headers: Extra headers
            subject: Rate limiter subject (defaults to the collector name)

        Returns:
            Decoded JSON

        Raises:
            ProviderUnavailableError: on timeout, transport error, non-2xx or bad JSON
        """
        subject = subject or self.name
        if self.session is None:
            await self.initialize()
        if self.rate_limiter:
            await self.rate_limiter.acquire(subject, 'api')

        self.stats['total_requests'] += 1
        try:
            async with self.session.request(
                method, url, params=params, json=json_body, headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as response:
                if response.status == 429:
                    if self.rate_limiter:
                        self.rate_limiter.record_429(subject)
                    raise ProviderRateLimitedError(subject)
                if response.status < 200 or response.status >= 300:
                    raise ProviderUnavailableError(
                        subject, f"HTTP {response.status}", status=response.status
                    )
                try:
                    data = await response.json(content_type=None)
                except ValueError as e:
                    raise ProviderUnavailableError(subject, f"unparseable body: {e}") from e

        except ProviderUnavailableError:
            self.stats['failed_requests'] += 1
            raise
        except asyncio.TimeoutError as e:
            self.stats['failed_requests'] += 1
            raise ProviderUnavailableError(subject, 'timeout') from e
        except aiohttp.ClientError as e:
            self.stats['failed_requests'] += 1
            raise ProviderUnavailableError(subject, f"request error: {e}") from e

        self.stats['successful_requests'] += 1
        if self.rate_limiter:
            self.rate_limiter.record_success(subject)
        return data

    def get_stats(self) -> Dict:
        return dict(self.stats, name=self.name)


class PriceProvider(ABC):
    """Source of price / liquidity / market data"""

    name: str = 'price'

    def supports(self, token_id: str) -> bool:
        """Whether this provider should be consulted for the token"""
        return True

    @abstractmethod
    async def fetch_market_data(self, token_id: str) -> Optional[MarketData]:
        """
        Normalized market data, or None when the provider has nothing

        Raises:
            ProviderUnavailableError: the provider could not be reached or parsed
        """


class MetadataProvider(ABC):
    """Source of symbol / name / logo"""

    name: str = 'metadata'

    def supports(self, token_id: str) -> bool:
        return True

    @abstractmethod
    async def fetch_metadata(self, token_id: str) -> Optional[TokenMetadata]:
        """Normalized metadata, or None when the provider has nothing"""
