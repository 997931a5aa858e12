"""
Multi-Source Fetcher

Ordered strategy lists of PriceProvider / MetadataProvider. Providers within
a category are tried strictly one after another, each under its own timeout,
and the first adequate result wins.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple, Union

from tokenwatch.data.collectors.base import MetadataProvider, PriceProvider
from tokenwatch.data.storage.models import MarketData, TokenMetadata
from tokenwatch.utils.constants import Category
from tokenwatch.utils.errors import ProviderUnavailableError

logger = logging.getLogger(__name__)

Provider = Union[PriceProvider, MetadataProvider]


@dataclass
class FetchOutcome:
    """Result of walking one category's provider chain"""
    category: Category
    data: Optional[Union[MarketData, TokenMetadata]] = None
    source: Optional[str] = None
    # (provider name, reason) for every provider that did not deliver
    failures: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.data is not None


class MultiSourceFetcher:
    """Walks provider chains with graceful degradation"""

    def __init__(self, price_providers: Sequence[PriceProvider],
                 metadata_providers: Sequence[MetadataProvider],
                 timeout: float = 8.0,
                 is_metadata_complete=None):
        """
        Initialize fetcher

        Args:
            price_providers: Market-data providers in preference order
            metadata_providers: Metadata providers in preference order
            timeout: Per-provider call timeout in seconds
            is_metadata_complete: Predicate (symbol, name) -> bool for metadata adequacy
        """
        self.price_providers = list(price_providers)
        self.metadata_providers = list(metadata_providers)
        self.timeout = timeout
        self._metadata_complete = is_metadata_complete or (lambda s, n: bool(s) and bool(n))

        self.stats = {
            'fetches': 0,
            'exhausted': 0,
            'provider_failures': 0,
        }

    def _is_adequate(self, category: Category, data) -> bool:
        if data is None:
            return False
        if category == Category.MARKET:
            return data.price > 0
        return self._metadata_complete(data.symbol, data.name)

    async def _call(self, category: Category, provider: Provider, token_id: str):
        if category == Category.MARKET:
            coro = provider.fetch_market_data(token_id)
        else:
            coro = provider.fetch_metadata(token_id)
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise ProviderUnavailableError(provider.name, 'timeout') from e

    async def fetch(self, token_id: str, category: Category) -> FetchOutcome:
        """
        Try providers for a category in order

        Args:
            token_id: Token identifier
            category: Category to refresh

        Returns:
            FetchOutcome; ``data`` is None when every provider failed
        """
        providers = (self.price_providers if category == Category.MARKET
                     else self.metadata_providers)
        outcome = FetchOutcome(category=category)
        self.stats['fetches'] += 1

        for provider in providers:
            if not provider.supports(token_id):
                continue
            try:
                data = await self._call(category, provider, token_id)
            except ProviderUnavailableError as e:
                self.stats['provider_failures'] += 1
                outcome.failures.append((provider.name, e.reason))
                logger.warning(f"{provider.name} failed for {token_id} ({category.value}): {e.reason}")
                continue
            except Exception as e:
                # Parser bugs and unexpected payloads count as a provider failure
                self.stats['provider_failures'] += 1
                outcome.failures.append((provider.name, repr(e)))
                logger.error(f"{provider.name} raised for {token_id}: {e}", exc_info=True)
                continue

            if self._is_adequate(category, data):
                outcome.data = data
                outcome.source = provider.name
                logger.debug(f"{category.value} for {token_id} from {provider.name}")
                return outcome

            outcome.failures.append((provider.name, 'no usable data'))
            logger.debug(f"{provider.name} returned nothing usable for {token_id}")

        self.stats['exhausted'] += 1
        logger.info(f"All {category.value} providers exhausted for {token_id}")
        return outcome
