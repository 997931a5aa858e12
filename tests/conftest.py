# tests/conftest.py
"""
Global pytest configuration and fixtures
"""
from datetime import timedelta

import pytest

from tokenwatch.config.config_manager import FreshnessConfig, MetricsConfig
from tokenwatch.core.fetcher import MultiSourceFetcher
from tokenwatch.core.freshness import FreshnessEvaluator
from tokenwatch.core.metrics import DerivedMetricsCalculator
from tokenwatch.core.orchestrator import AggregationOrchestrator
from tokenwatch.data.storage.memory import MemoryStore
from tokenwatch.data.storage.models import TokenSnapshot
from tokenwatch.utils.constants import MetadataStatus
from tokenwatch.utils.helpers import utc_now

from tests.fixtures.mock_data import (
    TOKEN, FakeMetadataProvider, FakePriceProvider, market_data, metadata
)


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast isolated tests")
    config.addinivalue_line("markers", "integration: tests wiring several components")


@pytest.fixture
def memory_store():
    """In-memory token store"""
    return MemoryStore()


@pytest.fixture
def evaluator():
    return FreshnessEvaluator(FreshnessConfig())


@pytest.fixture
def calculator():
    return DerivedMetricsCalculator(MetricsConfig())


@pytest.fixture
def fresh_snapshot():
    """Complete snapshot updated a minute ago"""
    now = utc_now()
    return TokenSnapshot(
        token_id=TOKEN,
        price=1.5,
        liquidity=250000.0,
        market_cap=1500000.0,
        volume_24h=80000.0,
        holder_count=1200,
        price_change_24h=4.2,
        symbol='WSOL',
        name='Wrapped SOL',
        decimals=9,
        metadata_status=MetadataStatus.COMPLETE,
        price_updated_at=now - timedelta(seconds=60),
        metadata_updated_at=now - timedelta(hours=1),
        source='dexscreener',
        created_at=now - timedelta(days=1),
    )


@pytest.fixture
def price_provider():
    return FakePriceProvider('dexscreener', market_data())


@pytest.fixture
def metadata_provider():
    return FakeMetadataProvider('helius', metadata())


@pytest.fixture
def orchestrator(memory_store, evaluator, calculator, price_provider, metadata_provider):
    """Orchestrator over the memory store with scripted providers, no rate limiting"""
    fetcher = MultiSourceFetcher([price_provider], [metadata_provider], timeout=1.0,
                                 is_metadata_complete=evaluator.metadata_complete)
    return AggregationOrchestrator(memory_store, fetcher, evaluator, calculator)
