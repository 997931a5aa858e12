#!/usr/bin/env python3
"""
TokenWatch - token risk & liquidity aggregation service

Wires storage, providers, the orchestrator and the realtime server together
and runs until interrupted.
"""

import argparse
import asyncio
import logging
import signal
from typing import List, Optional

import aiohttp
from dotenv import load_dotenv

from tokenwatch.config.config_manager import AppConfig, ConfigManager
from tokenwatch.config.rate_limiter import RateLimiter
from tokenwatch.config.settings import Settings
from tokenwatch.core.event_bus import EventBus
from tokenwatch.core.fetcher import MultiSourceFetcher
from tokenwatch.core.freshness import FreshnessEvaluator
from tokenwatch.core.metrics import DerivedMetricsCalculator
from tokenwatch.core.orchestrator import AggregationOrchestrator
from tokenwatch.data.collectors.dexscreener import DexScreenerCollector
from tokenwatch.data.collectors.helius import HeliusMetadataCollector
from tokenwatch.data.collectors.jupiter import JupiterPriceCollector
from tokenwatch.data.collectors.pumpfun import PumpFunCollector
from tokenwatch.data.storage.base import TokenStore
from tokenwatch.data.storage.cache import CacheManager
from tokenwatch.data.storage.database import DatabaseManager
from tokenwatch.data.storage.memory import MemoryStore
from tokenwatch.monitoring.api import TokenWatchServer
from tokenwatch.monitoring.logger import setup_logging

logger = logging.getLogger("TokenWatch")


def build_fetcher(config: AppConfig, session: aiohttp.ClientSession,
                  rate_limiter: RateLimiter,
                  evaluator: FreshnessEvaluator) -> MultiSourceFetcher:
    """Provider chains in preference order"""
    providers = config.providers
    timeout = providers.timeout_seconds
    common = dict(session=session, rate_limiter=rate_limiter, timeout=timeout)

    dexscreener = DexScreenerCollector(providers.dexscreener_url, **common)
    jupiter = JupiterPriceCollector(providers.jupiter_price_url, **common)
    pumpfun = PumpFunCollector(
        search_url=providers.pumpfun_url,
        rapidapi_host=providers.rapidapi_host,
        rapidapi_key=providers.rapidapi_key,
        raydium_pool_url=providers.raydium_pool_url,
        curve=config.bonding_curve,
        patterns=config.freshness.bonding_curve_patterns,
        **common,
    )
    helius = HeliusMetadataCollector(providers.helius_rpc_url, providers.helius_api_key, **common)

    return MultiSourceFetcher(
        price_providers=[dexscreener, jupiter, pumpfun],
        metadata_providers=[helius, dexscreener],
        timeout=timeout,
        is_metadata_complete=evaluator.metadata_complete,
    )


class TokenWatchApp:
    """Owns every long-lived resource"""

    def __init__(self, config: AppConfig, settings: Settings, use_memory_store: bool = False):
        self.config = config
        self.settings = settings
        self.use_memory_store = use_memory_store or not config.database.dsn

        self.session: Optional[aiohttp.ClientSession] = None
        self.store: Optional[TokenStore] = None
        self.cache: Optional[CacheManager] = None
        self.event_bus = EventBus()
        self.server: Optional[TokenWatchServer] = None
        self.shutdown_event = asyncio.Event()

    async def start(self):
        if self.use_memory_store:
            logger.warning("No database configured, using in-memory store")
            self.store = MemoryStore()
        else:
            self.store = DatabaseManager(self.config.database)
        await self.store.connect()

        self.cache = CacheManager(self.config.cache)
        await self.cache.connect()

        self.session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.config.providers.timeout_seconds)
        )
        rate_limiter = RateLimiter(self.config.rate_limits)
        evaluator = FreshnessEvaluator(self.config.freshness)

        orchestrator = AggregationOrchestrator(
            store=self.store,
            fetcher=build_fetcher(self.config, self.session, rate_limiter, evaluator),
            evaluator=evaluator,
            calculator=DerivedMetricsCalculator(self.config.metrics),
            rate_limiter=rate_limiter,
            event_bus=self.event_bus,
            cache=self.cache if self.cache.is_connected else None,
            database_config=self.config.database,
            max_batch_size=self.config.realtime.max_batch_size,
        )

        self.server = TokenWatchServer(
            orchestrator,
            config=self.config.realtime,
            event_bus=self.event_bus,
            host=self.settings.API_HOST,
            port=self.settings.API_PORT,
        )
        await self.event_bus.start()
        await self.server.start()

    async def stop(self):
        logger.info("Shutting down...")
        if self.server:
            await self.server.stop()
            await self.server.orchestrator.close()
        await self.event_bus.stop()
        if self.session:
            await self.session.close()
        if self.cache:
            await self.cache.disconnect()
        if self.store:
            await self.store.disconnect()
        logger.info("Shutdown complete")

    async def run(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.shutdown_event.set)
            except NotImplementedError:
                # Windows event loops
                pass

        await self.start()
        try:
            await self.shutdown_event.wait()
        finally:
            await self.stop()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='TokenWatch aggregation service')
    parser.add_argument('--config', help='YAML configuration file')
    parser.add_argument('--host', help='Bind address (overrides API_HOST)')
    parser.add_argument('--port', type=int, help='Bind port (overrides API_PORT)')
    parser.add_argument('--memory-store', action='store_true',
                        help='Use the in-memory store instead of PostgreSQL')
    return parser.parse_args(argv)


async def _main(args: argparse.Namespace) -> None:
    settings = Settings()
    if args.host:
        settings.API_HOST = args.host
    if args.port:
        settings.API_PORT = args.port

    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT, settings.LOG_FILE)
    logger.info(f"Starting TokenWatch: {settings.get_environment_info()}")

    config = await ConfigManager(settings).load(args.config)
    await TokenWatchApp(config, settings, use_memory_store=args.memory_store).run()


def main(argv: Optional[List[str]] = None) -> None:
    load_dotenv()
    asyncio.run(_main(parse_args(argv)))


if __name__ == "__main__":
    main()
