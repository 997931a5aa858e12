# tokenwatch/data/storage/database.py

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

import asyncpg
from asyncpg.pool import Pool
import orjson

from tokenwatch.config.config_manager import DatabaseConfig
from tokenwatch.data.storage.base import TokenStore
from tokenwatch.data.storage.models import (
    HistorySample, MLPrediction, ProtectionRecord, TokenSnapshot
)
from tokenwatch.utils.constants import MetadataStatus, RiskLevel
from tokenwatch.utils.errors import PersistenceError
from tokenwatch.utils.helpers import ensure_utc, safe_float, safe_int

logger = logging.getLogger(__name__)

DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


def _decode_json(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, (dict, list)):
        return value
    try:
        return orjson.loads(value)
    except orjson.JSONDecodeError:
        return default


def snapshot_from_row(row) -> TokenSnapshot:
    """Build a TokenSnapshot from a token_snapshots row, zero-filling NULLs"""
    try:
        status = MetadataStatus(row['metadata_status'] or 'pending')
    except ValueError:
        status = MetadataStatus.PENDING
    return TokenSnapshot(
        token_id=row['token_mint'],
        price=safe_float(row['price']),
        liquidity=safe_float(row['liquidity']),
        market_cap=safe_float(row['market_cap']),
        volume_24h=safe_float(row['volume_24h']),
        holder_count=safe_int(row['holder_count']),
        price_change_24h=safe_float(row['price_change_24h']),
        symbol=row['symbol'] or '',
        name=row['name'] or '',
        logo_uri=row['logo_uri'],
        decimals=row['decimals'],
        metadata_status=status,
        price_updated_at=ensure_utc(row['price_updated_at']),
        metadata_updated_at=ensure_utc(row['metadata_updated_at']),
        source=row['data_source'] or '',
        created_at=ensure_utc(row['created_at']),
    )


def protection_from_row(row) -> ProtectionRecord:
    return ProtectionRecord(
        token_id=row['token_mint'],
        wallet_id=row['wallet_address'],
        monitoring_active=bool(row['monitoring_active']),
        mempool_monitoring_enabled=bool(row['mempool_monitoring_enabled']),
        risk_threshold=RiskLevel.from_value(row['risk_threshold'], RiskLevel.HIGH),
        alerts_count=safe_int(row['alerts_count']),
        trigger_count=safe_int(row['trigger_count']),
        last_threat_detected_at=ensure_utc(row['last_threat_detected']),
    )


def prediction_from_row(row) -> MLPrediction:
    factors = _decode_json(row['risk_factors'], [])
    return MLPrediction(
        token_id=row['token_mint'],
        probability=safe_float(row['probability']),
        confidence=safe_float(row['confidence']),
        time_to_rug_seconds=row['time_to_rug_seconds'],
        risk_factors=[str(f) for f in factors] if isinstance(factors, list) else [],
        features=_decode_json(row['features'], {}),
        model_version=row['model_version'],
        created_at=ensure_utc(row['created_at']),
    )


class DatabaseManager(TokenStore):
    """
    PostgreSQL backed Snapshot Store and History Ledger.

    Owns token_snapshots and token_price_history. Reads protected_tokens and
    ml_predictions, which are written by other services.
    """

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self.pool: Optional[Pool] = None
        self.is_connected = False

    async def connect(self) -> None:
        """Establish connection pool to PostgreSQL database."""
        if not self.config.dsn:
            raise PersistenceError("DATABASE_URL is not configured")
        try:
            self.pool = await asyncpg.create_pool(
                dsn=self.config.dsn,
                min_size=self.config.min_pool_size,
                max_size=self.config.max_pool_size,
                command_timeout=self.config.command_timeout,
            )
            await self._create_tables()
            self.is_connected = True
            logger.info("Connected to PostgreSQL database")
        except DB_ERRORS as e:
            logger.error(f"Failed to connect to database: {e}")
            raise PersistenceError(f"Database connection failed: {e}") from e

    async def disconnect(self) -> None:
        """Close database connection pool."""
        if self.pool:
            await self.pool.close()
            self.is_connected = False
            logger.info("Disconnected from database")

    @asynccontextmanager
    async def acquire(self):
        """Acquire a connection from the pool, translating driver errors."""
        if not self.pool or not self.is_connected:
            raise PersistenceError("Database is not connected")
        try:
            async with self.pool.acquire() as connection:
                yield connection
        except DB_ERRORS as e:
            raise PersistenceError(f"Database operation failed: {e}") from e

    async def _create_tables(self) -> None:
        """Create the tables this service owns."""
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS token_snapshots (
                    token_mint TEXT PRIMARY KEY,
                    symbol TEXT NOT NULL DEFAULT '',
                    name TEXT NOT NULL DEFAULT '',
                    logo_uri TEXT,
                    decimals INTEGER,
                    metadata_status TEXT NOT NULL DEFAULT 'pending',
                    price DOUBLE PRECISION NOT NULL DEFAULT 0,
                    liquidity DOUBLE PRECISION NOT NULL DEFAULT 0,
                    market_cap DOUBLE PRECISION NOT NULL DEFAULT 0,
                    volume_24h DOUBLE PRECISION NOT NULL DEFAULT 0,
                    holder_count INTEGER NOT NULL DEFAULT 0,
                    price_change_24h DOUBLE PRECISION NOT NULL DEFAULT 0,
                    price_updated_at TIMESTAMPTZ,
                    metadata_updated_at TIMESTAMPTZ,
                    data_source TEXT NOT NULL DEFAULT '',
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                );

                CREATE TABLE IF NOT EXISTS token_price_history (
                    id BIGSERIAL PRIMARY KEY,
                    token_mint TEXT NOT NULL,
                    price DOUBLE PRECISION NOT NULL DEFAULT 0,
                    liquidity DOUBLE PRECISION NOT NULL DEFAULT 0,
                    market_cap DOUBLE PRECISION NOT NULL DEFAULT 0,
                    recorded_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    source TEXT NOT NULL DEFAULT ''
                );

                CREATE INDEX IF NOT EXISTS idx_price_history_token_time
                    ON token_price_history (token_mint, recorded_at DESC);
            """)

    async def get_snapshot(self, token_id: str) -> Optional[TokenSnapshot]:
        async with self.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM token_snapshots WHERE token_mint = $1", token_id
            )
        return snapshot_from_row(row) if row else None

    async def upsert_snapshot(self, snapshot: TokenSnapshot) -> None:
        async with self.acquire() as conn:
            await conn.execute("""
                INSERT INTO token_snapshots (
                    token_mint, symbol, name, logo_uri, decimals, metadata_status,
                    price, liquidity, market_cap, volume_24h, holder_count,
                    price_change_24h, price_updated_at, metadata_updated_at, data_source
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15)
                ON CONFLICT (token_mint) DO UPDATE
                SET symbol = EXCLUDED.symbol,
                    name = EXCLUDED.name,
                    logo_uri = EXCLUDED.logo_uri,
                    decimals = EXCLUDED.decimals,
                    metadata_status = EXCLUDED.metadata_status,
                    price = EXCLUDED.price,
                    liquidity = EXCLUDED.liquidity,
                    market_cap = EXCLUDED.market_cap,
                    volume_24h = EXCLUDED.volume_24h,
                    holder_count = EXCLUDED.holder_count,
                    price_change_24h = EXCLUDED.price_change_24h,
                    price_updated_at = EXCLUDED.price_updated_at,
                    metadata_updated_at = EXCLUDED.metadata_updated_at,
                    data_source = EXCLUDED.data_source,
                    updated_at = NOW()
            """,
                snapshot.token_id, snapshot.symbol, snapshot.name, snapshot.logo_uri,
                snapshot.decimals, snapshot.metadata_status.value,
                snapshot.price, snapshot.liquidity, snapshot.market_cap,
                snapshot.volume_24h, snapshot.holder_count, snapshot.price_change_24h,
                snapshot.price_updated_at, snapshot.metadata_updated_at, snapshot.source
            )

    async def append_history(self, sample: HistorySample) -> None:
        async with self.acquire() as conn:
            await conn.execute("""
                INSERT INTO token_price_history (
                    token_mint, price, liquidity, market_cap, recorded_at, source
                ) VALUES ($1, $2, $3, $4, $5, $6)
            """,
                sample.token_id, sample.price, sample.liquidity,
                sample.market_cap, sample.recorded_at, sample.source
            )

    async def get_history(self, token_id: str, since: datetime,
                          limit: int = 500) -> List[HistorySample]:
        async with self.acquire() as conn:
            rows = await conn.fetch("""
                SELECT token_mint, price, liquidity, market_cap, recorded_at, source
                FROM token_price_history
                WHERE token_mint = $1 AND recorded_at >= $2
                ORDER BY recorded_at DESC
                LIMIT $3
            """, token_id, since, limit)

        return [
            HistorySample(
                token_id=row['token_mint'],
                price=safe_float(row['price']),
                liquidity=safe_float(row['liquidity']),
                market_cap=safe_float(row['market_cap']),
                recorded_at=ensure_utc(row['recorded_at']),
                source=row['source'] or '',
            )
            for row in rows
        ]

    async def get_protection(self, token_id: str,
                             wallet_id: str) -> Optional[ProtectionRecord]:
        async with self.acquire() as conn:
            row = await conn.fetchrow("""
                SELECT token_mint, wallet_address, monitoring_active,
                       mempool_monitoring_enabled, risk_threshold,
                       alerts_count, trigger_count, last_threat_detected
                FROM protected_tokens
                WHERE token_mint = $1 AND wallet_address = $2
            """, token_id, wallet_id)
        return protection_from_row(row) if row else None

    async def get_ml_prediction(self, token_id: str) -> Optional[MLPrediction]:
        async with self.acquire() as conn:
            row = await conn.fetchrow("""
                SELECT token_mint, probability, confidence, time_to_rug_seconds,
                       risk_factors, features, model_version, created_at
                FROM ml_predictions
                WHERE token_mint = $1
                ORDER BY created_at DESC
                LIMIT 1
            """, token_id)
        return prediction_from_row(row) if row else None

    async def get_statistics(self) -> Dict[str, Any]:
        """Row counts for the owned tables."""
        async with self.acquire() as conn:
            snapshots = await conn.fetchval("SELECT COUNT(*) FROM token_snapshots")
            samples = await conn.fetchval("SELECT COUNT(*) FROM token_price_history")
        return {'snapshots': snapshots, 'history_samples': samples}
