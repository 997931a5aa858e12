"""
Configuration Manager for TokenWatch
Typed configuration sections validated with pydantic, loaded from an optional
YAML file with environment overrides for secrets and endpoints.
"""

import logging
import os
from typing import Any, Dict, List, Optional

import aiofiles
import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from tokenwatch.config.settings import Settings
from tokenwatch.utils.constants import HORIZON_TOLERANCE_SECONDS, HORIZONS, MAX_BATCH_SIZE
from tokenwatch.utils.errors import ConfigurationError

logger = logging.getLogger(__name__)


class FreshnessConfig(BaseModel):
    """When a snapshot is considered stale"""
    market_max_age_seconds: float = 300.0
    min_valid_price: float = 1e-7
    # Case-insensitive regexes matched against the token identifier
    bonding_curve_patterns: List[str] = ["pump$"]
    placeholder_symbols: List[str] = ["", "UNKNOWN"]
    placeholder_names: List[str] = ["", "Unknown Token"]


class ProviderConfig(BaseModel):
    """External data provider endpoints"""
    timeout_seconds: float = 8.0
    dexscreener_url: str = "https://api.dexscreener.com/latest/dex/tokens"
    jupiter_price_url: str = "https://lite-api.jup.ag/price/v2"
    pumpfun_url: str = "https://pumpfun-scraper-api.p.rapidapi.com/search_tokens"
    rapidapi_host: str = "pumpfun-scraper-api.p.rapidapi.com"
    rapidapi_key: Optional[str] = None
    raydium_pool_url: str = "https://api-v3.raydium.io/pools/info/ids"
    helius_rpc_url: str = "https://mainnet.helius-rpc.com/"
    helius_api_key: Optional[str] = None

    @field_validator('timeout_seconds')
    @classmethod
    def validate_timeout(cls, v):
        if not 1 <= v <= 30:
            raise ValueError('timeout_seconds must be between 1 and 30')
        return v


class BondingCurveConfig(BaseModel):
    """
    Heuristics for bonding-curve tokens

    These are uncalibrated estimates carried over from production use and
    should be tuned against real pool data.
    """
    total_supply: float = 1_000_000_000
    post_migration_liquidity_ratio: float = 0.30
    pre_migration_liquidity_ratio: float = 0.20
    virtual_liquidity_start: float = 30.0
    virtual_liquidity_end: float = 85.0
    native_usd_rate: float = 240.0


class MetricsConfig(BaseModel):
    """Velocity horizons and risk blending"""
    horizons: Dict[str, int] = dict(HORIZONS)
    tolerance_seconds: float = HORIZON_TOLERANCE_SECONDS
    rule_weight: float = 0.4
    ml_weight: float = 0.6
    flash_rug_drop_pct: float = 50.0
    rapid_drain_drop_pct: float = 30.0
    max_risk_factors: int = 5

    @field_validator('rule_weight', 'ml_weight')
    @classmethod
    def validate_weight(cls, v):
        if not 0 <= v <= 1:
            raise ValueError('weights must be within [0, 1]')
        return v


class RateLimitPolicy(BaseModel):
    """Sliding window: at most max_calls per period_seconds"""
    max_calls: int = 1
    period_seconds: float = 10.0

    @field_validator('max_calls')
    @classmethod
    def validate_calls(cls, v):
        if v <= 0:
            raise ValueError('max_calls must be positive')
        return v


class RateLimitConfig(BaseModel):
    """Per-resource limits plus per-provider pacing"""
    policies: Dict[str, RateLimitPolicy] = Field(default_factory=lambda: {
        'refresh:market': RateLimitPolicy(max_calls=1, period_seconds=10.0),
        'refresh:metadata': RateLimitPolicy(max_calls=1, period_seconds=60.0),
    })
    default_policy: RateLimitPolicy = Field(default_factory=RateLimitPolicy)
    # Minimum seconds between calls to the same provider
    provider_min_interval: Dict[str, float] = {
        'dexscreener': 0.2,
        'jupiter': 1.25,
        'pumpfun': 0.5,
        'raydium': 0.2,
        'helius': 0.1,
    }
    base_backoff_seconds: float = 2.0
    max_backoff_seconds: float = 60.0


class RealtimeConfig(BaseModel):
    delivery_timeout_seconds: float = 5.0
    max_batch_size: int = MAX_BATCH_SIZE
    cors_origins: List[str] = ["*"]


class ClientConfig(BaseModel):
    coalesce_threshold: int = 3
    initial_reconnect_delay: float = 1.0
    max_reconnect_delay: float = 30.0
    optimistic_grace_seconds: float = 5.0
    request_timeout_seconds: float = 10.0
    debounce_seconds: float = 0.0


class DatabaseConfig(BaseModel):
    dsn: Optional[str] = None
    min_pool_size: int = 2
    max_pool_size: int = 10
    command_timeout: float = 30.0
    history_lookback_seconds: int = 1900
    history_limit: int = 500


class CacheConfig(BaseModel):
    url: Optional[str] = None
    key_prefix: str = "tokenwatch"
    ttl_settings: Dict[str, int] = {'velocity': 60, 'risk': 60}


class AppConfig(BaseModel):
    """Complete validated configuration"""
    freshness: FreshnessConfig = Field(default_factory=FreshnessConfig)
    providers: ProviderConfig = Field(default_factory=ProviderConfig)
    bonding_curve: BondingCurveConfig = Field(default_factory=BondingCurveConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    rate_limits: RateLimitConfig = Field(default_factory=RateLimitConfig)
    realtime: RealtimeConfig = Field(default_factory=RealtimeConfig)
    client: ClientConfig = Field(default_factory=ClientConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)


class ConfigManager:
    """
    Loads AppConfig from defaults, an optional YAML file and the environment

    Precedence (lowest to highest): model defaults, YAML file, environment.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings()
        self.config: AppConfig = AppConfig()
        self.config_path: Optional[str] = None

    async def load(self, path: Optional[str] = None) -> AppConfig:
        """
        Load and validate configuration

        Args:
            path: Optional YAML file path

        Returns:
            Validated AppConfig

        Raises:
            ConfigurationError: unreadable file or failed validation
        """
        raw: Dict[str, Any] = {}
        if path:
            raw = await self._read_yaml(path)
            self.config_path = path

        self._apply_environment(raw)

        try:
            self.config = AppConfig(**raw)
        except ValidationError as e:
            logger.error(f"Configuration validation failed: {e}")
            raise ConfigurationError("Invalid configuration", {'errors': e.errors()}) from e

        logger.info(f"Configuration loaded ({path or 'defaults'})")
        return self.config

    async def _read_yaml(self, path: str) -> Dict[str, Any]:
        if not os.path.exists(path):
            raise ConfigurationError(f"Config file not found: {path}")
        try:
            async with aiofiles.open(path, 'r') as f:
                content = await f.read()
            data = yaml.safe_load(content) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot read config file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {path} must contain a mapping")
        return data

    def _apply_environment(self, raw: Dict[str, Any]) -> None:
        """Overlay secrets and endpoints from Settings"""
        overrides = {
            ('providers', 'helius_api_key'): self.settings.HELIUS_API_KEY,
            ('providers', 'rapidapi_key'): self.settings.RAPIDAPI_KEY,
            ('database', 'dsn'): self.settings.DATABASE_URL,
            ('cache', 'url'): self.settings.REDIS_URL,
        }
        for (section, key), value in overrides.items():
            if value is not None:
                raw.setdefault(section, {})[key] = value

    def get(self, section: str) -> BaseModel:
        return getattr(self.config, section)
