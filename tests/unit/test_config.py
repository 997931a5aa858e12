# tests/unit/test_config.py
"""
Unit tests for Settings and ConfigManager
"""
import pytest

from tokenwatch.config.config_manager import ConfigManager
from tokenwatch.config.settings import Environment, Settings
from tokenwatch.utils.errors import ConfigurationError


@pytest.fixture
def clean_env(monkeypatch):
    for name in ('ENVIRONMENT', 'LOG_LEVEL', 'DATABASE_URL', 'REDIS_URL',
                 'HELIUS_API_KEY', 'RAPIDAPI_KEY', 'API_PORT'):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.mark.unit
class TestSettings:

    def test_defaults(self, clean_env):
        settings = Settings()

        assert settings.ENVIRONMENT == Environment.DEVELOPMENT
        assert settings.API_PORT == 8080
        assert settings.DATABASE_URL is None
        assert not settings.is_production

    def test_environment_overrides(self, clean_env):
        clean_env.setenv('ENVIRONMENT', 'production')
        clean_env.setenv('LOG_LEVEL', 'debug')
        clean_env.setenv('HELIUS_API_KEY', 'secret')

        settings = Settings()
        info = settings.get_environment_info()

        assert settings.is_production
        assert settings.LOG_LEVEL == 'DEBUG'
        assert info['helius'] is True
        assert 'secret' not in str(info)


@pytest.mark.unit
class TestConfigManager:

    @pytest.mark.asyncio
    async def test_defaults(self, clean_env):
        config = await ConfigManager(Settings()).load()

        assert config.freshness.market_max_age_seconds == 300
        assert config.metrics.horizons == {'1m': 60, '5m': 300, '30m': 1800}
        assert config.rate_limits.policies['refresh:market'].period_seconds == 10
        assert config.realtime.max_batch_size == 50
        assert config.client.coalesce_threshold == 3

    @pytest.mark.asyncio
    async def test_yaml_and_environment(self, clean_env, tmp_path):
        path = tmp_path / "tokenwatch.yaml"
        path.write_text(
            "freshness:\n"
            "  market_max_age_seconds: 120\n"
            "providers:\n"
            "  timeout_seconds: 5\n"
            "  helius_api_key: from-file\n"
        )
        clean_env.setenv('HELIUS_API_KEY', 'from-env')
        clean_env.setenv('DATABASE_URL', 'postgresql://localhost/tokenwatch')

        manager = ConfigManager(Settings())
        config = await manager.load(str(path))

        assert config.freshness.market_max_age_seconds == 120
        assert config.providers.timeout_seconds == 5
        assert config.providers.helius_api_key == 'from-env'
        assert config.database.dsn == 'postgresql://localhost/tokenwatch'
        assert manager.get('providers') is config.providers

    @pytest.mark.asyncio
    async def test_invalid_values_are_rejected(self, clean_env, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("providers:\n  timeout_seconds: 90\n")

        with pytest.raises(ConfigurationError):
            await ConfigManager(Settings()).load(str(path))

    @pytest.mark.asyncio
    async def test_missing_file(self, clean_env, tmp_path):
        with pytest.raises(ConfigurationError):
            await ConfigManager(Settings()).load(str(tmp_path / "missing.yaml"))

    @pytest.mark.asyncio
    async def test_non_mapping_file(self, clean_env, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ConfigurationError):
            await ConfigManager(Settings()).load(str(path))
