"""
Global Settings for TokenWatch
Environment-level settings (secrets, endpoints, logging) read from os.environ
"""

import os
from enum import Enum
from typing import Any, Dict, Optional

from tokenwatch.utils.constants import PROJECT_NAME, VERSION


class Environment(Enum):
    """Runtime environments"""
    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


def _env_bool(name: str, default: bool = False) -> bool:
    return os.getenv(name, str(default)).lower() in ('1', 'true', 'yes')


def _env_optional(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value in (None, '', 'null', 'None'):
        return None
    return value


class Settings:
    """
    Process-level settings

    Read once at construction so tests can patch the environment and build
    a fresh instance. Call ``load_dotenv()`` before constructing.
    """

    APP_NAME = PROJECT_NAME
    APP_VERSION = VERSION

    def __init__(self):
        # Environment
        self.ENVIRONMENT = Environment(os.getenv('ENVIRONMENT', 'development'))
        self.DEBUG = _env_bool('DEBUG')

        # Logging
        self.LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()
        self.LOG_FORMAT = os.getenv('LOG_FORMAT', 'text').lower()
        self.LOG_FILE = _env_optional('LOG_FILE')

        # Storage
        self.DATABASE_URL = _env_optional('DATABASE_URL')
        self.REDIS_URL = _env_optional('REDIS_URL')

        # Provider credentials
        self.HELIUS_API_KEY = _env_optional('HELIUS_API_KEY')
        self.RAPIDAPI_KEY = _env_optional('RAPIDAPI_KEY')

        # API server
        self.API_HOST = os.getenv('API_HOST', '0.0.0.0')
        self.API_PORT = int(os.getenv('API_PORT', '8080'))

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == Environment.PRODUCTION

    def get_environment_info(self) -> Dict[str, Any]:
        """Non-secret summary for startup logs"""
        return {
            'environment': self.ENVIRONMENT.value,
            'debug': self.DEBUG,
            'log_level': self.LOG_LEVEL,
            'database': 'configured' if self.DATABASE_URL else 'memory',
            'cache': 'configured' if self.REDIS_URL else 'disabled',
            'helius': bool(self.HELIUS_API_KEY),
            'rapidapi': bool(self.RAPIDAPI_KEY),
        }
