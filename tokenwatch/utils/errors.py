"""
Typed Exception Classes for TokenWatch

Every failure the aggregation engine can classify has its own type so the
orchestrator, the HTTP layer and the client can decide between falling back,
rejecting the request, or reporting a server error.
"""

from typing import Any, Dict, Optional


class TokenWatchError(Exception):
    """Base exception for all TokenWatch errors"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# ============================================================================
# Provider Exceptions
# ============================================================================

class ProviderUnavailableError(TokenWatchError):
    """A single external data source timed out, errored or returned garbage"""

    def __init__(self, provider: str, reason: str, status: Optional[int] = None):
        super().__init__(
            f"{provider} unavailable: {reason}",
            {'provider': provider, 'reason': reason, 'status': status}
        )
        self.provider = provider
        self.reason = reason
        self.status = status


class ProviderRateLimitedError(ProviderUnavailableError):
    """Provider answered HTTP 429"""

    def __init__(self, provider: str):
        super().__init__(provider, 'rate limited', status=429)


# ============================================================================
# Request Exceptions
# ============================================================================

class MalformedInputError(TokenWatchError):
    """Missing or invalid token / wallet identifier on a request"""

    def __init__(self, field: str, value: Any, reason: str = 'invalid value'):
        super().__init__(
            f"Malformed {field}: {reason}",
            {'field': field, 'value': value, 'reason': reason}
        )
        self.field = field
        self.value = value


class SerializationError(TokenWatchError):
    """Assembled response could not be encoded"""
    pass


# ============================================================================
# Storage Exceptions
# ============================================================================

class PersistenceError(TokenWatchError):
    """The store rejected a read or write"""
    pass


# ============================================================================
# Configuration Exceptions
# ============================================================================

class ConfigurationError(TokenWatchError):
    """Invalid or missing configuration"""
    pass


# ============================================================================
# Client Exceptions
# ============================================================================

class TransportError(TokenWatchError):
    """Client side lookup failed (network error or non-2xx)"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message, {'status': status})
        self.status = status
