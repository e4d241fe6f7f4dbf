"""Shared utilities."""

from .errors import (
    AuthorizationError,
    CacheError,
    ConfigurationError,
    DeviceFlowError,
    DiscoveryError,
    OAuthError,
    RegistrationError,
    TokenExchangeError,
    TokenRefreshError,
)
from .logging_config import SecretRedactingFilter, redact_secrets, setup_logging

__all__ = [
    "AuthorizationError",
    "CacheError",
    "ConfigurationError",
    "DeviceFlowError",
    "DiscoveryError",
    "OAuthError",
    "RegistrationError",
    "SecretRedactingFilter",
    "TokenExchangeError",
    "TokenRefreshError",
    "redact_secrets",
    "setup_logging",
]
