"""OAuth client authentication for mcp-server-dump."""

__version__ = "0.1.0"

from .core.config import Settings
from .oauth import (
    AuthConfig,
    DeviceAuthorizationCallback,
    DeviceAuthorizationInfo,
    FlowType,
    OAuthTransport,
    create_oauth_client,
    discover_oauth_config,
    resolve_auth_config,
)
from .storage import RegistrationStore, Token, TokenStore
from .utils.errors import (
    AuthorizationError,
    ConfigurationError,
    DeviceFlowDeniedError,
    DeviceFlowError,
    DeviceFlowExpiredError,
    DiscoveryError,
    OAuthError,
    StateMismatchError,
    UnsupportedPKCEError,
)
from .utils.logging_config import setup_logging

__all__ = [
    "Settings",
    "AuthConfig",
    "FlowType",
    "OAuthTransport",
    "create_oauth_client",
    "discover_oauth_config",
    "resolve_auth_config",
    "DeviceAuthorizationInfo",
    "DeviceAuthorizationCallback",
    # Storage
    "Token",
    "TokenStore",
    "RegistrationStore",
    # Errors
    "OAuthError",
    "ConfigurationError",
    "DiscoveryError",
    "UnsupportedPKCEError",
    "AuthorizationError",
    "StateMismatchError",
    "DeviceFlowError",
    "DeviceFlowExpiredError",
    "DeviceFlowDeniedError",
    "setup_logging",
]
