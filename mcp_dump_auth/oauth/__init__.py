"""OAuth 2.1 client authentication for protected MCP endpoints.

This package provides:
- Protected Resource Metadata discovery (RFC 9728)
- Authorization Server Metadata discovery (RFC 8414)
- Dynamic Client Registration (RFC 7591)
- Authorization Code Flow with PKCE (RFC 7636)
- Device Authorization Grant (RFC 8628)
- Resource Indicators on token requests (RFC 8707)
- An httpx transport that keeps requests authenticated
"""

from .authorize import authorize, determine_flow_type, refresh_token
from .browser import BrowserLauncher, SystemBrowser, open_browser
from .configure import resolve_auth_config
from .device_flow import (
    DeviceAuthorizationCallback,
    DeviceAuthorizationInfo,
    DeviceCodeResponse,
    DeviceFlowHandler,
)
from .discovery import discover_oauth_config
from .oauth_base import FlowState, OAuthHandlerBase, TokenEndpointClient
from .oauth_config import AuthConfig, AuthServerMetadata, FlowType, ProtectedResourceMetadata
from .oauth_flow import AuthorizationCodeFlow, CallbackServer, generate_pkce_pair, generate_state
from .registration import get_or_register_client, register_client
from .resource_param import ResourceParameterTransport
from .token_source import RefreshingTokenSource
from .transport import OAuthTransport, create_oauth_client

__all__ = [
    # Base class
    "OAuthHandlerBase",
    "TokenEndpointClient",
    "FlowState",
    # Configuration and discovery
    "AuthConfig",
    "AuthServerMetadata",
    "FlowType",
    "ProtectedResourceMetadata",
    "discover_oauth_config",
    "resolve_auth_config",
    # Client registration (RFC 7591)
    "get_or_register_client",
    "register_client",
    # Flows
    "authorize",
    "determine_flow_type",
    "refresh_token",
    "AuthorizationCodeFlow",
    "CallbackServer",
    "generate_pkce_pair",
    "generate_state",
    "DeviceFlowHandler",
    "DeviceCodeResponse",
    "DeviceAuthorizationInfo",
    "DeviceAuthorizationCallback",
    # Browser
    "BrowserLauncher",
    "SystemBrowser",
    "open_browser",
    # Transports
    "ResourceParameterTransport",
    "RefreshingTokenSource",
    "OAuthTransport",
    "create_oauth_client",
]
