"""Flow selection and the single entry point for running an OAuth flow."""

import logging

import httpx

from mcp_dump_auth.oauth.browser import BrowserLauncher
from mcp_dump_auth.oauth.device_flow import DeviceAuthorizationCallback, DeviceFlowHandler
from mcp_dump_auth.oauth.oauth_base import FlowState, FlowStateListener, TokenEndpointClient
from mcp_dump_auth.oauth.oauth_config import AuthConfig, FlowType
from mcp_dump_auth.oauth.oauth_flow import AuthorizationCodeFlow
from mcp_dump_auth.storage.token_store import Token
from mcp_dump_auth.utils.errors import FlowNotImplementedError, MissingEndpointError

logger = logging.getLogger(__name__)


def determine_flow_type(config: AuthConfig) -> FlowType:
    """Pick the flow to run.

    An explicit flow type wins. Otherwise a device authorization endpoint
    selects the device flow, and anything else the authorization code flow.
    """
    if config.flow_type != FlowType.AUTO:
        return config.flow_type
    if config.device_auth_url:
        return FlowType.DEVICE
    return FlowType.AUTHORIZATION_CODE


def validate_config(config: AuthConfig) -> None:
    """Check the endpoints every flow needs are present.

    Raises:
        MissingEndpointError: Naming the first missing endpoint
    """
    if not config.auth_url and not config.device_auth_url:
        raise MissingEndpointError("authorization URL")
    if not config.token_url:
        raise MissingEndpointError("token URL")
    if not config.resource_uri:
        raise MissingEndpointError("resource URI")


async def authorize(
    config: AuthConfig,
    *,
    browser: BrowserLauncher | None = None,
    http_transport: httpx.AsyncBaseTransport | None = None,
    device_callback: DeviceAuthorizationCallback | None = None,
    state_listener: FlowStateListener | None = None,
) -> Token:
    """Run the OAuth flow selected for a configuration.

    Args:
        config: Complete OAuth configuration
        browser: Launcher for the authorization code flow
        http_transport: Optional transport for outgoing requests
        device_callback: Optional callback for device flow user codes
        state_listener: Optional callback invoked on every state change

    Returns:
        Token obtained from the authorization server

    Raises:
        FlowNotImplementedError: For the client credentials flow
        MissingEndpointError: If a required endpoint is missing
        OAuthError: If the flow fails
    """
    if state_listener:
        state_listener(FlowState.DISCOVERING_FLOW_TYPE)

    flow_type = determine_flow_type(config)
    if flow_type == FlowType.CLIENT_CREDENTIALS:
        if state_listener:
            state_listener(FlowState.FAILED)
        raise FlowNotImplementedError("client credentials")

    try:
        validate_config(config)
    except MissingEndpointError:
        if state_listener:
            state_listener(FlowState.FAILED)
        raise

    logger.info(f"Starting {flow_type} flow for {config.resource_uri}")

    if flow_type == FlowType.DEVICE:
        handler = DeviceFlowHandler(
            config,
            authorization_callback=device_callback,
            http_transport=http_transport,
            state_listener=state_listener,
        )
    else:
        handler = AuthorizationCodeFlow(
            config,
            browser=browser,
            http_transport=http_transport,
            state_listener=state_listener,
        )
    return await handler.authorize()


async def refresh_token(
    config: AuthConfig,
    refresh_token: str,
    http_transport: httpx.AsyncBaseTransport | None = None,
) -> Token:
    """Exchange a refresh token for a new token.

    The old refresh token is kept when the server does not issue a new one.

    Raises:
        TokenRefreshError: If the refresh fails
    """
    return await TokenEndpointClient(config, http_transport).refresh_token(refresh_token)
