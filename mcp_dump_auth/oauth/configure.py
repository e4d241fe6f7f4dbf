"""Building an AuthConfig for an endpoint from static options and discovery."""

import logging

import httpx

from mcp_dump_auth.oauth.discovery import discover_oauth_config
from mcp_dump_auth.oauth.oauth_config import AuthConfig, FlowType
from mcp_dump_auth.utils.errors import ConfigurationError, DiscoveryError

logger = logging.getLogger(__name__)


async def resolve_auth_config(
    endpoint: str,
    *,
    client_id: str = "",
    client_secret: str | None = None,
    scopes: list[str] | None = None,
    redirect_port: int = 0,
    use_cache: bool = True,
    auth_url: str = "",
    token_url: str = "",
    flow_type: FlowType = FlowType.AUTO,
    use_dcr: bool = False,
    http_transport: httpx.AsyncBaseTransport | None = None,
) -> AuthConfig | None:
    """Build the OAuth configuration for a resource endpoint.

    Explicit auth and token URLs skip discovery and must be given together.
    Otherwise the endpoint is probed and discovered values fill whatever
    was not given. The endpoint itself is always the resource URI.

    Args:
        endpoint: Protected resource endpoint
        client_id: Pre-registered client ID, if any
        client_secret: Client secret for confidential clients
        scopes: Scopes to request (default: discovered or default scopes)
        redirect_port: Loopback port for the authorization code flow
        use_cache: Whether to use the token cache
        auth_url: Explicit authorization endpoint
        token_url: Explicit token endpoint
        flow_type: Flow to run
        use_dcr: Register a client dynamically when no client ID is given
        http_transport: Optional transport for discovery requests

    Returns:
        AuthConfig, or None if the endpoint does not need OAuth and no client ID was given

    Raises:
        ConfigurationError: If the options are inconsistent or no client identity is available
        DiscoveryError: If discovery fails while a client ID was given
        UnsupportedPKCEError: If the authorization server lacks S256 PKCE
    """
    if bool(auth_url) != bool(token_url):
        raise ConfigurationError("auth URL and token URL must be provided together")

    options = {
        "client_id": client_id,
        "client_secret": client_secret,
        "redirect_port": redirect_port,
        "use_cache": use_cache,
        "resource_uri": endpoint,
        "auth_url": auth_url,
        "token_url": token_url,
        "flow_type": flow_type,
        "use_dcr": use_dcr,
    }
    if scopes:
        options["scopes"] = scopes
    config = AuthConfig(**options)

    if auth_url and token_url:
        return config

    logger.info(f"Discovering OAuth endpoints from {endpoint}")
    try:
        discovered = await discover_oauth_config(endpoint, http_transport=http_transport)
    except DiscoveryError as e:
        if client_id:
            raise
        logger.warning(f"OAuth discovery failed, continuing without OAuth: {e}")
        return None

    if discovered is None:
        if client_id:
            raise ConfigurationError(f"{endpoint} does not advertise OAuth endpoints")
        return None

    config = config.fill_from(discovered)
    logger.info(f"Discovered OAuth endpoints for {endpoint}")
    logger.debug(f"  Authorization URL: {config.auth_url or config.device_auth_url}")
    logger.debug(f"  Token URL: {config.token_url}")

    if not config.client_id and not config.registration_endpoint:
        raise ConfigurationError(
            "OAuth authentication required but no client ID was provided "
            "and the server does not support dynamic client registration"
        )

    return config
