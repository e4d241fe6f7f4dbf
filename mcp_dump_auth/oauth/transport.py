"""HTTP transport that authenticates every request with an OAuth bearer token.

The transport obtains a token lazily on first use: from the token cache,
by refreshing, or by running discovery, registration and an
authorization flow. However many requests are in flight, at most one
authorization flow runs per invalidation, and every caller waiting on it
sees the same outcome.
"""

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

import httpx

from mcp_dump_auth.oauth.authorize import authorize
from mcp_dump_auth.oauth.browser import BrowserLauncher
from mcp_dump_auth.oauth.device_flow import DeviceAuthorizationCallback
from mcp_dump_auth.oauth.discovery import discover_oauth_config
from mcp_dump_auth.oauth.oauth_base import FlowStateListener
from mcp_dump_auth.oauth.oauth_config import AuthConfig
from mcp_dump_auth.oauth.registration import get_or_register_client
from mcp_dump_auth.oauth.token_source import RefreshingTokenSource
from mcp_dump_auth.storage.registration_store import RegistrationStore
from mcp_dump_auth.storage.token_store import Token, TokenStore
from mcp_dump_auth.utils.errors import (
    AuthorizationCancelledError,
    CacheError,
    ConfigurationError,
    MissingEndpointError,
    OAuthError,
)

logger = logging.getLogger(__name__)

AuthorizeFunc = Callable[[AuthConfig], Awaitable[Token]]


class _FlowStatus(Enum):
    IDLE = "idle"
    RUNNING = "running"
    SETTLED = "settled"


class OAuthTransport(httpx.AsyncBaseTransport):
    """Transport that adds ``Authorization: Bearer`` to outgoing requests.

    A 401 from the wrapped transport invalidates the token and triggers one
    re-authorization and one retry of the request.

    Example:
        transport = OAuthTransport(AuthConfig(resource_uri="https://mcp.example.com/mcp"))
        async with httpx.AsyncClient(transport=transport) as client:
            response = await client.get("https://mcp.example.com/mcp")
    """

    def __init__(
        self,
        config: AuthConfig,
        transport: httpx.AsyncBaseTransport | None = None,
        *,
        token_store: TokenStore | None = None,
        registration_store: RegistrationStore | None = None,
        authorize_fn: AuthorizeFunc | None = None,
        browser: BrowserLauncher | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
        device_callback: DeviceAuthorizationCallback | None = None,
        state_listener: FlowStateListener | None = None,
    ):
        """Initialize the transport.

        Args:
            config: OAuth configuration; missing endpoints are discovered on first use
            transport: Wrapped transport for the authenticated requests
            token_store: Token cache (default: TokenStore() when config.use_cache)
            registration_store: Client registration cache (default: RegistrationStore())
            authorize_fn: Coroutine function that runs a flow for a complete config
            browser: Launcher for the authorization code flow
            http_transport: Transport for discovery, registration and token requests
            device_callback: Optional callback for device flow user codes
            state_listener: Optional callback invoked on every flow state change
        """
        self.config = config
        self._transport = transport or httpx.AsyncHTTPTransport()
        self._http_transport = http_transport
        self.token_store = token_store if token_store is not None else (
            TokenStore() if config.use_cache else None
        )
        self.registration_store = registration_store or RegistrationStore()
        self._authorize = authorize_fn or functools.partial(
            authorize,
            browser=browser,
            http_transport=http_transport,
            device_callback=device_callback,
            state_listener=state_listener,
        )

        self._cond = asyncio.Condition()
        self._status = _FlowStatus.IDLE
        self._flow_error: BaseException | None = None
        self._token: Token | None = None
        self._token_source: RefreshingTokenSource | None = None

        if config.use_cache and self.token_store and config.resource_uri:
            cached = self.token_store.load_token(config.resource_uri)
            if cached:
                logger.debug(f"Using cached token for {config.resource_uri}")
                self._set_token(config, cached)

    @property
    def token(self) -> Token | None:
        """Token currently in use, if any."""
        return self._token

    def _set_token(self, config: AuthConfig, token: Token) -> None:
        self._token = token
        self._token_source = RefreshingTokenSource(config, token, self._http_transport)

    def _save_token(self, token: Token) -> None:
        if not self.token_store or not self.config.use_cache:
            return
        try:
            self.token_store.save_token(token, self.config.resource_uri)
        except CacheError as e:
            logger.warning(f"Failed to cache token: {e}")

    async def get_valid_token(self) -> Token:
        """Return a token that is valid right now.

        Tries the refreshing token source, then the current token, then a
        full authorization flow.

        Raises:
            OAuthError: If a new token is needed and authorization fails
        """
        source = self._token_source
        if source is not None:
            previous = source.token
            try:
                token = await self._refresh(source)
            except (OAuthError, httpx.HTTPError) as e:
                logger.info(f"Could not refresh token, re-authorizing: {e}")
            else:
                if token.access_token != previous.access_token or token.expiry != previous.expiry:
                    self._token = token
                    self._save_token(token)
                return token
        elif self._token is not None and self._token.is_valid():
            return self._token

        return await self._perform_oauth_flow()

    async def _refresh(self, source: RefreshingTokenSource) -> Token:
        """Refresh through the token source, discovering the token endpoint if needed.

        A token loaded from the cache is paired with the configuration the
        transport was created with, which may not name a token endpoint yet.
        """
        try:
            return await source.get_token()
        except MissingEndpointError:
            logger.debug("Token endpoint unknown, resolving configuration before refresh")

        if not self.config.token_url:
            self.config = await self._resolve_config()
        self._set_token(self.config, source.token)
        return await self._token_source.get_token()

    async def _perform_oauth_flow(self) -> Token:
        """Run the authorization flow, or wait for the one already running."""
        async with self._cond:
            while self._status == _FlowStatus.RUNNING:
                logger.debug("Waiting for in-flight authorization")
                await self._cond.wait()

            # An invalidation while we waited leaves the status IDLE and starts over
            if self._status == _FlowStatus.SETTLED:
                if self._flow_error is not None:
                    raise self._flow_error
                if self._token is not None and self._token.is_valid():
                    return self._token

            self._status = _FlowStatus.RUNNING
            self._flow_error = None

        try:
            config, token = await self._run_flow()
        except asyncio.CancelledError:
            await self._settle(error=AuthorizationCancelledError())
            raise
        except Exception as e:
            await self._settle(error=e)
            raise

        await self._settle(config=config, token=token)
        self._save_token(token)
        return token

    async def _settle(
        self,
        config: AuthConfig | None = None,
        token: Token | None = None,
        error: BaseException | None = None,
    ) -> None:
        async with self._cond:
            if token is not None and config is not None:
                self.config = config
                self._set_token(config, token)
            self._flow_error = error
            self._status = _FlowStatus.SETTLED
            self._cond.notify_all()

    async def _run_flow(self) -> tuple[AuthConfig, Token]:
        config = await self._resolve_config()
        token = await self._authorize(config)
        logger.info(f"Authorized for {config.resource_uri}")
        return config, token

    async def _resolve_config(self) -> AuthConfig:
        """Fill in endpoints by discovery and a client ID by registration."""
        config = self.config
        if not config.resource_uri:
            raise MissingEndpointError("resource URI")

        if not config.has_endpoints():
            discovered = await discover_oauth_config(
                config.resource_uri, http_transport=self._http_transport
            )
            if discovered is None:
                raise ConfigurationError(
                    f"{config.resource_uri} did not request OAuth and no endpoints are configured"
                )
            config = config.fill_from(discovered)

        if not config.client_id and (config.use_dcr or config.registration_endpoint):
            registration = await get_or_register_client(
                config.resource_uri,
                config.registration_endpoint,
                config.scopes,
                store=self.registration_store,
                http_transport=self._http_transport,
            )
            config = config.model_copy(
                update={
                    "client_id": registration.client_id,
                    "client_secret": config.client_secret or registration.client_secret,
                }
            )

        return config

    async def invalidate(self) -> None:
        """Forget the current token so the next request authorizes again."""
        async with self._cond:
            self._invalidate_locked()

    def _invalidate_locked(self) -> None:
        if self._status == _FlowStatus.RUNNING:
            return
        self._token = None
        self._token_source = None
        self._flow_error = None
        self._status = _FlowStatus.IDLE
        if self.token_store and self.config.resource_uri:
            try:
                self.token_store.delete_token(self.config.resource_uri)
            except CacheError as e:
                logger.warning(f"Failed to remove cached token: {e}")

    async def _reauthenticate(self, rejected: Token) -> Token:
        async with self._cond:
            current = self._token
            if current is not None and current.access_token != rejected.access_token:
                # Another request already replaced the rejected token
                return current
            self._invalidate_locked()
        return await self._perform_oauth_flow()

    @staticmethod
    def _authorized_request(request: httpx.Request, token: Token, body: bytes) -> httpx.Request:
        headers = httpx.Headers(request.headers)
        headers.pop("Content-Length", None)
        headers.pop("Transfer-Encoding", None)
        headers["Authorization"] = token.authorization_header
        return httpx.Request(
            request.method,
            request.url,
            headers=headers,
            content=body,
            extensions=request.extensions,
        )

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        token = await self.get_valid_token()
        body = await request.aread()

        response = await self._transport.handle_async_request(
            self._authorized_request(request, token, body)
        )
        if response.status_code != 401:
            return response

        await response.aclose()
        logger.info(f"Received 401 from {request.url}, re-authorizing")
        token = await self._reauthenticate(token)
        return await self._transport.handle_async_request(
            self._authorized_request(request, token, body)
        )

    async def aclose(self) -> None:
        await self._transport.aclose()


def create_oauth_client(
    config: AuthConfig,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    token_store: TokenStore | None = None,
    browser: BrowserLauncher | None = None,
    device_callback: DeviceAuthorizationCallback | None = None,
    **client_kwargs: Any,
) -> httpx.AsyncClient:
    """Create an httpx client whose requests carry an OAuth bearer token.

    Args:
        config: OAuth configuration for the protected resource
        transport: Wrapped transport (default: httpx.AsyncHTTPTransport)
        token_store: Token cache to use
        browser: Launcher for the authorization code flow
        device_callback: Optional callback for device flow user codes
        **client_kwargs: Passed to httpx.AsyncClient

    Returns:
        An AsyncClient using OAuthTransport
    """
    oauth_transport = OAuthTransport(
        config,
        transport,
        token_store=token_store,
        browser=browser,
        device_callback=device_callback,
    )
    return httpx.AsyncClient(transport=oauth_transport, **client_kwargs)
