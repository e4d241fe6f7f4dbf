"""Base classes for OAuth handlers.

This module provides shared functionality for OAuth handlers including
flow state tracking, token endpoint requests and token refresh.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import StrEnum
from typing import Any

import httpx

from mcp_dump_auth.core.config import settings
from mcp_dump_auth.oauth.oauth_config import AuthConfig
from mcp_dump_auth.oauth.resource_param import ResourceParameterTransport
from mcp_dump_auth.storage.token_store import Token
from mcp_dump_auth.utils.errors import MissingEndpointError, TokenExchangeError, TokenRefreshError
from mcp_dump_auth.utils.http import RESPONSE_BODY_LIMIT, body_text

logger = logging.getLogger(__name__)


class FlowState(StrEnum):
    """Progress of a single authorization flow."""

    IDLE = "idle"
    DISCOVERING_FLOW_TYPE = "discovering-flow-type"
    AUTH_CODE_PENDING = "auth-code-pending"
    DEVICE_PENDING = "device-pending"
    EXCHANGING = "exchanging"
    COMPLETE = "complete"
    FAILED = "failed"


FlowStateListener = Callable[[FlowState], None]


class TokenEndpointClient:
    """Token endpoint requests and token refresh for one resource.

    Token endpoint requests go through a ResourceParameterTransport so the
    RFC 8707 ``resource`` parameter is always present.
    """

    def __init__(self, config: AuthConfig, http_transport: httpx.AsyncBaseTransport | None = None):
        self.config = config
        self.http_transport = http_transport

    def _http_client(self) -> httpx.AsyncClient:
        """Client for requests that do not hit the token endpoint."""
        return httpx.AsyncClient(transport=self.http_transport, timeout=settings.http_timeout)

    def _token_client(self) -> httpx.AsyncClient:
        """Client for token endpoint requests, with resource injection."""
        transport = ResourceParameterTransport(
            self.config.resource_uri, self.http_transport or httpx.AsyncHTTPTransport()
        )
        return httpx.AsyncClient(transport=transport, timeout=settings.http_timeout)

    def _parse_oauth_error(self, response: httpx.Response) -> tuple[str, str | None] | None:
        """Parse OAuth error response (RFC 6749 Section 5.2).

        Args:
            response: HTTP response from token endpoint

        Returns:
            Tuple of (error, error_description), or None if the body is not an OAuth error
        """
        try:
            error_data = response.json()
        except ValueError:
            return None
        if not isinstance(error_data, dict) or not error_data.get("error"):
            return None
        return str(error_data["error"]), error_data.get("error_description") or None

    def _client_auth(self, data: dict[str, str]) -> dict[str, str]:
        data["client_id"] = self.config.client_id
        if self.config.client_secret:
            data["client_secret"] = self.config.client_secret
        return data

    async def _post_token_request(self, data: dict[str, Any]) -> Token:
        """POST a form to the token endpoint and parse the token response.

        Raises:
            MissingEndpointError: If no token endpoint is configured
            TokenExchangeError: If the server returns an error or an invalid body
            httpx.HTTPError: On network failures
        """
        if not self.config.token_url:
            raise MissingEndpointError("token URL")

        async with self._token_client() as client:
            response = await client.post(
                self.config.token_url,
                data=data,
                headers={"Accept": "application/json"},
            )

        if response.status_code != 200:
            parsed = self._parse_oauth_error(response)
            if parsed:
                raise TokenExchangeError(*parsed)
            raise TokenExchangeError(
                f"http_{response.status_code}",
                body_text(response.content[:RESPONSE_BODY_LIMIT]),
            )

        try:
            token_response = response.json()
        except ValueError as e:
            raise TokenExchangeError("invalid_response", f"token response is not JSON: {e}") from e
        if not isinstance(token_response, dict):
            raise TokenExchangeError("invalid_response", "token response is not a JSON object")

        return Token.from_oauth_response(token_response, requested_scopes=self.config.scopes)

    async def refresh_token(self, refresh_token: str) -> Token:
        """Refresh an access token using a refresh token.

        The refresh token is kept when the server does not rotate it.

        Args:
            refresh_token: Refresh token

        Returns:
            New Token with refreshed access token

        Raises:
            TokenRefreshError: If refresh fails
        """
        refresh_data = self._client_auth(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            }
        )

        try:
            token = await self._post_token_request(refresh_data)
        except TokenExchangeError as e:
            raise TokenRefreshError(f"Failed to refresh token: {e}") from e
        except httpx.HTTPError as e:
            raise TokenRefreshError(f"Failed to refresh token: {e}") from e

        if not token.refresh_token:
            token = token.model_copy(update={"refresh_token": refresh_token})
        logger.debug("Access token refreshed")
        return token


class OAuthHandlerBase(TokenEndpointClient, ABC):
    """Base class for interactive OAuth flow handlers.

    Adds flow state tracking and the authorization code exchange to the
    token endpoint plumbing.
    """

    def __init__(
        self,
        config: AuthConfig,
        http_transport: httpx.AsyncBaseTransport | None = None,
        state_listener: FlowStateListener | None = None,
    ):
        """Initialize OAuth handler base.

        Args:
            config: OAuth configuration for the protected resource
            http_transport: Optional transport for outgoing requests
            state_listener: Optional callback invoked on every state change
        """
        super().__init__(config, http_transport)
        self.state_listener = state_listener
        self.state = FlowState.IDLE

    def _transition(self, state: FlowState) -> None:
        logger.debug(f"OAuth flow state: {self.state} -> {state}")
        self.state = state
        if self.state_listener:
            self.state_listener(state)

    @abstractmethod
    async def authorize(self) -> Token:
        """Run the authorization flow to obtain a token.

        Returns:
            Token with access token and optional refresh token

        Raises:
            OAuthError: If authorization fails
        """
        pass

    async def _exchange_code(self, code: str, code_verifier: str, redirect_uri: str) -> Token:
        """Exchange an authorization code for a token (RFC 6749 Section 4.1.3)."""
        token_data = self._client_auth(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "code_verifier": code_verifier,
            }
        )
        return await self._post_token_request(token_data)
