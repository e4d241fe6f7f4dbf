"""Token source that refreshes the access token shortly before it expires."""

import asyncio
import logging
from datetime import timedelta

import httpx

from mcp_dump_auth.core.config import settings
from mcp_dump_auth.oauth.oauth_base import TokenEndpointClient
from mcp_dump_auth.oauth.oauth_config import AuthConfig
from mcp_dump_auth.storage.token_store import Token
from mcp_dump_auth.utils.errors import TokenRefreshError

logger = logging.getLogger(__name__)


class RefreshingTokenSource:
    """Hands out a valid token, refreshing it when needed.

    Concurrent callers share a single refresh.
    """

    def __init__(
        self,
        config: AuthConfig,
        token: Token,
        http_transport: httpx.AsyncBaseTransport | None = None,
        leeway: float | None = None,
    ):
        """Initialize the token source.

        Args:
            config: Configuration the token was obtained with
            token: Current token
            http_transport: Optional transport for refresh requests
            leeway: Seconds before expiry at which to refresh (default: settings.refresh_leeway)
        """
        self.config = config
        self.token = token
        self.leeway = timedelta(seconds=settings.refresh_leeway if leeway is None else leeway)
        self._refresher = TokenEndpointClient(config, http_transport)
        self._lock = asyncio.Lock()

    async def get_token(self) -> Token:
        """Return the current token, refreshing it first if it is about to expire.

        Raises:
            TokenRefreshError: If the token needs a refresh and cannot get one
        """
        async with self._lock:
            if self.token.is_valid(self.leeway):
                return self.token

            if not self.token.refresh_token:
                raise TokenRefreshError("Access token expired and no refresh token is available")

            logger.debug("Access token expiring, refreshing")
            self.token = await self._refresher.refresh_token(self.token.refresh_token)
            return self.token
