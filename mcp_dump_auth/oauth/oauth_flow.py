"""OAuth authorization code flow with PKCE.

This module implements the OAuth 2.1 authorization code flow with PKCE
(RFC 7636) using a loopback redirect on 127.0.0.1.
"""

import asyncio
import hashlib
import html
import logging
import secrets
import socket
import sys
from base64 import urlsafe_b64encode
from dataclasses import dataclass
from typing import TextIO
from urllib.parse import urlencode

import httpx
from aiohttp import web

from mcp_dump_auth.core.config import settings
from mcp_dump_auth.oauth.browser import BrowserLauncher, SystemBrowser
from mcp_dump_auth.oauth.oauth_base import FlowState, FlowStateListener, OAuthHandlerBase
from mcp_dump_auth.oauth.oauth_config import AuthConfig
from mcp_dump_auth.storage.token_store import Token
from mcp_dump_auth.utils.errors import (
    AuthorizationError,
    AuthorizationTimeoutError,
    BrowserLaunchError,
    MissingEndpointError,
    StateMismatchError,
)

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/callback"

SUCCESS_PAGE = """<html>
<head><title>Authorization Successful</title></head>
<body style="font-family: sans-serif; text-align: center; padding: 50px;">
    <h1>Authorization Successful</h1>
    <p>You can close this window and return to the terminal.</p>
</body>
</html>
"""

ERROR_PAGE = """<html>
<head><title>Authorization Failed</title></head>
<body style="font-family: sans-serif; text-align: center; padding: 50px;">
    <h1>Authorization Failed</h1>
    <p><strong>Error:</strong> {error}</p>
    <p>{description}</p>
    <p>Please close this window and try again.</p>
</body>
</html>
"""


def generate_pkce_pair() -> tuple[str, str]:
    """Generate PKCE code verifier and challenge.

    Returns:
        Tuple of (code_verifier, code_challenge)
    """
    # 32 random bytes give a 43 character verifier
    code_verifier = urlsafe_b64encode(secrets.token_bytes(32)).decode("utf-8").rstrip("=")

    code_challenge = (
        urlsafe_b64encode(hashlib.sha256(code_verifier.encode("utf-8")).digest())
        .decode("utf-8")
        .rstrip("=")
    )

    return code_verifier, code_challenge


def generate_state() -> str:
    """Generate a random ``state`` value (32 bytes, base64url)."""
    return secrets.token_urlsafe(32)


@dataclass
class CallbackResult:
    """Authorization response delivered to the loopback redirect."""

    code: str
    state: str


class CallbackServer:
    """Loopback HTTP server that receives a single authorization callback.

    The listening socket is bound when the server starts, so port 0
    yields an OS-assigned port available through ``port`` and
    ``redirect_uri``.

    Example:
        async with CallbackServer() as server:
            print(server.redirect_uri)
            result = await server.wait(timeout=300)
    """

    def __init__(self, port: int = 0, host: str = "127.0.0.1"):
        self.host = host
        self.requested_port = port
        self.port: int | None = None
        self._runner: web.AppRunner | None = None
        self._result: asyncio.Future[CallbackResult] | None = None

    @property
    def redirect_uri(self) -> str:
        if self.port is None:
            raise RuntimeError("callback server is not running")
        return f"http://{self.host}:{self.port}{CALLBACK_PATH}"

    def _settle(self, result: CallbackResult | None = None, error: Exception | None = None) -> None:
        # Only the first callback counts
        if self._result is None or self._result.done():
            return
        if error is not None:
            self._result.set_exception(error)
        else:
            self._result.set_result(result)

    async def _handle_callback(self, request: web.Request) -> web.Response:
        query = request.query

        if "error" in query:
            error = query.get("error", "unknown_error")
            description = query.get("error_description", "")
            logger.error(f"Authorization error: {error}")
            message = f"{error}: {description}" if description else error
            self._settle(error=AuthorizationError(f"authorization failed: {message}"))
            return web.Response(
                text=ERROR_PAGE.format(error=html.escape(error), description=html.escape(description)),
                status=400,
                content_type="text/html",
            )

        code = query.get("code", "")
        if not code:
            self._settle(error=AuthorizationError("authorization failed: no code in callback"))
            return web.Response(
                text=ERROR_PAGE.format(error="missing authorization code", description=""),
                status=400,
                content_type="text/html",
            )

        self._settle(CallbackResult(code=code, state=query.get("state", "")))
        return web.Response(text=SUCCESS_PAGE, content_type="text/html")

    async def start(self) -> None:
        """Bind the loopback socket and start serving."""
        self._result = asyncio.get_running_loop().create_future()

        app = web.Application()
        app.router.add_get(CALLBACK_PATH, self._handle_callback)

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.bind((self.host, self.requested_port))
        except OSError as e:
            sock.close()
            raise AuthorizationError(
                f"failed to start callback server on {self.host}:{self.requested_port}: {e}"
            ) from e
        sock.setblocking(False)
        self.port = sock.getsockname()[1]

        self._runner = web.AppRunner(app, access_log=None)
        await self._runner.setup()
        site = web.SockSite(self._runner, sock)
        await site.start()
        logger.debug(f"Callback server listening on {self.redirect_uri}")

    async def wait(self, timeout: float) -> CallbackResult:
        """Wait for the authorization callback.

        Raises:
            AuthorizationTimeoutError: If no callback arrives within ``timeout`` seconds
            AuthorizationError: If the callback carried an error
        """
        if self._result is None:
            raise RuntimeError("callback server is not running")
        try:
            return await asyncio.wait_for(self._result, timeout)
        except TimeoutError as e:
            raise AuthorizationTimeoutError(
                f"authorization timed out after {timeout:g} seconds"
            ) from e

    async def shutdown(self, timeout: float | None = None) -> None:
        """Stop the server, waiting at most ``timeout`` seconds."""
        if self._runner is None:
            return
        runner, self._runner = self._runner, None
        timeout = settings.callback_shutdown_timeout if timeout is None else timeout
        try:
            await asyncio.wait_for(runner.cleanup(), timeout)
        except TimeoutError:
            logger.warning(f"Callback server did not shut down within {timeout:g}s")
        if self._result is not None and not self._result.done():
            self._result.cancel()

    async def __aenter__(self) -> "CallbackServer":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()


class AuthorizationCodeFlow(OAuthHandlerBase):
    """Handles OAuth authorization code flow with PKCE."""

    def __init__(
        self,
        config: AuthConfig,
        browser: BrowserLauncher | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
        state_listener: FlowStateListener | None = None,
        timeout: float | None = None,
        output: TextIO | None = None,
    ):
        """Initialize the flow.

        Args:
            config: OAuth configuration for the protected resource
            browser: Launcher for the authorization URL (default: system browser)
            http_transport: Optional transport for token requests
            state_listener: Optional callback invoked on every state change
            timeout: Seconds to wait for the callback (default: settings.authorization_timeout)
            output: Stream for user-facing messages (default: stderr)
        """
        super().__init__(config, http_transport, state_listener)
        self.browser = browser or SystemBrowser()
        self.timeout = settings.authorization_timeout if timeout is None else timeout
        self.output = output or sys.stderr

    def build_authorization_url(self, redirect_uri: str, state: str, code_challenge: str) -> str:
        """Build the authorization request URL (RFC 6749 Section 4.1.1)."""
        params = {
            "response_type": "code",
            "client_id": self.config.client_id,
            "redirect_uri": redirect_uri,
            "scope": " ".join(self.config.scopes),
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            "state": state,
        }
        if self.config.resource_uri:
            params["resource"] = self.config.resource_uri

        separator = "&" if "?" in self.config.auth_url else "?"
        return f"{self.config.auth_url}{separator}{urlencode(params)}"

    async def authorize(self) -> Token:
        """Run the authorization code flow to obtain a token.

        This will:
        1. Start the loopback callback server
        2. Open the browser at the authorization URL
        3. Wait for the callback and verify its state
        4. Exchange the authorization code for a token

        Returns:
            Token with access token and optional refresh token

        Raises:
            AuthorizationError: If the callback fails, times out or has a bad state
            TokenExchangeError: If the token endpoint rejects the code
        """
        if not self.config.auth_url:
            raise MissingEndpointError("authorization URL")

        try:
            self._transition(FlowState.AUTH_CODE_PENDING)
            code_verifier, code_challenge = generate_pkce_pair()
            state = generate_state()

            async with CallbackServer(self.config.redirect_port) as server:
                redirect_uri = server.redirect_uri
                auth_url = self.build_authorization_url(redirect_uri, state, code_challenge)

                print("\nOpen this URL in your browser to authorize:", file=self.output)
                print(f"  {auth_url}\n", file=self.output)
                try:
                    self.browser.open(auth_url)
                except BrowserLaunchError as e:
                    logger.warning(f"Could not open browser: {e}")

                logger.info("Waiting for authorization...")
                result = await server.wait(self.timeout)

            if not secrets.compare_digest(result.state.encode(), state.encode()):
                raise StateMismatchError()

            logger.info("Received authorization code, exchanging for token...")
            self._transition(FlowState.EXCHANGING)
            token = await self._exchange_code(result.code, code_verifier, redirect_uri)
        except BaseException:
            self._transition(FlowState.FAILED)
            raise

        self._transition(FlowState.COMPLETE)
        logger.info("Successfully obtained access token")
        return token
