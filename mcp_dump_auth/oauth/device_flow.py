"""OAuth 2.0 Device Authorization Grant (RFC 8628).

This module implements the Device Authorization Grant, which lets a
terminal program obtain user authorization without a local browser: the
user enters a short code on another device while the program polls the
token endpoint.
"""

import asyncio
import logging
import sys
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TextIO

import httpx
from pydantic import BaseModel, ValidationError

from mcp_dump_auth.core.config import settings
from mcp_dump_auth.oauth.oauth_base import FlowState, FlowStateListener, OAuthHandlerBase
from mcp_dump_auth.oauth.oauth_config import AuthConfig
from mcp_dump_auth.storage.token_store import Token
from mcp_dump_auth.utils.errors import (
    DeviceFlowDeniedError,
    DeviceFlowError,
    DeviceFlowExpiredError,
    MissingEndpointError,
)
from mcp_dump_auth.utils.http import METADATA_ERROR_BODY_LIMIT, body_text

logger = logging.getLogger(__name__)

# RFC 8628 grant type URN
DEVICE_CODE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"


class DeviceCodeResponse(BaseModel):
    """Device authorization response (RFC 8628 Section 3.2)."""

    device_code: str
    user_code: str
    verification_uri: str
    verification_uri_complete: str | None = None
    expires_in: int = 1800
    interval: int = 0


@dataclass
class DeviceAuthorizationInfo:
    """Information about a pending device authorization request.

    This is passed to the authorization callback so other parts of an
    application can tell the user about the pending authorization.
    """

    user_code: str
    verification_uri: str
    verification_uri_complete: str | None
    expires_in: int

    @property
    def expires_minutes(self) -> int:
        """Get expiration time in minutes."""
        return self.expires_in // 60


DeviceAuthorizationCallback = Callable[[DeviceAuthorizationInfo], Awaitable[None] | None]


class DeviceFlowHandler(OAuthHandlerBase):
    """Handles OAuth 2.0 Device Authorization Grant (RFC 8628).

    The flow works by:
    1. Requesting a device code from the authorization server
    2. Displaying a URL and user code for the user to enter in their browser
    3. Polling the token endpoint until the user completes authorization

    ``clock`` and ``sleep`` are injectable so polling can be driven by a
    fake clock in tests.
    """

    def __init__(
        self,
        config: AuthConfig,
        authorization_callback: DeviceAuthorizationCallback | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
        state_listener: FlowStateListener | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        output: TextIO | None = None,
    ):
        """Initialize device flow handler.

        Args:
            config: OAuth configuration for the protected resource
            authorization_callback: Optional sync or async callback invoked with the
                user code and verification URLs once they are known
            http_transport: Optional transport for outgoing requests
            state_listener: Optional callback invoked on every state change
            clock: Monotonic clock in seconds
            sleep: Coroutine function used to wait between polls
            output: Stream for the user code display (default: stderr)
        """
        super().__init__(config, http_transport, state_listener)
        self.authorization_callback = authorization_callback
        self.clock = clock
        self.sleep = sleep
        self.output = output or sys.stderr

    @property
    def device_authorization_url(self) -> str:
        return self.config.device_auth_url or self.config.auth_url

    async def request_device_code(self) -> DeviceCodeResponse:
        """Request a device code from the authorization server.

        Returns:
            Parsed device authorization response

        Raises:
            MissingEndpointError: If no device authorization URL is configured
            DeviceFlowError: If the server rejects the request
        """
        if not self.device_authorization_url:
            raise MissingEndpointError("device authorization URL")

        request_data = {
            "client_id": self.config.client_id,
            "scope": " ".join(self.config.scopes),
        }
        if self.config.resource_uri:
            request_data["resource"] = self.config.resource_uri
        if self.config.client_secret:
            request_data["client_secret"] = self.config.client_secret

        async with self._http_client() as client:
            response = await client.post(
                self.device_authorization_url,
                data=request_data,
                headers={"Accept": "application/json"},
            )

        if response.status_code != 200:
            parsed = self._parse_oauth_error(response)
            if parsed:
                raise DeviceFlowError(*parsed)
            raise DeviceFlowError(
                "device_authorization_failed",
                f"HTTP {response.status_code}: "
                f"{body_text(response.content[:METADATA_ERROR_BODY_LIMIT])}",
            )

        try:
            return DeviceCodeResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise DeviceFlowError("invalid_response", f"invalid device authorization response: {e}") from e

    async def _poll_once(self, client: httpx.AsyncClient, token_data: dict) -> Token | str:
        """Make one token request.

        Returns:
            The token on success, or the pending error code to keep polling on
        """
        response = await client.post(
            self.config.token_url,
            data=token_data,
            headers={"Accept": "application/json"},
        )

        if response.status_code == 200:
            try:
                data = response.json()
            except ValueError as e:
                raise DeviceFlowError("invalid_response", f"token response is not JSON: {e}") from e
            if not isinstance(data, dict):
                raise DeviceFlowError("invalid_response", "token response is not a JSON object")
            return Token.from_oauth_response(data, requested_scopes=self.config.scopes)

        parsed = self._parse_oauth_error(response)
        if not parsed:
            raise DeviceFlowError(
                f"http_{response.status_code}",
                body_text(response.content[:METADATA_ERROR_BODY_LIMIT]),
            )

        error, error_description = parsed
        logger.debug(f"Token poll response: status={response.status_code}, error={error}")

        if error in ("authorization_pending", "slow_down"):
            return error
        if error == "expired_token":
            raise DeviceFlowExpiredError(error, error_description)
        if error == "access_denied":
            raise DeviceFlowDeniedError(error, error_description)
        raise DeviceFlowError(error, error_description)

    async def poll_for_token(
        self,
        device_code: str,
        interval: int = 5,
        expires_in: int = 1800,
    ) -> Token:
        """Poll the token endpoint until user authorizes or code expires.

        Waits one interval before every attempt. ``slow_down`` adds to the
        interval; any error other than ``authorization_pending`` ends the
        flow.

        Args:
            device_code: Device code from request_device_code()
            interval: Initial polling interval in seconds
            expires_in: Seconds until device code expires

        Returns:
            Token with access token and optional refresh token

        Raises:
            DeviceFlowExpiredError: If the device code expires
            DeviceFlowDeniedError: If the user denies the request
            DeviceFlowError: For other OAuth errors
        """
        if not self.config.token_url:
            raise MissingEndpointError("token URL")

        token_data = self._client_auth(
            {
                "grant_type": DEVICE_CODE_GRANT_TYPE,
                "device_code": device_code,
            }
        )

        expires_at = self.clock() + expires_in
        current_interval = interval if interval > 0 else settings.default_poll_interval

        async with self._token_client() as client:
            while True:
                await self.sleep(current_interval)

                if self.clock() > expires_at:
                    raise DeviceFlowExpiredError("expired_token", "device code expired")

                result = await self._poll_once(client, token_data)
                if isinstance(result, Token):
                    logger.info("Device authorization successful")
                    return result

                if result == "slow_down":
                    current_interval += settings.slow_down_increment
                    logger.debug(f"Slowing down, new interval: {current_interval}s")
                else:
                    logger.debug(f"Authorization pending, waiting {current_interval}s...")

    async def _notify(self, info: DeviceAuthorizationInfo) -> None:
        if not self.authorization_callback:
            return
        logger.debug("Invoking device authorization callback...")
        try:
            result = self.authorization_callback(info)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            # The user code is already on screen
            logger.warning(f"Device authorization callback failed: {e}")

    async def authorize(self) -> Token:
        """Run the complete device authorization flow.

        Returns:
            Token with access token and optional refresh token

        Raises:
            DeviceFlowError: If authorization fails
        """
        try:
            self._transition(FlowState.DEVICE_PENDING)
            logger.info("Requesting device code...")
            device = await self.request_device_code()

            info = DeviceAuthorizationInfo(
                user_code=device.user_code,
                verification_uri=device.verification_uri,
                verification_uri_complete=device.verification_uri_complete,
                expires_in=device.expires_in,
            )
            self._display_authorization_instructions(info)
            await self._notify(info)

            logger.info("Waiting for user authorization...")
            token = await self.poll_for_token(
                device_code=device.device_code,
                interval=device.interval,
                expires_in=device.expires_in,
            )
        except BaseException:
            self._transition(FlowState.FAILED)
            raise

        self._transition(FlowState.EXCHANGING)
        self._transition(FlowState.COMPLETE)
        return token

    def _display_authorization_instructions(self, info: DeviceAuthorizationInfo) -> None:
        """Print the user code and verification URL in a box."""
        lines = ["DEVICE AUTHORIZATION REQUIRED", ""]
        if info.verification_uri_complete:
            lines.append(f"Visit: {info.verification_uri_complete}")
            lines.append("")
            lines.append("or")
            lines.append("")
        lines.append(f"Visit: {info.verification_uri}")
        lines.append(f"Enter code: {info.user_code}")
        lines.append("")
        lines.append(f"This code expires in {info.expires_minutes} minutes.")

        width = max(len(line) for line in lines) + 4
        print(file=self.output)
        print("+" + "-" * width + "+", file=self.output)
        for line in lines:
            print(f"|  {line.ljust(width - 4)}  |", file=self.output)
        print("+" + "-" * width + "+", file=self.output)
        print(file=self.output)
