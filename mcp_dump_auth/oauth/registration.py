"""Dynamic client registration (RFC 7591).

Registrations are cached per resource URI, so a client registers with a
server once and reuses that identity on later runs.
"""

import json
import logging

import httpx

from mcp_dump_auth.core.config import settings
from mcp_dump_auth.oauth.device_flow import DEVICE_CODE_GRANT_TYPE
from mcp_dump_auth.storage.registration_store import ClientRegistration, RegistrationStore
from mcp_dump_auth.utils.errors import CacheError, RegistrationError
from mcp_dump_auth.utils.http import RESPONSE_BODY_LIMIT, body_text, read_limited

logger = logging.getLogger(__name__)

LOOPBACK_REDIRECT_URI = "http://localhost"


def build_registration_request(scopes: list[str]) -> dict:
    """Build the client metadata sent to the registration endpoint."""
    return {
        "client_name": settings.client_name,
        "redirect_uris": [LOOPBACK_REDIRECT_URI],
        "grant_types": [DEVICE_CODE_GRANT_TYPE, "refresh_token"],
        "token_endpoint_auth_method": "none",
        "scope": " ".join(scopes),
    }


async def register_client(
    registration_endpoint: str,
    resource_uri: str,
    scopes: list[str],
    *,
    http_transport: httpx.AsyncBaseTransport | None = None,
) -> ClientRegistration:
    """Register a public OAuth client.

    Args:
        registration_endpoint: RFC 7591 registration endpoint
        resource_uri: Protected resource the client is for
        scopes: Scopes the client will request
        http_transport: Optional transport for the request

    Returns:
        The new client registration

    Raises:
        RegistrationError: If the request fails or the response is invalid
    """
    logger.info(f"Registering OAuth client at {registration_endpoint}")

    try:
        async with httpx.AsyncClient(
            transport=http_transport, timeout=settings.http_timeout
        ) as client:
            async with client.stream(
                "POST",
                registration_endpoint,
                json=build_registration_request(scopes),
                headers={"Accept": "application/json"},
            ) as response:
                body = await read_limited(response, RESPONSE_BODY_LIMIT)
                status = response.status_code
    except httpx.HTTPError as e:
        raise RegistrationError(f"Failed to register OAuth client: {e}") from e

    if status not in (200, 201):
        raise RegistrationError(
            f"Failed to register OAuth client (HTTP {status}): {body_text(body)}"
        )

    try:
        client_data = json.loads(body)
    except ValueError as e:
        raise RegistrationError(f"Invalid registration response: {e}") from e

    client_id = client_data.get("client_id") if isinstance(client_data, dict) else None
    if not client_id:
        raise RegistrationError("Registration response missing client_id")

    logger.info(f"Registered client: {client_id}")
    return ClientRegistration(
        resource_uri=resource_uri,
        client_id=client_id,
        client_secret=client_data.get("client_secret") or None,
        registration_access_token=client_data.get("registration_access_token") or None,
    )


async def get_or_register_client(
    resource_uri: str,
    registration_endpoint: str,
    scopes: list[str],
    *,
    store: RegistrationStore | None = None,
    http_transport: httpx.AsyncBaseTransport | None = None,
) -> ClientRegistration:
    """Return the cached registration for a resource, registering if needed.

    A cached registration with a client ID is returned without any network
    call. A failure to cache a new registration is logged, not raised.

    Raises:
        RegistrationError: If registration is needed and fails or no endpoint is known
    """
    store = store or RegistrationStore()

    cached = store.load_registration(resource_uri)
    if cached and cached.client_id:
        logger.debug(f"Using cached client registration for {resource_uri}")
        return cached

    if not registration_endpoint:
        raise RegistrationError(
            f"No cached client registration for {resource_uri} and no registration endpoint"
        )

    registration = await register_client(
        registration_endpoint, resource_uri, scopes, http_transport=http_transport
    )

    try:
        store.save_registration(registration)
    except CacheError as e:
        logger.warning(f"Failed to cache client registration: {e}")

    return registration
