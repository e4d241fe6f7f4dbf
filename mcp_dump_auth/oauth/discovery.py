"""OAuth endpoint discovery for protected resources.

Discovery probes the resource endpoint and, if it answers 401, tries
these strategies in order:

1. ``WWW-Authenticate`` challenge -> RFC 9728 protected resource metadata
   -> RFC 8414 authorization server metadata
2. Non-standard ``device_flow`` advertisement in the 401 JSON body
3. RFC 8414 ``.well-known/oauth-authorization-server`` on the endpoint origin

A server that does not answer 401 does not require OAuth.
"""

import json
import logging
from urllib.parse import urlsplit, urlunsplit

import httpx
from pydantic import ValidationError

from mcp_dump_auth.core.config import settings
from mcp_dump_auth.oauth.oauth_config import (
    AuthConfig,
    AuthServerMetadata,
    FlowType,
    ProtectedResourceMetadata,
    default_scopes,
)
from mcp_dump_auth.utils.errors import DiscoveryError, UnsupportedPKCEError
from mcp_dump_auth.utils.http import (
    METADATA_ERROR_BODY_LIMIT,
    RESPONSE_BODY_LIMIT,
    body_text,
    read_limited,
)

logger = logging.getLogger(__name__)

PROTECTED_RESOURCE_PATH = "/.well-known/oauth-protected-resource"
AUTH_SERVER_PATH = "/.well-known/oauth-authorization-server"

STRATEGY_WWW_AUTHENTICATE = "WWW-Authenticate header"
STRATEGY_RESPONSE_BODY = "response body"
STRATEGY_WELL_KNOWN = ".well-known metadata"


def extract_param(params: str, key: str) -> str:
    """Extract a quoted parameter value from a WWW-Authenticate challenge.

    Accepts ``key="value"`` and ``key='value'``.
    """
    for quote in ('"', "'"):
        prefix = f"{key}={quote}"
        idx = params.find(prefix)
        if idx == -1:
            continue
        start = idx + len(prefix)
        end = params.find(quote, start)
        if end == -1:
            continue
        return params[start:end]
    return ""


def parse_www_authenticate(header: str) -> str:
    """Get the metadata URL from a Bearer WWW-Authenticate challenge.

    ``resource_metadata`` is preferred; ``realm`` is the fallback.

    Raises:
        DiscoveryError: If the header is not a Bearer challenge or has no URL
    """
    if not header.lower().startswith("bearer "):
        raise DiscoveryError("not a Bearer challenge")

    params = header[len("bearer ") :]

    resource_metadata = extract_param(params, "resource_metadata")
    if resource_metadata:
        return resource_metadata

    realm = extract_param(params, "realm")
    if not realm:
        raise DiscoveryError("no realm or resource_metadata parameter found")
    return realm


def normalize_url_scheme(discovered_url: str, reference_url: str) -> str:
    """Make ``discovered_url`` use the scheme of ``reference_url``.

    Some servers advertise http:// URLs while being served over https://.
    When the scheme changes, an explicit default port (80 or 443) is
    dropped as well.
    """
    if not discovered_url or not reference_url:
        return discovered_url

    try:
        ref = urlsplit(reference_url)
        disc = urlsplit(discovered_url)
        port = disc.port
    except ValueError:
        return discovered_url

    if not ref.scheme or ref.scheme == disc.scheme:
        return discovered_url

    netloc = disc.netloc
    if port in (80, 443):
        netloc = netloc.rsplit(":", 1)[0]

    return urlunsplit((ref.scheme, netloc, disc.path, disc.query, disc.fragment))


def parse_device_flow_from_body(body: bytes) -> tuple[str, str]:
    """Extract device flow endpoints from a non-standard 401 body.

    The body looks like::

        {"device_flow": {"step_1": "POST http://host/device/auth",
                         "step_3": "Poll http://host/device/poll with device_code"}}

    The token endpoint is derived as ``<scheme>://<host>/oauth/token`` from
    the step_3 URL.

    Returns:
        Tuple of (device_auth_url, token_url); token_url may be empty

    Raises:
        DiscoveryError: If the body is not JSON or has no step_1
    """
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise DiscoveryError(f"failed to parse JSON response: {e}") from e

    device_flow = data.get("device_flow") if isinstance(data, dict) else None
    if not isinstance(device_flow, dict):
        raise DiscoveryError("no device_flow object found in response")

    step_1 = str(device_flow.get("step_1") or "").strip()
    if step_1.startswith("POST"):
        step_1 = step_1[len("POST") :].strip()
    if not step_1:
        raise DiscoveryError("no device_flow.step_1 found in response")

    token_url = ""
    for part in str(device_flow.get("step_3") or "").split():
        if part.startswith(("http://", "https://")):
            parsed = urlsplit(part)
            token_url = f"{parsed.scheme}://{parsed.netloc}/oauth/token"
            break

    return step_1, token_url


def _origin(url: str) -> str:
    parsed = urlsplit(url)
    return f"{parsed.scheme}://{parsed.netloc}"


async def _fetch_metadata(client: httpx.AsyncClient, url: str) -> dict:
    """GET a JSON metadata document, capping the body of error responses."""
    async with client.stream("GET", url, headers={"Accept": "application/json"}) as response:
        if response.status_code != 200:
            body = await read_limited(response, METADATA_ERROR_BODY_LIMIT)
            raise DiscoveryError(
                f"failed to fetch metadata (HTTP {response.status_code}): {body_text(body)}"
            )
        await response.aread()

    try:
        data = response.json()
    except ValueError as e:
        raise DiscoveryError(f"invalid metadata JSON from {url}: {e}") from e
    if not isinstance(data, dict):
        raise DiscoveryError(f"invalid metadata JSON from {url}: expected an object")
    return data


async def fetch_protected_resource_metadata(
    client: httpx.AsyncClient, metadata_url: str
) -> ProtectedResourceMetadata:
    """Fetch RFC 9728 protected resource metadata.

    If the URL has no ``/.well-known/`` path, the standard path replaces
    its path component.
    """
    if "/.well-known/" not in metadata_url:
        parsed = urlsplit(metadata_url)
        metadata_url = urlunsplit((parsed.scheme, parsed.netloc, PROTECTED_RESOURCE_PATH, "", ""))

    logger.debug(f"Fetching resource metadata from: {metadata_url}")
    data = await _fetch_metadata(client, metadata_url)
    try:
        return ProtectedResourceMetadata.model_validate(data)
    except ValidationError as e:
        raise DiscoveryError(f"invalid protected resource metadata: {e}") from e


async def fetch_auth_server_metadata(
    client: httpx.AsyncClient, issuer_url: str
) -> AuthServerMetadata:
    """Fetch RFC 8414 metadata from ``<issuer>/.well-known/oauth-authorization-server``."""
    parsed = urlsplit(issuer_url)
    path = parsed.path.rstrip("/") + AUTH_SERVER_PATH
    metadata_url = urlunsplit((parsed.scheme, parsed.netloc, path, "", ""))

    logger.debug(f"Fetching auth server metadata from: {metadata_url}")
    data = await _fetch_metadata(client, metadata_url)
    try:
        return AuthServerMetadata.model_validate(data)
    except ValidationError as e:
        raise DiscoveryError(f"invalid authorization server metadata: {e}") from e


def _require_pkce(metadata: AuthServerMetadata) -> None:
    if metadata.authorization_endpoint and not metadata.supports_pkce():
        raise UnsupportedPKCEError()


async def discover_from_challenge(
    client: httpx.AsyncClient, www_authenticate: str, endpoint: str
) -> AuthConfig:
    """Discover endpoints from a 401 ``WWW-Authenticate`` challenge (RFC 9728).

    If the authorization server publishes no RFC 8414 metadata, a partial
    config is returned with empty endpoints and a guessed
    ``<issuer-origin>/register`` registration endpoint. Running a flow
    with that config fails later with a configuration error.

    Raises:
        DiscoveryError: If no usable protected resource metadata is found
        UnsupportedPKCEError: If the server lacks S256 PKCE support
    """
    metadata_url = parse_www_authenticate(www_authenticate)
    resource_metadata = await fetch_protected_resource_metadata(client, metadata_url)

    if not resource_metadata.authorization_servers:
        raise DiscoveryError("no authorization servers found in protected resource metadata")

    issuer = resource_metadata.authorization_servers[0]
    resource_uri = resource_metadata.resource or endpoint
    scopes = resource_metadata.scopes_supported or default_scopes()
    logger.debug(f"Found authorization server: {issuer}")

    try:
        auth_metadata = await fetch_auth_server_metadata(client, issuer)
    except (DiscoveryError, httpx.HTTPError) as e:
        registration_endpoint = f"{_origin(issuer)}/register"
        logger.warning(
            f"Authorization server {issuer} publishes no metadata ({e}); "
            f"endpoints must be configured explicitly"
        )
        return AuthConfig(
            resource_uri=resource_uri,
            scopes=scopes,
            registration_endpoint=registration_endpoint,
            use_dcr=True,
        )

    _require_pkce(auth_metadata)

    return AuthConfig(
        client_id=auth_metadata.client_id,
        auth_url=auth_metadata.authorization_endpoint,
        device_auth_url=auth_metadata.device_authorization_endpoint,
        token_url=auth_metadata.token_endpoint,
        registration_endpoint=auth_metadata.registration_endpoint,
        resource_uri=resource_uri,
        scopes=scopes,
        use_dcr=bool(auth_metadata.registration_endpoint),
    )


async def discover_from_well_known(client: httpx.AsyncClient, endpoint: str) -> AuthConfig:
    """Discover endpoints from RFC 8414 metadata at the endpoint's origin.

    Raises:
        DiscoveryError: If the metadata cannot be fetched
        UnsupportedPKCEError: If the server lacks S256 PKCE support
    """
    auth_metadata = await fetch_auth_server_metadata(client, _origin(endpoint))
    _require_pkce(auth_metadata)

    return AuthConfig(
        client_id=auth_metadata.client_id,
        auth_url=auth_metadata.authorization_endpoint,
        device_auth_url=auth_metadata.device_authorization_endpoint,
        token_url=auth_metadata.token_endpoint,
        registration_endpoint=auth_metadata.registration_endpoint,
        resource_uri=endpoint,
        scopes=auth_metadata.scopes_supported or default_scopes(),
        use_dcr=bool(auth_metadata.registration_endpoint),
    )


async def discover_from_response_body(
    client: httpx.AsyncClient, body: bytes, endpoint: str
) -> AuthConfig:
    """Discover device flow endpoints advertised in a 401 body.

    The result is enhanced with ``.well-known`` metadata when available;
    endpoints parsed from the body take precedence.

    Raises:
        DiscoveryError: If the body carries no device flow endpoints
    """
    device_auth_url, token_url = parse_device_flow_from_body(body)

    config = AuthConfig(
        device_auth_url=normalize_url_scheme(device_auth_url, endpoint),
        token_url=normalize_url_scheme(token_url, endpoint),
        resource_uri=endpoint,
        flow_type=FlowType.DEVICE,
    )

    try:
        well_known = await discover_from_well_known(client, endpoint)
    except (DiscoveryError, UnsupportedPKCEError, httpx.HTTPError) as e:
        logger.debug(f"No .well-known metadata to enhance device flow config: {e}")
        return config

    update = {}
    if well_known.client_id:
        update["client_id"] = well_known.client_id
    if well_known.auth_url:
        update["auth_url"] = well_known.auth_url
    if well_known.registration_endpoint:
        update["registration_endpoint"] = well_known.registration_endpoint
        update["use_dcr"] = True
    if well_known.scopes:
        update["scopes"] = well_known.scopes
    return config.model_copy(update=update)


async def discover_oauth_config(
    endpoint: str,
    http_transport: httpx.AsyncBaseTransport | None = None,
) -> AuthConfig | None:
    """Discover OAuth configuration for a protected resource endpoint.

    Args:
        endpoint: Resource endpoint URL (e.g., "https://mcp.example.com/mcp")
        http_transport: Optional transport for the discovery requests

    Returns:
        Discovered AuthConfig, or None if the endpoint does not require OAuth

    Raises:
        DiscoveryError: If every strategy failed (lists the strategies tried)
        UnsupportedPKCEError: If the authorization server lacks S256 PKCE
        httpx.HTTPError: If the probe request itself fails
    """
    logger.debug(f"Discovering OAuth config for {endpoint}")

    async with httpx.AsyncClient(
        transport=http_transport, timeout=settings.http_timeout, follow_redirects=True
    ) as client:
        async with client.stream(
            "GET", endpoint, headers={"Accept": "application/json"}, follow_redirects=False
        ) as probe:
            if probe.status_code != 401:
                logger.debug(f"{endpoint} answered HTTP {probe.status_code}; OAuth not required")
                return None
            www_authenticate = probe.headers.get("WWW-Authenticate", "")
            try:
                body = await read_limited(probe, RESPONSE_BODY_LIMIT)
            except httpx.HTTPError as e:
                logger.debug(f"Could not read 401 body: {e}")
                body = b""

        attempted: list[str] = []
        failures: list[str] = []

        if www_authenticate:
            attempted.append(STRATEGY_WWW_AUTHENTICATE)
            try:
                config = await discover_from_challenge(client, www_authenticate, endpoint)
                logger.info(f"Discovered OAuth config for {endpoint} from WWW-Authenticate")
                return config
            except (DiscoveryError, httpx.HTTPError) as e:
                logger.debug(f"WWW-Authenticate discovery failed: {e}")
                failures.append(f"{STRATEGY_WWW_AUTHENTICATE}: {e}")

        if body:
            attempted.append(STRATEGY_RESPONSE_BODY)
            try:
                config = await discover_from_response_body(client, body, endpoint)
                logger.info(f"Discovered device flow endpoints for {endpoint} from response body")
                return config
            except DiscoveryError as e:
                logger.debug(f"Response body discovery failed: {e}")
                failures.append(f"{STRATEGY_RESPONSE_BODY}: {e}")

        attempted.append(STRATEGY_WELL_KNOWN)
        try:
            config = await discover_from_well_known(client, endpoint)
            logger.info(f"Discovered OAuth config for {endpoint} from .well-known metadata")
            return config
        except (DiscoveryError, httpx.HTTPError) as e:
            logger.debug(f".well-known discovery failed: {e}")
            failures.append(f"{STRATEGY_WELL_KNOWN}: {e}")

    raise DiscoveryError(
        f"failed to discover OAuth endpoints for {endpoint} (tried {', '.join(attempted)}): "
        + "; ".join(failures),
        attempted=attempted,
    )
