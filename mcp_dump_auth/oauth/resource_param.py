"""RFC 8707 resource indicator injection for token endpoint requests."""

import logging
from urllib.parse import parse_qsl, urlencode

import httpx

logger = logging.getLogger(__name__)


class ResourceParameterTransport(httpx.AsyncBaseTransport):
    """Transport that sets the ``resource`` parameter on token requests.

    Any POST whose path contains "token" has its form body parsed, the
    ``resource`` parameter set (replacing an existing value) and the body
    re-encoded with a fresh Content-Length. Every other request passes
    through unchanged.
    """

    def __init__(self, resource: str, transport: httpx.AsyncBaseTransport | None = None):
        """Initialize the transport.

        Args:
            resource: Resource URI to send; an empty value disables injection
            transport: Wrapped transport (default: httpx.AsyncHTTPTransport)
        """
        self.resource = resource
        self._transport = transport or httpx.AsyncHTTPTransport()

    def _should_inject(self, request: httpx.Request) -> bool:
        return bool(self.resource) and request.method == "POST" and "token" in request.url.path

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        if not self._should_inject(request):
            return await self._transport.handle_async_request(request)

        body = await request.aread()
        try:
            params = parse_qsl(body.decode("utf-8"), keep_blank_values=True)
        except UnicodeDecodeError as e:
            logger.warning(f"Token request body is not form-encoded, sending unchanged: {e}")
            return await self._transport.handle_async_request(request)

        params = [(key, value) for key, value in params if key != "resource"]
        params.append(("resource", self.resource))

        headers = httpx.Headers(request.headers)
        headers.pop("Content-Length", None)

        rewritten = httpx.Request(
            request.method,
            request.url,
            headers=headers,
            content=urlencode(params).encode("utf-8"),
            extensions=request.extensions,
        )
        return await self._transport.handle_async_request(rewritten)

    async def aclose(self) -> None:
        await self._transport.aclose()
