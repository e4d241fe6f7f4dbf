"""Helpers for reading untrusted HTTP response bodies."""

import httpx

# Body read caps, in bytes
METADATA_ERROR_BODY_LIMIT = 1024
RESPONSE_BODY_LIMIT = 4096


async def read_limited(response: httpx.Response, limit: int) -> bytes:
    """Read at most ``limit`` bytes from a streamed response body.

    Args:
        response: Response opened with ``client.stream(...)``
        limit: Maximum number of bytes to keep

    Returns:
        The first ``limit`` bytes of the body
    """
    chunks: list[bytes] = []
    remaining = limit
    async for chunk in response.aiter_bytes():
        chunks.append(chunk[:remaining])
        remaining -= len(chunks[-1])
        if remaining <= 0:
            break
    return b"".join(chunks)


def body_text(body: bytes) -> str:
    """Decode a capped body for inclusion in an error message."""
    return body.decode("utf-8", errors="replace")
