"""Logging setup for applications using mcp_dump_auth.

The library itself only creates module loggers. Applications call
``setup_logging()`` once at startup; the handlers it installs mask
credentials that would otherwise end up in protocol debug output.
"""

import logging
import re
from pathlib import Path

from mcp_dump_auth.core.config import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
REDACTED = "[REDACTED]"

SECRET_PARAMS = (
    "access_token",
    "refresh_token",
    "id_token",
    "client_secret",
    "device_code",
    "code",
    "code_verifier",
    "registration_access_token",
)

_BEARER_RE = re.compile(r"(Bearer\s+)[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE)
# Matches key=value (form/query) and "key": "value" (JSON) spellings
_PARAM_RE = re.compile(
    r"""(?P<key>\b(?:%s))(?P<sep>=|["']?\s*:\s*["'])(?P<value>[^&\s"',}]+)"""
    % "|".join(SECRET_PARAMS)
)


def redact_secrets(text: str) -> str:
    """Mask bearer tokens and OAuth credential parameters in text."""
    text = _BEARER_RE.sub(rf"\1{REDACTED}", text)
    return _PARAM_RE.sub(lambda m: f"{m.group('key')}{m.group('sep')}{REDACTED}", text)


class SecretRedactingFilter(logging.Filter):
    """Handler filter that rewrites records with credentials masked."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact_secrets(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def setup_logging(
    name: str = "mcp_dump_auth",
    level: str | None = None,
    log_file: Path | None = None,
    redact: bool = True,
) -> logging.Logger:
    """Configure root logging for an application using this package.

    Args:
        name: Logger to return (typically the application's __name__)
        level: Log level (defaults to settings.log_level)
        log_file: Optional file that receives the same records as stderr
        redact: Mask tokens, codes and client secrets in every record

    Returns:
        The named logger
    """
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    if redact:
        for handler in handlers:
            handler.addFilter(SecretRedactingFilter())

    logging.basicConfig(
        level=getattr(logging, (level or settings.log_level).upper()),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )

    return logging.getLogger(name)
