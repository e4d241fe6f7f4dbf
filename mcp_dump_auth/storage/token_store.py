"""File-based cache for OAuth tokens.

Each protected resource gets one JSON file named after a hash of its
resource URI:

    ~/.config/<app>/tokens/<sha256(resource_uri)[0:8]-hex>.json

The file holds ``resource_uri``, ``access_token``, ``refresh_token``,
``token_type``, ``expiry`` (RFC 3339) and ``scopes``. A missing, corrupt
or mismatched file is reported as "no cached token", never as an error.
"""

import hashlib
import logging
import shutil
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from mcp_dump_auth.core.config import settings
from mcp_dump_auth.storage.secure_file import build_cipher, read_json, remove_file, write_private_json
from mcp_dump_auth.utils.errors import CacheError, TokenExchangeError

logger = logging.getLogger(__name__)


class Token(BaseModel):
    """OAuth token issued by the authorization server.

    Tokens are immutable: a refresh produces a new Token that supersedes
    the old one. A token without an expiry is only treated as valid when
    it is explicitly marked ``long_lived`` (the server issued it without
    an ``expires_in``).
    """

    model_config = ConfigDict(frozen=True)

    access_token: str = Field(..., description="OAuth access token")
    refresh_token: str | None = Field(None, description="OAuth refresh token")
    token_type: str = Field(default="Bearer", description="Token type")
    expiry: datetime | None = Field(None, description="Absolute expiry instant (UTC)")
    scopes: list[str] | None = Field(None, description="Granted scopes")
    long_lived: bool = Field(default=False, exclude=True, description="Valid without an expiry")

    @field_validator("expiry")
    @classmethod
    def ensure_utc(cls, v: datetime | None) -> datetime | None:
        """Treat naive timestamps as UTC."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v

    def is_valid(self, leeway: timedelta = timedelta(0), now: datetime | None = None) -> bool:
        """Check the token has an access token and has not expired.

        Args:
            leeway: Treat the token as expired this long before its expiry
            now: Reference instant (default: current time)
        """
        if not self.access_token:
            return False
        if self.expiry is None:
            return self.long_lived
        now = now or datetime.now(UTC)
        return now + leeway < self.expiry

    def time_until_expiry(self) -> timedelta | None:
        """Get time until token expires."""
        if not self.expiry:
            return None
        return self.expiry - datetime.now(UTC)

    @property
    def authorization_header(self) -> str:
        """Value for the HTTP Authorization header."""
        return f"Bearer {self.access_token}"

    @classmethod
    def from_oauth_response(
        cls,
        response_data: dict[str, Any],
        requested_scopes: list[str] | None = None,
    ) -> "Token":
        """Create from a token endpoint response (RFC 6749 Section 5.1).

        Args:
            response_data: JSON response from token endpoint
            requested_scopes: Scopes to record if the response omits ``scope``

        Returns:
            Token with an absolute expiry computed from ``expires_in``

        Raises:
            TokenExchangeError: If the response has no access token
        """
        access_token = response_data.get("access_token")
        if not access_token:
            raise TokenExchangeError("invalid_response", "token response missing access_token")

        expiry = None
        expires_in = response_data.get("expires_in")
        try:
            seconds = int(float(expires_in)) if expires_in is not None else 0
        except (TypeError, ValueError):
            seconds = 0
        if seconds > 0:
            expiry = datetime.now(UTC) + timedelta(seconds=seconds)

        scope = response_data.get("scope")
        scopes = scope.split() if isinstance(scope, str) and scope else requested_scopes

        return cls(
            access_token=access_token,
            refresh_token=response_data.get("refresh_token") or None,
            token_type=response_data.get("token_type") or "Bearer",
            expiry=expiry,
            scopes=scopes,
            long_lived=expiry is None,
        )


class TokenCache(BaseModel):
    """On-disk record of a cached token for one resource."""

    resource_uri: str = Field(..., description="Protected resource the token is for")
    access_token: str = Field(..., description="OAuth access token")
    refresh_token: str | None = Field(None, description="OAuth refresh token")
    token_type: str = Field(default="Bearer", description="Token type")
    expiry: datetime | None = Field(None, description="When the access token expires")
    scopes: list[str] | None = Field(None, description="Scopes granted for this token")
    long_lived: bool | None = Field(None, description="Set only for tokens valid without an expiry")

    @classmethod
    def from_token(
        cls, token: Token, resource_uri: str, scopes: list[str] | None = None
    ) -> "TokenCache":
        """Build a cache record from a token."""
        return cls(
            resource_uri=resource_uri,
            access_token=token.access_token,
            refresh_token=token.refresh_token,
            token_type=token.token_type,
            expiry=token.expiry,
            scopes=scopes if scopes is not None else token.scopes,
            long_lived=True if token.long_lived else None,
        )

    def to_token(self) -> Token:
        """Convert back to a Token."""
        return Token(
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            token_type=self.token_type,
            expiry=self.expiry,
            scopes=self.scopes,
            long_lived=bool(self.long_lived),
        )


class TokenStore:
    """Persistent token cache keyed by resource URI.

    Writes replace the whole file atomically with owner-only permissions.
    Concurrent writers for the same resource are not locked against each
    other: the last write wins.
    """

    def __init__(self, storage_path: Path | None = None, encryption_key: str | None = None):
        """Initialize token store.

        Args:
            storage_path: Directory for token files (default: settings.token_dir)
            encryption_key: Optional Fernet key (default: settings.token_encryption_key)
        """
        self.storage_path = Path(storage_path) if storage_path else settings.token_dir
        self.cipher = build_cipher(
            encryption_key if encryption_key is not None else settings.token_encryption_key
        )
        logger.debug(f"Token storage directory: {self.storage_path}")

    def token_path(self, resource_uri: str) -> Path:
        """Get the cache file path for a resource URI.

        The path depends only on the URI.
        """
        digest = hashlib.sha256(resource_uri.encode()).digest()
        return self.storage_path / f"{digest[:8].hex()}.json"

    def load_token(self, resource_uri: str) -> Token | None:
        """Load the cached token for a resource.

        Returns:
            Token if a readable cache entry exists for this exact URI, None otherwise
        """
        data = read_json(self.token_path(resource_uri), self.cipher)
        if data is None:
            logger.debug(f"No cached token for {resource_uri}")
            return None

        try:
            cache = TokenCache.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed token cache for {resource_uri}: {e}")
            return None

        if cache.resource_uri != resource_uri:
            logger.warning(f"Token cache resource URI mismatch for {resource_uri}")
            return None

        logger.debug(f"Loaded cached token for {resource_uri}")
        return cache.to_token()

    def save_token(self, token: Token, resource_uri: str, scopes: list[str] | None = None) -> None:
        """Save a token for a resource.

        Args:
            token: Token to persist
            resource_uri: Protected resource the token is for
            scopes: Scopes to record (default: the token's own scopes)

        Raises:
            CacheError: If the token cannot be written
        """
        cache = TokenCache.from_token(token, resource_uri, scopes)
        write_private_json(
            self.token_path(resource_uri),
            cache.model_dump(mode="json", exclude_none=True),
            self.cipher,
        )
        logger.debug(f"Saved token for {resource_uri}")

    def delete_token(self, resource_uri: str) -> None:
        """Remove the cached token for a resource, if any."""
        remove_file(self.token_path(resource_uri))
        logger.debug(f"Deleted token for {resource_uri}")

    def clear_all(self) -> None:
        """Remove every cached token."""
        try:
            shutil.rmtree(self.storage_path)
        except FileNotFoundError:
            return
        except OSError as e:
            raise CacheError(f"failed to remove token cache directory: {e}") from e
        logger.info("Cleared all cached tokens")

    def list_resources(self) -> list[str]:
        """List resource URIs that have a cached token.

        Unreadable entries are skipped.
        """
        if not self.storage_path.is_dir():
            return []

        resources = []
        for path in sorted(self.storage_path.glob("*.json")):
            data = read_json(path, self.cipher)
            if data and isinstance(data.get("resource_uri"), str):
                resources.append(data["resource_uri"])
        return resources
