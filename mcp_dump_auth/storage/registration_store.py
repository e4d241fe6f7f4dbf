"""Cache of dynamically registered OAuth clients (RFC 7591).

Registrations are stored per resource URI under
``~/.config/<app>/registrations/<sha256(resource_uri)-hex>.json``.
"""

import hashlib
import logging
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from mcp_dump_auth.core.config import settings
from mcp_dump_auth.storage.secure_file import build_cipher, read_json, remove_file, write_private_json

logger = logging.getLogger(__name__)


class ClientRegistration(BaseModel):
    """Client identity obtained through dynamic client registration."""

    resource_uri: str = Field(..., description="Protected resource the client was registered for")
    client_id: str = Field(..., description="Registered client identifier")
    client_secret: str | None = Field(None, description="Client secret, if one was issued")
    registration_access_token: str | None = Field(
        None, description="Token for the client configuration endpoint"
    )
    registered_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC), description="When the client was registered"
    )


class RegistrationStore:
    """File-based storage for client registrations."""

    def __init__(self, storage_path: Path | None = None, encryption_key: str | None = None):
        """Initialize registration store.

        Args:
            storage_path: Directory for registration files (default: settings.registration_dir)
            encryption_key: Optional Fernet key (default: settings.token_encryption_key)
        """
        self.storage_path = Path(storage_path) if storage_path else settings.registration_dir
        self.cipher = build_cipher(
            encryption_key if encryption_key is not None else settings.token_encryption_key
        )

    def registration_path(self, resource_uri: str) -> Path:
        """Get the cache file path for a resource URI."""
        digest = hashlib.sha256(resource_uri.encode()).hexdigest()
        return self.storage_path / f"{digest}.json"

    def load_registration(self, resource_uri: str) -> ClientRegistration | None:
        """Load a cached registration.

        Returns:
            ClientRegistration if cached and readable, None otherwise
        """
        data = read_json(self.registration_path(resource_uri), self.cipher)
        if data is None:
            return None

        try:
            return ClientRegistration.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed registration cache for {resource_uri}: {e}")
            return None

    def save_registration(self, registration: ClientRegistration) -> None:
        """Save a registration.

        Raises:
            CacheError: If the registration cannot be written
        """
        write_private_json(
            self.registration_path(registration.resource_uri),
            registration.model_dump(mode="json", exclude_none=True),
            self.cipher,
        )
        logger.debug(f"Saved client registration for {registration.resource_uri}")

    def delete_registration(self, resource_uri: str) -> None:
        """Remove a cached registration, if any."""
        remove_file(self.registration_path(resource_uri))
