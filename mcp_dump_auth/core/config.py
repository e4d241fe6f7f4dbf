"""Configuration management for the OAuth client subsystem."""

from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Values are resolved once at startup and never mutated afterwards.
    """

    model_config = SettingsConfigDict(
        env_prefix="MCP_DUMP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    # Application identity
    app_name: str = Field(
        default="mcp-server-dump",
        description="Application name, used for the config directory",
    )
    config_dir: Path | None = Field(
        default=None,
        description="Base directory for cached credentials (default: ~/.config/<app_name>)",
    )

    # OAuth defaults
    default_scopes: list[str] = Field(
        default=["mcp:tools", "mcp:resources", "mcp:prompts"],
        description="Scopes requested when none are configured",
    )
    client_name: str = Field(
        default="mcp-server-dump",
        description="Client name sent during dynamic client registration",
    )

    # Timeouts (seconds)
    http_timeout: float = Field(default=30.0, description="Timeout for OAuth HTTP requests")
    authorization_timeout: float = Field(
        default=300.0, description="How long to wait for the browser callback"
    )
    callback_shutdown_timeout: float = Field(
        default=5.0, description="Grace period when stopping the loopback server"
    )

    # Device flow polling (seconds)
    default_poll_interval: int = Field(
        default=5, description="Polling interval when the server does not declare one"
    )
    slow_down_increment: int = Field(
        default=5, description="Interval increase applied on a slow_down response"
    )

    # Token refresh
    refresh_leeway: int = Field(
        default=10, description="Refresh tokens this many seconds before they expire"
    )

    # Token Storage
    token_encryption_key: str | None = Field(
        default=None, description="Fernet key for encrypting cached credentials"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator("default_scopes")
    @classmethod
    def validate_default_scopes(cls, v: list[str]) -> list[str]:
        """Reject an empty default scope list."""
        if not v:
            raise ValueError("default_scopes must not be empty")
        return v

    @model_validator(mode="after")
    def resolve_config_dir(self) -> "Settings":
        """Fill in the config directory from the application name."""
        if self.config_dir is None:
            # Frozen model: bypass __setattr__ for the derived default
            object.__setattr__(self, "config_dir", Path.home() / ".config" / self.app_name)
        return self

    @property
    def token_dir(self) -> Path:
        """Directory holding cached access/refresh tokens."""
        return self.config_dir / "tokens"

    @property
    def registration_dir(self) -> Path:
        """Directory holding dynamically registered client identities."""
        return self.config_dir / "registrations"


# Global settings instance
settings = Settings()
