"""OAuth configuration and discovered server metadata.

This module holds the per-session AuthConfig and the two metadata shapes
used during discovery: RFC 9728 protected resource metadata and RFC 8414
authorization server metadata.
"""

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from mcp_dump_auth.core.config import settings


class FlowType(StrEnum):
    """OAuth grant flow to run."""

    # Pick device or authorization-code flow from the configured endpoints
    AUTO = "auto"
    # Authorization code flow with PKCE (RFC 6749 + RFC 7636)
    AUTHORIZATION_CODE = "authorization-code"
    # Device authorization grant (RFC 8628)
    DEVICE = "device"
    # Client credentials grant (RFC 6749), recognized but not implemented
    CLIENT_CREDENTIALS = "client-credentials"


def default_scopes() -> list[str]:
    """Get the scopes requested when none are configured."""
    return list(settings.default_scopes)


class AuthConfig(BaseModel):
    """OAuth configuration for one session against one protected resource.

    Built once from static options and/or discovery results and never
    mutated afterwards; use ``fill_from`` or ``model_copy`` to derive a
    new one.
    """

    model_config = ConfigDict(frozen=True)

    client_id: str = ""
    client_secret: str | None = None
    scopes: list[str] = Field(default_factory=default_scopes)

    # Protected endpoint, sent as the RFC 8707 resource parameter
    resource_uri: str = ""

    # Loopback redirect port (0 = OS-assigned)
    redirect_port: int = Field(default=0, ge=0, le=65535)
    use_cache: bool = True

    auth_url: str = ""
    device_auth_url: str = ""
    token_url: str = ""
    registration_endpoint: str = ""

    flow_type: FlowType = FlowType.AUTO
    use_dcr: bool = False

    @field_validator("scopes")
    @classmethod
    def default_when_empty(cls, v: list[str]) -> list[str]:
        """Replace an empty scope list with the default scopes."""
        return v or default_scopes()

    def has_endpoints(self) -> bool:
        """Check a token endpoint and some authorization endpoint are known."""
        return bool(self.token_url and (self.auth_url or self.device_auth_url))

    def fill_from(self, discovered: "AuthConfig") -> "AuthConfig":
        """Return a copy with empty fields taken from a discovered config.

        Values already set on this config always win.
        """
        update = {}
        for name in (
            "client_id",
            "resource_uri",
            "auth_url",
            "device_auth_url",
            "token_url",
            "registration_endpoint",
        ):
            if not getattr(self, name) and getattr(discovered, name):
                update[name] = getattr(discovered, name)

        if not self.client_secret and discovered.client_secret:
            update["client_secret"] = discovered.client_secret
        if self.flow_type == FlowType.AUTO and discovered.flow_type != FlowType.AUTO:
            update["flow_type"] = discovered.flow_type
        if not self.use_dcr and discovered.use_dcr:
            update["use_dcr"] = True
        if "scopes" not in self.model_fields_set and discovered.scopes:
            update["scopes"] = list(discovered.scopes)

        return self.model_copy(update=update)


class ProtectedResourceMetadata(BaseModel):
    """RFC 9728 protected resource metadata."""

    model_config = ConfigDict(extra="ignore")

    resource: str = ""
    authorization_servers: list[str] = Field(default_factory=list)
    scopes_supported: list[str] | None = None
    bearer_methods_supported: list[str] | None = None


class AuthServerMetadata(BaseModel):
    """RFC 8414 authorization server metadata."""

    model_config = ConfigDict(extra="ignore")

    issuer: str = ""
    authorization_endpoint: str = ""
    token_endpoint: str = ""
    device_authorization_endpoint: str = ""
    registration_endpoint: str = ""

    # Non-standard: some servers publish a pre-provisioned public client
    client_id: str = ""

    scopes_supported: list[str] | None = None
    response_types_supported: list[str] | None = None
    code_challenge_methods_supported: list[str] | None = None
    grant_types_supported: list[str] | None = None
    token_endpoint_auth_methods_supported: list[str] | None = None

    def supports_pkce(self) -> bool:
        """Check if S256 PKCE is supported."""
        return (
            self.code_challenge_methods_supported is not None
            and "S256" in self.code_challenge_methods_supported
        )

    def supports_public_clients(self) -> bool:
        """Check if public clients (no client secret) are supported."""
        return (
            self.token_endpoint_auth_methods_supported is not None
            and "none" in self.token_endpoint_auth_methods_supported
        )

    def supports_device_flow(self) -> bool:
        """Check if the device authorization grant is supported."""
        if self.device_authorization_endpoint:
            return True
        grant_types = self.grant_types_supported or []
        return (
            "urn:ietf:params:oauth:grant-type:device_code" in grant_types
            or "device_code" in grant_types
        )
