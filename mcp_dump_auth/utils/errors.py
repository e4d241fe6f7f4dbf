"""Error types for the OAuth client subsystem."""


class OAuthError(Exception):
    """Base exception for OAuth client errors."""

    pass


# Configuration errors
class ConfigurationError(OAuthError):
    """Raised when OAuth configuration is missing or invalid."""

    pass


class MissingEndpointError(ConfigurationError):
    """Raised when a required endpoint or URI is not configured."""

    def __init__(self, endpoint: str):
        super().__init__(f"{endpoint} must be configured")
        self.endpoint = endpoint


class FlowNotImplementedError(ConfigurationError):
    """Raised when a recognized but unimplemented flow is selected."""

    def __init__(self, flow: str):
        super().__init__(f"{flow} flow not yet implemented")
        self.flow = flow


# Discovery errors
class DiscoveryError(OAuthError):
    """Raised when every discovery strategy failed."""

    def __init__(self, message: str, attempted: list[str] | None = None):
        super().__init__(message)
        self.attempted = attempted or []


class UnsupportedPKCEError(OAuthError):
    """Raised when the authorization server does not advertise S256 PKCE."""

    def __init__(self):
        super().__init__("authorization server does not support S256 PKCE (required by OAuth 2.1)")


# Flow execution errors
class RegistrationError(OAuthError):
    """Raised when dynamic client registration fails."""

    pass


class TokenExchangeError(OAuthError):
    """Raised when the token endpoint rejects a request (RFC 6749 Section 5.2)."""

    def __init__(self, error: str, error_description: str | None = None):
        self.error = error
        self.error_description = error_description
        message = f"{error}: {error_description}" if error_description else error
        super().__init__(message)


class TokenRefreshError(OAuthError):
    """Raised when an access token cannot be refreshed."""

    pass


class AuthorizationError(OAuthError):
    """Raised when the user-facing authorization step fails."""

    pass


class AuthorizationTimeoutError(AuthorizationError):
    """Raised when no authorization callback arrives in time."""

    pass


class StateMismatchError(AuthorizationError):
    """Raised when the callback state differs from the one we generated."""

    def __init__(self):
        super().__init__("state mismatch: possible CSRF attack")


class AuthorizationCancelledError(AuthorizationError):
    """Raised to callers waiting on a flow whose task was cancelled."""

    def __init__(self):
        super().__init__("authorization flow was cancelled")


class DeviceFlowError(OAuthError):
    """Base exception for device flow errors."""

    def __init__(self, error: str, error_description: str | None = None):
        self.error = error
        self.error_description = error_description
        message = f"{error}: {error_description}" if error_description else error
        super().__init__(message)


class DeviceFlowExpiredError(DeviceFlowError):
    """Device code has expired."""

    pass


class DeviceFlowDeniedError(DeviceFlowError):
    """User denied the authorization request."""

    pass


class BrowserLaunchError(OAuthError):
    """Raised when no browser could be launched for a URL."""

    pass


# Cache errors
class CacheError(OAuthError):
    """Raised when a credential cache file cannot be written or removed."""

    pass
