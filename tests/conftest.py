"""Pytest configuration and fixtures for mcp_dump_auth tests."""

import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from mcp_dump_auth.oauth.oauth_config import AuthConfig
from mcp_dump_auth.storage.registration_store import RegistrationStore
from mcp_dump_auth.storage.secure_file import generate_encryption_key
from mcp_dump_auth.storage.token_store import Token, TokenStore

RESOURCE_URI = "https://mcp.example.com/mcp"


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def token_store(temp_dir: Path) -> TokenStore:
    """Create a TokenStore with a temporary storage path."""
    return TokenStore(storage_path=temp_dir / "tokens", encryption_key="")


@pytest.fixture
def encrypted_token_store(temp_dir: Path) -> TokenStore:
    """Create a TokenStore with encryption enabled."""
    return TokenStore(
        storage_path=temp_dir / "encrypted_tokens", encryption_key=generate_encryption_key()
    )


@pytest.fixture
def registration_store(temp_dir: Path) -> RegistrationStore:
    """Create a RegistrationStore with a temporary storage path."""
    return RegistrationStore(storage_path=temp_dir / "registrations", encryption_key="")


@pytest.fixture
def sample_token() -> Token:
    """Create a token that is valid for another hour."""
    return Token(
        access_token="test_access_token_12345",
        refresh_token="test_refresh_token_67890",
        token_type="Bearer",
        expiry=datetime.now(UTC) + timedelta(hours=1),
        scopes=["mcp:tools", "mcp:resources"],
    )


@pytest.fixture
def expired_token() -> Token:
    """Create a token that expired an hour ago."""
    return Token(
        access_token="expired_access_token",
        refresh_token="expired_refresh_token",
        expiry=datetime.now(UTC) - timedelta(hours=1),
        scopes=["mcp:tools"],
    )


@pytest.fixture
def auth_config() -> AuthConfig:
    """Create a fully configured AuthConfig."""
    return AuthConfig(
        client_id="test-client",
        scopes=["mcp:tools", "mcp:resources"],
        resource_uri=RESOURCE_URI,
        auth_url="https://auth.example.com/authorize",
        token_url="https://auth.example.com/oauth/token",
    )


@pytest.fixture
def device_config() -> AuthConfig:
    """Create an AuthConfig with a device authorization endpoint."""
    return AuthConfig(
        client_id="test-client",
        scopes=["mcp:tools", "mcp:resources"],
        resource_uri=RESOURCE_URI,
        device_auth_url="https://auth.example.com/device/auth",
        token_url="https://auth.example.com/oauth/token",
    )
