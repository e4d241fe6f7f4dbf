"""Tests for the authenticating transport."""

import asyncio
import json
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest

from mcp_dump_auth.oauth.oauth_config import AuthConfig
from mcp_dump_auth.oauth.transport import OAuthTransport, create_oauth_client
from mcp_dump_auth.storage.registration_store import RegistrationStore
from mcp_dump_auth.storage.token_store import Token, TokenStore
from mcp_dump_auth.utils.errors import (
    AuthorizationCancelledError,
    AuthorizationError,
    ConfigurationError,
)

RESOURCE_URI = "https://mcp.example.com/mcp"


def fresh_token(access_token: str) -> Token:
    return Token(
        access_token=access_token,
        refresh_token=f"{access_token}-refresh",
        expiry=datetime.now(UTC) + timedelta(hours=1),
    )


class FakeAuthorizer:
    """Counts flow runs and hands out tokens t1, t2, ..."""

    def __init__(self, delay: float = 0.0, error: Exception | None = None):
        self.delay = delay
        self.error = error
        self.calls = 0
        self.configs: list[AuthConfig] = []

    async def __call__(self, config: AuthConfig) -> Token:
        self.calls += 1
        self.configs.append(config)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return fresh_token(f"t{self.calls}")


class Backend:
    """Protected resource that records Authorization headers."""

    def __init__(self, rejected: set[str] | None = None):
        self.rejected = rejected or set()
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        if token in self.rejected:
            return httpx.Response(401)
        return httpx.Response(200, json={"token": token})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    @property
    def tokens(self) -> list[str]:
        return [r.headers.get("Authorization", "") for r in self.requests]


@pytest.fixture
def stores(temp_dir: Path) -> tuple[TokenStore, RegistrationStore]:
    return (
        TokenStore(storage_path=temp_dir / "tokens", encryption_key=""),
        RegistrationStore(storage_path=temp_dir / "registrations", encryption_key=""),
    )


def make_transport(
    config: AuthConfig,
    backend: Backend,
    authorizer: FakeAuthorizer,
    stores: tuple[TokenStore, RegistrationStore],
    **kwargs,
) -> OAuthTransport:
    token_store, registration_store = stores
    return OAuthTransport(
        config,
        backend.transport,
        token_store=token_store,
        registration_store=registration_store,
        authorize_fn=authorizer,
        **kwargs,
    )


class TestBearerInjection:
    """Tests for adding the bearer token to requests."""

    @pytest.mark.asyncio
    async def test_first_request_runs_flow(self, auth_config, stores):
        """Test first request runs flow."""
        backend = Backend()
        authorizer = FakeAuthorizer()
        transport = make_transport(auth_config, backend, authorizer, stores)

        async with httpx.AsyncClient(transport=transport) as client:
            response = await client.get(RESOURCE_URI)
            await client.get(RESOURCE_URI)

        assert response.status_code == 200
        assert authorizer.calls == 1
        assert backend.tokens == ["Bearer t1", "Bearer t1"]

    @pytest.mark.asyncio
    async def test_token_saved_to_cache(self, auth_config, stores):
        """Test token saved to cache."""
        token_store = stores[0]
        transport = make_transport(auth_config, Backend(), FakeAuthorizer(), stores)

        async with httpx.AsyncClient(transport=transport) as client:
            await client.get(RESOURCE_URI)

        assert token_store.load_token(RESOURCE_URI).access_token == "t1"

    @pytest.mark.asyncio
    async def test_cached_token_skips_flow(self, auth_config, stores):
        """Test cached token skips flow."""
        stores[0].save_token(fresh_token("cached"), RESOURCE_URI)
        backend = Backend()
        authorizer = FakeAuthorizer()
        transport = make_transport(auth_config, backend, authorizer, stores)

        async with httpx.AsyncClient(transport=transport) as client:
            await client.get(RESOURCE_URI)

        assert authorizer.calls == 0
        assert backend.tokens == ["Bearer cached"]

    @pytest.mark.asyncio
    async def test_cache_disabled(self, auth_config, stores):
        """Test cache disabled."""
        stores[0].save_token(fresh_token("cached"), RESOURCE_URI)
        config = auth_config.model_copy(update={"use_cache": False})
        backend = Backend()
        authorizer = FakeAuthorizer()
        transport = make_transport(config, backend, authorizer, stores)

        async with httpx.AsyncClient(transport=transport) as client:
            await client.get(RESOURCE_URI)

        assert authorizer.calls == 1
        assert stores[0].load_token(RESOURCE_URI).access_token == "cached"

    @pytest.mark.asyncio
    async def test_existing_authorization_header_replaced(self, auth_config, stores):
        """Test existing authorization header replaced."""
        backend = Backend()
        transport = make_transport(auth_config, backend, FakeAuthorizer(), stores)

        async with httpx.AsyncClient(transport=transport) as client:
            await client.get(RESOURCE_URI, headers={"Authorization": "Bearer stale"})

        assert backend.tokens == ["Bearer t1"]


class TestSingleFlight:
    """Tests for concurrent callers sharing one flow."""

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_flow(self, auth_config, stores):
        """Test concurrent requests share one flow."""
        backend = Backend()
        authorizer = FakeAuthorizer(delay=0.05)
        transport = make_transport(auth_config, backend, authorizer, stores)

        async with httpx.AsyncClient(transport=transport) as client:
            responses = await asyncio.gather(*(client.get(RESOURCE_URI) for _ in range(10)))

        assert authorizer.calls == 1
        assert all(r.status_code == 200 for r in responses)
        assert set(backend.tokens) == {"Bearer t1"}

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_error(self, auth_config, stores):
        """Test concurrent callers share error."""
        error = AuthorizationError("user went away")
        authorizer = FakeAuthorizer(delay=0.05, error=error)
        transport = make_transport(auth_config, Backend(), authorizer, stores)

        results = await asyncio.gather(
            *(transport.get_valid_token() for _ in range(10)), return_exceptions=True
        )

        assert authorizer.calls == 1
        assert all(r is error for r in results)

    @pytest.mark.asyncio
    async def test_error_is_sticky_until_invalidated(self, auth_config, stores):
        """Test error is sticky until invalidated."""
        authorizer = FakeAuthorizer(error=AuthorizationError("denied"))
        transport = make_transport(auth_config, Backend(), authorizer, stores)

        for _ in range(3):
            with pytest.raises(AuthorizationError, match="denied"):
                await transport.get_valid_token()
        assert authorizer.calls == 1

        authorizer.error = None
        await transport.invalidate()
        token = await transport.get_valid_token()

        assert token.access_token == "t2"
        assert authorizer.calls == 2

    @pytest.mark.asyncio
    async def test_cancellation_propagates_to_waiters(self, auth_config, stores):
        """Test cancellation propagates to waiters."""
        started = asyncio.Event()

        async def never_finishes(config: AuthConfig) -> Token:
            started.set()
            await asyncio.Event().wait()
            raise AssertionError("unreachable")

        token_store, registration_store = stores
        transport = OAuthTransport(
            auth_config,
            Backend().transport,
            token_store=token_store,
            registration_store=registration_store,
            authorize_fn=never_finishes,
        )

        leader = asyncio.create_task(transport.get_valid_token())
        await started.wait()
        waiter = asyncio.create_task(transport.get_valid_token())
        await asyncio.sleep(0.01)

        leader.cancel()
        with pytest.raises(asyncio.CancelledError):
            await leader
        with pytest.raises(AuthorizationCancelledError):
            await waiter
        with pytest.raises(AuthorizationCancelledError):
            await transport.get_valid_token()


class TestRefresh:
    """Tests for refresh through the token source."""

    @staticmethod
    def token_endpoint(calls: list) -> httpx.MockTransport:
        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={"access_token": "refreshed", "expires_in": 3600})

        return httpx.MockTransport(handler)

    @pytest.mark.asyncio
    async def test_refresh_saves_once(self, auth_config, stores):
        """Test the cache is only written when the token changes."""
        token_store = stores[0]
        token_store.save_token(
            Token(
                access_token="expiring",
                refresh_token="r",
                expiry=datetime.now(UTC) + timedelta(seconds=5),
            ),
            RESOURCE_URI,
        )
        calls: list[httpx.Request] = []
        backend = Backend()
        authorizer = FakeAuthorizer()
        transport = make_transport(
            auth_config, backend, authorizer, stores, http_transport=self.token_endpoint(calls)
        )

        with patch.object(token_store, "save_token", wraps=token_store.save_token) as mock_save:
            async with httpx.AsyncClient(transport=transport) as client:
                await client.get(RESOURCE_URI)
                await client.get(RESOURCE_URI)
                await client.get(RESOURCE_URI)

        assert len(calls) == 1
        assert authorizer.calls == 0
        assert mock_save.call_count == 1
        assert backend.tokens == ["Bearer refreshed"] * 3
        saved = token_store.load_token(RESOURCE_URI)
        assert saved.access_token == "refreshed"
        assert saved.refresh_token == "r"

    @pytest.mark.asyncio
    async def test_failed_refresh_falls_back_to_flow(self, auth_config, stores):
        """Test failed refresh falls back to flow."""
        stores[0].save_token(
            Token(access_token="expired", expiry=datetime.now(UTC) - timedelta(minutes=1)),
            RESOURCE_URI,
        )
        backend = Backend()
        authorizer = FakeAuthorizer()
        transport = make_transport(auth_config, backend, authorizer, stores)

        async with httpx.AsyncClient(transport=transport) as client:
            await client.get(RESOURCE_URI)

        assert authorizer.calls == 1
        assert backend.tokens == ["Bearer t1"]

    @pytest.mark.asyncio
    async def test_cached_token_refreshed_after_discovery(self, stores):
        """Test an expired cached token is refreshed once the token endpoint is discovered."""
        stores[0].save_token(
            Token(
                access_token="expired",
                refresh_token="r1",
                expiry=datetime.now(UTC) - timedelta(minutes=1),
            ),
            RESOURCE_URI,
        )
        metadata = {
            "issuer": "https://auth.example.com",
            "authorization_endpoint": "https://auth.example.com/authorize",
            "token_endpoint": "https://auth.example.com/token",
            "code_challenge_methods_supported": ["S256"],
        }
        refreshes: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            url = str(request.url)
            if url == RESOURCE_URI:
                return httpx.Response(401)
            if url == "https://mcp.example.com/.well-known/oauth-authorization-server":
                return httpx.Response(200, json=metadata)
            if url == "https://auth.example.com/token":
                refreshes.append(request)
                return httpx.Response(200, json={"access_token": "refreshed", "expires_in": 3600})
            return httpx.Response(404)

        backend = Backend()
        authorizer = FakeAuthorizer()
        config = AuthConfig(resource_uri=RESOURCE_URI, client_id="static-client")
        transport = make_transport(
            config, backend, authorizer, stores, http_transport=httpx.MockTransport(handler)
        )

        async with httpx.AsyncClient(transport=transport) as client:
            await client.get(RESOURCE_URI)

        assert authorizer.calls == 0
        assert len(refreshes) == 1
        params = dict(httpx.QueryParams(refreshes[0].content.decode()))
        assert params["refresh_token"] == "r1"
        assert params["client_id"] == "static-client"
        assert backend.tokens == ["Bearer refreshed"]
        assert transport.config.token_url == "https://auth.example.com/token"
        assert stores[0].load_token(RESOURCE_URI).access_token == "refreshed"


class TestUnauthorizedRetry:
    """Tests for re-authorization after a 401."""

    @pytest.mark.asyncio
    async def test_401_reauthorizes_and_retries_once(self, auth_config, stores):
        """Test 401 reauthorizes and retries once."""
        backend = Backend(rejected={"t1"})
        authorizer = FakeAuthorizer()
        transport = make_transport(auth_config, backend, authorizer, stores)

        async with httpx.AsyncClient(transport=transport) as client:
            response = await client.post(RESOURCE_URI, content=b'{"jsonrpc": "2.0"}')

        assert response.status_code == 200
        assert authorizer.calls == 2
        assert backend.tokens == ["Bearer t1", "Bearer t2"]
        assert [r.content for r in backend.requests] == [b'{"jsonrpc": "2.0"}'] * 2
        assert stores[0].load_token(RESOURCE_URI).access_token == "t2"

    @pytest.mark.asyncio
    async def test_second_401_is_returned(self, auth_config, stores):
        """Test second 401 is returned."""
        backend = Backend(rejected={"t1", "t2", "t3"})
        authorizer = FakeAuthorizer()
        transport = make_transport(auth_config, backend, authorizer, stores)

        async with httpx.AsyncClient(transport=transport) as client:
            response = await client.get(RESOURCE_URI)

        assert response.status_code == 401
        assert authorizer.calls == 2
        assert len(backend.requests) == 2

    @pytest.mark.asyncio
    async def test_concurrent_401s_share_one_reauthorization(self, auth_config, stores):
        """Test concurrent 401s share one reauthorization."""
        backend = Backend(rejected={"t1"})
        authorizer = FakeAuthorizer(delay=0.02)
        transport = make_transport(auth_config, backend, authorizer, stores)

        async with httpx.AsyncClient(transport=transport) as client:
            responses = await asyncio.gather(*(client.get(RESOURCE_URI) for _ in range(5)))

        assert all(r.status_code == 200 for r in responses)
        assert authorizer.calls == 2
        assert backend.tokens[-1] == "Bearer t2"


class TestDiscoveryAndRegistration:
    """Tests for resolving endpoints and client identity on first use."""

    @pytest.mark.asyncio
    async def test_discovers_and_registers(self, stores):
        """Test discovers and registers."""
        metadata = {
            "issuer": "https://auth.example.com",
            "authorization_endpoint": "https://auth.example.com/authorize",
            "token_endpoint": "https://auth.example.com/token",
            "device_authorization_endpoint": "https://auth.example.com/device",
            "registration_endpoint": "https://auth.example.com/register",
            "code_challenge_methods_supported": ["S256"],
        }
        registrations: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            url = str(request.url)
            if url == RESOURCE_URI:
                return httpx.Response(401)
            if url == "https://mcp.example.com/.well-known/oauth-authorization-server":
                return httpx.Response(200, json=metadata)
            if url == "https://auth.example.com/register":
                registrations.append(request)
                return httpx.Response(201, json={"client_id": "dcr-client"})
            return httpx.Response(404)

        authorizer = FakeAuthorizer()
        config = AuthConfig(resource_uri=RESOURCE_URI)
        transport = make_transport(
            config, Backend(), authorizer, stores, http_transport=httpx.MockTransport(handler)
        )

        token = await transport.get_valid_token()

        assert token.access_token == "t1"
        resolved = authorizer.configs[0]
        assert resolved.client_id == "dcr-client"
        assert resolved.token_url == "https://auth.example.com/token"
        assert resolved.device_auth_url == "https://auth.example.com/device"
        assert resolved.resource_uri == RESOURCE_URI
        assert len(registrations) == 1
        assert json.loads(registrations[0].content)["token_endpoint_auth_method"] == "none"
        assert stores[1].load_registration(RESOURCE_URI).client_id == "dcr-client"

    @pytest.mark.asyncio
    async def test_endpoint_without_oauth(self, stores):
        """Test endpoint without OAuth."""
        transport = make_transport(
            AuthConfig(resource_uri=RESOURCE_URI),
            Backend(),
            FakeAuthorizer(),
            stores,
            http_transport=httpx.MockTransport(lambda request: httpx.Response(200)),
        )

        with pytest.raises(ConfigurationError, match="did not request OAuth"):
            await transport.get_valid_token()


class TestCreateOAuthClient:
    """Tests for create_oauth_client()."""

    @pytest.mark.asyncio
    async def test_client_sends_cached_token(self, auth_config, stores):
        """Test client sends cached token."""
        token_store = stores[0]
        token_store.save_token(fresh_token("cached"), RESOURCE_URI)
        backend = Backend()

        async with create_oauth_client(
            auth_config, transport=backend.transport, token_store=token_store
        ) as client:
            response = await client.get(RESOURCE_URI)

        assert response.json() == {"token": "cached"}
