"""HTTP tests for the relay endpoints."""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from auth_relay.client import DEFAULT_POLL_INTERVAL
from auth_relay.config import Settings, get_settings
from auth_relay.exchange import MissingCredentialsError, ProviderRejectedError
from auth_relay.main import create_app
from auth_relay.rate_limit import limiter
from auth_relay.store import MemoryEntryStore
from auth_relay.tokens import TokenController, TokenStatus
from tests.fakes import FakeExchange, UnavailableEntryStore, make_record


@pytest.fixture(autouse=True)
def reset_rate_limits():
    """Every test starts with an empty rate-limit window."""
    limiter.reset()
    yield
    limiter.reset()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        client_id="client-id",
        client_secret="client-secret",
        port=9090,
    )


@pytest.fixture
def controller() -> TokenController:
    return TokenController(MemoryEntryStore())


@pytest.fixture
def exchange() -> FakeExchange:
    return FakeExchange(record=make_record(access_token="ya29.tok", refresh_token="1//ref"))


@pytest.fixture
def app(settings: Settings, controller: TokenController, exchange: FakeExchange) -> FastAPI:
    app = create_app()
    app.state.controller = controller
    app.state.exchange = exchange
    app.dependency_overrides[get_settings] = lambda: settings
    return app


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    # Not used as a context manager: the lifespan would replace injected state
    return TestClient(app, raise_server_exceptions=False)


class TestCallback:
    """Tests for GET /callback."""

    def test_success_stores_token_and_renders_page(
        self, client: TestClient, exchange: FakeExchange
    ) -> None:
        """A successful exchange parks the token and renders the success page."""
        response = client.get("/callback", params={"code": "abc", "state": "state-1"})

        assert response.status_code == 200
        assert "text/html" in response.headers["content-type"]
        assert "Authorization Successful" in response.text
        assert "state-1" in response.text
        assert exchange.calls == [
            {
                "code": "abc",
                "state": "state-1",
                "client_id": "client-id",
                "client_secret": "client-secret",
                "redirect_uri": "http://localhost:9090/callback",
            }
        ]

        token = client.get("/token/state-1")
        assert token.status_code == 200
        assert token.json()["access_token"] == "ya29.tok"

    def test_provider_error_takes_precedence(
        self, client: TestClient, exchange: FakeExchange
    ) -> None:
        """An error parameter wins over a code and skips the exchange."""
        response = client.get(
            "/callback",
            params={"error": "access_denied", "error_description": "User denied", "code": "abc"},
        )
        assert response.status_code == 400
        assert "OAuth error: access_denied - User denied" in response.text
        assert exchange.calls == []

    def test_missing_code(self, client: TestClient) -> None:
        """A callback without a code is rejected."""
        response = client.get("/callback", params={"state": "state-1"})
        assert response.status_code == 400
        assert "Missing authorization code" in response.text

    def test_missing_state(self, client: TestClient) -> None:
        """A callback without a state is rejected."""
        response = client.get("/callback", params={"code": "abc"})
        assert response.status_code == 400
        assert "Missing state parameter" in response.text

    def test_state_is_escaped(self, client: TestClient) -> None:
        """The state is HTML-escaped on the success page."""
        response = client.get("/callback", params={"code": "abc", "state": "<script>"})
        assert response.status_code == 200
        assert "<script>" not in response.text
        assert "&lt;script&gt;" in response.text

    def test_missing_server_credentials(self, app: FastAPI, client: TestClient) -> None:
        """Callbacks fail while the server has no OAuth credentials."""
        app.dependency_overrides[get_settings] = lambda: Settings(_env_file=None)

        response = client.get("/callback", params={"code": "abc", "state": "state-1"})

        assert response.status_code == 500
        assert "missing OAuth credentials" in response.text

    def test_exchange_missing_credentials(
        self, client: TestClient, exchange: FakeExchange
    ) -> None:
        """An exchange reporting missing credentials answers 500."""
        exchange.error = MissingCredentialsError("no creds")
        response = client.get("/callback", params={"code": "abc", "state": "state-1"})
        assert response.status_code == 500
        assert "missing OAuth credentials" in response.text

    def test_exchange_failure_stores_nothing(
        self, client: TestClient, exchange: FakeExchange, controller: TokenController
    ) -> None:
        """A failed exchange hides provider details and parks nothing."""
        exchange.error = ProviderRejectedError("bad code", 400, '{"error":"invalid_grant"}')

        response = client.get("/callback", params={"code": "abc", "state": "state-1"})

        assert response.status_code == 500
        assert "Failed to exchange authorization code for token" in response.text
        assert "invalid_grant" not in response.text
        assert client.get("/status/state-1").json() == {"status": "not_found"}

    def test_store_outage(self, app: FastAPI, client: TestClient) -> None:
        """A store outage while parking the token answers 500."""
        app.state.controller = TokenController(UnavailableEntryStore())
        response = client.get("/callback", params={"code": "abc", "state": "state-1"})
        assert response.status_code == 500
        assert "Authorization Failed" in response.text


class TestStatus:
    """Tests for GET /status/{state}."""

    @pytest.mark.asyncio
    async def test_reports_each_state(
        self, client: TestClient, controller: TokenController
    ) -> None:
        """Status reports every lifecycle state."""
        await controller.store("ready", make_record())
        await controller.store("pending", make_record(access_token=""))
        await controller.store("used", make_record())
        await controller.consume("used")

        assert client.get("/status/ready").json() == {"status": "ready"}
        assert client.get("/status/pending").json() == {"status": "pending"}
        assert client.get("/status/used").json() == {"status": "consumed"}
        assert client.get("/status/unknown").json() == {"status": "not_found"}

    @pytest.mark.asyncio
    async def test_status_does_not_consume(
        self, client: TestClient, controller: TokenController
    ) -> None:
        """Repeated status checks leave the token ready."""
        await controller.store("s", make_record())
        for _ in range(3):
            assert client.get("/status/s").json() == {"status": "ready"}
        assert await controller.status("s") is TokenStatus.READY


class TestToken:
    """Tests for GET /token/{state}."""

    @pytest.mark.asyncio
    async def test_ready_then_gone(self, client: TestClient, controller: TokenController) -> None:
        """The token is returned once, then reported consumed."""
        await controller.store("s", make_record())

        first = client.get("/token/s")
        assert first.status_code == 200
        assert first.json() == {
            "access_token": "ya29.access",
            "refresh_token": "1//refresh",
            "token_type": "Bearer",
            "expiry": "2026-01-01T13:00:00+00:00",
        }

        second = client.get("/token/s")
        assert second.status_code == 410
        assert second.json() == {
            "error": "consumed",
            "message": "Token has already been retrieved",
        }

    @pytest.mark.asyncio
    async def test_pending(self, client: TestClient, controller: TokenController) -> None:
        """A record without an access token answers 202."""
        await controller.store("s", make_record(access_token=""))
        response = client.get("/token/s")
        assert response.status_code == 202
        assert response.json() == {
            "status": "pending",
            "message": "Token not yet available, please try again",
        }

    def test_not_found(self, client: TestClient) -> None:
        """Unknown states answer 404."""
        response = client.get("/token/unknown")
        assert response.status_code == 404
        assert response.json() == {
            "error": "not_found",
            "message": "Token not found or expired",
        }

    def test_store_outage_is_not_found(self, app: FastAPI, client: TestClient) -> None:
        """A store outage reads as not found."""
        app.state.controller = TokenController(UnavailableEntryStore())
        assert client.get("/token/s").status_code == 404

    def test_post_not_allowed(self, client: TestClient) -> None:
        """Only GET is accepted."""
        assert client.post("/token/s").status_code == 405


class TestRateLimiting:
    """Per-client limits on the relay endpoints."""

    def test_callback_limited(self, client: TestClient) -> None:
        """The callback rejects requests beyond its per-minute limit."""
        for _ in range(20):
            assert client.get("/callback").status_code == 400

        response = client.get("/callback")
        assert response.status_code == 429
        assert response.json() == {"detail": "Rate limit exceeded. Please try again later."}

    def test_poll_client_pace_not_limited(self, client: TestClient) -> None:
        """A minute of polling at the client's interval is never throttled."""
        # One minute of polling every 2 seconds
        polls_per_minute = int(60 / DEFAULT_POLL_INTERVAL)
        for _ in range(polls_per_minute):
            assert client.get("/token/s").status_code == 404

    def test_polling_endpoints_limited(self, client: TestClient) -> None:
        """Status and token reject requests beyond their per-minute limit."""
        for _ in range(60):
            assert client.get("/status/s").status_code == 200

        assert client.get("/status/s").status_code == 429

    def test_health_not_limited(self, client: TestClient) -> None:
        """Health checks are exempt from rate limiting."""
        for _ in range(25):
            assert client.get("/health").status_code == 200


class TestHealthAndPages:
    """Tests for health checks and static pages."""

    def test_health(self, client: TestClient) -> None:
        """Liveness reports ok with a timestamp."""
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert "timestamp" in body

    def test_readiness(self, client: TestClient) -> None:
        """Readiness reports environment and store backend."""
        body = client.get("/health/ready").json()
        assert body == {"status": "ready", "environment": "development", "store_backend": "memory"}

    @pytest.mark.parametrize(
        ("path", "content_type"),
        [
            ("/privacy", "text/html"),
            ("/terms", "text/html"),
            ("/robots.txt", "text/plain"),
        ],
    )
    def test_static_pages(self, client: TestClient, path: str, content_type: str) -> None:
        """Legal pages and robots.txt are served with their content types."""
        response = client.get(path)
        assert response.status_code == 200
        assert content_type in response.headers["content-type"]


class TestUnhandledErrors:
    """Unexpected exceptions become a generic 500."""

    def test_unexpected_exception(self, app: FastAPI, client: TestClient) -> None:
        """An unexpected error becomes a generic 500."""
        class BrokenController:
            async def status(self, state: str):
                raise RuntimeError("boom")

        app.state.controller = BrokenController()

        response = client.get("/status/s")

        assert response.status_code == 500
        assert response.json() == {"detail": "Internal server error"}
