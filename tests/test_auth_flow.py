"""
tests/test_auth_flow.py -- End-to-end tests for the OAuth and token endpoints.

Runs through the real ASGI stack with the api_client fixture
(follow_redirects=False), so redirects are asserted on their Location header.
The client's cookie jar plays the browser: it keeps the binding cookie set
by the login start and sends it back to the callback.

Coverage:
  - GET /api/oauth/{provider}: 307 to the provider with a signed state and
    an HttpOnly binding cookie
  - GET /api/oauth/{provider}/callback: 307 with tokens, or with ?error=;
    no cookie or a foreign state -> ?error=invalid_state
  - GET /api/oauth/debug/token: default landing message
  - POST /api/auth/refresh: 200 rotation, replay 401, expiry 401, bad body 400,
    429 once the per-IP limit is spent [H2]
  - GET /api/auth/me: 200 with a valid access token, 401 otherwise
  - GET /api/auth/providers: configured providers only
  - Unknown provider -> 400 in the error envelope
  - Cache-Control: no-store on every response carrying tokens [M5]
"""

from __future__ import annotations

from urllib.parse import parse_qs, urlsplit

from fastapi.testclient import TestClient

from api.limiter import limiter
from api.routes.auth import BINDING_COOKIE
from auth.tokens import LoginStateCodec
from core.config import get_settings
from support import ACCESS_TTL, FRONTEND_ORIGIN, REFRESH_TTL, FakeClock, FakeProvider

BAD_REFRESH = {
    "error": {
        "code": "invalid_refresh_token",
        "message": "Invalid or expired refresh token.",
        "detail": None,
    }
}

UNKNOWN_REFRESH_TOKEN = "00000000-0000-4000-8000-000000000000"


def _query(url: str) -> dict[str, list[str]]:
    return parse_qs(urlsplit(url).query)


def _start(client: TestClient, **params: str) -> str:
    """Begin a login and return the state the provider would echo back."""
    resp = client.get("/api/oauth/fake", params=params)
    assert resp.status_code == 307, f"Expected 307, got {resp.status_code}: {resp.text}"
    return _query(resp.headers["location"])["state"][0]


def _callback(client: TestClient, **params: str):
    return client.get("/api/oauth/fake/callback", params=params)


def _login(client: TestClient, code: str = "code-1") -> dict[str, str]:
    """Drive start + callback and return the token query parameters of the redirect."""
    state = _start(client)
    resp = _callback(client, code=code, state=state)
    assert resp.status_code == 307, f"Expected 307, got {resp.status_code}: {resp.text}"
    query = _query(resp.headers["location"])
    return {"access_token": query["access_token"][0], "refresh_token": query["refresh_token"][0]}


class TestLoginRedirect:
    def test_redirects_to_provider(self, api_client: TestClient, states: LoginStateCodec) -> None:
        resp = api_client.get("/api/oauth/fake")
        assert resp.status_code == 307
        location = resp.headers["location"]
        assert location.startswith(FakeProvider.authorize_endpoint)

        binding = api_client.cookies.get(BINDING_COOKIE)
        assert binding
        assert states.open(_query(location)["state"][0], binding) == "http://testserver/api/oauth/debug/token"

    def test_binding_cookie_attributes(self, api_client: TestClient) -> None:
        resp = api_client.get("/api/oauth/fake")
        set_cookie = resp.headers["set-cookie"].lower()
        assert set_cookie.startswith(f"{BINDING_COOKIE}=")
        assert "httponly" in set_cookie
        assert "samesite=lax" in set_cookie
        assert "path=/api/oauth" in set_cookie
        assert "secure" not in set_cookie  # base_url is plain http in tests

    def test_state_carries_callback_target_and_frontend_redirect(
        self, api_client: TestClient, states: LoginStateCodec
    ) -> None:
        state = _start(api_client, c=f"{FRONTEND_ORIGIN}/auth/done", r="/dashboard")
        target = states.open(state, api_client.cookies.get(BINDING_COOKIE))
        assert target == f"{FRONTEND_ORIGIN}/auth/done?r=%2Fdashboard"

    def test_unknown_provider_is_400(self, api_client: TestClient) -> None:
        resp = api_client.get("/api/oauth/myspace")
        assert resp.status_code == 400, f"Expected 400, got {resp.status_code}: {resp.text}"
        assert resp.json()["error"]["code"] == "unsupported_provider"
        assert BINDING_COOKIE not in api_client.cookies


class TestCallback:
    def test_success_redirects_with_tokens(self, api_client: TestClient) -> None:
        state = _start(api_client, c=f"{FRONTEND_ORIGIN}/cb")
        resp = _callback(api_client, code="code-1", state=state)
        assert resp.status_code == 307
        assert resp.headers["cache-control"] == "no-store"
        location = resp.headers["location"]
        assert location.startswith(f"{FRONTEND_ORIGIN}/cb?")
        query = _query(location)
        assert query["access_token"][0]
        assert query["refresh_token"][0]

    def test_binding_cookie_is_single_use(self, api_client: TestClient) -> None:
        state = _start(api_client)
        first = _callback(api_client, code="code-1", state=state)
        assert "access_token" in _query(first.headers["location"])
        assert BINDING_COOKIE not in api_client.cookies

        replay = _callback(api_client, code="code-1", state=state)
        assert _query(replay.headers["location"]) == {"error": ["invalid_state"]}

    def test_default_landing(self, api_client: TestClient) -> None:
        resp = _callback(api_client, code="code-1", state=_start(api_client))
        location = resp.headers["location"]
        assert location.startswith("http://testserver/api/oauth/debug/token?")

        landing = api_client.get(urlsplit(location).path)
        assert landing.status_code == 200
        assert landing.json() == {"message": "Login successful"}

    def test_provider_error_redirects_with_reason(self, api_client: TestClient) -> None:
        state = _start(api_client, c=f"{FRONTEND_ORIGIN}/cb")
        resp = _callback(api_client, error="access_denied", state=state)
        assert resp.status_code == 307
        assert resp.headers["location"] == f"{FRONTEND_ORIGIN}/cb?error=access_denied"

    def test_missing_code(self, api_client: TestClient) -> None:
        resp = _callback(api_client, state=_start(api_client))
        assert resp.status_code == 307
        assert _query(resp.headers["location"]) == {"error": ["missing_code"]}

    def test_exchange_failure(self, api_client: TestClient, provider: FakeProvider) -> None:
        provider.exchange_error = RuntimeError("invalid_grant")
        resp = _callback(api_client, code="stale", state=_start(api_client))
        assert _query(resp.headers["location"]) == {"error": ["exchange_failed"]}

    def test_identity_failure(self, api_client: TestClient, provider: FakeProvider) -> None:
        provider.identity_error = RuntimeError("unverified")
        resp = _callback(api_client, code="code-1", state=_start(api_client))
        assert _query(resp.headers["location"]) == {"error": ["identity_fetch_failed"]}

    def test_open_redirect_blocked(self, api_client: TestClient) -> None:
        state = _start(api_client, c="https://evil.example.com/steal")
        resp = _callback(api_client, code="code-1", state=state)
        assert not resp.headers["location"].startswith("https://evil.example.com")


class TestLoginBinding:
    """A callback link crafted elsewhere must not log this browser in."""

    def test_callback_without_cookie(self, api_client: TestClient, provider: FakeProvider) -> None:
        # The state was issued to another browser; this one never started a login.
        state = _start(api_client, c=f"{FRONTEND_ORIGIN}/cb")
        api_client.cookies.clear()

        resp = _callback(api_client, code="attacker-code", state=state)
        assert resp.status_code == 307
        assert resp.headers["location"] == "http://testserver/api/oauth/debug/token?error=invalid_state"
        assert provider.exchanged_codes == []

    def test_callback_without_state(self, api_client: TestClient, provider: FakeProvider) -> None:
        _start(api_client)
        resp = _callback(api_client, code="code-1")
        assert _query(resp.headers["location"]) == {"error": ["invalid_state"]}
        assert provider.exchanged_codes == []

    def test_plain_url_state_rejected(self, api_client: TestClient) -> None:
        _start(api_client)
        resp = _callback(api_client, code="code-1", state=f"{FRONTEND_ORIGIN}/cb")
        assert resp.headers["location"] == "http://testserver/api/oauth/debug/token?error=invalid_state"

    def test_state_from_another_login(self, api_client: TestClient) -> None:
        stale_state = _start(api_client, c=f"{FRONTEND_ORIGIN}/old")
        _start(api_client, c=f"{FRONTEND_ORIGIN}/new")  # replaces the binding cookie
        resp = _callback(api_client, code="code-1", state=stale_state)
        assert _query(resp.headers["location"]) == {"error": ["invalid_state"]}

    def test_expired_state(self, api_client: TestClient, clock: FakeClock, states: LoginStateCodec) -> None:
        state = _start(api_client)
        clock.advance(states.lifetime_seconds + 1)
        resp = _callback(api_client, code="code-1", state=state)
        assert _query(resp.headers["location"]) == {"error": ["invalid_state"]}


class TestRefreshEndpoint:
    def test_full_lifecycle(self, api_client: TestClient, clock: FakeClock) -> None:
        """Login, wait out the access token, refresh, use the new token, replay the old one."""
        tokens = _login(api_client)
        me = api_client.get("/api/auth/me", headers={"Authorization": f"Bearer {tokens['access_token']}"})
        assert me.status_code == 200
        assert me.json()["email"] == "alice@example.com"

        clock.advance(ACCESS_TTL + 1)
        expired = api_client.get("/api/auth/me", headers={"Authorization": f"Bearer {tokens['access_token']}"})
        assert expired.status_code == 401

        resp = api_client.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert resp.status_code == 200, f"Expected 200, got {resp.status_code}: {resp.text}"
        assert resp.headers["cache-control"] == "no-store"
        new = resp.json()
        assert new["refresh_token"] != tokens["refresh_token"]

        me = api_client.get("/api/auth/me", headers={"Authorization": f"Bearer {new['access_token']}"})
        assert me.status_code == 200

        replay = api_client.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert replay.status_code == 401
        assert replay.json() == BAD_REFRESH

        # The replay did not burn the live successor.
        again = api_client.post("/api/auth/refresh", json={"refresh_token": new["refresh_token"]})
        assert again.status_code == 200, f"Expected 200, got {again.status_code}: {again.text}"

    def test_expired_refresh_token(self, api_client: TestClient, clock: FakeClock) -> None:
        tokens = _login(api_client)
        clock.advance(REFRESH_TTL + 1)
        resp = api_client.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert resp.status_code == 401
        assert resp.json() == BAD_REFRESH

    def test_unknown_refresh_token_same_body(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/auth/refresh", json={"refresh_token": UNKNOWN_REFRESH_TOKEN})
        assert resp.status_code == 401
        assert resp.json() == BAD_REFRESH

    def test_uppercase_uuid_is_canonicalized(self, api_client: TestClient) -> None:
        tokens = _login(api_client)
        resp = api_client.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"].upper()})
        assert resp.status_code == 200

    def test_not_a_uuid_is_400(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/auth/refresh", json={"refresh_token": "definitely-not-a-uuid"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_missing_body_is_400(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/auth/refresh")
        assert resp.status_code == 400


class TestRefreshRateLimit:
    def test_limit_returns_429_envelope(self, api_client: TestClient) -> None:
        settings = get_settings()
        original = settings.refresh_rate_limit
        settings.refresh_rate_limit = "2/minute"
        limiter.reset()
        try:
            statuses = []
            for _ in range(3):
                resp = api_client.post("/api/auth/refresh", json={"refresh_token": UNKNOWN_REFRESH_TOKEN})
                statuses.append(resp.status_code)
        finally:
            settings.refresh_rate_limit = original
            limiter.reset()

        assert statuses == [401, 401, 429]
        body = resp.json()
        assert body["error"]["code"] == "rate_limited"
        assert body["error"]["message"] == "Too many requests."
        assert "retry-after" in resp.headers

    def test_limit_is_per_route(self, api_client: TestClient) -> None:
        settings = get_settings()
        original = settings.refresh_rate_limit
        settings.refresh_rate_limit = "1/minute"
        limiter.reset()
        try:
            api_client.post("/api/auth/refresh", json={"refresh_token": UNKNOWN_REFRESH_TOKEN})
            blocked = api_client.post("/api/auth/refresh", json={"refresh_token": UNKNOWN_REFRESH_TOKEN})
            providers = api_client.get("/api/auth/providers")
        finally:
            settings.refresh_rate_limit = original
            limiter.reset()

        assert blocked.status_code == 429
        assert providers.status_code == 200


class TestIdentityEndpoints:
    def test_me_requires_auth(self, api_client: TestClient) -> None:
        resp = api_client.get("/api/auth/me")
        assert resp.status_code == 401
        assert resp.headers["www-authenticate"] == "Bearer"
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_me_rejects_garbage(self, api_client: TestClient) -> None:
        resp = api_client.get("/api/auth/me", headers={"Authorization": "Bearer not.a.token"})
        assert resp.status_code == 401

    def test_providers_listing(self, api_client: TestClient) -> None:
        resp = api_client.get("/api/auth/providers")
        assert resp.status_code == 200
        assert resp.json() == [{"name": "fake", "label": "Fake IdP"}]
