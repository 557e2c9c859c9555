"""
tests/support.py -- Test doubles and constants shared by the test modules.

Kept out of conftest.py so test modules can import them by name.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from auth.errors import CodeExchangeError, IdentityFetchError
from auth.models import ExternalIdentity
from auth.oauth import OAuthProvider

TEST_SECRET = "test-secret-key-that-is-long-enough-0123456789"
TEST_BASE_URL = "http://testserver"
FRONTEND_ORIGIN = "https://app.example.com"
ACCESS_TTL = 900
REFRESH_TTL = 1800
START = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock returning a settable aware UTC datetime."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeProvider(OAuthProvider):
    """Provider whose network steps are scripted by the test.

    authorization_url() is inherited, so the authlib URL builder still runs.
    Set exchange_error / identity_error to make the next call fail.
    """

    name = "fake"
    label = "Fake IdP"
    authorize_endpoint = "https://idp.example.com/authorize"
    token_endpoint = "https://idp.example.com/token"  # noqa: S105
    scope = "openid email"

    def __init__(self) -> None:
        super().__init__("fake-client-id", "fake-client-secret", f"{TEST_BASE_URL}/api/oauth/fake/callback")
        self.identity = ExternalIdentity(external_id="ext-1", email="alice@example.com", name="Alice")
        self.exchange_error: Exception | None = None
        self.identity_error: Exception | None = None
        self.exchanged_codes: list[str] = []

    def exchange_code(self, code: str) -> dict:
        self.exchanged_codes.append(code)
        if self.exchange_error is not None:
            raise CodeExchangeError(str(self.exchange_error)) from self.exchange_error
        return {"access_token": f"provider-token-{code}", "token_type": "Bearer"}

    def fetch_identity(self, token: dict) -> ExternalIdentity:
        if self.identity_error is not None:
            raise IdentityFetchError(str(self.identity_error)) from self.identity_error
        return self.identity

