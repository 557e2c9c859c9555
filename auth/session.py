"""
auth/session.py -- Session orchestration: OAuth login and refresh flows.

SessionService composes the pieces in auth/ into the two user-facing flows:

  Login (GET /api/oauth/{provider} then .../callback):
      STARTED -> CODE_RECEIVED -> EXCHANGED -> IDENTITY_RESOLVED -> TOKENS_ISSUED
      Any step may move the attempt to FAILED(reason); the callback route then
      redirects the browser with ?error=<reason> instead of tokens.

  Refresh (POST /api/auth/refresh):
      rotate the refresh token -> load the user -> mint a new access token.
      The old refresh token id is dead afterwards, whatever happens next.

Partial issuance: the access token is minted before the refresh token row is
written. If the insert fails the attempt fails; the minted access token is
never handed out and simply expires. Nothing needs rolling back.

Login binding: the OAuth state is a signed, short-lived token (LoginStateCodec)
that carries the post-login target and is bound to a nonce cookie set when the
login started. A callback whose state is missing, forged, expired or issued to
another browser fails with invalid_state and lands on the debug page.

Redirect safety [C2]: even a valid state target is only honoured when its
origin is the service itself or one of Settings.allowed_redirect_origins.
Anything else falls back to the debug landing page.

Layer rule: no imports from api/. FastAPI-agnostic -- routes translate
exceptions to responses.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from auth.errors import (
    CodeExchangeError,
    IdentityFetchError,
    LoginFailedError,
    LoginStateError,
    MissingCredentialsError,
    PersistenceError,
    TokenClaimsError,
    TokenIssueError,
    UnknownProviderError,
)
from auth.models import LoginResult, LoginStart, TokenPair, User
from auth.oauth import OAuthProvider
from auth.store import RefreshTokenStore, UserStore
from auth.tokens import AccessTokenCodec, LoginStateCodec

logger = logging.getLogger("passgate.auth.session")

DEBUG_LANDING_PATH = "/api/oauth/debug/token"


# ---------------------------------------------------------------------------
# Login attempt state machine
# ---------------------------------------------------------------------------


class LoginState(str, Enum):
    STARTED = "started"
    CODE_RECEIVED = "code_received"
    EXCHANGED = "exchanged"
    IDENTITY_RESOLVED = "identity_resolved"
    TOKENS_ISSUED = "tokens_issued"
    FAILED = "failed"


_NEXT_STATE = {
    LoginState.STARTED: LoginState.CODE_RECEIVED,
    LoginState.CODE_RECEIVED: LoginState.EXCHANGED,
    LoginState.EXCHANGED: LoginState.IDENTITY_RESOLVED,
    LoginState.IDENTITY_RESOLVED: LoginState.TOKENS_ISSUED,
}


@dataclass
class LoginAttempt:
    """Tracks one callback's progress. Terminal states cannot be left."""

    provider: str
    state: LoginState = LoginState.STARTED
    failure_reason: str | None = None
    history: list[LoginState] = field(default_factory=lambda: [LoginState.STARTED])

    def advance(self, target: LoginState) -> None:
        if _NEXT_STATE.get(self.state) != target:
            raise RuntimeError(f"Illegal login transition {self.state.value} -> {target.value}")
        self.state = target
        self.history.append(target)

    def fail(self, reason: str) -> None:
        if self.state in (LoginState.TOKENS_ISSUED, LoginState.FAILED):
            raise RuntimeError(f"Cannot fail a login attempt in state {self.state.value}")
        self.state = LoginState.FAILED
        self.failure_reason = reason
        self.history.append(LoginState.FAILED)


# ---------------------------------------------------------------------------
# URL helpers
# ---------------------------------------------------------------------------


def with_query(url: str, **params: str) -> str:
    """Append query parameters to url, keeping any it already has."""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend(params.items())
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def _origin(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}".lower()


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class SessionService:
    """Login, refresh and bearer authentication over the auth/ components.

    Constructed once at startup (api/main.py lifespan) and stored on
    app.state.sessions.
    """

    def __init__(
        self,
        users: UserStore,
        refresh_tokens: RefreshTokenStore,
        codec: AccessTokenCodec,
        states: LoginStateCodec,
        providers: dict[str, OAuthProvider],
        base_url: str,
        allowed_redirect_origins: list[str] | None = None,
    ) -> None:
        self.users = users
        self.refresh_tokens = refresh_tokens
        self.codec = codec
        self.states = states
        self.providers = providers
        self.base_url = base_url.rstrip("/")
        self._allowed_origins = {_origin(self.base_url)}
        self._allowed_origins.update(_origin(o) for o in allowed_redirect_origins or [])

    @property
    def default_redirect(self) -> str:
        return self.base_url + DEBUG_LANDING_PATH

    def get_provider(self, name: str) -> OAuthProvider:
        provider = self.providers.get(name)
        if provider is None:
            logger.warning("No such provider: %r", name)
            raise UnknownProviderError(name)
        return provider

    def safe_redirect_target(self, target: str | None) -> str:
        """Return target if it points at an allowed origin, else the default landing URL.

        Relative paths ("/app/home") resolve against base_url. Protocol-relative
        ("//evil.example") and non-http(s) values are rejected.
        """
        if not target:
            return self.default_redirect
        if target.startswith("/") and not target.startswith("//"):
            return self.base_url + target
        parts = urlsplit(target)
        if parts.scheme in ("http", "https") and _origin(target) in self._allowed_origins:
            return target
        logger.warning("Rejected redirect target outside allowed origins: %r", target)
        return self.default_redirect

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def begin_login(
        self,
        provider_name: str,
        callback_target: str | None = None,
        frontend_redirect: str | None = None,
    ) -> LoginStart:
        """Return the provider authorization URL and the browser binding for a new login.

        callback_target (query ?c=) is where the callback sends the tokens;
        frontend_redirect (query ?r=) is passed along to that target as ?r=.
        Both travel through the provider inside the signed state value. The
        caller must hand the binding back to complete_login().
        """
        provider = self.get_provider(provider_name)
        target = callback_target or self.default_redirect
        if frontend_redirect:
            target = with_query(target, r=frontend_redirect)
        state, binding = self.states.seal(target)
        url = provider.authorization_url(state=state)
        logger.info("Redirecting to %s OAuth2 authorization", provider_name)
        return LoginStart(url=url, binding=binding)

    def complete_login(
        self,
        provider_name: str,
        code: str | None,
        state: str | None,
        binding: str | None = None,
        error: str | None = None,
    ) -> LoginResult:
        """Run the callback state machine to TOKENS_ISSUED.

        Raises UnknownProviderError before any state is entered, and
        LoginFailedError (reason + redirect URL carrying ?error=) on every
        other failure. binding is the value begin_login() returned for this
        browser; without it the state is not accepted.
        """
        provider = self.get_provider(provider_name)
        attempt = LoginAttempt(provider=provider_name)
        redirect_to = self.default_redirect

        def fail(reason: str, cause: Exception | None = None) -> LoginFailedError:
            attempt.fail(reason)
            logger.warning("OAuth2 login via %s failed: %s", provider_name, reason)
            return LoginFailedError(reason, with_query(redirect_to, error=reason), cause)

        try:
            target = self.states.open(state, binding)
        except LoginStateError as exc:
            raise fail("invalid_state", exc) from exc
        redirect_to = self.safe_redirect_target(target)

        if error:
            raise fail(error)
        if not code:
            raise fail("missing_code")
        attempt.advance(LoginState.CODE_RECEIVED)

        try:
            provider_token = provider.exchange_code(code)
        except CodeExchangeError as exc:
            raise fail("exchange_failed", exc) from exc
        attempt.advance(LoginState.EXCHANGED)

        try:
            identity = provider.fetch_identity(provider_token)
        except IdentityFetchError as exc:
            raise fail("identity_fetch_failed", exc) from exc

        try:
            user = self.users.resolve_or_create(identity.email)
        except PersistenceError as exc:
            raise fail("server_error", exc) from exc
        attempt.advance(LoginState.IDENTITY_RESOLVED)

        try:
            access_token = self.codec.issue(user.id, user.email)
            refresh_token = self.refresh_tokens.create(user.id, self.refresh_tokens.next_expiry())
        except (TokenIssueError, PersistenceError) as exc:
            raise fail("server_error", exc) from exc
        attempt.advance(LoginState.TOKENS_ISSUED)

        tokens = TokenPair(access_token=access_token, refresh_token=refresh_token.id)
        logger.info("OAuth2 login via %s successful for user %s", provider_name, user.id)
        return LoginResult(
            user=user,
            tokens=tokens,
            redirect_to=with_query(redirect_to, access_token=tokens.access_token, refresh_token=tokens.refresh_token),
        )

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh(self, refresh_token_id: str) -> TokenPair:
        """Redeem a refresh token and return a new access/refresh pair.

        Raises a RefreshTokenError subclass for invalid/replayed/expired
        tokens, PersistenceError or TokenIssueError for internal failures.
        """
        successor = self.refresh_tokens.rotate(refresh_token_id)
        user = self.users.get_by_id(successor.user_id)
        if user is None:
            logger.error("Refresh token %s belongs to unknown user %s", successor.id, successor.user_id)
            raise PersistenceError("refresh", f"user {successor.user_id} not found")
        access_token = self.codec.issue(user.id, user.email)
        return TokenPair(access_token=access_token, refresh_token=successor.id)

    # ------------------------------------------------------------------
    # Bearer authentication
    # ------------------------------------------------------------------

    def authenticate(self, authorization: str | None) -> User:
        """Resolve an Authorization header value to a User.

        Raises MissingCredentialsError for an absent header and an
        AccessTokenError subclass for anything that fails verification.
        """
        if not authorization or not authorization.strip():
            logger.warning("Authorization header required")
            raise MissingCredentialsError("Authorization header required")
        user_id = self.codec.verify(authorization)
        user = self.users.get_by_id(user_id)
        if user is None:
            logger.warning("Access token subject %s does not match any user", user_id)
            raise TokenClaimsError(f"Unknown subject {user_id}")
        return user
