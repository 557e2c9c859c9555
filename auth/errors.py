"""
auth/errors.py -- Exception taxonomy for the credential lifecycle.

Every failure raised by auth/ is a PassgateError subclass. Each class carries
the HTTP status and machine-readable code the API layer should use, so
api/main.py needs a single exception handler instead of one try/except per
route.

Four kinds, matching how callers must react:
  MalformedInputError   (400) -- client must not retry unmodified.
  UnauthenticatedError  (401) -- bad/expired/replayed credential.
  UpstreamProviderError (502) -- OAuth provider failed; surfaced, never retried.
  PersistenceError      (500) -- storage failed; logged, never swallowed.

`public_message` is what the client sees. Security-sensitive flows (refresh,
bearer verification) share one generic message regardless of the internal
cause -- str(exc) keeps the precise reason for the operator log.

Layer rule: no imports from api/ or core/. No FastAPI imports either -- the
translation to HTTP responses happens in api/main.py.
"""

from __future__ import annotations

from datetime import datetime


class PassgateError(Exception):
    """Base class for all credential lifecycle failures."""

    status_code: int = 500
    code: str = "internal_error"
    public_message: str = "An unexpected error occurred."


# ---------------------------------------------------------------------------
# 400 -- malformed input
# ---------------------------------------------------------------------------


class MalformedInputError(PassgateError):
    status_code = 400
    code = "malformed_input"
    public_message = "The request is malformed."


class UnknownProviderError(MalformedInputError):
    code = "unsupported_provider"
    public_message = "Unsupported OAuth2 provider."

    def __init__(self, provider: str) -> None:
        super().__init__(f"No such OAuth provider: {provider!r}")
        self.provider = provider


class LoginStateError(MalformedInputError):
    """The OAuth state is not one this service issued to this browser."""

    code = "invalid_state"
    public_message = "Invalid or expired login state."


# ---------------------------------------------------------------------------
# 401 -- unauthenticated
# ---------------------------------------------------------------------------


class UnauthenticatedError(PassgateError):
    status_code = 401
    code = "unauthorized"
    public_message = "Authentication required."


class MissingCredentialsError(UnauthenticatedError):
    """No Authorization header (or an empty one) on a protected route."""


class AccessTokenError(UnauthenticatedError):
    """Base for every access-token verification failure.

    Callers treat all subclasses identically (401). The subclass only matters
    for logs and tests.
    """

    public_message = "Invalid or expired access token."


class TokenMalformedError(AccessTokenError):
    """The value is not a structurally valid JWS."""


class TokenSignatureError(AccessTokenError):
    """The signature does not verify against the signing secret."""


class TokenExpiredError(AccessTokenError):
    """exp is at or before the current time."""

    def __init__(self, expired_at: datetime | None) -> None:
        super().__init__(f"Access token expired at {expired_at.isoformat() if expired_at else 'unknown time'}")
        self.expired_at = expired_at


class TokenNotYetValidError(AccessTokenError):
    """nbf is after the current time."""

    def __init__(self, not_before: datetime | None) -> None:
        super().__init__(f"Access token not valid before {not_before.isoformat() if not_before else 'unknown time'}")
        self.not_before = not_before


class TokenClaimsError(AccessTokenError):
    """Any other validation failure: wrong issuer, missing or ill-typed claims."""


class RefreshTokenError(UnauthenticatedError):
    """Base for refresh-token redemption failures.

    The client always sees the same message: revealing whether a token id
    ever existed, was replayed, or merely expired helps an attacker probing
    stolen ids.
    """

    code = "invalid_refresh_token"
    public_message = "Invalid or expired refresh token."


class RefreshTokenInvalidError(RefreshTokenError):
    def __init__(self, token_id: str) -> None:
        super().__init__(f"Refresh token {token_id} is invalid")
        self.token_id = token_id


class RefreshTokenReusedError(RefreshTokenError):
    def __init__(self, token_id: str) -> None:
        super().__init__(f"Refresh token {token_id} already used")
        self.token_id = token_id


class RefreshTokenExpiredError(RefreshTokenError):
    def __init__(self, token_id: str, expired_at: datetime) -> None:
        super().__init__(f"Refresh token {token_id} expired at {expired_at.isoformat()}")
        self.token_id = token_id
        self.expired_at = expired_at


# ---------------------------------------------------------------------------
# 502 -- upstream identity provider
# ---------------------------------------------------------------------------


class UpstreamProviderError(PassgateError):
    status_code = 502
    code = "upstream_provider_error"
    public_message = "The identity provider request failed."


class CodeExchangeError(UpstreamProviderError):
    code = "exchange_failed"


class IdentityFetchError(UpstreamProviderError):
    code = "identity_fetch_failed"


# ---------------------------------------------------------------------------
# 500 -- internal
# ---------------------------------------------------------------------------


class PersistenceError(PassgateError):
    code = "server_error"

    def __init__(self, operation: str, detail: str = "") -> None:
        message = f"Storage failure during {operation}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.operation = operation


class TokenIssueError(PassgateError):
    code = "token_issue_failed"


# ---------------------------------------------------------------------------
# Login flow
# ---------------------------------------------------------------------------


class LoginFailedError(PassgateError):
    """An OAuth login attempt ended in the FAILED state.

    Not rendered as JSON: the callback route redirects the browser to
    redirect_to with ?error=<reason> appended.
    """

    def __init__(self, reason: str, redirect_to: str, cause: Exception | None = None) -> None:
        super().__init__(f"Login failed: {reason}")
        self.reason = reason
        self.redirect_to = redirect_to
        self.cause = cause
