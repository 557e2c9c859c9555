"""
auth/tokens.py -- Access token issuing and verification (JWT, HS256).

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       sub (user id), email, iss, jti, iat, nbf and exp. The lifetime is
       fixed by configuration (default 15 minutes) -- callers cannot ask for
       a longer one.

  Stateless: verification needs only the token, the secret and the clock.
       There is no denylist, so an access token cannot be revoked before it
       expires. Short lifetimes plus single-use refresh tokens (auth/store.py)
       bound the exposure. A jti denylist checked before signature
       verification would be the extension point if that ever changes.

  Explicit secret: AccessTokenCodec receives the secret at construction
       (api/main.py builds it from core.config.get_settings()). Nothing here
       reads configuration at import time, so tests can build codecs with
       their own secrets and clocks.

  Login state: LoginStateCodec signs the OAuth `state` value with the same
       key and HS256. The state carries the post-login target and the hash
       of a random nonce the browser keeps in a cookie, and it lives ten
       minutes. open() refuses anything else with LoginStateError.

  Failure kinds: verify() raises a distinct AccessTokenError subclass for
       malformed structure, bad signature, expiry, not-yet-valid and any
       other claim problem. Callers answer 401 for all of them; the kind
       exists for the operator log and for tests.

       Time-based claims are checked here rather than by jose so the clock
       is injectable and so expiry can be told apart from a signature
       failure without parsing exception messages.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import uuid
from collections.abc import Callable
from datetime import datetime, timezone

from jose import jwt
from jose.exceptions import JWTClaimsError, JWTError

from auth.errors import (
    LoginStateError,
    TokenClaimsError,
    TokenExpiredError,
    TokenIssueError,
    TokenMalformedError,
    TokenNotYetValidError,
    TokenSignatureError,
)

logger = logging.getLogger("passgate.auth.tokens")

_ALGORITHM = "HS256"
_BEARER_PREFIX = "Bearer "

# Signature and structure only -- time claims are checked against self._clock.
_DECODE_OPTIONS = {
    "verify_exp": False,
    "verify_nbf": False,
    "verify_iat": False,
    "verify_aud": False,
    "verify_iss": False,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def strip_bearer(value: str) -> str:
    """Remove a leading "Bearer " scheme prefix, if present."""
    if value.startswith(_BEARER_PREFIX):
        return value[len(_BEARER_PREFIX) :]
    return value


def _timestamp_to_datetime(value) -> datetime | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class AccessTokenCodec:
    """Issue and verify short-lived signed access tokens.

    Usage:
        codec = AccessTokenCodec(settings.secret_key, settings.access_token_expire_seconds, "passgate")
        token = codec.issue(user.id, user.email)
        user_id = codec.verify(request.headers["Authorization"])
    """

    def __init__(
        self,
        secret_key: str,
        lifetime_seconds: int,
        issuer: str,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if lifetime_seconds <= 0:
            raise ValueError("lifetime_seconds must be positive")
        self._secret_key = secret_key
        self.lifetime_seconds = lifetime_seconds
        self.issuer = issuer
        self._clock = clock

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(self, user_id: str, email: str) -> str:
        """Return a signed JWT for the given user.

        Raises TokenIssueError if signing fails. That is an internal fault
        (bad key material), not something a retry would fix.
        """
        now = int(self._clock().timestamp())
        claims = {
            "sub": str(user_id),
            "email": email,
            "iss": self.issuer,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "nbf": now,
            "exp": now + self.lifetime_seconds,
        }
        try:
            token = jwt.encode(claims, self._secret_key, algorithm=_ALGORITHM)
        except JWTError as exc:
            logger.error("Failed to sign access token for user %s: %s", user_id, exc)
            raise TokenIssueError(f"Failed to sign access token: {exc}") from exc
        logger.debug("Issued access token jti=%s for user %s", claims["jti"], user_id)
        return token

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify(self, token: str) -> str:
        """Verify a token (optionally "Bearer "-prefixed) and return its user id.

        Raises one of:
            TokenMalformedError   -- not a JWS at all
            TokenSignatureError   -- signature mismatch / disallowed alg
            TokenExpiredError     -- exp <= now (expired_at attached)
            TokenNotYetValidError -- nbf > now (not_before attached)
            TokenClaimsError      -- anything else
        """
        token = strip_bearer(token or "").strip()

        try:
            jwt.get_unverified_header(token)
        except JWTError as exc:
            logger.warning("Rejected access token: malformed structure (%s)", exc)
            raise TokenMalformedError(f"Malformed access token: {exc}") from exc

        try:
            claims = jwt.decode(token, self._secret_key, algorithms=[_ALGORITHM], options=_DECODE_OPTIONS)
        except JWTClaimsError as exc:
            logger.error("Rejected access token: invalid claims (%s)", exc)
            raise TokenClaimsError(f"Invalid access token claims: {exc}") from exc
        except JWTError as exc:
            logger.warning("Rejected access token: invalid signature (%s)", exc)
            raise TokenSignatureError(f"Invalid access token signature: {exc}") from exc

        return self._check_claims(claims)

    def _check_claims(self, claims: dict) -> str:
        now = self._clock()

        expires_at = _timestamp_to_datetime(claims.get("exp"))
        if expires_at is None:
            logger.error("Rejected access token: missing or non-numeric exp claim")
            raise TokenClaimsError("Access token has no usable exp claim")
        if expires_at <= now:
            logger.warning("Rejected access token: expired at %s", expires_at.isoformat())
            raise TokenExpiredError(expires_at)

        if "nbf" in claims:
            not_before = _timestamp_to_datetime(claims["nbf"])
            if not_before is None:
                logger.error("Rejected access token: non-numeric nbf claim")
                raise TokenClaimsError("Access token nbf claim is not a timestamp")
            if not_before > now:
                logger.warning("Rejected access token: not valid before %s", not_before.isoformat())
                raise TokenNotYetValidError(not_before)

        if claims.get("iss") != self.issuer:
            logger.error("Rejected access token: unexpected issuer %r", claims.get("iss"))
            raise TokenClaimsError(f"Unexpected issuer: {claims.get('iss')!r}")

        user_id = claims.get("sub")
        if not isinstance(user_id, str) or not user_id:
            logger.error("Rejected access token: missing subject")
            raise TokenClaimsError("Access token has no subject")

        logger.debug("Verified access token jti=%s for user %s", claims.get("jti"), user_id)
        return user_id


class LoginStateCodec:
    """Sign the OAuth `state` value and bind it to the browser that started the login.

    seal() returns (state, binding). The state is a short-lived JWT carrying
    the post-login target and a hash of the binding; the binding is a random
    nonce the route keeps in an HttpOnly cookie. open() accepts a state only
    when the signature, the expiry and the cookie all match, so a callback URL
    crafted in another browser cannot complete a login here.

    Usage:
        states = LoginStateCodec(settings.secret_key)
        state, binding = states.seal("https://app.example.com/auth/done")
        target = states.open(state, binding)
    """

    def __init__(
        self,
        secret_key: str,
        lifetime_seconds: int = 600,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if lifetime_seconds <= 0:
            raise ValueError("lifetime_seconds must be positive")
        self._secret_key = secret_key
        self.lifetime_seconds = lifetime_seconds
        self._clock = clock

    def seal(self, target: str) -> tuple[str, str]:
        binding = secrets.token_urlsafe(32)
        claims = {
            "typ": "oauth_state",
            "tgt": target,
            "bnd": _binding_digest(binding),
            "exp": int(self._clock().timestamp()) + self.lifetime_seconds,
        }
        state = jwt.encode(claims, self._secret_key, algorithm=_ALGORITHM)
        return state, binding

    def open(self, state: str | None, binding: str | None) -> str:
        """Return the target sealed into state.

        Raises LoginStateError for a missing, forged, expired or unbound state.
        """
        if not state:
            raise LoginStateError("OAuth state missing")
        if not binding:
            raise LoginStateError("OAuth state binding cookie missing")

        try:
            claims = jwt.decode(state, self._secret_key, algorithms=[_ALGORITHM], options=_DECODE_OPTIONS)
        except JWTError as exc:
            raise LoginStateError(f"OAuth state signature invalid: {exc}") from exc

        if claims.get("typ") != "oauth_state":
            raise LoginStateError("Not an OAuth state token")
        expires_at = _timestamp_to_datetime(claims.get("exp"))
        if expires_at is None or expires_at <= self._clock():
            raise LoginStateError("OAuth state expired")
        if not hmac.compare_digest(str(claims.get("bnd", "")), _binding_digest(binding)):
            raise LoginStateError("OAuth state bound to another browser")
        target = claims.get("tgt")
        if not isinstance(target, str):
            raise LoginStateError("OAuth state has no target")
        return target


def _binding_digest(binding: str) -> str:
    return hashlib.sha256(binding.encode()).hexdigest()
