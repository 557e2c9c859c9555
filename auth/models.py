"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and the session
service do the work; these only own the shape.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class User:
    """An internal identity, keyed by the email the provider vouched for.

    email is unique and case-sensitive as stored. The record is never updated
    or deleted by the credential core.
    """

    id: str  # uuid4 string
    email: str
    created_at: str | None = None


@dataclass
class RefreshToken:
    """A persisted, single-use refresh credential.

    id doubles as the bearer value handed to the client. is_available is
    False once the token has been redeemed or an attempt found it expired;
    either way it is permanently inert after that.
    """

    id: str  # uuid4 string
    user_id: str
    expires_at: datetime  # aware, UTC
    is_available: bool = True
    created_at: str | None = None


@dataclass(frozen=True)
class ExternalIdentity:
    """Normalized user identity returned by an OAuth provider.

    Only email is relied upon downstream; external_id and name are kept for
    logging.
    """

    external_id: str
    email: str
    name: str = ""


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str  # RefreshToken.id


@dataclass(frozen=True)
class LoginResult:
    """Outcome of a successful OAuth callback."""

    user: User
    tokens: TokenPair
    redirect_to: str  # target URL with access_token/refresh_token appended


@dataclass(frozen=True)
class LoginStart:
    """A login that has been sent to the provider.

    binding must come back with the callback (the route keeps it in a cookie)
    or the signed state in url is refused.
    """

    url: str
    binding: str
