"""
auth/oauth.py -- OAuth2 identity providers (authorization code flow).

Each provider exposes the same capability set:
  authorization_url(state) -- where to send the browser
  exchange_code(code)      -- authorization code -> provider token dict
  fetch_identity(token)    -- provider token -> ExternalIdentity

The session service (auth/session.py) addresses providers only by name via
the registry returned by build_providers(). Adding a provider means adding an
OAuthProvider subclass and one entry in build_providers(); the session
service does not change.

Transport is authlib's requests-based OAuth2Session. A fresh session is built
per call so concurrent requests never share token state, and every HTTP call
carries the configured timeout -- nothing here may outlive the request.

Security notes:
  [H1] Provider responses are untrusted input. An identity is only accepted
       when it carries a non-empty email the provider marks as verified. An
       unverified email could be a victim's address added by an attacker.

  The OAuth `state` value is opaque here: the session service composes it
  and validates it on the way back (see auth/session.py).

  Errors are never retried. CodeExchangeError / IdentityFetchError carry the
  cause for the log; the browser only sees a short error code.

Supported providers:
  google -- Google OAuth2 + OpenID Connect userinfo endpoint.
  github -- GitHub OAuth app; email from GET /user/emails.

Layer rule: no imports from api/. Import from core/ is allowed -- core/ is
the kernel layer.
"""

from __future__ import annotations

import logging

import requests
from authlib.integrations.base_client import OAuthError
from authlib.integrations.requests_client import OAuth2Session

from auth.errors import CodeExchangeError, IdentityFetchError
from auth.models import ExternalIdentity
from core.config import Settings

logger = logging.getLogger("passgate.auth.oauth")

# Failures a provider round trip can produce: protocol errors reported by the
# provider, transport errors, and undecodable/unexpected response bodies.
_PROVIDER_ERRORS = (OAuthError, requests.RequestException, ValueError, KeyError, TypeError)


class OAuthProvider:
    """Base class for an OAuth2 authorization-code provider.

    Subclasses set the endpoint class attributes and implement
    _read_identity(session).
    """

    name: str = ""
    label: str = ""
    authorize_endpoint: str = ""
    token_endpoint: str = ""
    scope: str = ""
    # Extra query parameters for the authorization URL.
    authorize_params: dict = {}

    def __init__(self, client_id: str, client_secret: str, redirect_uri: str, timeout: float = 10.0) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout

    def _session(self, token: dict | None = None) -> OAuth2Session:
        return OAuth2Session(
            client_id=self.client_id,
            client_secret=self.client_secret,
            scope=self.scope,
            redirect_uri=self.redirect_uri,
            token=token,
        )

    def authorization_url(self, state: str) -> str:
        """Return the provider URL the browser should be redirected to."""
        url, _state = self._session().create_authorization_url(
            self.authorize_endpoint, state=state, **self.authorize_params
        )
        return url

    def exchange_code(self, code: str) -> dict:
        """Exchange an authorization code for a provider token.

        Raises CodeExchangeError on any transport or provider failure.
        """
        try:
            token = self._session().fetch_token(self.token_endpoint, code=code, timeout=self.timeout)
        except _PROVIDER_ERRORS as exc:
            logger.error("%s code exchange failed: %s", self.name, exc)
            raise CodeExchangeError(f"{self.name} code exchange failed: {exc}") from exc
        if not token or not token.get("access_token"):
            logger.error("%s code exchange returned no access_token", self.name)
            raise CodeExchangeError(f"{self.name} code exchange returned no access_token")
        return dict(token)

    def fetch_identity(self, token: dict) -> ExternalIdentity:
        """Fetch and normalize the user's identity [H1].

        Raises IdentityFetchError on transport/provider failure or when the
        response does not contain a usable verified email.
        """
        try:
            identity = self._read_identity(self._session(token=token))
        except IdentityFetchError:
            raise
        except _PROVIDER_ERRORS as exc:
            logger.error("%s identity fetch failed: %s", self.name, exc)
            raise IdentityFetchError(f"{self.name} identity fetch failed: {exc}") from exc

        if not identity.email or not identity.email.strip():
            logger.warning("%s returned an identity without an email (subject %s)", self.name, identity.external_id)
            raise IdentityFetchError(f"{self.name} returned no email")
        return identity

    def _get_json(self, session: OAuth2Session, url: str):
        resp = session.get(url, timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()

    def _read_identity(self, session: OAuth2Session) -> ExternalIdentity:
        raise NotImplementedError


class GoogleProvider(OAuthProvider):
    name = "google"
    label = "Google"
    authorize_endpoint = "https://accounts.google.com/o/oauth2/v2/auth"
    token_endpoint = "https://oauth2.googleapis.com/token"  # noqa: S105 -- URL, not a password
    userinfo_endpoint = "https://openidconnect.googleapis.com/v1/userinfo"
    scope = "openid email profile"
    authorize_params = {"access_type": "offline"}

    def _read_identity(self, session: OAuth2Session) -> ExternalIdentity:
        """Read sub/email/name from the OIDC userinfo endpoint.

        Google includes email_verified; anything but True is rejected [H1].
        """
        info = self._get_json(session, self.userinfo_endpoint)
        if not isinstance(info, dict):
            raise IdentityFetchError("google: userinfo is not a JSON object")
        if info.get("email_verified") is not True:
            raise IdentityFetchError("google: email is not verified")
        return ExternalIdentity(
            external_id=str(info.get("sub") or ""),
            email=info.get("email") or "",
            name=info.get("name") or "",
        )


class GitHubProvider(OAuthProvider):
    name = "github"
    label = "GitHub"
    authorize_endpoint = "https://github.com/login/oauth/authorize"
    token_endpoint = "https://github.com/login/oauth/access_token"  # noqa: S105 -- URL, not a password
    api_base_url = "https://api.github.com/"
    scope = "read:user user:email"

    def _read_identity(self, session: OAuth2Session) -> ExternalIdentity:
        """Read the profile and the primary verified email.

        GitHub does not put the email in the token. Two calls are needed:
          1. GET /user        -- numeric id (stable subject) and display name.
          2. GET /user/emails -- the entry with primary=true AND verified=true [H1].
        """
        profile = self._get_json(session, self.api_base_url + "user")
        emails = self._get_json(session, self.api_base_url + "user/emails")
        if not isinstance(profile, dict) or profile.get("id") is None:
            raise IdentityFetchError("github: /user is not a profile object")
        if not isinstance(emails, list):
            raise IdentityFetchError("github: /user/emails is not a JSON array")

        email = ""
        for entry in emails:
            if not isinstance(entry, dict):
                continue
            if entry.get("primary") and entry.get("verified"):
                email = entry.get("email") or ""
                break
        if not email:
            raise IdentityFetchError("github: no primary verified email")

        return ExternalIdentity(
            external_id=str(profile["id"]),
            email=email,
            name=profile.get("name") or profile.get("login") or "",
        )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


def callback_url(base_url: str, provider: str) -> str:
    return f"{base_url.rstrip('/')}/api/oauth/{provider}/callback"


def build_providers(settings: Settings) -> dict[str, OAuthProvider]:
    """Build the name -> provider registry once, at startup.

    Only providers with both client ID and secret configured are registered.
    """
    providers: dict[str, OAuthProvider] = {}

    if settings.google_client_id and settings.google_client_secret:
        providers["google"] = GoogleProvider(
            settings.google_client_id,
            settings.google_client_secret,
            callback_url(settings.base_url, "google"),
            timeout=settings.oauth_timeout_seconds,
        )
        logger.info("Google OAuth provider registered")

    if settings.github_client_id and settings.github_client_secret:
        providers["github"] = GitHubProvider(
            settings.github_client_id,
            settings.github_client_secret,
            callback_url(settings.base_url, "github"),
            timeout=settings.oauth_timeout_seconds,
        )
        logger.info("GitHub OAuth provider registered")

    if not providers:
        logger.warning("No OAuth providers configured -- login is unavailable")
    return providers


def get_enabled_providers(providers: dict[str, OAuthProvider]) -> list[dict]:
    """Return [{"name": ..., "label": ...}] for every registered provider."""
    return [{"name": p.name, "label": p.label} for p in providers.values()]
