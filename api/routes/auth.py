"""
api/routes/auth.py -- OAuth login, token refresh and identity endpoints.

Routes:
  GET  /api/oauth/debug/token             -- default post-login landing page
  GET  /api/oauth/{provider}              -- redirect to the provider (?c=, ?r=)
  GET  /api/oauth/{provider}/callback     -- finish login; redirect with tokens
  POST /api/auth/refresh                  -- rotate refresh token, new access token
  GET  /api/auth/me                       -- current user (requires Bearer token)
  GET  /api/auth/providers                -- list enabled OAuth providers (public)

Security:
  [H2] POST /auth/refresh is rate-limited per IP (Settings.refresh_rate_limit).
  [M5] Cache-Control: no-store on every response that carries tokens.
  The login start sets an HttpOnly binding cookie scoped to /api/oauth; the
  callback only accepts a state signed for that cookie, then clears it.
  Refresh failures all return the same 401 body; the reason is only logged.

Handlers are plain `def`: the store and the OAuth client block, and FastAPI
runs sync handlers in its thread pool.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import limiter, refresh_rate_limit
from api.models import MeResponse, MessageResponse, OAuthProviderInfo, RefreshRequest, RefreshResponse
from auth.dependencies import get_current_user, get_sessions
from auth.errors import LoginFailedError
from auth.models import User
from auth.oauth import get_enabled_providers
from auth.session import SessionService

# Auth policy:
# - GET  /api/oauth/...:          public -- the login flow itself
# - POST /api/auth/refresh:       public -- the refresh token is the credential
# - GET  /api/auth/providers:     public -- login page renders buttons from it
# - GET  /api/auth/me:            requires auth (get_current_user)
router = APIRouter()

# Holds the nonce the signed OAuth state is bound to, between login start and callback.
BINDING_COOKIE = "passgate_oauth_binding"
_BINDING_COOKIE_PATH = "/api/oauth"


# ---------------------------------------------------------------------------
# OAuth login
#
# /oauth/debug/token is registered before /oauth/{provider} so "debug" is
# never treated as a provider name.
# ---------------------------------------------------------------------------


@router.get("/oauth/debug/token", response_model=MessageResponse)
def debug_token() -> MessageResponse:
    """Landing page used when the login request named no callback target."""
    return MessageResponse(message="Login successful")


@router.get("/oauth/{provider}")
def oauth_login(
    provider: str,
    c: Optional[str] = None,
    r: Optional[str] = None,
    sessions: SessionService = Depends(get_sessions),
) -> RedirectResponse:
    """Redirect the browser to the provider's authorization page.

    ?c= is the URL the callback will deliver tokens to; ?r= is an opaque
    frontend value forwarded to that URL. Unknown provider -> 400.
    """
    start = sessions.begin_login(provider, callback_target=c, frontend_redirect=r)
    resp = RedirectResponse(start.url, status_code=307)
    resp.set_cookie(
        BINDING_COOKIE,
        value=start.binding,
        httponly=True,
        samesite="lax",
        secure=sessions.base_url.startswith("https://"),
        max_age=sessions.states.lifetime_seconds,
        path=_BINDING_COOKIE_PATH,
    )
    return resp


@router.get("/oauth/{provider}/callback", name="oauth_callback")
def oauth_callback(
    provider: str,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    binding: Optional[str] = Cookie(None, alias=BINDING_COOKIE),
    sessions: SessionService = Depends(get_sessions),
) -> RedirectResponse:
    """Finish the login and redirect to the state target.

    Success appends ?access_token=&refresh_token=; failure appends ?error=.
    The binding cookie is single-use and cleared either way.
    """
    try:
        result = sessions.complete_login(provider, code=code, state=state, binding=binding, error=error)
        location = result.redirect_to
    except LoginFailedError as exc:
        location = exc.redirect_to

    resp = RedirectResponse(location, status_code=307)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    resp.delete_cookie(BINDING_COOKIE, path=_BINDING_COOKIE_PATH)
    return resp


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


@router.post("/auth/refresh", response_model=RefreshResponse)
@limiter.limit(refresh_rate_limit)  # [H2] below @router: the router must register the limited wrapper
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a new access token and a new refresh token.

    The submitted refresh token is dead after this call whether or not the
    response reaches the client.
    """
    sessions: SessionService = get_sessions(request)
    tokens = sessions.refresh(body.refresh_token)
    resp = JSONResponse(
        status_code=200,
        content=RefreshResponse(access_token=tokens.access_token, refresh_token=tokens.refresh_token).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
def list_providers(sessions: SessionService = Depends(get_sessions)) -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers. Empty list if none are set up."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers(sessions.providers)]


@router.get("/auth/me", response_model=MeResponse)
def me(current_user: User = Depends(get_current_user)) -> MeResponse:
    """Return identity information for the currently authenticated user."""
    return MeResponse(id=current_user.id, email=current_user.email, created_at=current_user.created_at or "")
