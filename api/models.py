"""
API request and response models for Passgate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

import uuid
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RefreshRequest(BaseModel):
    """Request body for POST /api/auth/refresh.

    The refresh token is the id of a refresh_tokens row -- a UUID string.
    Anything that does not parse as a UUID is a malformed request (400), not
    an invalid token (401): it could never have been issued by us.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    refresh_token: str = Field(min_length=1, max_length=64)

    @field_validator("refresh_token")
    @classmethod
    def must_be_uuid(cls, value: str) -> str:
        """Normalize to the canonical lowercase hyphenated form used by the store."""
        try:
            return str(uuid.UUID(value))
        except ValueError as exc:
            raise ValueError("refresh_token must be a UUID") from exc


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class RefreshResponse(BaseModel):
    """Response for POST /api/auth/refresh."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str


class MeResponse(BaseModel):
    """Response for GET /api/auth/me."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    created_at: str


class OAuthProviderInfo(BaseModel):
    """One entry of GET /api/auth/providers."""

    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
