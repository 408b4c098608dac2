"""
API request and response models for the builder auth and user endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Request bodies accept both the camelCase keys the web client sends and the
snake_case field names (populate_by_name=True).
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class UserUpdate(BaseModel):
    """Request body for PATCH /api/users/{user_id}.

    Every field is optional; only the keys present in the body are written.
    Identity fields (id, email, created_at) are not updatable here.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, max_length=255)
    image: Optional[str] = Field(default=None, max_length=2048)
    company: Optional[str] = Field(default=None, max_length=255)
    referral: Optional[str] = Field(default=None, max_length=255)
    onboarding_categories: Optional[list[str]] = Field(default=None, max_length=50)
    displayed_in_app_notifications: Optional[dict[str, Any]] = None
    group_titles_auto_generation: Optional[dict[str, Any]] = None
    preferred_app_appearance: Optional[str] = Field(default=None, max_length=20)
    preferred_language: Optional[str] = Field(default=None, max_length=20)


class EmailSignInRequest(BaseModel):
    """Request body for POST /api/auth/signin/email."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr


class CredentialsRequest(BaseModel):
    """Request body for POST /api/auth/callback/credentials."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)

    auth_token: Optional[str] = None
    api_host: Optional[str] = None
    tenant_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class ProviderInfo(BaseModel):
    """One entry of GET /api/auth/providers."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    type: str
    signin_url: str
    callback_url: str


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

    status: str = "ok"
    version: str
