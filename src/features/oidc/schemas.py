"""OIDC schemas (DTOs)."""

from datetime import datetime

from pydantic import BaseModel, Field


# Request schemas
class OidcCallbackRequest(BaseModel):
    """Parameters the provider sent back to the redirect URI.

    request_state falls back to the ``oidc_request`` cookie set by ``/oidc/login``.
    """

    code: str | None = Field(None, max_length=2048)
    state: str | None = Field(None, max_length=512)
    request_state: str | None = Field(None, max_length=512)
    error: str | None = Field(None, max_length=256)
    error_description: str | None = Field(None, max_length=1024)


class OidcRefreshRequest(BaseModel):
    refresh_token: str


class OidcLogoutRequest(BaseModel):
    id_token_hint: str | None = None
    post_logout_redirect_uri: str | None = None


# Response schemas
class OidcAvailabilityResponse(BaseModel):
    available: bool


class OidcLoginResponse(BaseModel):
    redirect_url: str
    request_state: str


class OidcCallbackResponse(BaseModel):
    """Application session plus the provider tokens needed for refresh and logout."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    session_id: str
    id_token: str | None = None
    provider_refresh_token: str | None = None


class OidcTokenResponse(BaseModel):
    access_token: str
    token_type: str
    id_token: str | None = None
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scope: str | None = None


class OidcLogoutResponse(BaseModel):
    logout_url: str | None
    message: str
