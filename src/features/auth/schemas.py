"""Authentication schemas (DTOs)."""

from datetime import datetime

from pydantic import AwareDatetime, BaseModel, ConfigDict, EmailStr, Field

from src.features.user.schemas import UserResponse


# Request schemas
class UserLoginRequest(BaseModel):
    """Login request.

    Note: Uses email-validator library via Pydantic's EmailStr for RFC 5322 compliant email validation.
    Password strength is not checked here so existing accounts can always log in.
    """

    email: EmailStr = Field(..., description="Email address (matched case-insensitively)")
    password: str = Field(..., min_length=1, max_length=1024)
    totp_code: str | None = Field(
        None, min_length=6, max_length=6, pattern=r"^\d{6}$", description="Current 6-digit authenticator code"
    )


class RefreshTokenRequest(BaseModel):
    """Refresh token request."""

    refresh_token: str


class TwoFactorVerifyRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=6, pattern=r"^\d{6}$")


class TwoFactorDisableRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=1024)


class ApiTokenCreateRequest(BaseModel):
    """Personal API token request; omit expires_at for a token that never expires."""

    name: str = Field(..., min_length=1, max_length=100, pattern=r"^[a-zA-Z0-9\s\-_.]+$")
    expires_at: AwareDatetime | None = None


# Response schemas
class TokenResponse(BaseModel):
    """JWT token response."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds
    session_id: str


class LoginResponse(BaseModel):
    """Login response: either tokens, or a request for the second factor."""

    requires_two_factor: bool = False
    access_token: str | None = None
    refresh_token: str | None = None
    token_type: str = "bearer"
    expires_in: int | None = None
    session_id: str | None = None


class TwoFactorSetupResponse(BaseModel):
    secret: str
    provisioning_uri: str
    qr_code: str  # data:image/png;base64 URL


class SessionResponse(BaseModel):
    """Active session as shown to its owner."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    auth_method: str
    issued_at: datetime
    expires_at: datetime
    last_refreshed_at: datetime | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    current: bool = False


class MessageResponse(BaseModel):
    message: str


class RegisterResponse(BaseModel):
    """Registration response: the new account and its first session."""

    user: UserResponse
    tokens: TokenResponse


class ApiTokenResponse(BaseModel):
    """API token as listed to its owner (never includes the token value)."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    token_prefix: str
    created_at: datetime
    expires_at: datetime | None = None
    last_used_at: datetime | None = None


class ApiTokenCreatedResponse(ApiTokenResponse):
    token: str
    message: str = "Store this token now; it will not be shown again."
