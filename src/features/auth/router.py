"""Authentication router (registration, login, session, API token and two-factor endpoints)."""

import logging

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.config.settings import settings
from src.database.dependencies import get_db_session
from src.features.user.schemas import UserRegisterRequest, UserResponse
from src.shared.rate_limit import limiter

from .dependencies import get_auth_service, get_client_info, get_session_token
from .schemas import (
    ApiTokenCreatedResponse,
    ApiTokenCreateRequest,
    ApiTokenResponse,
    LoginResponse,
    MessageResponse,
    RefreshTokenRequest,
    RegisterResponse,
    SessionResponse,
    TokenResponse,
    TwoFactorDisableRequest,
    TwoFactorSetupResponse,
    TwoFactorVerifyRequest,
    UserLoginRequest,
)
from .service import AuthService
from .tokens import IssuedSession, VerifiedToken

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["Authentication"])


def to_token_response(issued: IssuedSession) -> TokenResponse:
    return TokenResponse(
        access_token=issued.access_token,
        refresh_token=issued.refresh_token,
        expires_in=issued.expires_in,
        session_id=issued.session_id,
    )


@router.post("/register", response_model=RegisterResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.login_rate_limit)
async def register(
    request: Request,
    data: UserRegisterRequest,
    service: AuthService = Depends(get_auth_service),
    session: AsyncSession = Depends(get_db_session),
):
    """Create an account with a local password and log it in.

    - **email**: Email address (must not be registered yet)
    - **full_name**: Optional display name
    - **password** / **confirm_password**: Password meeting the strength rules

    Returns the new user and its first access_token and refresh_token.
    """
    ip_address, user_agent = get_client_info(request)
    user, issued = await service.register(data, ip_address=ip_address, user_agent=user_agent)
    await session.commit()
    return RegisterResponse(user=UserResponse.model_validate(user), tokens=to_token_response(issued))


@router.post("/login", response_model=LoginResponse)
@limiter.limit(settings.login_rate_limit)
async def login(
    request: Request,
    data: UserLoginRequest,
    service: AuthService = Depends(get_auth_service),
    session: AsyncSession = Depends(get_db_session),
):
    """Login with email and password.

    - **email**: Email address
    - **password**: Password
    - **totp_code**: 6-digit code, required when two-factor authentication is enabled

    Returns access_token and refresh_token, or `requires_two_factor: true` when a
    code is needed.
    """
    ip_address, user_agent = get_client_info(request)
    result = await service.login(
        data.email, data.password, data.totp_code, ip_address=ip_address, user_agent=user_agent
    )
    await session.commit()

    if result.session is None:
        return LoginResponse(requires_two_factor=True)

    return LoginResponse(**to_token_response(result.session).model_dump())


@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(
    data: RefreshTokenRequest,
    service: AuthService = Depends(get_auth_service),
    session: AsyncSession = Depends(get_db_session),
):
    """Rotate a refresh token.

    - **refresh_token**: Current refresh token; it stops working once used

    Returns new access_token and refresh_token.
    """
    issued = await service.refresh(data.refresh_token)
    await session.commit()
    return to_token_response(issued)


@router.post("/logout", response_model=MessageResponse)
async def logout(
    token: VerifiedToken = Depends(get_session_token),
    service: AuthService = Depends(get_auth_service),
    session: AsyncSession = Depends(get_db_session),
):
    """Logout and revoke the current session."""
    await service.logout(token.session_id)
    await session.commit()
    logger.info(f"User {token.identity.user_id} logged out")
    return MessageResponse(message="Successfully logged out")


@router.post("/logout-all", response_model=MessageResponse)
async def logout_all(
    token: VerifiedToken = Depends(get_session_token),
    service: AuthService = Depends(get_auth_service),
    session: AsyncSession = Depends(get_db_session),
):
    """Revoke every session of the current user, including this one."""
    count = await service.logout_all(token.identity.user_id)
    await session.commit()
    return MessageResponse(message=f"Revoked {count} sessions")


@router.get("/sessions", response_model=list[SessionResponse])
async def list_sessions(
    token: VerifiedToken = Depends(get_session_token),
    service: AuthService = Depends(get_auth_service),
):
    """List the current user's active sessions."""
    records = await service.list_sessions(token.identity.user_id)
    return [
        SessionResponse.model_validate(record).model_copy(update={"current": record.id == token.session_id})
        for record in records
    ]


@router.delete("/sessions/{session_id}", response_model=MessageResponse)
async def revoke_session(
    session_id: str,
    token: VerifiedToken = Depends(get_session_token),
    service: AuthService = Depends(get_auth_service),
    session: AsyncSession = Depends(get_db_session),
):
    """Revoke one of the current user's sessions."""
    await service.revoke_session(token.identity.user_id, session_id)
    await session.commit()
    return MessageResponse(message="Session revoked")


# Personal API tokens
@router.get("/tokens", response_model=list[ApiTokenResponse])
async def list_api_tokens(
    token: VerifiedToken = Depends(get_session_token),
    service: AuthService = Depends(get_auth_service),
):
    """List the current user's API tokens (token values are never returned)."""
    records = await service.list_api_tokens(token.identity.user_id)
    return [ApiTokenResponse.model_validate(record) for record in records]


@router.post("/tokens", response_model=ApiTokenCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_api_token(
    data: ApiTokenCreateRequest,
    token: VerifiedToken = Depends(get_session_token),
    service: AuthService = Depends(get_auth_service),
    session: AsyncSession = Depends(get_db_session),
):
    """Create a personal API token.

    - **name**: Label for the token
    - **expires_at**: Optional expiry (ISO 8601 with time zone)

    The token value is only returned by this call. Send it as
    `Authorization: Bearer <token>`.
    """
    created = await service.create_api_token(token.identity.user_id, data.name, data.expires_at)
    await session.commit()
    return ApiTokenCreatedResponse(
        **ApiTokenResponse.model_validate(created.record).model_dump(),
        token=created.token,
    )


@router.delete("/tokens/{token_id}", response_model=MessageResponse)
async def delete_api_token(
    token_id: int,
    token: VerifiedToken = Depends(get_session_token),
    service: AuthService = Depends(get_auth_service),
    session: AsyncSession = Depends(get_db_session),
):
    """Delete one of the current user's API tokens; it stops working immediately."""
    await service.revoke_api_token(token.identity.user_id, token_id)
    await session.commit()
    return MessageResponse(message="API token deleted")


# Two-factor authentication
@router.post("/2fa/setup", response_model=TwoFactorSetupResponse)
@limiter.limit(settings.two_factor_rate_limit)
async def setup_two_factor(
    request: Request,
    token: VerifiedToken = Depends(get_session_token),
    service: AuthService = Depends(get_auth_service),
    session: AsyncSession = Depends(get_db_session),
):
    """Generate a new TOTP secret and QR code.

    Two-factor authentication stays disabled until `/2fa/verify` succeeds.
    """
    setup = await service.setup_two_factor(token.identity.user_id)
    await session.commit()
    return TwoFactorSetupResponse(secret=setup.secret, provisioning_uri=setup.provisioning_uri, qr_code=setup.qr_code)


@router.post("/2fa/verify", response_model=MessageResponse)
@limiter.limit(settings.two_factor_rate_limit)
async def verify_two_factor(
    request: Request,
    data: TwoFactorVerifyRequest,
    token: VerifiedToken = Depends(get_session_token),
    service: AuthService = Depends(get_auth_service),
    session: AsyncSession = Depends(get_db_session),
):
    """Confirm the authenticator with a code and enable two-factor authentication."""
    await service.verify_two_factor_setup(token.identity.user_id, data.code)
    await session.commit()
    return MessageResponse(message="Two-factor authentication enabled")


@router.post("/2fa/disable", response_model=MessageResponse)
@limiter.limit(settings.two_factor_rate_limit)
async def disable_two_factor(
    request: Request,
    data: TwoFactorDisableRequest,
    token: VerifiedToken = Depends(get_session_token),
    service: AuthService = Depends(get_auth_service),
    session: AsyncSession = Depends(get_db_session),
):
    """Disable two-factor authentication (requires the account password)."""
    await service.disable_two_factor(token.identity.user_id, data.password)
    await session.commit()
    return MessageResponse(message="Two-factor authentication disabled")
