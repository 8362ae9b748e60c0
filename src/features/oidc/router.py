"""OIDC router (federated login endpoints)."""

import logging

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from src.config.settings import settings
from src.database.dependencies import get_db_session
from src.features.auth.dependencies import get_auth_service, get_client_info, get_session_token
from src.features.auth.service import AuthService
from src.features.auth.tokens import VerifiedToken

from .client import OidcClient
from .dependencies import get_oidc_client
from .exceptions import OidcUnavailableException
from .schemas import (
    OidcAvailabilityResponse,
    OidcCallbackRequest,
    OidcCallbackResponse,
    OidcLoginResponse,
    OidcLogoutRequest,
    OidcLogoutResponse,
    OidcRefreshRequest,
    OidcTokenResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/oidc", tags=["OIDC"])

REQUEST_STATE_COOKIE = "oidc_request"


@router.get("/available", response_model=OidcAvailabilityResponse)
async def oidc_available(oidc: OidcClient = Depends(get_oidc_client)):
    """Whether the OIDC login option should be shown."""
    return OidcAvailabilityResponse(available=oidc.is_available())


@router.post("/login", response_model=OidcLoginResponse)
async def oidc_login(
    response: Response,
    service: AuthService = Depends(get_auth_service),
    session: AsyncSession = Depends(get_db_session),
):
    """Start an OIDC login.

    Returns the provider authorization URL to redirect the browser to. The
    request_state is also set as an HTTP-only cookie for the callback.
    """
    start = await service.begin_oidc_login()
    await session.commit()

    response.set_cookie(
        REQUEST_STATE_COOKIE,
        start.request_state,
        max_age=settings.oidc_request_ttl_minutes * 60,
        httponly=True,
        secure=settings.environment == "production",
        samesite="lax",
    )
    return OidcLoginResponse(redirect_url=start.redirect_url, request_state=start.request_state)


@router.post("/callback", response_model=OidcCallbackResponse)
async def oidc_callback(
    data: OidcCallbackRequest,
    request: Request,
    response: Response,
    service: AuthService = Depends(get_auth_service),
    session: AsyncSession = Depends(get_db_session),
):
    """Complete an OIDC login with the parameters the provider redirected back with.

    - **code**: Authorization code
    - **state**: State echoed by the provider
    - **request_state**: Value returned by `/oidc/login` (defaults to the cookie)
    - **error**: Error reported by the provider, fails the login
    """
    request_state = data.request_state or request.cookies.get(REQUEST_STATE_COOKIE)
    ip_address, user_agent = get_client_info(request)

    if data.error:
        logger.warning(f"OIDC provider returned error: {data.error} ({data.error_description or 'no description'})")

    result = await service.complete_oidc_login(
        data.code,
        request_state,
        data.state,
        error=data.error,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    await session.commit()

    response.delete_cookie(REQUEST_STATE_COOKIE)
    issued = result.session
    provider_tokens = result.provider_tokens
    return OidcCallbackResponse(
        access_token=issued.access_token,
        refresh_token=issued.refresh_token,
        expires_in=issued.expires_in,
        session_id=issued.session_id,
        id_token=provider_tokens.id_token if provider_tokens else None,
        provider_refresh_token=provider_tokens.refresh_token if provider_tokens else None,
    )


@router.post("/refresh", response_model=OidcTokenResponse)
async def oidc_refresh(
    data: OidcRefreshRequest,
    _: VerifiedToken = Depends(get_session_token),
    oidc: OidcClient = Depends(get_oidc_client),
):
    """Refresh provider tokens with a provider refresh token."""
    if not oidc.is_available():
        raise OidcUnavailableException()

    token_set = await oidc.refresh_tokens(data.refresh_token)
    return OidcTokenResponse(
        access_token=token_set.access_token,
        token_type=token_set.token_type,
        id_token=token_set.id_token,
        refresh_token=token_set.refresh_token,
        expires_at=token_set.expires_at,
        scope=token_set.scope,
    )


@router.post("/logout", response_model=OidcLogoutResponse)
async def oidc_logout(
    data: OidcLogoutRequest,
    token: VerifiedToken = Depends(get_session_token),
    service: AuthService = Depends(get_auth_service),
    oidc: OidcClient = Depends(get_oidc_client),
    session: AsyncSession = Depends(get_db_session),
):
    """Revoke the current session and return the provider logout URL.

    logout_url is null when the provider offers no end-session endpoint; the
    local session is revoked either way.
    """
    await service.logout(token.session_id)
    await session.commit()

    logout_url = oidc.generate_logout_url(data.id_token_hint, data.post_logout_redirect_uri)
    if logout_url is None:
        return OidcLogoutResponse(logout_url=None, message="Logged out locally; provider logout is not available")

    return OidcLogoutResponse(logout_url=logout_url, message="Logged out; redirect to the provider to end its session")
