"""Authentication dependencies for FastAPI."""

from datetime import timedelta

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from src.config.settings import Settings, settings
from src.database.dependencies import get_db_session
from src.features.oidc.client import OidcClient
from src.features.oidc.dependencies import get_oidc_client
from src.features.user.models import User
from src.shared.clock import Clock, SystemClock

from .credentials import CredentialVerifier
from .exceptions import InvalidTokenException, SessionTokenRequiredException, UserInactiveException
from .service import AuthService
from .stores import SqlApiTokenStore, SqlAuthorizationRequestStore, SqlIdentityStore, SqlSessionStore
from .tokens import JwtTokenSigner, SessionTokenIssuer, VerifiedToken
from .totp import PngQrEncoder, QrEncoder, TotpHandler

security = HTTPBearer(auto_error=False)

_system_clock = SystemClock()
_qr_encoder = PngQrEncoder()


def get_clock() -> Clock:
    return _system_clock


def get_qr_encoder() -> QrEncoder:
    return _qr_encoder


def build_auth_service(
    session: AsyncSession,
    oidc: OidcClient,
    clock: Clock,
    qr_encoder: QrEncoder,
    app_settings: Settings,
) -> AuthService:
    """Wire an AuthService on SQL-backed stores for one database session."""
    identities = SqlIdentityStore(session)
    sessions = SqlSessionStore(session)

    issuer = SessionTokenIssuer(
        sessions=sessions,
        identities=identities,
        access_signer=JwtTokenSigner(
            app_settings.jwt_access_secret,
            app_settings.jwt_algorithm,
            app_settings.jwt_issuer,
            app_settings.jwt_audience,
        ),
        refresh_signer=JwtTokenSigner(
            app_settings.jwt_refresh_secret,
            app_settings.jwt_algorithm,
            app_settings.jwt_issuer,
            app_settings.jwt_audience,
        ),
        clock=clock,
        access_ttl=timedelta(minutes=app_settings.access_token_expire_minutes),
        refresh_ttl=timedelta(days=app_settings.refresh_token_expire_days),
    )

    return AuthService(
        session,
        identities=identities,
        sessions=sessions,
        auth_requests=SqlAuthorizationRequestStore(session),
        api_tokens=SqlApiTokenStore(session),
        verifier=CredentialVerifier(identities),
        totp=TotpHandler(clock, app_settings.totp_issuer),
        issuer=issuer,
        oidc=oidc,
        qr_encoder=qr_encoder,
        clock=clock,
        settings=app_settings,
    )


async def get_auth_service(
    session: AsyncSession = Depends(get_db_session),
    oidc: OidcClient = Depends(get_oidc_client),
    clock: Clock = Depends(get_clock),
    qr_encoder: QrEncoder = Depends(get_qr_encoder),
) -> AuthService:
    return build_auth_service(session, oidc, clock, qr_encoder, settings)


async def get_verified_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    service: AuthService = Depends(get_auth_service),
) -> VerifiedToken:
    """Verify the bearer credential: a session access token or a personal API token.

    Raises:
        InvalidTokenException: If the token is missing, invalid or revoked
        TokenExpiredException: If the token has expired

    """
    if credentials is None:
        raise InvalidTokenException(detail="Not authenticated")
    return await service.authenticate(credentials.credentials)


async def get_session_token(token: VerifiedToken = Depends(get_verified_token)) -> VerifiedToken:
    """Like get_verified_token, but only session access tokens are accepted.

    Used by endpoints that manage sessions, two-factor settings or API tokens.

    Raises:
        SessionTokenRequiredException: If an API token was presented

    """
    if not token.is_session:
        raise SessionTokenRequiredException()
    return token


async def get_current_user(
    token: VerifiedToken = Depends(get_verified_token),
    session: AsyncSession = Depends(get_db_session),
) -> User:
    """Get the current authenticated user from the access token.

    Raises:
        InvalidTokenException: If the user no longer exists
        UserInactiveException: If the account has been deactivated

    """
    user = await session.get(User, token.identity.user_id, populate_existing=True)

    if user is None:
        raise InvalidTokenException(detail="User not found")

    if not user.is_active:
        raise UserInactiveException()

    return user


def get_client_info(request: Request) -> tuple[str | None, str | None]:
    """Client IP address and User-Agent for the session audit trail."""
    ip_address = request.client.host if request.client else None
    return ip_address, request.headers.get("user-agent")
