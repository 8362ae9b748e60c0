"""Authentication service layer (login orchestration)."""

import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum

from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from src.config.settings import Settings
from src.features.oidc.client import OidcClient, OidcUserInfo, TokenSet
from src.features.oidc.exceptions import (
    OidcAuthenticationException,
    OidcUnavailableException,
    OidcValidationException,
)
from src.features.oidc.models import AuthorizationRequest
from src.features.user.models import User
from src.features.user.schemas import UserRegisterRequest
from src.features.user.service import UserService
from src.shared.clock import Clock, as_utc

from .api_tokens import generate_api_token, hash_api_token, is_well_formed_api_token, looks_like_api_token
from .credentials import CredentialVerifier, Identity
from .exceptions import (
    ApiTokenExpiryException,
    ApiTokenNotFoundException,
    InvalidApiTokenException,
    InvalidCredentialsException,
    InvalidTokenException,
    InvalidTwoFactorCodeException,
    SessionNotFoundException,
    SessionRevokedException,
    TwoFactorAlreadyEnabledException,
    TwoFactorNotEnabledException,
    TwoFactorNotInitiatedException,
    UserInactiveException,
)
from .models import ApiToken, AuthMethod, AuthSession
from .stores import ApiTokenStore, AuthorizationRequestStore, IdentityStore, SessionStore
from .tokens import IssuedSession, SessionTokenIssuer, VerifiedToken
from .totp import QrEncoder, TotpHandler

logger = logging.getLogger(__name__)


class LoginState(StrEnum):
    START = "start"
    CREDENTIALS_SUBMITTED = "credentials_submitted"
    TWO_FACTOR_PENDING = "two_factor_pending"
    OIDC_INIT = "oidc_init"
    OIDC_CALLBACK = "oidc_callback"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


_TRANSITIONS: dict[LoginState, frozenset[LoginState]] = {
    LoginState.START: frozenset({LoginState.CREDENTIALS_SUBMITTED, LoginState.OIDC_INIT}),
    LoginState.CREDENTIALS_SUBMITTED: frozenset(
        {LoginState.TWO_FACTOR_PENDING, LoginState.AUTHENTICATED, LoginState.FAILED}
    ),
    LoginState.TWO_FACTOR_PENDING: frozenset({LoginState.AUTHENTICATED, LoginState.FAILED}),
    LoginState.OIDC_INIT: frozenset({LoginState.OIDC_CALLBACK, LoginState.FAILED}),
    LoginState.OIDC_CALLBACK: frozenset({LoginState.AUTHENTICATED, LoginState.FAILED}),
    LoginState.AUTHENTICATED: frozenset(),
    LoginState.FAILED: frozenset(),
}


class IllegalTransitionError(RuntimeError):
    """Raised when a login attempt is moved to a state it cannot reach."""


class LoginAttempt:
    """Tracks the state of one login attempt."""

    def __init__(self, initial: LoginState = LoginState.START) -> None:
        self.attempt_id = uuid.uuid4().hex[:12]
        self.state = initial
        self.history = [initial]

    @property
    def is_terminal(self) -> bool:
        return not _TRANSITIONS[self.state]

    def advance(self, new_state: LoginState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise IllegalTransitionError(f"Cannot move login attempt from {self.state} to {new_state}")
        logger.debug(f"Login attempt {self.attempt_id}: {self.state} -> {new_state}")
        self.state = new_state
        self.history.append(new_state)

    def fail(self, reason: str) -> None:
        if self.is_terminal:
            return
        logger.info(f"Login attempt {self.attempt_id} failed in {self.state}: {reason}")
        self.advance(LoginState.FAILED)


@dataclass(frozen=True)
class LoginResult:
    """Outcome of a login: a session, or a request for the second factor."""

    user_id: int
    session: IssuedSession | None = None
    requires_two_factor: bool = False
    provider_tokens: TokenSet | None = None


@dataclass(frozen=True)
class OidcLoginStart:
    redirect_url: str
    request_state: str


@dataclass(frozen=True)
class TwoFactorSetup:
    secret: str
    provisioning_uri: str
    qr_code: str


@dataclass(frozen=True)
class CreatedApiToken:
    """A new API token; ``token`` is the only copy of the plain value."""

    record: ApiToken
    token: str


class AuthService:
    """Sequences credential, TOTP and OIDC checks and issues sessions.

    Every collaborator is passed in; ``src.features.auth.dependencies`` wires the
    SQL-backed stores for a request. The database session is only used to
    commit security-relevant writes (burnt login requests, revoked sessions)
    that must survive a failed request.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        identities: IdentityStore,
        sessions: SessionStore,
        auth_requests: AuthorizationRequestStore,
        api_tokens: ApiTokenStore,
        verifier: CredentialVerifier,
        totp: TotpHandler,
        issuer: SessionTokenIssuer,
        oidc: OidcClient,
        qr_encoder: QrEncoder,
        clock: Clock,
        settings: Settings,
    ) -> None:
        self._session = session
        self._identities = identities
        self._sessions = sessions
        self._auth_requests = auth_requests
        self._api_tokens = api_tokens
        self._verifier = verifier
        self._totp = totp
        self._issuer = issuer
        self._oidc = oidc
        self._qr_encoder = qr_encoder
        self._clock = clock
        self._settings = settings

    # Local login

    async def login(
        self,
        email: str,
        password: str,
        totp_code: str | None = None,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> LoginResult:
        """Authenticate with email and password, plus a TOTP code when 2FA is enabled.

        Returns:
            LoginResult with a session, or with requires_two_factor=True and no
            session when 2FA is enabled and no code was supplied

        Raises:
            InvalidCredentialsException: If the email/password pair is rejected
            InvalidTwoFactorCodeException: If the code is wrong, outside the
                allowed window or was already used

        """
        attempt = LoginAttempt()
        attempt.advance(LoginState.CREDENTIALS_SUBMITTED)

        try:
            identity = await self._verifier.verify(email, password)
        except InvalidCredentialsException:
            attempt.fail("invalid credentials")
            raise

        auth_method = AuthMethod.PASSWORD
        secret = await self._identities.find_totp_secret(identity.user_id)
        if secret is not None:
            attempt.advance(LoginState.TWO_FACTOR_PENDING)
            if not totp_code:
                logger.info(f"Login for user {identity.user_id} waiting for a two-factor code")
                return LoginResult(user_id=identity.user_id, requires_two_factor=True)

            step = self._totp.match_step(secret, totp_code, self._settings.totp_window_steps)
            if step is None or not await self._identities.claim_totp_step(identity.user_id, step):
                attempt.fail("invalid two-factor code")
                raise InvalidTwoFactorCodeException()
            auth_method = AuthMethod.PASSWORD_TOTP

        attempt.advance(LoginState.AUTHENTICATED)
        issued = await self._start_session(identity, auth_method, ip_address, user_agent)
        logger.info(f"User {identity.user_id} logged in ({auth_method.value})")

        return LoginResult(user_id=identity.user_id, session=issued)

    async def register(
        self, data: UserRegisterRequest, *, ip_address: str | None = None, user_agent: str | None = None
    ) -> tuple[User, IssuedSession]:
        """Create an account with a local password and start its first session.

        Raises:
            EmailAlreadyExists: If the email is already registered

        """
        user = await UserService.register_user(self._session, data)
        issued = await self._start_session(Identity.from_user(user), AuthMethod.PASSWORD, ip_address, user_agent)
        return await self._get_user(user.id), issued

    # OIDC login

    def oidc_available(self) -> bool:
        return self._oidc.is_available()

    async def begin_oidc_login(self) -> OidcLoginStart:
        """Persist a new authorization request and return the provider redirect.

        Raises:
            OidcUnavailableException: If the OIDC login path is disabled

        """
        if not self._oidc.is_available():
            raise OidcUnavailableException()

        attempt = LoginAttempt()
        attempt.advance(LoginState.OIDC_INIT)

        now = self._clock.now()
        purged = await self._auth_requests.purge_expired(now)
        if purged:
            logger.debug(f"Purged {purged} stale OIDC login requests")

        state = secrets.token_urlsafe(32)
        nonce = secrets.token_urlsafe(32)
        authorization = self._oidc.generate_authorization_url(state, nonce)

        await self._auth_requests.save(
            AuthorizationRequest(
                state=state,
                nonce=nonce,
                code_verifier=authorization.code_verifier,
                created_at=now,
                expires_at=now + timedelta(minutes=self._settings.oidc_request_ttl_minutes),
            )
        )
        logger.info(f"OIDC login started (state {state[:8]}...)")

        return OidcLoginStart(redirect_url=authorization.url, request_state=state)

    async def complete_oidc_login(
        self,
        code: str | None,
        request_state: str | None,
        received_state: str | None,
        *,
        error: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> LoginResult:
        """Finish an OIDC login from the provider callback.

        The authorization request named by ``request_state`` is consumed before
        anything else, so it can never be used again whatever the outcome.

        Raises:
            OidcValidationException: Unknown, expired or replayed request state,
                state or nonce mismatch, or an error reported by the provider
            OidcAuthenticationException: ID token or account linking failure
            OidcUnavailableException: Provider unreachable or OIDC disabled

        """
        if not self._oidc.is_available():
            raise OidcUnavailableException()

        pending = None
        if request_state:
            pending = await self._auth_requests.consume(request_state, self._clock.now())
            await self._session.commit()

        if pending is None:
            logger.warning("OIDC callback for an unknown, expired or already used login request")
            raise OidcValidationException("Login request is invalid, expired or already used")

        attempt = LoginAttempt(LoginState.OIDC_INIT)
        attempt.advance(LoginState.OIDC_CALLBACK)

        try:
            if error:
                raise OidcValidationException(f"Provider returned an error: {error}")
            if not code:
                raise OidcValidationException("Authorization code is missing")

            token_set = await self._oidc.exchange_code_for_tokens(
                code,
                pending.code_verifier,
                expected_state=pending.state,
                expected_nonce=pending.nonce,
                received_state=received_state,
            )
            user_info = await self._oidc.get_user_info(token_set.access_token)
            if user_info.sub != token_set.id_token_claims.get("sub"):
                raise OidcAuthenticationException("Userinfo subject does not match the ID token")

            user = await self._link_oidc_user(user_info)
        except HTTPException as e:
            attempt.fail(str(e.detail))
            raise

        attempt.advance(LoginState.AUTHENTICATED)
        identity = Identity.from_user(user)
        issued = await self._start_session(identity, AuthMethod.OIDC, ip_address, user_agent)
        logger.info(f"User {user.id} logged in via OIDC")

        return LoginResult(user_id=user.id, session=issued, provider_tokens=token_set)

    async def _link_oidc_user(self, info: OidcUserInfo) -> User:
        """Find the local user for a provider identity, linking or creating one."""
        user = await self._identities.find_user_by_subject(info.sub)

        if user is None:
            if not info.email:
                raise OidcAuthenticationException("Provider did not supply an email address")

            existing = await self._identities.find_credential_by_email(info.email)
            if existing is not None:
                if not info.email_verified:
                    logger.warning(f"Refusing to link unverified provider email to user {existing.id}")
                    raise OidcAuthenticationException("Email address is not verified by the provider")
                if existing.oidc_subject is not None:
                    raise OidcAuthenticationException("Account is linked to a different identity")
                existing.oidc_subject = info.sub
                existing.email_verified = True
                user = existing
                logger.info(f"Linked OIDC identity to user {user.id}")
            else:
                full_name = info.name or " ".join(filter(None, (info.given_name, info.family_name))) or None
                user = await self._identities.add_user(
                    User(
                        email=User.normalize_email(info.email),
                        full_name=full_name,
                        email_verified=info.email_verified,
                        hashed_password=None,
                        oidc_subject=info.sub,
                    )
                )
                logger.info(f"Created user {user.id} from OIDC identity")

        if not user.is_active:
            raise OidcAuthenticationException("User account is inactive")

        return user

    # Sessions

    async def refresh(self, refresh_token: str) -> IssuedSession:
        """Rotate a refresh token.

        Raises:
            InvalidTokenException: For expired, revoked, reused or malformed tokens

        """
        try:
            return await self._issuer.rotate(refresh_token)
        except InvalidTokenException:
            # Keep revocations made while rejecting a reused token
            await self._session.commit()
            raise

    async def authenticate(self, bearer_token: str) -> VerifiedToken:
        """Verify a bearer credential.

        JWT access tokens are rejected once their session is revoked. Anything
        without the dots of a JWT is treated as a personal API token.
        """
        if looks_like_api_token(bearer_token):
            return await self._authenticate_api_token(bearer_token)

        verified = self._issuer.verify(bearer_token)
        if await self._issuer.is_revoked(verified.session_id):
            raise SessionRevokedException()
        return verified

    async def _authenticate_api_token(self, token: str) -> VerifiedToken:
        if not is_well_formed_api_token(token):
            raise InvalidApiTokenException()

        now = self._clock.now()
        record = await self._api_tokens.find_usable(hash_api_token(token), now)
        if record is None:
            logger.info("Rejected unknown or expired API token")
            raise InvalidApiTokenException()

        user = await self._identities.find_user_by_id(record.user_id)
        if user is None or not user.is_active:
            logger.warning(f"API token {record.id} presented for missing or inactive user {record.user_id}")
            raise InvalidApiTokenException()

        await self._api_tokens.record_use(record.id, now)
        return VerifiedToken(
            identity=Identity.from_user(user),
            session_id=None,
            expires_at=as_utc(record.expires_at) if record.expires_at else None,
            api_token_id=record.id,
        )

    async def logout(self, session_id: str) -> bool:
        return await self._issuer.revoke(session_id, reason="logout")

    async def logout_all(self, user_id: int) -> int:
        count = await self._sessions.revoke_user_sessions(user_id, self._clock.now(), "logout_all")
        logger.info(f"Revoked {count} sessions for user {user_id}")
        return count

    async def list_sessions(self, user_id: int) -> list[AuthSession]:
        return await self._sessions.list_active_sessions(user_id, self._clock.now())

    async def revoke_session(self, user_id: int, session_id: str) -> None:
        """Revoke one of the user's own sessions."""
        record = await self._sessions.get_session(session_id)
        if record is None or record.user_id != user_id or record.revoked:
            raise SessionNotFoundException()
        await self._issuer.revoke(session_id, reason="revoked_by_user")

    # API tokens

    async def create_api_token(self, user_id: int, name: str, expires_at: datetime | None = None) -> CreatedApiToken:
        """Create a personal API token; the plain value is returned only here.

        Raises:
            UserInactiveException: If the account has been deactivated
            ApiTokenExpiryException: If expires_at is not in the future

        """
        user = await self._get_user(user_id)
        if not user.is_active:
            raise UserInactiveException()

        now = self._clock.now()
        if expires_at is not None:
            expires_at = as_utc(expires_at)
            if expires_at <= now:
                raise ApiTokenExpiryException()

        token = generate_api_token()
        record = await self._api_tokens.add(
            ApiToken(
                user_id=user_id,
                name=name.strip(),
                token_hash=hash_api_token(token),
                token_prefix=token[:8],
                created_at=now,
                expires_at=expires_at,
            )
        )
        logger.info(f"API token {record.id} ({record.name}) created for user {user_id}")

        return CreatedApiToken(record=record, token=token)

    async def list_api_tokens(self, user_id: int) -> list[ApiToken]:
        return await self._api_tokens.list_for_user(user_id)

    async def revoke_api_token(self, user_id: int, token_id: int) -> None:
        """Delete one of the user's own API tokens."""
        if not await self._api_tokens.delete_for_user(user_id, token_id):
            raise ApiTokenNotFoundException()
        logger.info(f"API token {token_id} deleted by user {user_id}")

    # Two-factor setup

    async def setup_two_factor(self, user_id: int) -> TwoFactorSetup:
        """Generate and store a new (not yet enabled) TOTP secret."""
        user = await self._get_user(user_id)
        if user.totp_enabled:
            raise TwoFactorAlreadyEnabledException()

        enrollment = self._totp.generate_secret(user.email)
        user.totp_secret = enrollment.secret
        user.totp_last_used_step = None
        await self._session.flush()
        logger.info(f"Two-factor setup started for user {user_id}")

        return TwoFactorSetup(
            secret=enrollment.secret,
            provisioning_uri=enrollment.provisioning_uri,
            qr_code=self._qr_encoder.encode(enrollment.provisioning_uri),
        )

    async def verify_two_factor_setup(self, user_id: int, code: str) -> None:
        """Enable 2FA once the user proves their authenticator produces valid codes."""
        user = await self._get_user(user_id)
        if user.totp_enabled:
            raise TwoFactorAlreadyEnabledException()
        if not user.totp_secret:
            raise TwoFactorNotInitiatedException()

        step = self._totp.match_step(user.totp_secret, code, self._settings.totp_setup_window_steps)
        if step is None:
            raise InvalidTwoFactorCodeException()

        user.totp_enabled = True
        user.totp_last_used_step = step
        await self._session.flush()
        logger.info(f"Two-factor authentication enabled for user {user_id}")

    async def disable_two_factor(self, user_id: int, password: str) -> None:
        user = await self._get_user(user_id)
        if not user.totp_enabled:
            raise TwoFactorNotEnabledException()
        if not user.verify_password(password):
            raise InvalidCredentialsException()

        user.totp_enabled = False
        user.totp_secret = None
        user.totp_last_used_step = None
        await self._session.flush()
        logger.info(f"Two-factor authentication disabled for user {user_id}")

    async def _get_user(self, user_id: int) -> User:
        user = await self._identities.find_user_by_id(user_id)
        if user is None:
            raise InvalidTokenException(detail="User not found")
        return user

    async def _start_session(
        self, identity: Identity, auth_method: AuthMethod, ip_address: str | None, user_agent: str | None
    ) -> IssuedSession:
        await self._identities.record_login(identity.user_id, self._clock.now())
        return await self._issuer.issue(identity, auth_method, ip_address=ip_address, user_agent=user_agent)
