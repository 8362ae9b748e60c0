"""Application session tokens (JWT access + refresh with rotation)."""

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import jwt

from src.shared.clock import Clock, as_utc

from .credentials import Identity
from .exceptions import (
    InvalidTokenException,
    InvalidTokenTypeException,
    RefreshTokenReuseException,
    SessionRevokedException,
    TokenExpiredException,
)
from .models import AuthMethod, AuthSession
from .stores import IdentityStore, SessionStore

logger = logging.getLogger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


class TokenSigner(Protocol):
    """Signs claims into a token and reads them back.

    ``decode`` checks signature, issuer and audience but not expiry; expiry is
    checked by the caller against its own clock.
    """

    def sign(self, claims: dict[str, Any]) -> str: ...

    def decode(self, token: str) -> dict[str, Any]: ...


class JwtTokenSigner:
    """TokenSigner backed by PyJWT."""

    def __init__(self, secret: str, algorithm: str, issuer: str, audience: str) -> None:
        self._secret = secret
        self._algorithm = algorithm
        self._issuer = issuer
        self._audience = audience

    def sign(self, claims: dict[str, Any]) -> str:
        payload = {**claims, "iss": self._issuer, "aud": self._audience}
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def decode(self, token: str) -> dict[str, Any]:
        try:
            return jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                audience=self._audience,
                issuer=self._issuer,
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                    "require": ["iss", "aud", "sub", "sid", "jti", "type", "iat", "exp"],
                },
            )
        except jwt.InvalidTokenError as err:
            raise InvalidTokenException() from err


@dataclass(frozen=True)
class IssuedSession:
    """Tokens handed to the client after a successful authentication or refresh."""

    session_id: str
    user_id: int
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    expires_in: int  # seconds until the access token expires


@dataclass(frozen=True)
class VerifiedToken:
    """Result of verifying a bearer credential.

    Session access tokens carry ``session_id``; personal API tokens carry
    ``api_token_id`` instead and have no session.
    """

    identity: Identity
    session_id: str | None
    expires_at: datetime | None
    api_token_id: int | None = None

    @property
    def is_session(self) -> bool:
        return self.session_id is not None


class SessionTokenIssuer:
    """Issues, verifies, rotates and revokes application sessions.

    Access tokens are verified statelessly. Refresh tokens are only accepted
    while their ``jti`` is the one recorded on the session row; presenting an
    older one revokes the whole session.
    """

    def __init__(
        self,
        sessions: SessionStore,
        identities: IdentityStore,
        access_signer: TokenSigner,
        refresh_signer: TokenSigner,
        clock: Clock,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
    ) -> None:
        self._sessions = sessions
        self._identities = identities
        self._access_signer = access_signer
        self._refresh_signer = refresh_signer
        self._clock = clock
        self._access_ttl = access_ttl
        self._refresh_ttl = refresh_ttl

    async def issue(
        self,
        identity: Identity,
        auth_method: AuthMethod = AuthMethod.PASSWORD,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> IssuedSession:
        """Persist a new session and mint its first token pair."""
        now = self._clock.now()
        session_id = str(uuid.uuid4())
        refresh_jti = str(uuid.uuid4())
        refresh_expires_at = now + self._refresh_ttl

        await self._sessions.persist_session(
            AuthSession(
                id=session_id,
                user_id=identity.user_id,
                auth_method=auth_method.value,
                refresh_jti=refresh_jti,
                expires_at=refresh_expires_at,
                revoked=False,
                issued_at=now,
                ip_address=ip_address,
                user_agent=user_agent[:500] if user_agent else None,
            )
        )
        logger.info(f"Session {session_id} issued for user {identity.user_id} via {auth_method.value}")

        return self._mint(identity, session_id, refresh_jti, now, refresh_expires_at)

    def verify(self, access_token: str) -> VerifiedToken:
        """Verify an access token without touching storage.

        Raises:
            TokenExpiredException: Once the token's expiry has passed
            InvalidTokenException: For bad signatures, malformed tokens and
                refresh tokens presented as access tokens

        """
        claims = self._access_signer.decode(access_token)
        if claims.get("type") != ACCESS_TOKEN_TYPE:
            raise InvalidTokenTypeException(expected=ACCESS_TOKEN_TYPE)

        expires_at = self._expiry(claims)
        if self._clock.now() >= expires_at:
            raise TokenExpiredException()

        try:
            identity = Identity(
                user_id=int(claims["sub"]),
                email=str(claims["email"]),
                role=str(claims["role"]),
                two_factor_enabled=bool(claims.get("mfa", False)),
            )
        except (KeyError, TypeError, ValueError) as err:
            raise InvalidTokenException(detail="Invalid token payload") from err

        return VerifiedToken(identity=identity, session_id=str(claims["sid"]), expires_at=expires_at)

    async def rotate(self, refresh_token: str) -> IssuedSession:
        """Exchange a refresh token for a new token pair.

        Raises:
            TokenExpiredException: When the refresh token or its session expired
            SessionRevokedException: When the session was revoked
            RefreshTokenReuseException: When the token was already rotated out;
                the session is revoked as a side effect
            InvalidTokenException: For any other invalid token

        """
        claims = self._refresh_signer.decode(refresh_token)
        if claims.get("type") != REFRESH_TOKEN_TYPE:
            raise InvalidTokenTypeException(expected=REFRESH_TOKEN_TYPE)

        now = self._clock.now()
        if now >= self._expiry(claims):
            raise TokenExpiredException()

        session_id = str(claims["sid"])
        record = await self._sessions.get_session(session_id)
        if record is None or record.revoked or str(record.user_id) != str(claims["sub"]):
            raise SessionRevokedException()
        if now >= as_utc(record.expires_at):
            raise TokenExpiredException()

        user = await self._identities.find_user_by_id(record.user_id)
        if user is None or not user.is_active:
            await self._sessions.revoke_session(session_id, now, "user_inactive")
            raise InvalidTokenException(detail="User not found or inactive")

        new_jti = str(uuid.uuid4())
        refresh_expires_at = now + self._refresh_ttl
        rotated = await self._sessions.rotate_refresh_jti(
            session_id, str(claims["jti"]), new_jti, refresh_expires_at, now
        )
        if not rotated:
            await self._sessions.revoke_session(session_id, now, "refresh_token_reuse")
            logger.warning(f"Refresh token reuse detected, session {session_id} revoked")
            raise RefreshTokenReuseException()

        return self._mint(Identity.from_user(user), session_id, new_jti, now, refresh_expires_at)

    async def revoke(self, session_id: str, reason: str = "logout") -> bool:
        revoked = await self._sessions.revoke_session(session_id, self._clock.now(), reason)
        if revoked:
            logger.info(f"Session {session_id} revoked ({reason})")
        return revoked

    async def is_revoked(self, session_id: str) -> bool:
        return await self._sessions.is_revoked(session_id, self._clock.now())

    def _mint(
        self, identity: Identity, session_id: str, refresh_jti: str, now: datetime, refresh_expires_at: datetime
    ) -> IssuedSession:
        access_expires_at = now + self._access_ttl
        issued_at = int(now.timestamp())

        access_token = self._access_signer.sign(
            {
                "sub": str(identity.user_id),
                "sid": session_id,
                "jti": str(uuid.uuid4()),
                "type": ACCESS_TOKEN_TYPE,
                "email": identity.email,
                "role": identity.role,
                "mfa": identity.two_factor_enabled,
                "iat": issued_at,
                "exp": int(access_expires_at.timestamp()),
            }
        )
        refresh_token = self._refresh_signer.sign(
            {
                "sub": str(identity.user_id),
                "sid": session_id,
                "jti": refresh_jti,
                "type": REFRESH_TOKEN_TYPE,
                "iat": issued_at,
                "exp": int(refresh_expires_at.timestamp()),
            }
        )

        return IssuedSession(
            session_id=session_id,
            user_id=identity.user_id,
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_expires_at,
            refresh_expires_at=refresh_expires_at,
            expires_in=int(self._access_ttl.total_seconds()),
        )

    @staticmethod
    def _expiry(claims: dict[str, Any]) -> datetime:
        try:
            return datetime.fromtimestamp(int(claims["exp"]), UTC)
        except (KeyError, TypeError, ValueError, OverflowError) as err:
            raise InvalidTokenException(detail="Invalid token payload") from err
