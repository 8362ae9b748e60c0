"""Persistence interfaces used by the authentication core.

The ``*Store`` protocols describe what the core needs from storage; the
``Sql*`` classes implement them on the request-scoped ``AsyncSession``.
Operations that must succeed at most once (consuming an authorization
request, rotating a refresh token, accepting a TOTP step) are single
conditional UPDATE statements whose affected row count decides the outcome.
"""

from datetime import datetime
from typing import Protocol

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.features.oidc.models import AuthorizationRequest
from src.features.user.models import User

from .models import ApiToken, AuthSession


class IdentityStore(Protocol):
    async def find_credential_by_email(self, email: str) -> User | None: ...

    async def find_user_by_id(self, user_id: int) -> User | None: ...

    async def find_totp_secret(self, user_id: int) -> str | None: ...

    async def find_user_by_subject(self, subject: str) -> User | None: ...

    async def add_user(self, user: User) -> User: ...

    async def claim_totp_step(self, user_id: int, step: int) -> bool: ...

    async def record_login(self, user_id: int, now: datetime) -> None: ...


class SessionStore(Protocol):
    async def persist_session(self, auth_session: AuthSession) -> None: ...

    async def get_session(self, session_id: str) -> AuthSession | None: ...

    async def rotate_refresh_jti(
        self, session_id: str, old_jti: str, new_jti: str, expires_at: datetime, now: datetime
    ) -> bool: ...

    async def revoke_session(self, session_id: str, now: datetime, reason: str) -> bool: ...

    async def revoke_user_sessions(self, user_id: int, now: datetime, reason: str) -> int: ...

    async def is_revoked(self, session_id: str, now: datetime) -> bool: ...

    async def list_active_sessions(self, user_id: int, now: datetime) -> list[AuthSession]: ...


class AuthorizationRequestStore(Protocol):
    async def save(self, request: AuthorizationRequest) -> None: ...

    async def consume(self, state: str, now: datetime) -> AuthorizationRequest | None: ...

    async def purge_expired(self, now: datetime) -> int: ...


class ApiTokenStore(Protocol):
    async def add(self, token: ApiToken) -> ApiToken: ...

    async def list_for_user(self, user_id: int) -> list[ApiToken]: ...

    async def delete_for_user(self, user_id: int, token_id: int) -> bool: ...

    async def find_usable(self, token_hash: str, now: datetime) -> ApiToken | None: ...

    async def record_use(self, token_id: int, now: datetime) -> None: ...


class SqlIdentityStore:
    """Users table access."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def find_credential_by_email(self, email: str) -> User | None:
        stmt = select(User).where(User.email == User.normalize_email(email))
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_user_by_id(self, user_id: int) -> User | None:
        return await self._session.get(User, user_id, populate_existing=True)

    async def find_totp_secret(self, user_id: int) -> str | None:
        """Return the secret only when two-factor authentication is enabled."""
        stmt = select(User.totp_secret).where(User.id == user_id, User.totp_enabled.is_(True))
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_user_by_subject(self, subject: str) -> User | None:
        stmt = select(User).where(User.oidc_subject == subject)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def add_user(self, user: User) -> User:
        self._session.add(user)
        await self._session.flush()
        return user

    async def claim_totp_step(self, user_id: int, step: int) -> bool:
        """Record ``step`` as the last accepted TOTP step if it is newer.

        Returns:
            False when the same or a later step was already accepted

        """
        stmt = (
            update(User)
            .where(
                User.id == user_id,
                or_(User.totp_last_used_step.is_(None), User.totp_last_used_step < step),
            )
            .values(totp_last_used_step=step)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def record_login(self, user_id: int, now: datetime) -> None:
        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(last_login_at=now)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)


class SqlSessionStore:
    """auth_sessions table access."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def persist_session(self, auth_session: AuthSession) -> None:
        self._session.add(auth_session)
        await self._session.flush()

    async def get_session(self, session_id: str) -> AuthSession | None:
        stmt = select(AuthSession).where(AuthSession.id == session_id).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def rotate_refresh_jti(
        self, session_id: str, old_jti: str, new_jti: str, expires_at: datetime, now: datetime
    ) -> bool:
        """Swap the current refresh token id, only if ``old_jti`` is still current."""
        stmt = (
            update(AuthSession)
            .where(
                AuthSession.id == session_id,
                AuthSession.refresh_jti == old_jti,
                AuthSession.revoked.is_(False),
            )
            .values(refresh_jti=new_jti, expires_at=expires_at, last_refreshed_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def revoke_session(self, session_id: str, now: datetime, reason: str) -> bool:
        stmt = (
            update(AuthSession)
            .where(AuthSession.id == session_id, AuthSession.revoked.is_(False))
            .values(revoked=True, revoked_at=now, revoked_reason=reason)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def revoke_user_sessions(self, user_id: int, now: datetime, reason: str) -> int:
        stmt = (
            update(AuthSession)
            .where(AuthSession.user_id == user_id, AuthSession.revoked.is_(False))
            .values(revoked=True, revoked_at=now, revoked_reason=reason)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    async def is_revoked(self, session_id: str, now: datetime) -> bool:
        """Unknown and expired sessions count as revoked."""
        stmt = select(AuthSession.id).where(
            AuthSession.id == session_id,
            AuthSession.revoked.is_(False),
            AuthSession.expires_at > now,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none() is None

    async def list_active_sessions(self, user_id: int, now: datetime) -> list[AuthSession]:
        stmt = (
            select(AuthSession)
            .where(
                AuthSession.user_id == user_id,
                AuthSession.revoked.is_(False),
                AuthSession.expires_at > now,
            )
            .order_by(AuthSession.issued_at.desc())
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


class SqlAuthorizationRequestStore:
    """authorization_requests table access."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def save(self, request: AuthorizationRequest) -> None:
        self._session.add(request)
        await self._session.flush()

    async def consume(self, state: str, now: datetime) -> AuthorizationRequest | None:
        """Mark a pending request as consumed and return it.

        Returns:
            The request, or None if it is unknown, expired or already consumed

        """
        stmt = (
            update(AuthorizationRequest)
            .where(
                AuthorizationRequest.state == state,
                AuthorizationRequest.consumed_at.is_(None),
                AuthorizationRequest.expires_at > now,
            )
            .values(consumed_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount != 1:
            return None

        select_stmt = select(AuthorizationRequest).where(AuthorizationRequest.state == state).execution_options(
            populate_existing=True
        )
        return (await self._session.execute(select_stmt)).scalar_one()

    async def purge_expired(self, now: datetime) -> int:
        """Delete expired and consumed requests."""
        stmt = (
            delete(AuthorizationRequest)
            .where(or_(AuthorizationRequest.expires_at <= now, AuthorizationRequest.consumed_at.is_not(None)))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount


class SqlApiTokenStore:
    """api_tokens table access."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(self, token: ApiToken) -> ApiToken:
        self._session.add(token)
        await self._session.flush()
        return token

    async def list_for_user(self, user_id: int) -> list[ApiToken]:
        stmt = (
            select(ApiToken)
            .where(ApiToken.user_id == user_id)
            .order_by(ApiToken.created_at.desc(), ApiToken.id.desc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def delete_for_user(self, user_id: int, token_id: int) -> bool:
        stmt = (
            delete(ApiToken)
            .where(ApiToken.id == token_id, ApiToken.user_id == user_id)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def find_usable(self, token_hash: str, now: datetime) -> ApiToken | None:
        """Return the token with this digest unless it has expired."""
        stmt = select(ApiToken).where(
            ApiToken.token_hash == token_hash,
            or_(ApiToken.expires_at.is_(None), ApiToken.expires_at > now),
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def record_use(self, token_id: int, now: datetime) -> None:
        stmt = (
            update(ApiToken)
            .where(ApiToken.id == token_id)
            .values(last_used_at=now)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
