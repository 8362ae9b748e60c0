"""User service layer."""

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.features.auth.stores import SqlSessionStore
from src.shared.clock import Clock

from .exceptions import EmailAlreadyExists, IncorrectPassword, NoLocalPassword, PasswordReused
from .models import User, UserRole, UserStatus
from .schemas import UserRegisterRequest

logger = logging.getLogger(__name__)


class UserService:
    """Service for user operations."""

    @staticmethod
    async def register_user(session: AsyncSession, data: UserRegisterRequest) -> User:
        """Register a new user with a local password.

        Args:
            session: Database session
            data: User registration data

        Returns:
            Created User object (flushed, so its id is set)

        Raises:
            EmailAlreadyExists: If email already exists

        """
        email = User.normalize_email(data.email)

        stmt = select(User).where(User.email == email)
        result = await session.execute(stmt)
        if result.scalar_one_or_none() is not None:
            raise EmailAlreadyExists()

        # Hash password (salt handled automatically by pwdlib using Argon2)
        user = User(
            email=email,
            full_name=data.full_name,
            hashed_password=User.hash_password(data.password),
            role=UserRole.MEMBER.value,
            status=UserStatus.ACTIVE.value,
        )

        session.add(user)
        try:
            await session.flush()
        except IntegrityError as e:
            # Lost a race with a concurrent registration of the same email
            await session.rollback()
            raise EmailAlreadyExists() from e

        logger.info(f"New user registered: {user.id} ({user.email})")
        return user

    @staticmethod
    async def change_password(
        session: AsyncSession, user: User, current_password: str, new_password: str, clock: Clock
    ) -> int:
        """Change user password and revoke every session of the user.

        Args:
            session: Database session
            user: User object
            current_password: Current password
            new_password: New password (strength already validated)
            clock: Time source for the revocation timestamp

        Returns:
            Number of sessions revoked

        Raises:
            NoLocalPassword: If the account was created through OIDC
            IncorrectPassword: If current password is incorrect
            PasswordReused: If the new password equals the current one

        """
        if not user.has_local_password:
            raise NoLocalPassword()

        if not user.verify_password(current_password):
            raise IncorrectPassword()

        if current_password == new_password:
            raise PasswordReused()

        # Update password (salt handled automatically by Argon2)
        user.hashed_password = User.hash_password(new_password)

        revoked = await SqlSessionStore(session).revoke_user_sessions(user.id, clock.now(), "password_changed")
        logger.info(f"Password changed for user {user.id}, {revoked} sessions revoked")
        return revoked
