"""Local email/password verification."""

import logging
from dataclasses import dataclass

from src.features.user.models import User, pwd_hasher

from .exceptions import InvalidCredentialsException
from .stores import IdentityStore

logger = logging.getLogger(__name__)

# Verified against when the email is unknown so both paths cost one Argon2 hash
_DUMMY_HASH = pwd_hasher.hash("dummy-password-for-timing")


@dataclass(frozen=True)
class Identity:
    """Established identity of a user, as carried in session tokens."""

    user_id: int
    email: str
    role: str
    two_factor_enabled: bool = False

    @classmethod
    def from_user(cls, user: User) -> "Identity":
        return cls(
            user_id=user.id,
            email=user.email,
            role=str(user.role),
            two_factor_enabled=bool(user.totp_enabled),
        )


class CredentialVerifier:
    """Checks an email/password pair against the stored Argon2 hash."""

    def __init__(self, identities: IdentityStore) -> None:
        self._identities = identities

    async def verify(self, email: str, password: str) -> Identity:
        """Verify credentials.

        Args:
            email: Email address (matched case-insensitively)
            password: Plain text password

        Returns:
            Identity of the account owner

        Raises:
            InvalidCredentialsException: For unknown emails, accounts without a
                local password, inactive accounts and wrong passwords alike

        """
        user = await self._identities.find_credential_by_email(email)

        if user is None or not user.has_local_password:
            pwd_hasher.verify(password, _DUMMY_HASH)
            logger.info("Login failed: unknown account or no local password")
            raise InvalidCredentialsException()

        if not user.verify_password(password):
            logger.info(f"Login failed: wrong password for user {user.id}")
            raise InvalidCredentialsException()

        if not user.is_active:
            logger.warning(f"Login attempt for inactive account: user {user.id}")
            raise InvalidCredentialsException()

        return Identity.from_user(user)
