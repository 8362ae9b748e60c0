"""User domain models."""

from datetime import datetime
from enum import StrEnum

from pwdlib import PasswordHash
from sqlalchemy import BigInteger, Boolean, DateTime, Enum, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from src.database.base import Base, TimestampMixin


class UserRole(StrEnum):
    """User roles carried in access tokens.

    OWNER: Owner of the organization, full access.
    ADMIN: Manages users and settings.
    MEMBER: Day-to-day asset management.
    VIEWER: Read-only access.
    """

    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"
    VIEWER = "viewer"


class UserStatus(StrEnum):
    """User account status."""

    ACTIVE = "active"
    INACTIVE = "inactive"


pwd_hasher = PasswordHash.recommended()


class User(Base, TimestampMixin):
    """User record owning the local credential, TOTP secret and OIDC link.

    hashed_password is NULL for accounts created through OIDC; such accounts
    can never pass local credential verification.
    """

    __tablename__ = "users"

    # Primary key
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Identity (stored lower-cased)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    full_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")

    # Local credential
    hashed_password: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Two-factor authentication
    totp_secret: Mapped[str | None] = mapped_column(String(64), nullable=True)
    totp_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    totp_last_used_step: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # Federated identity
    oidc_subject: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True, index=True)

    # Authorization
    role: Mapped[str] = mapped_column(
        Enum(UserRole, native_enum=False, length=50),
        nullable=False,
        default=UserRole.MEMBER.value,
        server_default=UserRole.MEMBER.value,
    )

    # Status
    status: Mapped[str] = mapped_column(
        Enum(UserStatus, native_enum=False, length=50),
        nullable=False,
        default=UserStatus.ACTIVE.value,
        server_default=UserStatus.ACTIVE.value,
        index=True,
    )

    # Audit
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def is_active(self) -> bool:
        """Computed property: user is active if status is ACTIVE."""
        return self.status == UserStatus.ACTIVE.value

    @property
    def has_local_password(self) -> bool:
        return self.hashed_password is not None

    @property
    def two_factor_enabled(self) -> bool:
        return bool(self.totp_enabled)

    @property
    def oidc_linked(self) -> bool:
        return self.oidc_subject is not None

    def verify_password(self, plain_password: str) -> bool:
        """Verify a password against the hash using Argon2.

        Salt is automatically extracted from the hash by pwdlib.
        """
        if self.hashed_password is None:
            return False
        return pwd_hasher.verify(plain_password, self.hashed_password)

    @staticmethod
    def hash_password(password: str) -> str:
        """Hash a password using Argon2.

        Salt is automatically generated and embedded in the returned hash.
        """
        return pwd_hasher.hash(password)

    @staticmethod
    def normalize_email(email: str) -> str:
        return email.strip().lower()
