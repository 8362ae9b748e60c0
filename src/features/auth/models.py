"""Authentication models (sessions, refresh token rotation and API tokens)."""

from datetime import UTC, datetime
from enum import StrEnum

from sqlalchemy import Boolean, DateTime, Enum, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from src.database.base import Base


class AuthMethod(StrEnum):
    """How the identity behind a session was established."""

    PASSWORD = "password"
    PASSWORD_TOTP = "password_totp"
    OIDC = "oidc"


class AuthSession(Base):
    """Server-side session record.

    One row per successful authentication. refresh_jti holds the id of the only
    refresh token currently accepted for the session; rotation swaps it, and
    presenting any other refresh token of the session revokes the row.
    """

    __tablename__ = "auth_sessions"

    # Primary key (also the "sid" claim of issued tokens)
    id: Mapped[str] = mapped_column(String(36), primary_key=True)

    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    auth_method: Mapped[str] = mapped_column(Enum(AuthMethod, native_enum=False, length=50), nullable=False)

    # Refresh token rotation
    refresh_jti: Mapped[str] = mapped_column(String(36), nullable=False, unique=True, index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    revoked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false", index=True)

    # Audit trail
    issued_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )
    last_refreshed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_reason: Mapped[str | None] = mapped_column(String(50), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)  # IPv6 max length is 45
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)


class ApiToken(Base):
    """Personal API token.

    Only the SHA-256 digest of the token is stored; the plain value is shown
    once, when the token is created. token_prefix lets the owner tell tokens
    apart without exposing them.
    """

    __tablename__ = "api_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    token_prefix: Mapped[str] = mapped_column(String(8), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)  # None: never
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
