"""Application settings and configuration."""

import logging
from dataclasses import dataclass

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OidcProviderConfig:
    """Static configuration of the OpenID Connect provider."""

    issuer_url: str
    client_id: str
    client_secret: str
    redirect_uri: str
    scope: str = "openid email profile"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application (hardcoded constants)
    app_name: str = "DumbAssets Auth API"
    app_version: str = "0.1.0"

    # Environment-specific settings
    debug: bool = False
    environment: str  # development, staging, production

    # PostgreSQL
    postgres_url: str
    postgres_pool_size: int = 10
    postgres_max_overflow: int = 20
    postgres_pool_timeout: int = 30
    postgres_pool_recycle: int = 3600
    postgres_echo: bool = False
    postgres_create_tables: bool = True

    # API
    api_prefix: str = "/api"

    # Session tokens
    jwt_access_secret: str
    jwt_refresh_secret: str
    jwt_algorithm: str = "HS256"
    jwt_issuer: str = "dumbassets"
    jwt_audience: str = "dumbassets-api"
    access_token_expire_minutes: int = 15
    refresh_token_expire_days: int = 7

    # Two-factor authentication
    totp_issuer: str = "DumbAssets"
    totp_window_steps: int = 1
    totp_setup_window_steps: int = 2

    # OpenID Connect (optional, the OIDC login path is disabled when incomplete)
    oidc_issuer_url: str | None = None
    oidc_client_id: str | None = None
    oidc_client_secret: str | None = None
    oidc_redirect_uri: str | None = None
    oidc_scope: str = "openid email profile"
    oidc_request_ttl_minutes: int = 10
    oidc_http_timeout_seconds: float = 5.0
    oidc_discovery_refresh_minutes: int = 60

    # Rate limiting
    rate_limit_enabled: bool = True
    login_rate_limit: str = "5 per 15 minutes"
    two_factor_rate_limit: str = "10 per 5 minutes"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("environment", mode="before")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment value."""
        valid_envs = {"development", "staging", "production"}
        env = str(v).lower()
        if env not in valid_envs:
            raise ValueError(f"Environment must be one of {valid_envs}, got {env}")
        return env

    @field_validator("log_format", mode="before")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format value."""
        fmt = str(v).lower()
        if fmt not in {"json", "text"}:
            raise ValueError(f"Log format must be 'json' or 'text', got {fmt}")
        return fmt

    @field_validator("totp_window_steps", "totp_setup_window_steps")
    @classmethod
    def validate_totp_window(cls, v: int) -> int:
        """TOTP drift tolerance must stay small to bound replay."""
        if not 0 <= v <= 3:
            raise ValueError("TOTP window must be between 0 and 3 steps")
        return v

    def get_oidc_config(self) -> OidcProviderConfig | None:
        """Build the OIDC provider configuration.

        Returns:
            OidcProviderConfig when issuer, client id, client secret and redirect URI
            are all set, None otherwise (OIDC login disabled).

        """
        values = (self.oidc_issuer_url, self.oidc_client_id, self.oidc_client_secret, self.oidc_redirect_uri)
        if not all(values):
            if any(values):
                logger.warning("Incomplete OIDC configuration; OIDC login is disabled")
            return None

        return OidcProviderConfig(
            issuer_url=self.oidc_issuer_url.rstrip("/"),
            client_id=self.oidc_client_id,
            client_secret=self.oidc_client_secret,
            redirect_uri=self.oidc_redirect_uri,
            scope=self.oidc_scope,
        )


settings = Settings()  # type: ignore[call-arg]
