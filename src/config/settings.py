"""
Application Settings - Pydantic Settings for configuration management.

Supports environment variables and .env file loading.
"""

from functools import lru_cache
from typing import Annotated, Literal

from pydantic import BeforeValidator, Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_JWT_SECRET = "change-me-in-production"


def normalize_to_lowercase(v: str) -> str:
    """Normalize string to lowercase."""
    if isinstance(v, str):
        return v.lower()
    return v


class AuthSettings(BaseSettings):
    """Identity token and credential settings."""

    model_config = SettingsConfigDict(env_prefix="AUTH_")

    jwt_secret: SecretStr = Field(
        default=SecretStr(DEFAULT_JWT_SECRET), description="Token signing secret"
    )
    jwt_algorithm: str = Field(default="HS256", description="Token signing algorithm")
    token_expire_days: int = Field(default=7, ge=1, description="Default token lifetime in days")
    remember_me_expire_days: int = Field(
        default=30, ge=1, description="Token lifetime when 'remember me' is requested"
    )

    # Session cookie
    cookie_name: str = Field(default="token", description="Cookie carrying the identity token")
    cookie_secure: bool = Field(default=False, description="Mark the session cookie Secure")
    cookie_samesite: Annotated[
        Literal["strict", "lax", "none"],
        BeforeValidator(normalize_to_lowercase),
    ] = Field(default="strict", description="SameSite policy of the session cookie")

    bcrypt_rounds: int = Field(default=12, ge=4, le=31, description="bcrypt cost factor")
    lookup_timeout_seconds: float = Field(
        default=2.0, gt=0, description="Timeout for user/chapter lookups during auth checks"
    )


class LockoutSettings(BaseSettings):
    """Brute-force lockout settings."""

    model_config = SettingsConfigDict(env_prefix="LOCKOUT_")

    max_login_attempts: int = Field(default=5, ge=1, description="Failed logins before lockout")
    lock_duration_seconds: int = Field(
        default=15 * 60, ge=1, description="Lockout duration in seconds"
    )


class RateLimitSettings(BaseSettings):
    """Request throttling settings, one window/max pair per policy."""

    model_config = SettingsConfigDict(env_prefix="RATE_LIMIT_")

    enabled: bool = Field(default=True, description="Enable rate limiting middleware")
    trust_forwarded_for: bool = Field(
        default=False, description="Use the first X-Forwarded-For hop as the client IP"
    )

    general_window_seconds: int = Field(default=15 * 60, description="General policy window")
    general_max_requests: int = Field(default=100, description="General policy max requests")

    auth_window_seconds: int = Field(default=15 * 60, description="Auth policy window")
    auth_max_requests: int = Field(default=5, description="Auth policy max failed requests")

    password_reset_window_seconds: int = Field(default=60 * 60, description="Password reset window")
    password_reset_max_requests: int = Field(default=3, description="Password reset max requests")

    email_verification_window_seconds: int = Field(
        default=60 * 60, description="Email verification window"
    )
    email_verification_max_requests: int = Field(
        default=5, description="Email verification max requests"
    )

    api_window_seconds: int = Field(default=15 * 60, description="API policy window")
    api_max_requests: int = Field(default=1000, description="API policy max requests")


class CSRFSettings(BaseSettings):
    """Anti-forgery token settings."""

    model_config = SettingsConfigDict(env_prefix="CSRF_")

    token_bytes: int = Field(default=32, ge=32, description="Random bytes per CSRF token")
    header_name: str = Field(default="X-CSRF-Token", description="Header carrying the token")
    form_field: str = Field(default="_csrf", description="Body field carrying the token")


class StoreSettings(BaseSettings):
    """Shared counter/TTL store settings."""

    model_config = SettingsConfigDict(env_prefix="STORE_")

    backend: Annotated[
        Literal["memory", "redis"],
        BeforeValidator(normalize_to_lowercase),
    ] = Field(default="memory", description="Counter store backend")
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis URL")
    key_prefix: str = Field(default="chapterguard:", description="Prefix for all store keys")


class APISettings(BaseSettings):
    """FastAPI server settings."""

    model_config = SettingsConfigDict(env_prefix="API_")

    host: str = Field(default="0.0.0.0", description="API host")  # nosec B104 - intentional for container deployment
    port: int = Field(default=8000, description="API port")
    cors_origins: list[str] = Field(
        default=["http://localhost:5173"], description="CORS allowed origins"
    )


class ObservabilitySettings(BaseSettings):
    """Logging and security monitoring settings."""

    model_config = SettingsConfigDict(env_prefix="OBSERVABILITY_")

    log_format: Literal["json", "console"] = Field(
        default="json", description="Log format (json for production, console for development)"
    )
    audit_body_limit_bytes: int = Field(
        default=64 * 1024, ge=0, description="Max request body bytes inspected for suspicious patterns"
    )


class Settings(BaseSettings):
    """Main application settings aggregating all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application metadata
    app_name: str = Field(default="Chapterguard", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Deployment environment"
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", description="Logging level"
    )

    # Sub-settings
    auth: AuthSettings = Field(default_factory=AuthSettings)
    lockout: LockoutSettings = Field(default_factory=LockoutSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    csrf: CSRFSettings = Field(default_factory=CSRFSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    api: APISettings = Field(default_factory=APISettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)

    @model_validator(mode="after")
    def _require_real_secret_in_production(self) -> "Settings":
        if (
            self.environment == "production"
            and self.auth.jwt_secret.get_secret_value() == DEFAULT_JWT_SECRET
        ):
            raise ValueError("AUTH_JWT_SECRET must be set in production")
        return self

    @property
    def is_development(self) -> bool:
        return self.environment == "development"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
