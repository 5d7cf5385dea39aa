from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from feastid.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment environments; production turns on secure-only cookies."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity core."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/feastid", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/feastid", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviour for CI; allows running without Redis.",
    )
    store_timeout_seconds: float = env_field(
        5.0,
        "STORE_TIMEOUT_SECONDS",
        description="Upper bound for a single credential store call",
    )

    # Session credentials
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("feastid", "JWT_ISSUER")
    jwt_audience: str = env_field("feastid-clients", "JWT_AUDIENCE")
    session_ttl_minutes: int = env_field(15, "SESSION_TTL_MINUTES")
    refresh_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TTL_MINUTES")
    clock_skew_leeway_seconds: int = env_field(0, "CLOCK_SKEW_LEEWAY_SECONDS")
    session_cookie_name: str = env_field("xianfeast_session", "SESSION_COOKIE_NAME")
    refresh_cookie_name: str = env_field("xianfeast_refresh", "REFRESH_COOKIE_NAME")
    cookie_secure: bool | None = env_field(
        None,
        "COOKIE_SECURE",
        description="Defaults to True when APP_ENV=production",
    )

    # One-time passcodes
    otp_length: int = env_field(6, "OTP_LENGTH")
    otp_ttl_minutes: int = env_field(5, "OTP_TTL_MINUTES")
    otp_max_attempts: int = env_field(3, "OTP_MAX_ATTEMPTS")
    otp_resend_cooldown_seconds: int = env_field(60, "OTP_RESEND_COOLDOWN_SECONDS")

    # Invitations
    invite_ttl_hours: int = env_field(24, "INVITE_TTL_HOURS")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")
    invite_path: str = env_field("/auth/magic", "INVITE_PATH")

    # Passwords and roles
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST")
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM")
    super_admin_role: str = env_field("super_admin", "SUPER_ADMIN_ROLE")

    # Rate limits (requests per minute, per subject)
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    otp_request_rate_limit_per_minute: int = env_field(
        5, "OTP_REQUEST_RATE_LIMIT_PER_MINUTE"
    )
    invite_rate_limit_per_minute: int = env_field(30, "INVITE_RATE_LIMIT_PER_MINUTE")

    # HTTP surface
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    otp_sweep_interval_seconds: int = env_field(
        300,
        "OTP_SWEEP_INTERVAL_SECONDS",
        description="How often expired and consumed passcodes are purged",
    )

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("XianFeast", "EMAIL_FROM_NAME")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def secure_cookies(self) -> bool:
        if self.cookie_secure is not None:
            return self.cookie_secure
        return self.environment == Environment.PRODUCTION

    @field_validator("environment")
    @classmethod
    def _validate_environment(cls, value: Environment) -> Environment:
        return Environment(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("otp_length")
    @classmethod
    def _validate_otp_length(cls, value: int) -> int:
        if not 4 <= value <= 10:
            raise ValueError("otp_length must be between 4 and 10 digits")
        return value

    @field_validator("otp_max_attempts", "session_ttl_minutes", "otp_ttl_minutes", "invite_ttl_hours")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @model_validator(mode="after")
    def _validate_ttls(self) -> "Settings":
        # a refresh credential must outlive the session it renews
        if self.refresh_ttl_minutes <= self.session_ttl_minutes:
            raise ValueError("refresh_ttl_minutes must exceed session_ttl_minutes")
        return self

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so credentials survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/feastid"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
