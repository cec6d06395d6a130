from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tenantgate.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity, organization and session service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tenantgate", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/tenantgate", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; allows running without Redis.",
    )
    secret_key: str = env_field(
        None,
        "SECRET_KEY",
        description="Key material for encrypting two-factor secrets at rest",
    )

    # Lifetimes
    session_ttl_minutes: int = env_field(60 * 24 * 7, "SESSION_TTL_MINUTES")
    impersonation_session_ttl_minutes: int = env_field(
        60, "IMPERSONATION_SESSION_TTL_MINUTES"
    )
    invitation_expires_in_hours: int = env_field(48, "INVITATION_EXPIRES_IN_HOURS")
    invitation_sweep_interval_seconds: int = env_field(
        300,
        "INVITATION_SWEEP_INTERVAL_SECONDS",
        description="Interval for expiring past-due invitations; 0 disables the sweeper",
    )
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")
    password_reset_ttl_minutes: int = env_field(15, "PASSWORD_RESET_TTL_MINUTES")

    # Two-factor
    two_factor_issuer: str = env_field("TenantGate", "TWO_FACTOR_ISSUER")
    two_factor_provisioning_timeout_minutes: int = env_field(
        10, "TWO_FACTOR_PROVISIONING_TIMEOUT_MINUTES"
    )
    two_factor_max_provisioning_failures: int = env_field(
        3, "TWO_FACTOR_MAX_PROVISIONING_FAILURES"
    )
    two_factor_step_up_window_minutes: int = env_field(
        10, "TWO_FACTOR_STEP_UP_WINDOW_MINUTES"
    )
    two_factor_otp_ttl_minutes: int = env_field(3, "TWO_FACTOR_OTP_TTL_MINUTES")
    # Lockout is opt-in; leaving max attempts unset disables it
    login_lockout_max_attempts: int | None = env_field(None, "LOGIN_LOCKOUT_MAX_ATTEMPTS")
    login_lockout_seconds: int = env_field(900, "LOGIN_LOCKOUT_SECONDS")

    # Rate limits
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    signup_rate_limit_per_minute: int = env_field(5, "SIGNUP_RATE_LIMIT_PER_MINUTE")
    admin_rate_limit_per_minute: int = env_field(60, "ADMIN_RATE_LIMIT_PER_MINUTE")
    two_factor_rate_limit_per_minute: int = env_field(
        10, "TWO_FACTOR_RATE_LIMIT_PER_MINUTE"
    )

    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")

    # HTTP
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    session_cookie_secure: bool = env_field(True, "SESSION_COOKIE_SECURE")

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("TenantGate", "EMAIL_FROM_NAME")

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("login_lockout_max_attempts", mode="before")
    @classmethod
    def _blank_means_disabled(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("secret_key")
    @classmethod
    def _ensure_secret_key(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated key so encrypted secrets stay readable across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/tenantgate"))
        secret_path = fs_root / ".secret_key"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning("secret_key_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("secret_key_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".secret_key_", suffix=".tmp"
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
            logger.error("secret_key_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist secret key; set SECRET_KEY or make SHARED_FS_ROOT writable"
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
