from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from caldost.logging import get_logger

logger = get_logger(__name__)


class SecretStoreBackend(str, Enum):
    """Where OTP challenges, sessions and access grants live."""

    REDIS = "redis"
    MEMORY = "memory"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the grievance portal."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    secret_store_backend: SecretStoreBackend = env_field(
        SecretStoreBackend.REDIS,
        "SECRET_STORE_BACKEND",
        description="redis for deployments, memory for tests and local development",
    )
    allow_memory_secret_store: bool = env_field(
        False,
        "ALLOW_MEMORY_SECRET_STORE",
        description="Fall back to the in-process secret store when Redis is unreachable",
    )
    database_url: str = env_field("postgresql://localhost:5432/caldost", "DATABASE_URL")
    use_memory_store: bool = env_field(
        False,
        "USE_MEMORY_STORE",
        description="Keep records in the JSON-snapshot store instead of Postgres",
    )
    shared_fs_root: str = env_field("/srv/caldost", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )
    # Token and session lifetimes
    jwt_secret: str = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("caldost", "JWT_ISSUER")
    jwt_audience: str = env_field("caldost-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        5, "ACCESS_TOKEN_TTL_MINUTES", description="Access token TTL in minutes"
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", description="Refresh token TTL in minutes"
    )
    session_ttl_seconds: int = env_field(604800, "SESSION_TTL_SECONDS")
    otp_ttl_seconds: int = env_field(300, "OTP_TTL_SECONDS")
    access_grant_ttl_seconds: int = env_field(86400, "ACCESS_GRANT_TTL_SECONDS")
    # API key encryption for complaint intake partners
    api_key_secret: str | None = env_field(None, "API_KEY_SECRET")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    cors_allow_origins: List[str] = env_field(
        ["http://localhost:3000", "http://localhost:5173"],
        "CORS_ALLOW_ORIGINS",
        description="Comma separated list of browser origins allowed to call the API",
    )
    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("CALDOST Grievance Portal", "EMAIL_FROM_NAME")
    # SMS gateway settings
    sms_api_url: str | None = env_field(None, "SMS_API_URL")
    sms_api_key: str | None = env_field(None, "SMS_API_KEY")
    sms_sender_id: str = env_field("CALDST", "SMS_SENDER_ID")
    sms_timeout_seconds: float = env_field(10.0, "SMS_TIMEOUT_SECONDS")
    # Attachment intake
    max_attachments: int = env_field(
        5, "MAX_ATTACHMENTS", description="Maximum files accepted per complaint update"
    )
    max_attachment_bytes: int = env_field(
        10 * 1024 * 1024, "MAX_ATTACHMENT_BYTES", description="Per-file upload limit"
    )
    default_page_size: int = env_field(20, "DEFAULT_PAGE_SIZE")
    max_page_size: int = env_field(100, "MAX_PAGE_SIZE")

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

    @field_validator("secret_store_backend")
    @classmethod
    def _validate_backend(cls, value: SecretStoreBackend) -> SecretStoreBackend:
        return SecretStoreBackend(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("access_token_ttl_minutes", "refresh_token_ttl_minutes")
    @classmethod
    def _positive_minutes(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token TTL must be positive")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/caldost"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
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
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
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
