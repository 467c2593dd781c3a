from __future__ import annotations

import os
import secrets
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from courseauth.logging import get_logger

logger = get_logger(__name__)


class ConfirmationMode(str, Enum):
    """How new accounts prove ownership of their email address.

    - LINK: a signed JWT embedded in a confirmation URL
    - CODE: a short numeric activation code with a fixed lifetime
    """

    LINK = "link"
    CODE = "code"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/courseauth", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/courseauth", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("courseauth", "JWT_ISSUER")
    jwt_audience: str = env_field("course-platform", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        24 * 60,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Lifetime of signed access tokens",
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Lifetime of signed refresh tokens",
    )
    confirmation_mode: ConfirmationMode = env_field(
        ConfirmationMode.CODE,
        "CONFIRMATION_MODE",
        description="link: JWT confirmation URL; code: numeric activation code",
    )
    activation_code_length: int = env_field(6, "ACTIVATION_CODE_LENGTH")
    activation_code_ttl_minutes: int = env_field(15, "ACTIVATION_CODE_TTL_MINUTES")
    confirmation_url: str = env_field(
        "http://localhost:8080/api/v1/auth/confirm?token={token}", "CONFIRMATION_URL"
    )
    activation_url: str = env_field(
        "http://localhost:4200/activate-account", "ACTIVATION_URL"
    )
    default_role: str = env_field(
        "USER",
        "DEFAULT_ROLE",
        description="Role looked up in the role directory when registration names none",
    )
    require_confirmed_login: bool = env_field(
        True,
        "REQUIRE_CONFIRMED_LOGIN",
        description="Reject logins from accounts that have not confirmed their email",
    )
    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Course Platform", "EMAIL_FROM_NAME")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @field_validator("confirmation_mode", mode="before")
    @classmethod
    def _normalize_confirmation_mode(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("default_role")
    @classmethod
    def _normalize_default_role(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("activation_code_length")
    @classmethod
    def _validate_code_length(cls, value: int) -> int:
        if value < 4 or value > 12:
            raise ValueError("activation_code_length must be between 4 and 12")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated JWT secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/courseauth"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
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
        try:
            secret_path.write_text(generated)
            os.chmod(secret_path, 0o600)
        except OSError as exc:
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
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
