from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authgate.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    shared_fs_root: str = env_field("/srv/authgate", "SHARED_FS_ROOT")
    persist_memory_store: bool = env_field(
        False,
        "PERSIST_MEMORY_STORE",
        description="Write the in-memory store to SHARED_FS_ROOT/state between restarts",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow ephemeral secrets instead of failing on missing keys",
    )
    encryption_key: str | None = env_field(
        None,
        "ENCRYPTION_KEY",
        description="Operator secret used to encrypt TOTP secrets and backup codes at rest",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("authgate", "JWT_ISSUER")
    jwt_audience: str = env_field("authgate-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        60, "ACCESS_TOKEN_TTL_MINUTES", ge=1
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", ge=1
    )
    pending_2fa_ttl_minutes: int = env_field(
        5,
        "PENDING_2FA_TTL_MINUTES",
        ge=1,
        description="Lifetime of the half-authenticated token handed out while 2FA is pending",
    )
    cors_allow_origins: str = env_field(
        "",
        "CORS_ALLOW_ORIGINS",
        description="Comma-separated origins allowed to call the API from a browser",
    )
    totp_issuer: str = env_field("AuthGate", "TOTP_ISSUER")
    totp_window_steps: int = env_field(2, "TOTP_WINDOW_STEPS", ge=0, le=10)
    backup_code_count: int = env_field(8, "BACKUP_CODE_COUNT", ge=1, le=32)
    two_factor_max_attempts: int = env_field(
        5,
        "TWO_FACTOR_MAX_ATTEMPTS",
        ge=1,
        description="Wrong second-factor codes allowed per user before verification is paused",
    )
    two_factor_lockout_minutes: int = env_field(5, "TWO_FACTOR_LOCKOUT_MINUTES", ge=1)

    # Defaults used when an identity's organization carries no policy
    default_max_failed_attempts: int = env_field(5, "DEFAULT_MAX_FAILED_ATTEMPTS", ge=1)
    default_lockout_duration_minutes: int = env_field(
        30, "DEFAULT_LOCKOUT_DURATION_MINUTES", ge=1
    )
    default_max_concurrent_sessions: int = env_field(
        3, "DEFAULT_MAX_CONCURRENT_SESSIONS", ge=1
    )
    default_idle_timeout_minutes: int = env_field(
        30, "DEFAULT_IDLE_TIMEOUT_MINUTES", ge=1
    )

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

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so issued tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/authgate"))
        secret_path = fs_root / ".jwt_secret"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
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
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    def resolve_encryption_key(self) -> str:
        """Return the operator key, or an ephemeral one when running tests."""
        if self.encryption_key:
            return self.encryption_key
        if self.test_mode:
            logger.warning("encryption_key_ephemeral", message="secrets will not survive a restart")
            return secrets.token_urlsafe(32)
        raise RuntimeError("ENCRYPTION_KEY must be set to store two-factor secrets")


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
