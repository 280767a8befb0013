from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tokengate.logging import get_logger

logger = get_logger(__name__)

MIN_JWT_SECRET_LENGTH = 32

DEFAULT_PUBLIC_PATHS = [
    "/api/auth/login",
    "/api/auth/register",
    "/api/auth/refresh",
    "/api/public/**",
    "/healthz",
    "/docs",
    "/docs/**",
    "/redoc",
    "/openapi.json",
]


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> Any:
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class Settings(BaseModel):
    """Runtime settings for the token service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tokengate", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/tokengate", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets between tests.",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("tokengate", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(
        60,
        "ACCESS_TOKEN_TTL_MINUTES",
        gt=0,
        description="Access token lifetime in minutes",
    )
    refresh_token_ttl_minutes: int = env_field(
        24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        gt=0,
        description="Refresh token lifetime in minutes",
    )
    token_single_session: bool = env_field(
        True,
        "TOKEN_SINGLE_SESSION",
        description="Overwrite the existing token record on login instead of adding one per device",
    )
    public_paths: list[str] = env_field(
        list(DEFAULT_PUBLIC_PATHS),
        "PUBLIC_PATHS",
        description="Ant-style path patterns that bypass bearer authentication",
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
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

    @field_validator("public_paths", "cors_allow_origins", mode="before")
    @classmethod
    def _parse_csv(cls, value: Any) -> Any:
        return _split_csv(value)

    @field_validator("public_paths")
    @classmethod
    def _validate_public_paths(cls, value: list[str]) -> list[str]:
        for pattern in value:
            if not pattern.startswith("/"):
                raise ValueError(f"public path pattern must start with '/': {pattern}")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < MIN_JWT_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
                )
            return value
        # Persist a generated secret so issued tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/tokengate"))
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
                if persisted and len(persisted) >= MIN_JWT_SECRET_LENGTH:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            # write-then-rename keeps concurrent starters from reading a torn file
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
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        logger.info("jwt_secret_generated", path=str(secret_path))
        return generated

    @model_validator(mode="after")
    def _check_ttl_order(self) -> "Settings":
        if self.access_token_ttl_minutes > self.refresh_token_ttl_minutes:
            raise ValueError(
                "ACCESS_TOKEN_TTL_MINUTES must not exceed REFRESH_TOKEN_TTL_MINUTES"
            )
        return self


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
