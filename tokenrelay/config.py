from __future__ import annotations

import json
import os
import secrets
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tokenrelay.logging import get_logger

logger = get_logger(__name__)

# Minimum length accepted for a persisted signing secret
_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class _EnvSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls, env_file: str = ".env"):
        env_file_values = dotenv_values(env_file)
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


class Settings(_EnvSettings):
    """Process-wide server settings, loaded once at startup."""

    shared_fs_root: str = env_field("/srv/tokenrelay", "SHARED_FS_ROOT")
    redis_url: Optional[str] = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(True, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviours for CI; disables the Redis requirement.",
    )

    jwt_secret: Optional[str] = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_key_id: str = env_field("primary", "JWT_KEY_ID")
    jwt_verification_keys: Dict[str, str] = env_field(
        {},
        "JWT_VERIFICATION_KEYS",
        description="JSON object of additional kid -> secret pairs accepted for verification",
    )
    jwt_issuer: str = env_field("tokenrelay", "JWT_ISSUER")
    jwt_audience: str = env_field("tokenrelay-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(0, "JWT_LEEWAY_SECONDS", ge=0)
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", gt=0
    )

    # argon2id cost parameters; None keeps the argon2-cffi defaults
    hash_time_cost: Optional[int] = env_field(None, "HASH_TIME_COST")
    hash_memory_cost_kib: Optional[int] = env_field(None, "HASH_MEMORY_COST_KIB")

    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(False, "CORS_ALLOW_CREDENTIALS")

    @field_validator("jwt_verification_keys", mode="before")
    @classmethod
    def _parse_verification_keys(cls, value: Any) -> Dict[str, str]:
        if value in (None, ""):
            return {}
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValueError("JWT_VERIFICATION_KEYS must be a JSON object") from exc
        if not isinstance(value, dict):
            raise ValueError("JWT_VERIFICATION_KEYS must be a JSON object")
        return {str(kid): str(secret) for kid, secret in value.items()}

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> List[str]:
        if value in (None, ""):
            return []
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return list(value)

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/tokenrelay"))
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
                if persisted and len(persisted) >= _MIN_SECRET_LENGTH:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

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
            os.replace(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    def signing_keys(self) -> Dict[str, str]:
        """Return the full verification key set, active key included."""
        keys = dict(self.jwt_verification_keys)
        keys[self.jwt_key_id] = self.jwt_secret
        return keys


class ClientSettings(_EnvSettings):
    """Settings for the client-side session layer."""

    base_url: str = env_field("http://localhost:8000", "TOKENRELAY_BASE_URL")
    refresh_timeout_seconds: float = env_field(
        10.0,
        "TOKENRELAY_REFRESH_TIMEOUT_SECONDS",
        gt=0,
        description="Upper bound for a single refresh call; a timeout ends the session",
    )
    session_cache_path: Optional[str] = env_field(None, "TOKENRELAY_SESSION_CACHE")


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
