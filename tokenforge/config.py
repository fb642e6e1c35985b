from __future__ import annotations

import os
import re
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tokenforge.logging import get_logger
from tokenforge.service.errors import InvalidConfiguration

logger = get_logger(__name__)

_DURATION_RE = re.compile(r"^(\d+)([smhd])$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 60 * 60, "d": 24 * 60 * 60}


def parse_duration(value: str) -> int:
    """Parse an expiration string such as ``15m`` or ``7d`` into seconds."""

    match = _DURATION_RE.match(value.strip()) if isinstance(value, str) else None
    if not match:
        raise InvalidConfiguration(
            f"invalid duration {value!r}; expected <number><s|m|h|d>",
            detail={"value": str(value)},
        )
    amount, unit = match.groups()
    return int(amount) * _UNIT_SECONDS[unit]


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


_DURATION_FIELDS = (
    "jwt_access_expiration",
    "jwt_refresh_expiration",
    "key_rotation_interval",
    "key_grace_period",
    "key_rotation_check_interval",
    "lockout_duration",
    "mfa_pending_ttl",
    "mfa_attempt_window",
    "password_reset_ttl",
    "email_verification_ttl",
)


class Settings(BaseModel):
    """Runtime settings for the credential engine."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tokenforge", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/tokenforge", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors and local secret generation.",
    )
    base_url: str = env_field("http://localhost:3000", "BASE_URL")
    issuer: str | None = env_field(
        None, "JWT_ISSUER", description="Defaults to {base_url}/api"
    )
    jwt_access_expiration: str = env_field("15m", "JWT_ACCESS_EXPIRATION")
    jwt_refresh_expiration: str = env_field("7d", "JWT_REFRESH_EXPIRATION")
    # Signing keys
    key_rotation_enabled: bool = env_field(True, "KEY_ROTATION_ENABLED")
    key_rotation_interval: str = env_field("30d", "KEY_ROTATION_INTERVAL")
    key_grace_period: str = env_field("24h", "KEY_GRACE_PERIOD")
    key_rotation_check_interval: str = env_field("1d", "KEY_ROTATION_CHECK_INTERVAL")
    rsa_key_size: int = env_field(2048, "RSA_KEY_SIZE")
    key_encryption_key: str | None = env_field(
        None,
        "KEY_ENCRYPTION_KEY",
        description="Seals private signing keys and MFA secrets at rest",
    )
    # Login policy
    max_failed_logins: int = env_field(5, "MAX_FAILED_LOGINS")
    lockout_duration: str = env_field("30m", "LOCKOUT_DURATION")
    reset_failures_on_lock_expiry: bool = env_field(
        False,
        "RESET_FAILURES_ON_LOCK_EXPIRY",
        description="When false only a successful login clears the failure counter",
    )
    # MFA
    mfa_issuer: str = env_field("TokenForge", "MFA_ISSUER")
    mfa_pending_ttl: str = env_field("15m", "MFA_PENDING_TTL")
    mfa_valid_window: int = env_field(2, "MFA_VALID_WINDOW")
    mfa_max_attempts: int = env_field(
        5, "MFA_MAX_ATTEMPTS", description="0 disables MFA attempt throttling"
    )
    mfa_attempt_window: str = env_field("5m", "MFA_ATTEMPT_WINDOW")
    password_reset_ttl: str = env_field("1h", "PASSWORD_RESET_TTL")
    email_verification_ttl: str = env_field("24h", "EMAIL_VERIFICATION_TTL")

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

    @field_validator("base_url")
    @classmethod
    def _strip_base_url(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def _validate_durations(self) -> "Settings":
        for name in _DURATION_FIELDS:
            parse_duration(getattr(self, name))
        if self.max_failed_logins < 1:
            raise InvalidConfiguration("MAX_FAILED_LOGINS must be at least 1")
        if self.mfa_valid_window < 0:
            raise InvalidConfiguration("MFA_VALID_WINDOW must not be negative")
        return self

    @model_validator(mode="after")
    def _ensure_key_encryption_key(self) -> "Settings":
        if self.key_encryption_key:
            return self
        if not (self.test_mode or self.use_memory_store):
            raise InvalidConfiguration(
                "KEY_ENCRYPTION_KEY is required when running against Postgres"
            )
        self.key_encryption_key = _load_or_create_local_secret(
            Path(self.shared_fs_root), ".key_encryption_key"
        )
        return self

    @property
    def resolved_issuer(self) -> str:
        return self.issuer or f"{self.base_url}/api"

    @property
    def access_token_ttl(self) -> int:
        return parse_duration(self.jwt_access_expiration)

    @property
    def refresh_token_ttl(self) -> int:
        return parse_duration(self.jwt_refresh_expiration)

    @property
    def key_rotation_seconds(self) -> int:
        return parse_duration(self.key_rotation_interval)

    @property
    def key_grace_seconds(self) -> int:
        return parse_duration(self.key_grace_period)

    @property
    def key_check_seconds(self) -> int:
        return parse_duration(self.key_rotation_check_interval)

    @property
    def lockout_seconds(self) -> int:
        return parse_duration(self.lockout_duration)

    @property
    def mfa_pending_seconds(self) -> int:
        return parse_duration(self.mfa_pending_ttl)

    @property
    def mfa_attempt_window_seconds(self) -> int:
        return parse_duration(self.mfa_attempt_window)

    @property
    def password_reset_seconds(self) -> int:
        return parse_duration(self.password_reset_ttl)

    @property
    def email_verification_seconds(self) -> int:
        return parse_duration(self.email_verification_ttl)


def _load_or_create_local_secret(fs_root: Path, name: str) -> str:
    """Read a generated secret from ``fs_root`` or create one atomically.

    Only used for local and test deployments so that sealed keys survive a
    restart of the in-memory store.
    """

    secret_path = fs_root / name
    try:
        fs_root.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise InvalidConfiguration(
            "unable to create SHARED_FS_ROOT for local secrets",
            detail={"path": str(fs_root)},
        ) from exc

    if secret_path.exists() and not secret_path.is_symlink():
        persisted = secret_path.read_text().strip()
        if len(persisted) >= 32:
            return persisted
        logger.warning("local_secret_too_short", path=str(secret_path))

    generated = secrets.token_urlsafe(48)
    fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=f"{name}_", suffix=".tmp")
    try:
        os.write(fd, generated.encode())
        os.fchmod(fd, 0o600)
    finally:
        os.close(fd)
    os.replace(tmp_path, secret_path)
    logger.info("local_secret_generated", path=str(secret_path))
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
