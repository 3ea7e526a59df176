from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from sessiongate.logging import get_logger

logger = get_logger(__name__)


class FlagStoreKind(str, Enum):
    """Where the per-realm "OTP already verified" flag is persisted."""

    MEMORY = "memory"
    FILE = "file"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the two-factor session controller."""

    # OTP challenge timing. The defaults are the values deployed clients
    # already count down against; change them only together with the UI.
    otp_ttl_seconds: int = env_field(
        300, "OTP_TTL_SECONDS", ge=1, description="Challenge lifetime in seconds"
    )
    otp_resend_cooldown_seconds: int = env_field(
        60, "OTP_RESEND_COOLDOWN_SECONDS", ge=0, description="Delay before resend is allowed"
    )
    otp_max_attempts: int = env_field(
        5, "OTP_MAX_ATTEMPTS", ge=1, description="Wrong codes allowed per challenge"
    )
    otp_code_length: int = env_field(6, "OTP_CODE_LENGTH", ge=4, le=10)
    auto_issue_otp: bool = env_field(
        True,
        "AUTO_ISSUE_OTP",
        description="Issue the OTP challenge as part of a successful credential login",
    )
    collaborator_timeout_seconds: float = env_field(
        10.0,
        "COLLABORATOR_TIMEOUT_SECONDS",
        gt=0,
        description="Upper bound for any identity, profile or OTP provider call",
    )

    # Persisted flag
    flag_store: FlagStoreKind = env_field(FlagStoreKind.FILE, "FLAG_STORE")
    shared_fs_root: str = env_field("/srv/sessiongate", "SHARED_FS_ROOT")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")

    # External collaborators
    use_memory_store: bool = env_field(
        False,
        "USE_MEMORY_STORE",
        description="Serve credentials, profiles and OTP codes from local memory",
    )
    identity_base_url: str | None = env_field(None, "IDENTITY_BASE_URL")
    identity_api_key: str | None = env_field(None, "IDENTITY_API_KEY")
    profile_base_url: str | None = env_field(
        None, "PROFILE_BASE_URL", description="Defaults to IDENTITY_BASE_URL"
    )
    profile_table: str = env_field("profiles", "PROFILE_TABLE")
    otp_base_url: str | None = env_field(
        None, "OTP_BASE_URL", description="Defaults to IDENTITY_BASE_URL"
    )
    otp_send_function: str = env_field("send-otp", "OTP_SEND_FUNCTION")
    otp_verify_function: str = env_field("verify-otp", "OTP_VERIFY_FUNCTION")

    # HTTP surface
    max_controllers: int = env_field(
        10000, "MAX_CONTROLLERS", ge=1, description="Live browser sessions kept in memory"
    )
    controller_idle_seconds: int = env_field(
        60 * 60 * 12,
        "CONTROLLER_IDLE_SECONDS",
        ge=1,
        description="Sessions unused this long are dropped from memory",
    )
    client_cookie_name: str = env_field("sg_client", "CLIENT_COOKIE_NAME")
    client_cookie_secure: bool = env_field(True, "CLIENT_COOKIE_SECURE")
    client_cookie_max_age_seconds: int = env_field(
        60 * 60 * 12, "CLIENT_COOKIE_MAX_AGE_SECONDS"
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors",
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

    @field_validator("flag_store")
    @classmethod
    def _validate_flag_store(cls, value: FlagStoreKind) -> FlagStoreKind:
        return FlagStoreKind(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @property
    def resolved_profile_base_url(self) -> str | None:
        return self.profile_base_url or self.identity_base_url

    @property
    def resolved_otp_base_url(self) -> str | None:
        return self.otp_base_url or self.identity_base_url


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
