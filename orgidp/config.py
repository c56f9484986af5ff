from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from orgidp.logging import get_logger

logger = get_logger(__name__)


class IPBindingMode(str, Enum):
    """How strictly a refresh token is pinned to the IP it was issued to.

    - EXACT: the full address must match
    - SUBNET: IPv4 /24 or IPv6 /64 must match
    """

    EXACT = "exact"
    SUBNET = "subnet"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity provider."""

    database_url: str = env_field(
        "postgresql://localhost:5432/orgidp", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow generated secrets.",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    hmac_secret: str | None = env_field(
        None,
        "HMAC_SECRET",
        description="Key for deterministic authorization code and refresh token lookup hashes",
    )
    binding_salt: str | None = env_field(
        None,
        "TOKEN_BINDING_SALT",
        description="Salt for user-agent/IP binding hashes; defaults to HMAC_SECRET",
    )
    issuer_base_url: str = env_field(
        "https://auth.myservice.com",
        "ISSUER_BASE_URL",
        description="Access token issuer prefix; the client id is appended",
    )
    ip_binding_mode: IPBindingMode = env_field(IPBindingMode.EXACT, "IP_BINDING_MODE")
    revocation_marker_ttl_hours: int = env_field(
        24,
        "REVOCATION_MARKER_TTL_HOURS",
        description="Lifetime of user/org revocation markers",
    )
    audit_workers: int = env_field(2, "AUDIT_WORKERS")
    audit_max_pending: int = env_field(
        1000,
        "AUDIT_MAX_PENDING",
        description="Audit events in flight before new ones are dropped",
    )
    request_timeout_seconds: float = env_field(10.0, "REQUEST_TIMEOUT_SECONDS")
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(True, "ENABLE_HSTS")

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

    @field_validator("ip_binding_mode", mode="before")
    @classmethod
    def _validate_ip_binding_mode(cls, value: Any) -> IPBindingMode:
        if isinstance(value, str):
            value = value.strip().lower()
        return IPBindingMode(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return list(value)

    @field_validator("issuer_base_url")
    @classmethod
    def _strip_issuer_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def _ensure_secrets(self) -> "Settings":
        for name in ("jwt_secret", "hmac_secret"):
            if getattr(self, name):
                continue
            if not self.test_mode:
                raise ValueError(f"{name.upper()} must be set outside TEST_MODE")
            # Ephemeral secrets are only acceptable for throwaway test runs
            logger.warning("generated_ephemeral_secret", setting=name)
            setattr(self, name, secrets.token_urlsafe(48))
        if not self.binding_salt:
            self.binding_salt = self.hmac_secret
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
