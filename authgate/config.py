from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authgate.logging import get_logger
from authgate.service.proxy import TrustedProxySet

logger = get_logger(__name__)

# HMAC-SHA256 needs a key at least as long as its output.
MIN_JWT_SECRET_BYTES = 32

# Markers found in sample env files.
_PLACEHOLDER_SECRET_MARKERS = (
    "changeme",
    "change-me",
    "change_me",
    "your-secret",
    "your_secret",
    "replace-me",
    "placeholder",
)


@dataclass(frozen=True)
class RateLimitRule:
    """Admission budget for one endpoint class."""

    limit: int
    window_seconds: int


# Endpoint class registry; routes declare a class name and the limiter looks
# the budget up here.
DEFAULT_RATE_LIMITS: Dict[str, RateLimitRule] = {
    "auth": RateLimitRule(limit=60, window_seconds=60),
    "login": RateLimitRule(limit=5, window_seconds=60),
    "register": RateLimitRule(limit=3, window_seconds=60),
    "refresh": RateLimitRule(limit=10, window_seconds=60),
}


def parse_rate_limit_table(raw: Optional[str]) -> Dict[str, RateLimitRule]:
    """Merge ``class=limit/window`` overrides onto the default table.

    ``"login=10/60, register=2/300"`` raises the login budget and tightens the
    register one; classes not mentioned keep their defaults. A limit of 0
    disables limiting for that class.
    """
    table = dict(DEFAULT_RATE_LIMITS)
    if not raw or not raw.strip():
        return table
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        name, sep, budget = entry.partition("=")
        limit_raw, slash, window_raw = budget.partition("/")
        name = name.strip().lower()
        if not sep or not slash or not name:
            raise ValueError(f"invalid rate limit entry '{entry}' (expected class=limit/window)")
        try:
            limit = int(limit_raw.strip())
            window = int(window_raw.strip())
        except ValueError as exc:
            raise ValueError(f"invalid rate limit entry '{entry}'") from exc
        if limit < 0 or window <= 0:
            raise ValueError(
                f"invalid rate limit entry '{entry}' (limit must be >= 0, window > 0)"
            )
        table[name] = RateLimitRule(limit=limit, window_seconds=window)
    return table


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process configuration, read once at startup and never mutated."""

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("authgate", "JWT_ISSUER")
    jwt_audience: str = env_field("authgate-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        60,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Lifetime of access tokens in minutes",
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Lifetime of refresh tokens in minutes",
    )
    clock_skew_leeway_seconds: int = env_field(
        0,
        "CLOCK_SKEW_LEEWAY_SECONDS",
        description="Grace period applied to token expiry checks",
    )
    trusted_proxies: str = env_field(
        "",
        "TRUSTED_PROXIES",
        description="Comma-separated proxy addresses/CIDRs allowed to set X-Forwarded-For",
    )
    rate_limits: str = env_field(
        "",
        "RATE_LIMITS",
        description="Overrides for the rate limit table, e.g. 'login=5/60,register=3/60'",
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    store_timeout_ms: int = env_field(
        250,
        "STORE_TIMEOUT_MS",
        description="Deadline for each revocation store round trip",
    )
    repository_timeout_ms: int = env_field(
        2000,
        "REPOSITORY_TIMEOUT_MS",
        description="Deadline for credential repository calls, including password hashing",
    )
    shared_fs_root: Optional[str] = env_field(
        None,
        "SHARED_FS_ROOT",
        description="Directory where the in-memory credential repository persists its state",
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    enable_hsts: bool = env_field(
        True,
        "ENABLE_HSTS",
        description="Send Strict-Transport-Security on HTTPS responses",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Use in-process stores and allow runtime resets between tests",
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

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: Optional[str]) -> str:
        if not value:
            raise ValueError("JWT_SECRET must be set")
        secret = str(value)
        if len(secret.encode("utf-8")) < MIN_JWT_SECRET_BYTES:
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_BYTES} bytes for HS256"
            )
        lowered = secret.lower()
        if any(marker in lowered for marker in _PLACEHOLDER_SECRET_MARKERS):
            raise ValueError("JWT_SECRET still contains placeholder text")
        return secret

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "store_timeout_ms",
        "repository_timeout_ms",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("clock_skew_leeway_seconds")
    @classmethod
    def _validate_leeway(cls, value: int) -> int:
        if value < 0:
            raise ValueError("clock skew leeway cannot be negative")
        return value

    @field_validator("trusted_proxies")
    @classmethod
    def _validate_trusted_proxies(cls, value: Optional[str]) -> str:
        value = value or ""
        TrustedProxySet.parse(value)
        return value

    @field_validator("rate_limits")
    @classmethod
    def _validate_rate_limits(cls, value: Optional[str]) -> str:
        value = value or ""
        parse_rate_limit_table(value)
        return value

    @property
    def trusted_proxy_set(self) -> TrustedProxySet:
        return TrustedProxySet.parse(self.trusted_proxies)

    @property
    def rate_limit_table(self) -> Dict[str, RateLimitRule]:
        return parse_rate_limit_table(self.rate_limits)

    @property
    def store_timeout_seconds(self) -> float:
        return self.store_timeout_ms / 1000.0

    @property
    def repository_timeout_seconds(self) -> float:
        return self.repository_timeout_ms / 1000.0


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
