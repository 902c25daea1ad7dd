from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from authgate.config import get_settings, reset_settings_cache
from authgate.logging import get_logger
from authgate.service.auth import AuthService, CredentialRepository
from authgate.service.proxy import TrustedProxyResolver
from authgate.service.rate_limit import RateLimiter
from authgate.service.tokens import TokenCodec
from authgate.storage.memory import MemoryCache, MemoryStore
from authgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the configured service instances for the FastAPI app.

    Configuration, the trusted proxy set and the signing key are read once
    here and handed to each component through its constructor.
    """

    def __init__(
        self,
        *,
        store: Optional[CredentialRepository] = None,
        cache: Union[RedisCache, MemoryCache, None] = None,
    ):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            test_mode=self.settings.test_mode,
            allow_redis_fallback_dev=self.settings.allow_redis_fallback_dev,
        )
        self.store = store or MemoryStore(fs_root=self.settings.shared_fs_root)
        self.cache = cache if cache is not None else self._build_cache()

        self.trusted_proxies = self.settings.trusted_proxy_set
        self.proxy_resolver = TrustedProxyResolver(self.trusted_proxies)
        self.rate_limiter = RateLimiter(self.cache, self.settings.rate_limit_table)
        self.codec = TokenCodec.from_settings(self.settings)
        self.auth = AuthService(self.store, self.cache, self.codec, self.settings)

        logger.info(
            "runtime_initialized",
            cache_backend=type(self.cache).__name__,
            trusted_proxies=len(self.trusted_proxies),
            rate_limit_classes=sorted(self.rate_limiter.rules),
            access_token_ttl_minutes=self.settings.access_token_ttl_minutes,
            refresh_token_ttl_minutes=self.settings.refresh_token_ttl_minutes,
        )

    def _build_cache(self) -> Union[RedisCache, MemoryCache]:
        redis_error: Exception | None = None
        if self.settings.redis_url and not self.settings.test_mode:
            try:
                cache = RedisCache(
                    self.settings.redis_url,
                    operation_timeout=self.settings.store_timeout_seconds,
                )
                cache.verify_connection()
                logger.info(
                    "redis_connected",
                    redis_url=_mask_url_password(self.settings.redis_url),
                )
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for token revocation and rate limits; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_not_used",
            message=(
                f"Running without Redis under {fallback_mode}; revocations and rate "
                "limits are local to this process."
            ),
            mode=fallback_mode,
        )
        return MemoryCache()

    async def close(self) -> None:
        await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the unlocked read is the fast path, the locked
    re-check prevents two threads from building it concurrently.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
