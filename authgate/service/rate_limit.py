from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping, Optional, Protocol

from authgate.config import RateLimitRule
from authgate.logging import get_logger

logger = get_logger(__name__)


class CounterStore(Protocol):
    async def increment_counter(self, key: str, window_seconds: int) -> int: ...

    async def get_counter(self, key: str) -> int: ...

    async def counter_ttl(self, key: str) -> int: ...

    async def delete(self, *keys: str) -> int: ...


@dataclass(frozen=True)
class RateLimitStatus:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int


class RateLimiter:
    """Fixed-window admission control keyed by client address and endpoint class.

    The first request in a window creates ``rate:{class}:{address}`` with the
    window as its TTL; later requests only increment it, so the window ends
    exactly ``window_seconds`` after it began. When the store cannot be
    reached requests are admitted and the outage is logged.
    """

    KEY_PREFIX = "rate"

    def __init__(self, store: CounterStore, rules: Mapping[str, RateLimitRule]) -> None:
        self.store = store
        self.rules = dict(rules)

    @classmethod
    def key(cls, endpoint_class: str, client_address: str) -> str:
        return f"{cls.KEY_PREFIX}:{endpoint_class}:{client_address}"

    def rule_for(self, endpoint_class: str) -> RateLimitRule:
        try:
            return self.rules[endpoint_class]
        except KeyError:
            raise ValueError(f"no rate limit configured for '{endpoint_class}'") from None

    def _resolve(
        self, endpoint_class: str, limit: Optional[int], window: Optional[int]
    ) -> RateLimitRule:
        if limit is not None and window is not None:
            return RateLimitRule(limit=limit, window_seconds=window)
        rule = self.rule_for(endpoint_class)
        return RateLimitRule(
            limit=rule.limit if limit is None else limit,
            window_seconds=rule.window_seconds if window is None else window,
        )

    async def check(
        self,
        client_address: str,
        endpoint_class: str,
        limit: Optional[int] = None,
        window: Optional[int] = None,
    ) -> RateLimitStatus:
        rule = self._resolve(endpoint_class, limit, window)
        if rule.limit <= 0:
            return RateLimitStatus(True, rule.limit, rule.limit, 0)
        key = self.key(endpoint_class, client_address)
        try:
            count = await self.store.increment_counter(key, rule.window_seconds)
        except Exception as exc:
            logger.error(
                "rate_limit_store_unavailable_failing_open",
                endpoint_class=endpoint_class,
                client_address=client_address,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return RateLimitStatus(True, rule.limit, rule.limit, 0)

        allowed = count <= rule.limit
        remaining = max(0, rule.limit - count)
        reset_seconds = rule.window_seconds
        if not allowed:
            reset_seconds = await self.seconds_until_reset(client_address, endpoint_class)
            logger.warning(
                "rate_limit_exceeded",
                endpoint_class=endpoint_class,
                client_address=client_address,
                count=count,
                limit=rule.limit,
                retry_after_seconds=reset_seconds,
            )
        return RateLimitStatus(allowed, rule.limit, remaining, reset_seconds)

    async def allow(
        self,
        client_address: str,
        endpoint_class: str,
        limit: Optional[int] = None,
        window: Optional[int] = None,
    ) -> bool:
        status = await self.check(client_address, endpoint_class, limit, window)
        return status.allowed

    async def remaining_attempts(
        self, client_address: str, endpoint_class: str, limit: Optional[int] = None
    ) -> int:
        """Best-effort count of requests left in the current window."""
        rule = self._resolve(endpoint_class, limit, None)
        try:
            count = await self.store.get_counter(self.key(endpoint_class, client_address))
        except Exception as exc:
            logger.warning(
                "rate_limit_remaining_lookup_failed",
                endpoint_class=endpoint_class,
                error=str(exc),
            )
            return rule.limit
        return max(0, rule.limit - count)

    async def seconds_until_reset(self, client_address: str, endpoint_class: str) -> int:
        """Retry hint: seconds until the current window closes, 0 if none is open."""
        try:
            return await self.store.counter_ttl(self.key(endpoint_class, client_address))
        except Exception as exc:
            logger.warning(
                "rate_limit_ttl_lookup_failed",
                endpoint_class=endpoint_class,
                error=str(exc),
            )
            return 0

    async def reset(
        self, client_address: str, endpoint_classes: Optional[Iterable[str]] = None
    ) -> int:
        """Drop every open window for ``client_address``. Returns keys removed."""
        classes = list(endpoint_classes) if endpoint_classes is not None else list(self.rules)
        keys = [self.key(endpoint_class, client_address) for endpoint_class in classes]
        removed = await self.store.delete(*keys)
        logger.info(
            "rate_limit_reset",
            client_address=client_address,
            endpoint_classes=classes,
            removed=removed,
        )
        return removed
