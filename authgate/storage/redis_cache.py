from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from authgate.storage.errors import StoreUnavailable


def revoked_token_key(token_id: str) -> str:
    return f"auth:revoked:{token_id}"


def subject_revocation_key(subject_id: str) -> str:
    return f"auth:subject:revoked_before:{subject_id}"


class RedisCache:
    """Revocation entries and rate counters shared by every instance.

    Each call is a single-key atomic command bounded by ``operation_timeout``;
    a timeout or Redis error surfaces as :class:`StoreUnavailable` and the
    caller decides whether that admits or rejects the request.
    """

    DEFAULT_OPERATION_TIMEOUT = 0.25

    # INCR then EXPIRE only on creation: the window starts with the first hit
    # and later hits never push it out.
    _INCREMENT_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
end
return count
"""

    def __init__(
        self,
        redis_url: str,
        *,
        operation_timeout: Optional[float] = None,
        socket_timeout: float = 5.0,
    ):
        self.redis_url = redis_url
        self.operation_timeout = operation_timeout or self.DEFAULT_OPERATION_TIMEOUT
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._increment = self.client.register_script(self._INCREMENT_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving traffic."""
        # Short-lived sync client so the async pool is not bound to a
        # temporary event loop during startup.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _bounded(self, operation: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, self.operation_timeout)
        except (asyncio.TimeoutError, RedisError, OSError) as exc:
            raise StoreUnavailable(operation, exc) from exc

    async def blacklist(self, token_id: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        await self._bounded(
            "blacklist",
            self.client.set(revoked_token_key(token_id), "1", ex=int(ttl_seconds)),
        )

    async def claim(self, token_id: str, ttl_seconds: int) -> bool:
        """Mark ``token_id`` revoked; True only for the caller that created the entry."""
        created = await self._bounded(
            "claim",
            self.client.set(
                revoked_token_key(token_id), "1", ex=max(int(ttl_seconds), 1), nx=True
            ),
        )
        return bool(created)

    async def is_blacklisted(self, token_id: str) -> bool:
        found = await self._bounded(
            "is_blacklisted", self.client.exists(revoked_token_key(token_id))
        )
        return bool(found)

    async def increment_counter(self, key: str, window_seconds: int) -> int:
        count = await self._bounded(
            "increment_counter",
            self._increment(keys=[key], args=[int(window_seconds)]),
        )
        return int(count)

    async def get_counter(self, key: str) -> int:
        value = await self._bounded("get_counter", self.client.get(key))
        return int(value) if value else 0

    async def counter_ttl(self, key: str) -> int:
        # TTL answers -2 for a missing key and -1 for a key without expiry
        ttl = await self._bounded("counter_ttl", self.client.ttl(key))
        return max(0, int(ttl))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        removed = await self._bounded("delete", self.client.delete(*keys))
        return int(removed)

    async def revoke_subject(
        self, subject_id: str, revoked_before: float, ttl_seconds: int
    ) -> None:
        await self._bounded(
            "revoke_subject",
            self.client.set(
                subject_revocation_key(subject_id),
                repr(float(revoked_before)),
                ex=max(int(ttl_seconds), 1),
            ),
        )

    async def subject_revoked_before(self, subject_id: str) -> Optional[float]:
        value = await self._bounded(
            "subject_revoked_before", self.client.get(subject_revocation_key(subject_id))
        )
        return float(value) if value else None

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
