from __future__ import annotations

import json
import threading
import time
import uuid
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

from authgate.logging import get_logger
from authgate.storage.errors import ConstraintViolation
from authgate.storage.models import Principal, Role
from authgate.storage.redis_cache import revoked_token_key, subject_revocation_key

logger = get_logger(__name__)


class MemoryStore:
    """In-process credential repository.

    Principals live in a dict guarded by one lock. When ``fs_root`` is given
    the table is mirrored to ``<fs_root>/state/credentials.json`` after every
    write and reloaded on construction, so operator scripts and the service
    can share accounts across restarts.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.principals: Dict[str, Principal] = {}
        # RLock so helpers can re-enter while a write holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    @staticmethod
    def _normalize_email(email: str) -> str:
        return email.strip().lower()

    def create_principal(
        self,
        email: str,
        password_hash: str,
        *,
        role: Role = Role.USER,
        is_active: bool = True,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Principal:
        normalized = self._normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.principals.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            principal = Principal(
                id=str(uuid.uuid4()),
                email=normalized,
                password_hash=password_hash,
                role=Role(role),
                is_active=is_active,
                first_name=first_name,
                last_name=last_name,
            )
            self.principals[principal.id] = principal
            self._persist_state()
            return principal

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            return self.principals.get(principal_id)

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        normalized = self._normalize_email(email)
        with self._data_lock:
            return next(
                (p for p in self.principals.values() if p.email == normalized), None
            )

    def set_active(self, principal_id: str, is_active: bool) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return None
            principal.is_active = is_active
            self._persist_state()
            return principal

    def update_role(self, principal_id: str, role: Role) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return None
            principal.role = Role(role)
            self._persist_state()
            return principal

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "credentials.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {"principals": [p.to_record() for p in self.principals.values()]}
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist credential state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.principals = {
            record["id"]: Principal.from_record(record)
            for record in data.get("principals", [])
        }
        logger.info(
            "credential_state_loaded", path=str(path), principals=len(self.principals)
        )
        return True


class MemoryCache:
    """Process-local stand-in for :class:`RedisCache`.

    Used in TEST_MODE and when ALLOW_REDIS_FALLBACK_DEV lets the service start
    without Redis. State is not shared between processes, so revocations and
    rate limits only hold for this instance.

    Expiry follows Redis semantics: a key written with a TTL of ``n`` seconds
    at time ``t`` disappears at ``t + n``. ``clock`` defaults to
    ``time.monotonic`` and can be replaced to step time in tests.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._values: Dict[str, Tuple[str, Optional[float]]] = {}

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        return None

    def _live(self, key: str, now: float) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._values.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and now >= expires_at:
            del self._values[key]
            return None
        return entry

    async def blacklist(self, token_id: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        with self._lock:
            now = self._clock()
            self._values[revoked_token_key(token_id)] = ("1", now + ttl_seconds)

    async def claim(self, token_id: str, ttl_seconds: int) -> bool:
        key = revoked_token_key(token_id)
        with self._lock:
            now = self._clock()
            if self._live(key, now) is not None:
                return False
            self._values[key] = ("1", now + max(ttl_seconds, 1))
            return True

    async def is_blacklisted(self, token_id: str) -> bool:
        with self._lock:
            return self._live(revoked_token_key(token_id), self._clock()) is not None

    async def increment_counter(self, key: str, window_seconds: int) -> int:
        with self._lock:
            now = self._clock()
            entry = self._live(key, now)
            if entry is None:
                self._values[key] = ("1", now + window_seconds)
                return 1
            value, expires_at = entry
            count = int(value) + 1
            # INCR keeps the existing expiry
            self._values[key] = (str(count), expires_at)
            return count

    async def get_counter(self, key: str) -> int:
        with self._lock:
            entry = self._live(key, self._clock())
            return int(entry[0]) if entry else 0

    async def counter_ttl(self, key: str) -> int:
        with self._lock:
            now = self._clock()
            entry = self._live(key, now)
            if entry is None or entry[1] is None:
                return 0
            return max(0, int(round(entry[1] - now)))

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._values.pop(key, None) is not None:
                    removed += 1
        return removed

    async def revoke_subject(
        self, subject_id: str, revoked_before: float, ttl_seconds: int
    ) -> None:
        with self._lock:
            now = self._clock()
            self._values[subject_revocation_key(subject_id)] = (
                repr(float(revoked_before)),
                now + max(ttl_seconds, 1),
            )

    async def subject_revoked_before(self, subject_id: str) -> Optional[float]:
        with self._lock:
            entry = self._live(subject_revocation_key(subject_id), self._clock())
            return float(entry[0]) if entry else None
