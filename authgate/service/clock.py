from __future__ import annotations

import secrets
import time
from typing import Callable

Clock = Callable[[], float]

# 24 random bytes = 192 bits of entropy per identifier
TOKEN_ID_BYTES = 24


def wall_clock() -> float:
    """Seconds since the epoch; token timestamps are wall-clock based."""
    return time.time()


def new_token_id() -> str:
    return secrets.token_urlsafe(TOKEN_ID_BYTES)
