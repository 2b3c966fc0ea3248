import asyncio
import random
import time
from typing import Callable


class SimpleRateLimiter:
    def __init__(self, requests_per_sec: float) -> None:
        if requests_per_sec <= 0:
            raise ValueError("requests_per_sec must be > 0")
        self._min_interval = 1.0 / requests_per_sec
        self._last_ts = 0.0
        self._lock = asyncio.Lock()

    async def wait(self) -> None:
        # serialized so concurrent callers queue up instead of bursting
        async with self._lock:
            now = time.monotonic()
            sleep_for = self._min_interval - (now - self._last_ts)
            if sleep_for > 0:
                await asyncio.sleep(sleep_for)
            self._last_ts = time.monotonic()


def backoff_delay(
    attempt: int,
    base: float = 0.5,
    factor: float = 2.0,
    cap: float = 8.0,
    jitter: float = 0.3,
    rand: Callable[[], float] = random.random,
) -> float:
    t = min(cap, base * (factor ** attempt))
    t *= (1.0 - jitter) + rand() * 2 * jitter
    return max(0.0, t)

