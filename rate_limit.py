"""Fixed-window request ceilings, one counter per (route group, caller)."""
import logging
import math
import threading
import time
from typing import Callable, Dict, Optional, Tuple

from fastapi import Request

from config import RATE_LIMITS, RATE_LIMIT_ENABLED, RATE_LIMIT_WINDOW_SECONDS
from errors import AuthenticationError, RateLimitError
from security import decode_token

log = logging.getLogger("shop.rate_limit")


class FixedWindowLimiter:
    def __init__(self, window_seconds: int, clock: Callable[[], float] = time.monotonic):
        self.window_seconds = window_seconds
        self.clock = clock
        self._windows: Dict[Tuple[str, str], Tuple[float, int]] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def hit(self, group: str, key: str, limit: int) -> Optional[int]:
        """Count one request; return seconds to wait when over the limit."""
        now = self.clock()
        with self._lock:
            if now - self._last_sweep >= self.window_seconds:
                self._sweep(now)
            start, count = self._windows.get((group, key), (now, 0))
            if now - start >= self.window_seconds:
                start, count = now, 0
            if count >= limit:
                return max(1, math.ceil(start + self.window_seconds - now))
            self._windows[(group, key)] = (start, count + 1)
        return None

    def _sweep(self, now: float) -> None:
        expired = [k for k, (start, _) in self._windows.items() if now - start >= self.window_seconds]
        for k in expired:
            del self._windows[k]
        self._last_sweep = now

    def __len__(self) -> int:
        return len(self._windows)

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()


limiter = FixedWindowLimiter(RATE_LIMIT_WINDOW_SECONDS)


def caller_key(request: Request) -> str:
    auth = request.headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        try:
            return "user:" + decode_token(auth[7:].strip())["sub"]
        except AuthenticationError:
            pass
    host = request.client.host if request.client else "unknown"
    return "ip:" + host


def rate_limit(group: str):
    """Dependency factory enforcing the ceiling configured for ``group``."""
    limit = RATE_LIMITS[group]

    async def dependency(request: Request) -> None:
        if not RATE_LIMIT_ENABLED:
            return
        key = caller_key(request)
        retry_after = limiter.hit(group, key, limit)
        if retry_after is not None:
            log.warning("Rate limit hit on %s by %s", group, key)
            raise RateLimitError(group, retry_after)

    return dependency
