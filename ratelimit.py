import logging
import math
import threading
import time
from typing import Callable, Dict, Tuple

from fastapi import HTTPException, Request

from config import RateLimit

logger = logging.getLogger(__name__)

# Above this many tracked clients, expired windows are swept on the next hit.
SWEEP_THRESHOLD = 10_000


def client_ip(request: Request) -> str:
    # Use X-Forwarded-For header for real IP behind proxy (e.g. Render)
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class FixedWindowLimiter:
    """Counts hits per key inside fixed windows; never queues or delays."""

    def __init__(self, name: str, limit: RateLimit, clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.limit = limit
        self._clock = clock
        self._windows: Dict[str, Tuple[float, int]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str) -> Tuple[bool, int]:
        """Record one request. Returns (allowed, seconds until the window resets)."""
        now = self._clock()
        window = self.limit.window_seconds
        with self._lock:
            if len(self._windows) > SWEEP_THRESHOLD:
                self._sweep(now)
            started, count = self._windows.get(key, (now, 0))
            if now - started >= window:
                started, count = now, 0
            count += 1
            self._windows[key] = (started, count)
        retry_after = max(1, math.ceil(started + window - now))
        return count <= self.limit.max_requests, retry_after

    def _sweep(self, now: float):
        window = self.limit.window_seconds
        expired = [key for key, (started, _) in self._windows.items() if now - started >= window]
        for key in expired:
            del self._windows[key]

    def reset(self):
        with self._lock:
            self._windows.clear()


def rate_limited(limiter: FixedWindowLimiter):
    """FastAPI dependency rejecting clients over the limiter's cap with a 429."""

    async def dependency(request: Request):
        if request.method == "OPTIONS":
            return
        ip = client_ip(request)
        allowed, retry_after = limiter.hit(ip)
        if not allowed:
            logger.warning(f"RATE LIMIT: {limiter.name} cap reached for {ip} on {request.url.path}")
            raise HTTPException(
                status_code=429,
                detail=limiter.limit.message,
                headers={"Retry-After": str(retry_after)},
            )

    return dependency
