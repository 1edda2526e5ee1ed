import math
import os
import threading
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Optional

from fastapi import Request

from src.utils.errors import RateLimited
from src.utils.logger import api_logger

DEFAULT_WINDOW_SECONDS = 60
DEFAULT_LIMIT = 30


class SlidingWindowLimiter:
    """
    Per-client sliding window counter.

    Advisory only: state lives in this process, so each instance counts its
    own traffic.
    """

    def __init__(
        self,
        limit: int = DEFAULT_LIMIT,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def hit(self, key: str) -> Optional[int]:
        """Record a request. Returns None if allowed, else seconds until a slot frees."""
        now = self._clock()
        with self._lock:
            hits = self._hits[key]
            while hits and now - hits[0] >= self.window_seconds:
                hits.popleft()
            if len(hits) >= self.limit:
                return max(1, math.ceil(self.window_seconds - (now - hits[0])))
            hits.append(now)
            return None

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()


def limiter_from_env() -> SlidingWindowLimiter:
    try:
        limit = int(os.environ.get("RATE_LIMIT_PER_MINUTE") or DEFAULT_LIMIT)
    except ValueError:
        limit = DEFAULT_LIMIT
    return SlidingWindowLimiter(limit=limit)


def client_key(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def rate_limit(request: Request) -> None:
    """Dependency: reject with 429 once the caller exceeds the app's limiter."""
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        return None
    key = client_key(request)
    retry_after = limiter.hit(key)
    if retry_after is not None:
        api_logger.warning(f"⚠️ Rate limit exceeded for {key} on {request.url.path}")
        raise RateLimited(
            "Too many requests, please retry shortly",
            headers={"Retry-After": str(retry_after)},
        )
