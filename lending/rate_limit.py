"""In-process sliding-window rate limiting keyed by client address."""

import logging
import threading
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict

from fastapi import Request

from .errors import RateLimitedError

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """Allow at most ``max_requests`` hits per key within ``window_seconds``.

    A ``max_requests`` of 0 disables the limiter. Keys whose window has
    emptied are dropped at most once per window.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        message: str = "Too many requests, please try again later.",
        clock: Callable[[], float] = time.monotonic,
        trust_proxy: bool = False,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.message = message
        self.trust_proxy = trust_proxy
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()
        self._last_sweep = clock()

    @property
    def enabled(self) -> bool:
        return self.max_requests > 0

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._hits

    def hit(self, key: str) -> None:
        """Record one request for ``key`` or raise RateLimitedError if over budget."""
        if not self.enabled:
            return
        now = self._clock()
        with self._lock:
            if now - self._last_sweep >= self.window_seconds:
                self._sweep(now)
            window = self._hits[key]
            while window and now - window[0] >= self.window_seconds:
                window.popleft()
            if len(window) >= self.max_requests:
                retry_after = int(self.window_seconds - (now - window[0])) + 1
                logger.warning("Rate limit exceeded for %s (%d/%d)", key, len(window), self.max_requests)
                raise RateLimitedError(self.message, retry_after=retry_after)
            window.append(now)

    def _sweep(self, now: float) -> None:
        # caller holds the lock
        stale = [key for key, window in self._hits.items() if not window or now - window[-1] >= self.window_seconds]
        for key in stale:
            del self._hits[key]
        self._last_sweep = now
        if stale:
            logger.debug("Dropped %d idle rate-limit keys", len(stale))

    def remaining(self, key: str) -> int:
        if not self.enabled:
            return -1
        now = self._clock()
        with self._lock:
            window = self._hits.get(key, ())
            recent = sum(1 for stamp in window if now - stamp < self.window_seconds)
        return max(0, self.max_requests - recent)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
            self._last_sweep = self._clock()

    def __call__(self, request: Request) -> None:
        """FastAPI dependency form: limit by the caller's address."""
        self.hit(client_address(request, trust_proxy=self.trust_proxy))


def client_address(request: Request, trust_proxy: bool = False) -> str:
    """The peer address, or the first ``X-Forwarded-For`` hop behind a trusted proxy."""
    if trust_proxy:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    if request.client is not None:
        return request.client.host
    return "unknown"
