"""
Per-subject, per-model rate limiting.

Fixed-window counters keyed by ``"{subject}:{model}"``. A window resets once
``now - window_start >= window_ms``; stale windows are evicted by ``sweep()``.
"""

import asyncio
import threading
import time
from typing import Callable

import structlog

from .models import RateLimitWindow

logger = structlog.get_logger()


ANONYMOUS_SUBJECT = "anonymous"


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


class RateLimiter:
    """
    Non-blocking fixed-window rate limiter.

    Every read-modify-write of a window happens under one ``threading.Lock``,
    so concurrent callers on the same key never lose updates.
    """

    def __init__(
        self,
        window_ms: int = 60_000,
        default_limit: int = 60,
        cleanup_multiplier: int = 3,
        clock: Callable[[], int] | None = None,
    ):
        """
        Initialize the limiter.

        Args:
            window_ms: Window length in milliseconds
            default_limit: Requests per window when a model has no own limit
            cleanup_multiplier: Windows older than this many lengths are evicted
            clock: Millisecond clock, injectable for tests
        """
        if window_ms <= 0:
            raise ValueError("window_ms must be positive")
        if default_limit < 1:
            raise ValueError("default_limit must be at least 1")
        self.window_ms = window_ms
        self.default_limit = default_limit
        self.cleanup_multiplier = cleanup_multiplier
        self._clock = clock or _wall_clock_ms
        self._windows: dict[str, RateLimitWindow] = {}
        self._model_limits: dict[str, tuple[int, int | None]] = {}
        self._lock = threading.Lock()
        self._sweeper: asyncio.Task | None = None

    @staticmethod
    def key(subject_id: str | None, model_id: str) -> str:
        return f"{subject_id or ANONYMOUS_SUBJECT}:{model_id}"

    def set_limit(self, model_id: str, limit: int, token_limit: int | None = None) -> None:
        """Set the per-window request (and optional token) limit for a model."""
        if limit < 1:
            raise ValueError(f"Rate limit for {model_id} must be at least 1")
        with self._lock:
            self._model_limits[model_id] = (limit, token_limit)

    def limit_for(self, model_id: str) -> tuple[int, int | None]:
        return self._model_limits.get(model_id, (self.default_limit, None))

    def _current_window(self, subject_id: str | None, model_id: str, now: int) -> RateLimitWindow:
        # Caller holds the lock
        key = self.key(subject_id, model_id)
        limit, token_limit = self.limit_for(model_id)
        window = self._windows.get(key)
        if window is None or window.expired(now):
            window = RateLimitWindow(
                subject_key=key,
                window_start_ms=now,
                count=0,
                limit=limit,
                window_ms=self.window_ms,
                token_limit=token_limit,
            )
            self._windows[key] = window
        return window

    def try_acquire(self, subject_id: str | None, model_id: str) -> bool:
        """
        Admit one request if the window has room.

        Returns:
            True if admitted (count incremented), False if the limit is reached
        """
        now = self._clock()
        with self._lock:
            window = self._current_window(subject_id, model_id, now)
            if window.exhausted():
                admitted = False
            else:
                window.count += 1
                admitted = True

        if not admitted:
            logger.info("rate_limit_rejected", subject=subject_id, model=model_id)
        return admitted

    def record_tokens(self, subject_id: str | None, model_id: str, tokens: int) -> None:
        """Charge tokens against the current window's token envelope."""
        if tokens <= 0:
            return
        now = self._clock()
        with self._lock:
            window = self._current_window(subject_id, model_id, now)
            window.tokens += tokens

    def status(self, subject_id: str | None, model_id: str) -> dict:
        """Current usage for one key without consuming a slot."""
        now = self._clock()
        key = self.key(subject_id, model_id)
        limit, token_limit = self.limit_for(model_id)
        with self._lock:
            window = self._windows.get(key)
            if window is None or window.expired(now):
                return {
                    "limit": limit,
                    "used": 0,
                    "remaining": limit,
                    "reset_at_ms": now + self.window_ms,
                    "tokens": 0,
                    "token_limit": token_limit,
                }
            return {
                "limit": window.limit,
                "used": window.count,
                "remaining": max(0, window.limit - window.count),
                "reset_at_ms": window.window_start_ms + window.window_ms,
                "tokens": window.tokens,
                "token_limit": window.token_limit,
            }

    def time_until_available(self, subject_id: str | None, model_id: str) -> int:
        """Milliseconds until the key can be admitted again (0 if it can be now)."""
        now = self._clock()
        with self._lock:
            window = self._windows.get(self.key(subject_id, model_id))
            if window is None or window.expired(now) or not window.exhausted():
                return 0
            return max(0, window.window_start_ms + window.window_ms - now)

    def sweep(self) -> int:
        """
        Evict windows that started more than ``cleanup_multiplier`` windows ago.

        Returns:
            Number of evicted windows
        """
        now = self._clock()
        threshold = self.window_ms * self.cleanup_multiplier
        with self._lock:
            stale = [
                key for key, window in self._windows.items()
                if now - window.window_start_ms > threshold
            ]
            for key in stale:
                del self._windows[key]
        if stale:
            logger.debug("rate_limit_windows_evicted", count=len(stale))
        return len(stale)

    def reset(self) -> None:
        """Drop every window."""
        with self._lock:
            self._windows.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    def start_sweeper(self, interval_s: float) -> asyncio.Task:
        """Run ``sweep()`` every ``interval_s`` seconds on the running loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_forever(interval_s))
        return self._sweeper

    async def _sweep_forever(self, interval_s: float) -> None:
        while True:
            await asyncio.sleep(interval_s)
            self.sweep()

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None
