"""
Per-Actor Rate Limiting

Fixed-window request counting in front of every generative call. The
interface lets a shared backend replace the in-memory store for
multi-instance deployments.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from loguru import logger

from src.config import get_settings
from src.utils.metrics import metrics


@dataclass
class RateLimitWindow:
    """Request count for one actor until `reset_time`."""
    count: int
    reset_time: datetime

    def is_expired(self, now: datetime) -> bool:
        return now > self.reset_time


@dataclass
class RateLimitResult:
    """
    Result of rate limit check.

    Attributes:
        allowed: Whether the request may proceed
        remaining: Requests left in the current window
        reset_at: When the current window ends
        retry_after: Seconds to wait before retrying (if blocked)
        reason: Why the request was blocked (if applicable)
    """
    allowed: bool
    remaining: int
    reset_at: datetime
    retry_after: Optional[int] = None
    reason: Optional[str] = None


class RateLimiter(ABC):
    """Abstract rate limiter interface."""

    @abstractmethod
    async def check_rate_limit(self, actor_id: str) -> RateLimitResult:
        """
        Count one request for the actor and decide whether it may proceed.

        Args:
            actor_id: Sender identifier (user id, session id or client id)
        """

    @abstractmethod
    async def reset(self, actor_id: str) -> None:
        """Forget the actor's current window."""


class InMemoryRateLimiter(RateLimiter):
    """
    Fixed-window limiter held in process memory.

    Windows start on an actor's first request and expire `window_seconds`
    later. Suitable for single-instance deployments and tests.
    """

    def __init__(
        self,
        max_requests: Optional[int] = None,
        window_seconds: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        settings = get_settings()
        self.max_requests = max_requests or settings.rate_limit_max_requests
        self.window_seconds = window_seconds or settings.rate_limit_window_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._windows: Dict[str, RateLimitWindow] = {}
        self._lock = asyncio.Lock()
        self._last_sweep = self._clock()

    async def check_rate_limit(self, actor_id: str) -> RateLimitResult:
        async with self._lock:
            now = self._clock()
            if (now - self._last_sweep).total_seconds() >= self.window_seconds:
                self._drop_expired(now)

            window = self._windows.get(actor_id)

            if window is None or window.is_expired(now):
                window = RateLimitWindow(count=0, reset_time=now + timedelta(seconds=self.window_seconds))
                self._windows[actor_id] = window

            if window.count >= self.max_requests:
                retry_after = int((window.reset_time - now).total_seconds())
                result = RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_at=window.reset_time,
                    retry_after=max(retry_after, 1),
                    reason=f"Rate limit exceeded: {window.count}/{self.max_requests} requests"
                )
            else:
                window.count += 1
                result = RateLimitResult(
                    allowed=True,
                    remaining=self.max_requests - window.count,
                    reset_at=window.reset_time
                )

        if not result.allowed:
            metrics.rate_limit_hits.inc()
            logger.warning(f"🚦 Rate limit hit for {actor_id}: {result.reason}")

        return result

    async def reset(self, actor_id: str) -> None:
        async with self._lock:
            self._windows.pop(actor_id, None)

    async def purge_expired(self) -> int:
        """Drop expired windows. Returns how many were removed."""
        async with self._lock:
            return self._drop_expired(self._clock())

    def _drop_expired(self, now: datetime) -> int:
        # Caller holds the lock
        expired = [actor for actor, window in self._windows.items() if window.is_expired(now)]
        for actor in expired:
            del self._windows[actor]
        self._last_sweep = now
        return len(expired)
