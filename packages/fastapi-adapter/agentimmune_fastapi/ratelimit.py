"""Per-agent hourly rate limiting.

Counting uses fixed wall-clock hour windows: a window starts at the top of
the hour and resets at the next one.  Window state lives in process memory
and is created lazily on an agent's first request in a window.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

from .logging import get_logger

logger = get_logger("agentimmune.ratelimit")

WINDOW_SECONDS = 3600


@dataclass(frozen=True)
class TierLimits:
    requests_per_hour: int
    requests_per_day: int


TIER_LIMITS: dict[str, TierLimits] = {
    "free": TierLimits(requests_per_hour=1000, requests_per_day=5000),
    "pro": TierLimits(requests_per_hour=10000, requests_per_day=100000),
    "enterprise": TierLimits(requests_per_hour=100000, requests_per_day=1000000),
}


def limits_for_tier(tier: str | None) -> TierLimits:
    """Return the limits for *tier*; unknown tiers get the free limits."""
    return TIER_LIMITS.get(tier or "free", TIER_LIMITS["free"])


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    current_count: int
    limit: int
    reset_time: float

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.current_count)


@dataclass
class _Window:
    started_at: float
    count: int = 0
    rejected: int = 0


class RateLimiter:
    """Fixed-window request counter keyed by agent id.

    Args:
        clock: Returns the current unix time.  Injected by tests.
        window_seconds: Window length.  Windows are aligned to multiples
            of this value, so the default gives wall-clock hours.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        window_seconds: int = WINDOW_SECONDS,
    ) -> None:
        self._clock = clock
        self._window_seconds = window_seconds
        self._windows: dict[str, _Window] = {}

    def check(self, agent_id: str, hourly_ceiling: int) -> RateLimitResult:
        """Count one request for *agent_id* and decide whether it is allowed.

        A denied attempt is tallied separately and does not advance the
        window's count.
        """
        now = self._clock()
        window_start = now - (now % self._window_seconds)
        reset_time = window_start + self._window_seconds

        window = self._windows.get(agent_id)
        if window is None or window.started_at != window_start:
            window = _Window(started_at=window_start)
            self._windows[agent_id] = window

        if window.count >= hourly_ceiling:
            window.rejected += 1
            logger.warning(
                "Rate limit exceeded",
                agent_id=agent_id,
                current_count=window.count,
                limit=hourly_ceiling,
            )
            return RateLimitResult(
                allowed=False,
                current_count=window.count,
                limit=hourly_ceiling,
                reset_time=reset_time,
            )

        window.count += 1
        return RateLimitResult(
            allowed=True,
            current_count=window.count,
            limit=hourly_ceiling,
            reset_time=reset_time,
        )

    def rejected_count(self, agent_id: str) -> int:
        window = self._windows.get(agent_id)
        return window.rejected if window else 0

    def reset(self, agent_id: str | None = None) -> None:
        """Drop window state for one agent, or for all agents."""
        if agent_id is None:
            self._windows.clear()
        else:
            self._windows.pop(agent_id, None)
