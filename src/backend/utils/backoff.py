"""
Restart backoff for the crash-prone sweep subprocess.

Crashes are recorded in a sliding window. Each new start after a crash is
delayed exponentially (base * 2^(k-1), capped), and once the window holds
``max_crashes`` crashes further starts are refused until the oldest crash
ages out of the window.
"""

import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class RestartState(Enum):
    """Restart gate states"""

    READY = "ready"  # Start allowed immediately
    COOLING_DOWN = "cooling_down"  # Start allowed after remaining delay
    EXHAUSTED = "exhausted"  # Too many crashes inside the window


@dataclass
class RestartBackoffConfig:
    """Configuration for restart backoff behavior"""

    base_delay_s: float = 1.0
    max_delay_s: float = 30.0
    max_crashes: int = 5  # Crashes inside the window before refusing starts
    window_s: float = 60.0


class RestartBackoff:
    """Sliding-window crash counter with exponential restart delay."""

    def __init__(
        self,
        config: RestartBackoffConfig | None = None,
        name: str = "RestartBackoff",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or RestartBackoffConfig()
        self.name = name
        self._clock = clock
        self._crashes: deque[float] = deque()

    def _prune(self, now: float) -> None:
        while self._crashes and now - self._crashes[0] > self.config.window_s:
            self._crashes.popleft()

    def record_crash(self) -> float:
        """
        Record a crash.

        Returns:
            Delay in seconds the next start has to wait
        """
        now = self._clock()
        self._prune(now)
        self._crashes.append(now)
        delay = self.current_delay()
        logger.warning(
            f"{self.name}: crash recorded ({len(self._crashes)} in "
            f"{self.config.window_s:.0f}s window), next start delayed {delay:.1f}s"
        )
        return delay

    def crash_count(self) -> int:
        self._prune(self._clock())
        return len(self._crashes)

    def current_delay(self) -> float:
        """Full delay implied by the crashes currently inside the window."""
        count = self.crash_count()
        if count == 0:
            return 0.0
        return min(self.config.max_delay_s, self.config.base_delay_s * 2 ** (count - 1))

    def remaining_delay(self) -> float:
        """Seconds left before a start is allowed (0.0 when ready)."""
        if self.crash_count() == 0:
            return 0.0
        elapsed = self._clock() - self._crashes[-1]
        return max(0.0, self.current_delay() - elapsed)

    def get_state(self) -> RestartState:
        if self.crash_count() >= self.config.max_crashes:
            return RestartState.EXHAUSTED
        if self.remaining_delay() > 0:
            return RestartState.COOLING_DOWN
        return RestartState.READY

    def retry_after(self) -> float:
        """Seconds until an exhausted gate reopens."""
        if self.get_state() != RestartState.EXHAUSTED:
            return self.remaining_delay()
        return max(0.0, self._crashes[0] + self.config.window_s - self._clock())

    def reset(self) -> None:
        self._crashes.clear()
        logger.info(f"{self.name}: crash history cleared")

    def get_status(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.get_state().value,
            "crash_count": self.crash_count(),
            "remaining_delay_s": round(self.remaining_delay(), 3),
            "max_crashes": self.config.max_crashes,
            "window_s": self.config.window_s,
        }
