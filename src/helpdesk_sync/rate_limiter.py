"""
Fixed-interval throttling.

The helpdesk API enforces a per-site request budget. Two throttles keep the
engine under it: a short pause after every successful API call, and a longer
pause between batches of the sync loop.
"""

import time
from dataclasses import dataclass
from typing import Callable


@dataclass
class ThrottleStats:
    """Statistics for monitoring throttle behavior."""
    pauses: int = 0
    total_wait_time: float = 0.0


class IntervalThrottle:
    """
    Sleeps a fixed interval on every `pause()`.

    The sleep function is injectable so tests can record waits instead of
    performing them.

    Example:
        throttle = IntervalThrottle(delay_seconds=0.25)

        response = make_api_request()
        throttle.pause()
    """

    def __init__(
        self,
        delay_seconds: float,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if delay_seconds < 0:
            raise ValueError("delay_seconds must not be negative")

        self.delay_seconds = delay_seconds
        self._sleep = sleep
        self.stats = ThrottleStats()

    @classmethod
    def from_millis(
        cls,
        delay_ms: int,
        fraction: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "IntervalThrottle":
        """Build a throttle for `fraction` of a millisecond delay setting."""
        return cls(delay_seconds=max(0.0, delay_ms / 1000.0 * fraction), sleep=sleep)

    def pause(self) -> None:
        """Sleep for the configured interval (no-op when it is zero)."""
        if self.delay_seconds <= 0:
            return
        self.stats.pauses += 1
        self.stats.total_wait_time += self.delay_seconds
        self._sleep(self.delay_seconds)

    def get_stats(self) -> dict:
        """Get throttle statistics for monitoring."""
        return {
            "delay_seconds": self.delay_seconds,
            "pauses": self.stats.pauses,
            "total_wait_time_seconds": round(self.stats.total_wait_time, 2),
        }
