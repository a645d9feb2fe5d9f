"""Wall-clock budget for one invocation."""

import time
from typing import Callable


class Quantum:
    """
    Tracks elapsed time against the execution budget.

    Nothing is interrupted when the budget runs out; loops check `expired`
    between calls, so the real bound is the budget plus one call.
    """

    def __init__(
        self,
        seconds: float,
        clock: Callable[[], float] = time.monotonic,
        started_at: float | None = None,
    ):
        self.seconds = seconds
        self._clock = clock
        self.started_at = clock() if started_at is None else started_at

    @property
    def elapsed(self) -> float:
        return self._clock() - self.started_at

    @property
    def elapsed_ms(self) -> int:
        return int(round(self.elapsed * 1000))

    @property
    def remaining(self) -> float:
        return max(0.0, self.seconds - self.elapsed)

    @property
    def expired(self) -> bool:
        return self.elapsed >= self.seconds
