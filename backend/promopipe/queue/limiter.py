"""Sliding-window dispatch limiter."""

from collections import deque

from promopipe.clock import Clock, system_clock


class RateLimiter:
    """Allow at most ``max_dispatches`` acquisitions in any rolling ``duration``.

    A dispatch at time t occupies the window until t + duration.
    """

    def __init__(self, max_dispatches: int, duration: float, clock: Clock = system_clock):
        if max_dispatches < 1:
            raise ValueError("max_dispatches must be >= 1")
        self.max_dispatches = max_dispatches
        self.duration = duration
        self._clock = clock
        self._stamps: deque[float] = deque()

    def _prune(self, now: float) -> None:
        while self._stamps and self._stamps[0] <= now - self.duration:
            self._stamps.popleft()

    def try_acquire(self) -> bool:
        now = self._clock.now()
        self._prune(now)
        if len(self._stamps) >= self.max_dispatches:
            return False
        self._stamps.append(now)
        return True

