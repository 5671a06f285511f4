"""
Cooperative cancellation for backup cycles.

A CycleContext carries an optional deadline and a cancel flag. Long-running
steps (snapshot polling, file transfers) call check() or sleep() so that a
cancelled or expired cycle stops promptly instead of hanging.
"""

import threading
import time
from typing import Optional


class CycleCancelled(Exception):
    """Raised when a cycle is cancelled before it finishes."""
    pass


class CycleTimeout(CycleCancelled):
    """Raised when a cycle exceeds its deadline."""
    pass


class CycleContext:
    """
    Deadline and cancellation signal shared by every step of one cycle.

    Safe to cancel from another thread.
    """

    def __init__(self, timeout: Optional[float] = None, clock=time.monotonic):
        """
        Initialize cycle context.

        Args:
            timeout: Seconds until the cycle expires (None = no deadline)
            clock: Monotonic clock function
        """
        self._clock = clock
        self._cancelled = threading.Event()
        self.deadline = clock() + timeout if timeout is not None else None

    def cancel(self):
        """Request cancellation of the cycle."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def expired(self) -> bool:
        return self.deadline is not None and self._clock() >= self.deadline

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None without a deadline."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - self._clock())

    def check(self):
        """
        Raise if the cycle should stop.

        Raises:
            CycleCancelled: If cancel() was called
            CycleTimeout: If the deadline has passed
        """
        if self._cancelled.is_set():
            raise CycleCancelled("Backup cycle cancelled")
        if self.expired:
            raise CycleTimeout("Backup cycle deadline exceeded")

    def sleep(self, seconds: float):
        """
        Sleep for up to `seconds`, waking early on cancellation or deadline.

        Raises:
            CycleCancelled: If cancelled before or during the sleep
            CycleTimeout: If the deadline passes before or during the sleep
        """
        self.check()

        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)

        self._cancelled.wait(seconds)
        self.check()


def ensure_context(ctx: Optional[CycleContext]) -> CycleContext:
    """Return ctx, or a context without deadline when ctx is None."""
    return ctx if ctx is not None else CycleContext()
