"""Cancellable request contexts with an optional deadline."""

import threading
import time

from backend import CancelledError


class Context:
    """Cancellation flag plus an optional deadline for one unit of remote work.

    Every blocking call in the Kopia layers takes a Context. Once it is
    cancelled, or its deadline passes, the next check raises CancelledError.
    """

    def __init__(self, timeout: float | None = None, clock=time.monotonic):
        self._clock = clock
        self._deadline = None if timeout is None else clock() + timeout
        self._cancelled = threading.Event()

    def cancel(self):
        self._cancelled.set()

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or None when there is no deadline."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._clock())

    def error(self) -> CancelledError | None:
        if self._cancelled.is_set():
            return CancelledError("context cancelled")
        if self._deadline is not None and self._clock() >= self._deadline:
            return CancelledError("context deadline exceeded")
        return None

    def done(self) -> bool:
        return self.error() is not None

    def check(self):
        """Raise CancelledError if the context is done."""
        err = self.error()
        if err is not None:
            raise err

    def sleep(self, seconds: float):
        """Sleep, waking early on cancellation. Raises CancelledError if the context ends."""
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        if seconds > 0:
            self._cancelled.wait(seconds)
        self.check()
