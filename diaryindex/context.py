"""
Deadline and cancellation for build passes.

A BuildContext is created when a build is launched and passed down to
every embedding call, which is given at most remaining() seconds.
"""

import threading
import time
from typing import Callable, Optional

from .errors import Cancelled


class BuildContext:
    """
    Deadline plus an explicit cancel flag.

    timeout=None means no deadline (only cancel() ends it).
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._clock = clock
        self._started = clock()
        self._deadline = None if timeout is None else self._started + timeout
        self._cancelled = threading.Event()

    @property
    def deadline(self) -> Optional[float]:
        return self._deadline

    def elapsed(self) -> float:
        """Seconds since the context was created."""
        return self._clock() - self._started

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, None if unbounded. Never negative."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._clock())

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def done(self) -> bool:
        """True once cancelled or past the deadline."""
        if self._cancelled.is_set():
            return True
        return self._deadline is not None and self._clock() >= self._deadline

    def reason(self) -> str:
        return "cancelled" if self._cancelled.is_set() else "deadline exceeded"

    def check(self, entry_id: Optional[str] = None) -> None:
        """Raise Cancelled if the context is done."""
        if self.done():
            raise Cancelled(entry_id, self.reason())
