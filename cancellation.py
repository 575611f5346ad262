"""Cooperative cancellation shared by the scheduler, tasks and monitors.

Leaf module — no dependencies on other project modules.

Key exports:
    CancelToken        — stop signal threaded through every operation
    OperationCancelled — raised when the root token is cancelled
    StepTimeout        — raised when a child token's deadline passes
"""

import threading
import time


class OperationCancelled(Exception):
    """The operation was cancelled by its owner."""


class StepTimeout(OperationCancelled):
    """A child token's deadline passed while the parent is still live."""


class CancelToken:
    """Stop signal with optional deadline and injectable clock/sleep.

    ``child(timeout_s)`` derives a token that is set when the parent is set
    or when its own deadline passes, whichever comes first. ``clock`` and
    ``sleep`` are inherited by children so tests can swap in a fake clock
    and never really sleep.
    """

    POLL_SLICE_S = 0.1

    def __init__(self, parent=None, deadline=None, clock=None, sleep=None):
        self._event = threading.Event()
        self._parent = parent
        self._deadline = deadline
        if parent is not None:
            self.clock = clock or parent.clock
            self._sleep = sleep or parent._sleep
        else:
            self.clock = clock or time.monotonic
            self._sleep = sleep

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self):
        """True when this token or any ancestor was explicitly cancelled."""
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    @property
    def expired(self):
        """True when this token's or an ancestor's deadline has passed."""
        if self._deadline is not None and self.clock() >= self._deadline:
            return True
        return self._parent is not None and self._parent.expired

    def is_set(self):
        return self.cancelled or self.expired

    def raise_if_cancelled(self):
        if self.cancelled:
            raise OperationCancelled("cancelled")
        if self.expired:
            raise StepTimeout("step deadline passed")

    def remaining(self):
        """Seconds left before the nearest deadline, or None when unbounded."""
        bounds = []
        token = self
        while token is not None:
            if token._deadline is not None:
                bounds.append(token._deadline - self.clock())
            token = token._parent
        return max(0.0, min(bounds)) if bounds else None

    def child(self, timeout_s):
        return CancelToken(parent=self, deadline=self.clock() + timeout_s)

    def sleep(self, seconds):
        """Sleep cooperatively, raising as soon as the token is set."""
        self.raise_if_cancelled()
        if seconds <= 0:
            return
        if self._sleep is not None:
            self._sleep(seconds)
        else:
            end = time.monotonic() + seconds
            while True:
                left = end - time.monotonic()
                if left <= 0 or self.is_set():
                    break
                self._root_event().wait(min(self.POLL_SLICE_S, left))
        self.raise_if_cancelled()

    def _root_event(self):
        token = self
        while token._parent is not None:
            token = token._parent
        return token._event
