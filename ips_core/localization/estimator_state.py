"""
Estimator State Machine and Listener Protocol.

Estimators are UNLOCKED until estimate() starts and return to UNLOCKED when
it finishes, successfully or not. While LOCKED:
- every mutator raises LockedError synchronously (state unchanged)
- a nested estimate() raises LockedError
- listener callbacks are delivered, so a listener that tries to modify the
  estimator it is observing gets LockedError

The lock is a single-thread re-entrancy guard, not a mutex.
"""

import logging
from contextlib import contextmanager
from enum import Enum
from typing import Callable, Optional

from ips_core.errors import InvalidArgumentError, LockedError
from ips_core.metrics import get_metrics

logger = logging.getLogger(__name__)


class EstimatorState(Enum):
    """Lock state of an estimator."""

    UNLOCKED = "unlocked"
    LOCKED = "locked"


class LockGuard:
    """
    Two-state lock shared by every estimator.

    Usage:
        guard = LockGuard()
        guard.ensure_unlocked()      # in setters

        with guard.locked():         # in estimate()
            ...
    """

    def __init__(self):
        self._state = EstimatorState.UNLOCKED

    @property
    def state(self) -> EstimatorState:
        return self._state

    @property
    def is_locked(self) -> bool:
        return self._state == EstimatorState.LOCKED

    def ensure_unlocked(self):
        """Raise LockedError if currently locked."""
        if self.is_locked:
            get_metrics().increment_rejection('locked')
            raise LockedError()

    @contextmanager
    def locked(self):
        """Hold the LOCKED state for the duration of the block."""
        self.ensure_unlocked()
        self._state = EstimatorState.LOCKED
        try:
            yield
        finally:
            self._state = EstimatorState.UNLOCKED


class EstimatorListener:
    """
    Observer of an estimation run.

    Subclass and override the callbacks of interest; the defaults do
    nothing. Callbacks are invoked synchronously while the estimator is
    locked.
    """

    def on_estimate_start(self, estimator):
        """Called when estimate() starts."""

    def on_estimate_end(self, estimator):
        """Called when estimate() finishes successfully."""

    def on_estimate_next_iteration(self, estimator, iteration: int):
        """Called after each robust sampling iteration."""

    def on_estimate_progress_change(self, estimator, progress: float):
        """Called when progress (0-1) advanced by at least the progress delta."""


def validate_progress_delta(progress_delta: float) -> float:
    """Check progress delta is within [0, 1]."""
    if not 0.0 <= progress_delta <= 1.0:
        raise InvalidArgumentError(f"Progress delta must be in [0, 1]: {progress_delta}")
    return progress_delta


class ProgressNotifier:
    """
    Throttled progress reporting.

    Maps a local progress in [0, 1] onto [offset, offset + scale] and calls
    the callback only when the mapped value advanced by at least
    progress_delta since the last notification. Completion (1.0) is always
    reported. Reported values never decrease.
    """

    def __init__(
        self,
        callback: Optional[Callable[[float], None]],
        progress_delta: float,
        offset: float = 0.0,
        scale: float = 1.0
    ):
        self.callback = callback
        self.progress_delta = validate_progress_delta(progress_delta)
        self.offset = offset
        self.scale = scale
        self._last_reported: Optional[float] = None

    def reset(self):
        self._last_reported = None

    @property
    def last_reported(self) -> Optional[float]:
        return self._last_reported

    def update(self, progress: float):
        """
        Report local progress.

        Args:
            progress: Local progress in [0, 1]
        """
        if self.callback is None:
            return

        progress = min(max(progress, 0.0), 1.0)
        mapped = self.offset + self.scale * progress

        if self._last_reported is not None:
            if mapped <= self._last_reported:
                return
            if mapped - self._last_reported < self.progress_delta and progress < 1.0:
                return

        self._last_reported = mapped
        self.callback(mapped)
