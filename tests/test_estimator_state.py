"""
Unit tests for the estimator lock state machine and progress reporting.
"""

import pytest

from ips_core.errors import InvalidArgumentError, LockedError
from ips_core.localization import EstimatorListener, EstimatorState, LockGuard, ProgressNotifier
from ips_core.metrics import get_metrics


class TestLockGuard:
    """Tests for LockGuard."""

    def test_starts_unlocked(self):
        guard = LockGuard()

        assert guard.state == EstimatorState.UNLOCKED
        assert not guard.is_locked
        guard.ensure_unlocked()

    def test_locked_block(self):
        guard = LockGuard()

        with guard.locked():
            assert guard.state == EstimatorState.LOCKED
            with pytest.raises(LockedError):
                guard.ensure_unlocked()

        assert guard.state == EstimatorState.UNLOCKED
        assert get_metrics().get_rejections('locked') == 1

    def test_unlocks_after_failure(self):
        guard = LockGuard()

        with pytest.raises(RuntimeError):
            with guard.locked():
                raise RuntimeError("boom")

        assert not guard.is_locked

    def test_reentry_raises(self):
        guard = LockGuard()

        with guard.locked():
            with pytest.raises(LockedError, match="locked"):
                with guard.locked():
                    pass
            assert guard.is_locked


class TestEstimatorListener:
    def test_default_callbacks_do_nothing(self):
        listener = EstimatorListener()

        listener.on_estimate_start(None)
        listener.on_estimate_next_iteration(None, 1)
        listener.on_estimate_progress_change(None, 0.5)
        listener.on_estimate_end(None)


class TestProgressNotifier:
    """Tests for throttled progress reporting."""

    def test_throttles_by_delta(self):
        reported = []
        notifier = ProgressNotifier(reported.append, 0.25)

        for i in range(1, 11):
            notifier.update(i / 10)

        assert reported == pytest.approx([0.1, 0.4, 0.7, 1.0])

    def test_completion_always_reported(self):
        reported = []
        notifier = ProgressNotifier(reported.append, 0.5)

        notifier.update(0.6)
        notifier.update(1.0)

        assert reported == pytest.approx([0.6, 1.0])

    def test_never_decreases(self):
        reported = []
        notifier = ProgressNotifier(reported.append, 0.0)

        for value in (0.2, 0.1, 0.5, 0.3, 0.9):
            notifier.update(value)

        assert reported == pytest.approx([0.2, 0.5, 0.9])

    def test_offset_and_scale(self):
        reported = []
        notifier = ProgressNotifier(reported.append, 0.0, offset=0.5, scale=0.5)

        notifier.update(0.0)
        notifier.update(1.0)

        assert reported == pytest.approx([0.5, 1.0])

    def test_reset(self):
        reported = []
        notifier = ProgressNotifier(reported.append, 0.5)
        notifier.update(0.9)

        notifier.reset()
        notifier.update(0.1)

        assert notifier.last_reported == pytest.approx(0.1)

    def test_without_callback(self):
        notifier = ProgressNotifier(None, 0.1)
        notifier.update(0.5)

        assert notifier.last_reported is None

    @pytest.mark.parametrize("delta", [-0.1, 1.1])
    def test_invalid_delta_raises(self, delta):
        with pytest.raises(InvalidArgumentError, match="Progress delta"):
            ProgressNotifier(None, delta)
