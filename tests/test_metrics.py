"""
Unit tests for metrics module.

Tests cover:
- Counter increment (single-threaded and multi-threaded)
- Rejection reason tracking
- Histogram recording and statistics
- Snapshot and reset functionality
- Counters recorded by the estimators
"""

import logging
import threading
import time

import numpy as np
import pytest

from ips_core.errors import NotReadyError, RobustEstimatorError
from ips_core.localization import RobustLaterationConfig, RobustLaterationSolver, RobustMethod
from ips_core.metrics import MetricsCollector, get_metrics, reset_metrics


class TestMetricsCollectorBasic:
    """Tests for basic metrics collector functionality."""

    def test_initialization(self):
        """Test that standard counters start at 0."""
        collector = MetricsCollector()

        assert collector.get_counter('estimate_attempts') == 0
        assert collector.get_counter('robust_iterations') == 0
        assert collector.get_counter('unknown_counter') == 0

    def test_increment_counter(self):
        """Test incrementing a counter."""
        collector = MetricsCollector()

        collector.increment('estimate_attempts')
        assert collector.get_counter('estimate_attempts') == 1

        collector.increment('estimate_attempts', 5)
        assert collector.get_counter('estimate_attempts') == 6

    def test_increment_rejection_with_valid_reason(self):
        """Test rejection counter with a known reason."""
        collector = MetricsCollector()

        collector.increment_rejection('degenerate_subset')
        assert collector.get_counter('rejections') == 1
        assert collector.get_rejections('degenerate_subset') == 1

    def test_increment_rejection_unknown_reason_logs_warning(self, caplog):
        """Test unknown rejection reason is logged and still counted."""
        collector = MetricsCollector()

        with caplog.at_level(logging.WARNING, logger='ips_core.metrics.counters'):
            collector.increment_rejection('cosmic_rays')

        assert 'cosmic_rays' in caplog.text
        assert collector.get_rejections('cosmic_rays') == 1

    def test_multiple_rejection_reasons(self):
        """Test tracking several rejection reasons."""
        collector = MetricsCollector()

        collector.increment_rejection('unknown_source', 3)
        collector.increment_rejection('no_consensus', 5)
        collector.increment_rejection('locked', 2)

        snapshot = collector.snapshot()
        assert snapshot.rejection_reasons['unknown_source'] == 3
        assert snapshot.rejection_reasons['no_consensus'] == 5
        assert snapshot.total_rejected() == 10

    def test_all_rejection_reasons_initialized(self):
        """Test every standard rejection reason is reported from the start."""
        snapshot = MetricsCollector().snapshot()

        for reason in MetricsCollector.REJECTION_REASONS:
            assert snapshot.rejection_reasons[reason] == 0


class TestHistograms:
    """Tests for histogram functionality."""

    def test_record_histogram(self):
        """Test recording values in histogram."""
        collector = MetricsCollector()

        collector.record_histogram('inlier_ratio', 0.5)
        collector.record_histogram('inlier_ratio', 0.75)
        collector.record_histogram('inlier_ratio', 1.0)

        stats = collector.get_histogram_stats('inlier_ratio')
        assert stats['count'] == 3
        assert stats['mean'] == pytest.approx(0.75)
        assert stats['min'] == 0.5
        assert stats['max'] == 1.0

    def test_histogram_empty(self):
        """Test stats of a histogram that was never recorded."""
        assert MetricsCollector().get_histogram_stats('nonexistent') is None

    def test_histogram_max_samples_bounded(self):
        """Test histograms are trimmed to bound memory."""
        collector = MetricsCollector()

        for i in range(1500):
            collector.record_histogram('robust_iterations_per_run', float(i), max_samples=1000)

        assert len(collector.snapshot().histograms['robust_iterations_per_run']) <= 1000


class TestSnapshotAndReset:
    """Tests for snapshot and reset."""

    def test_snapshot_creates_copy(self):
        """Test that snapshots are independent copies."""
        collector = MetricsCollector()

        collector.increment('estimate_attempts', 10)
        first = collector.snapshot()
        collector.increment('estimate_attempts', 5)
        second = collector.snapshot()

        assert first.counters['estimate_attempts'] == 10
        assert second.counters['estimate_attempts'] == 15

    def test_success_rate(self):
        """Test success rate percentage."""
        collector = MetricsCollector()
        collector.increment('estimate_attempts', 4)
        collector.increment('estimate_success', 3)

        assert collector.snapshot().success_rate() == pytest.approx(75.0)

    def test_success_rate_without_attempts(self):
        assert MetricsCollector().snapshot().success_rate() == 0.0

    def test_reset_clears_and_reinitializes(self):
        """Test reset clears values and keeps standard keys."""
        collector = MetricsCollector()
        collector.increment('fusion_runs', 7)
        collector.increment_rejection('not_ready')
        collector.record_histogram('inlier_ratio', 0.9)

        collector.reset()

        snapshot = collector.snapshot()
        assert snapshot.counters['fusion_runs'] == 0
        assert snapshot.total_rejected() == 0
        assert not snapshot.histograms

    def test_uptime_increases(self):
        collector = MetricsCollector()
        uptime1 = collector.get_uptime()
        time.sleep(0.05)
        assert collector.get_uptime() > uptime1

    def test_log_summary(self, caplog):
        """Test summary is written through logging."""
        collector = MetricsCollector()
        collector.increment('estimate_attempts', 3)
        collector.increment_rejection('no_consensus')
        collector.record_histogram('inlier_ratio', 0.8)

        with caplog.at_level(logging.INFO, logger='ips_core.metrics.counters'):
            collector.log_summary()

        assert 'Metrics summary' in caplog.text
        assert 'estimate_attempts' in caplog.text
        assert 'no_consensus' in caplog.text


class TestThreadSafety:
    """Tests for thread-safe operations."""

    def test_concurrent_increment(self):
        """Test that concurrent increments are not lost."""
        collector = MetricsCollector()

        def worker():
            for _ in range(1000):
                collector.increment('robust_iterations')

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert collector.get_counter('robust_iterations') == 8000

    def test_concurrent_rejections(self):
        """Test that concurrent rejection increments are not lost."""
        collector = MetricsCollector()

        def worker(reason: str):
            for _ in range(200):
                collector.increment_rejection(reason)

        threads = [
            threading.Thread(target=worker, args=(reason,))
            for reason in ['unknown_source', 'missing_power']
            for _ in range(4)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert collector.get_rejections('unknown_source') == 800
        assert collector.get_rejections('missing_power') == 800


class TestGlobalSingleton:
    """Tests for global metrics singleton."""

    def test_get_metrics_returns_same_instance(self):
        assert get_metrics() is get_metrics()

    def test_reset_metrics_creates_new_instance(self):
        """Test that reset_metrics() starts from zero."""
        get_metrics().increment('fusion_runs', 100)

        reset_metrics()

        assert get_metrics().get_counter('fusion_runs') == 0


class TestEstimatorMetrics:
    """Tests for counters recorded by the robust engine."""

    def test_not_ready_is_counted(self):
        solver = RobustLaterationSolver(2)

        with pytest.raises(NotReadyError):
            solver.estimate()

        assert get_metrics().get_rejections('not_ready') == 1

    def test_iterations_and_inlier_ratio_recorded(self, square_sources_2d, exact_measurements):
        """Test a successful run records iterations and inlier ratio."""
        positions, distances = exact_measurements(square_sources_2d, (3.0, 4.0))
        solver = RobustLaterationSolver(
            2, RobustLaterationConfig(method=RobustMethod.RANSAC, seed=1)
        )
        solver.set_measurements(positions, distances)

        solver.estimate()

        metrics = get_metrics()
        assert metrics.get_counter('robust_iterations') == solver.inliers_data.num_iterations
        assert metrics.get_histogram_stats('inlier_ratio')['max'] == pytest.approx(1.0)
        assert metrics.get_histogram_stats('robust_iterations_per_run')['count'] == 1

    def test_degenerate_subsets_counted(self):
        """Test every degenerate subset is counted before the run fails."""
        positions = np.array([[0.0, 0.0], [1.0, 0.0], [2.0, 0.0], [3.0, 0.0]])
        distances = np.array([1.0, 1.0, 1.5, 2.5])
        solver = RobustLaterationSolver(
            2, RobustLaterationConfig(method=RobustMethod.RANSAC, max_iterations=20, seed=0)
        )
        solver.set_measurements(positions, distances)

        with pytest.raises(RobustEstimatorError):
            solver.estimate()

        metrics = get_metrics()
        assert metrics.get_counter('degenerate_subsets') == 20
        assert metrics.get_rejections('no_consensus') == 1
