"""
Metrics counters and histograms implementation.

Provides thread-safe counters for:
- Estimation lifecycle (attempts, successes, failures)
- Rejection reasons (unknown source, degenerate subset, no consensus, etc.)
- Robust solver statistics (iterations, inlier ratio)

Every discarded measurement or failed estimate records a reason code.
"""

import logging
import threading
import time
from typing import Dict, List, Optional
from dataclasses import dataclass
from collections import defaultdict
import statistics

logger = logging.getLogger(__name__)


@dataclass
class CounterSnapshot:
    """Snapshot of counter state at a point in time."""

    timestamp: float
    counters: Dict[str, int]
    rejection_reasons: Dict[str, int]
    histograms: Dict[str, List[float]]

    def total_rejected(self) -> int:
        """Total rejections across all reasons."""
        return sum(self.rejection_reasons.values())

    def success_rate(self) -> float:
        """Percentage of estimate attempts that succeeded."""
        attempts = self.counters.get('estimate_attempts', 0)
        if attempts == 0:
            return 0.0
        return (self.counters.get('estimate_success', 0) / attempts) * 100.0


class MetricsCollector:
    """
    Thread-safe metrics collection.

    Usage:
        collector = MetricsCollector()
        collector.increment('estimate_attempts')
        collector.increment_rejection('no_consensus')
        collector.record_histogram('robust_iterations_per_run', 42)

        snapshot = collector.snapshot()
        print(f"Total rejected: {snapshot.total_rejected()}")
    """

    # Standard rejection reason codes
    REJECTION_REASONS = {
        'unknown_source': 'Reading refers to a source that is not located',
        'missing_power': 'RSSI reading for a source without transmitted power',
        'degenerate_subset': 'Minimal subset with degenerate geometry',
        'no_consensus': 'Robust estimator found no usable solution',
        'ill_conditioned': 'Refinement normal matrix not positive definite',
        'not_ready': 'Estimate requested without mandatory inputs',
        'locked': 'Mutation attempted while estimating',
    }

    def __init__(self):
        """Initialize metrics collector."""
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = defaultdict(int)
        self._rejection_reasons: Dict[str, int] = defaultdict(int)
        self._histograms: Dict[str, List[float]] = defaultdict(list)
        self._start_time = time.time()

        # Initialize standard counters to 0 for consistent reporting
        self._init_standard_counters()

    def _init_standard_counters(self):
        """Initialize standard counter keys."""
        standard_counters = [
            'estimate_attempts',
            'estimate_success',
            'estimate_failures',
            'robust_iterations',
            'degenerate_subsets',
            'stream_failures',
            'fusion_runs',
        ]

        with self._lock:
            for counter in standard_counters:
                if counter not in self._counters:
                    self._counters[counter] = 0

            for reason in self.REJECTION_REASONS:
                if reason not in self._rejection_reasons:
                    self._rejection_reasons[reason] = 0

    def increment(self, counter_name: str, value: int = 1):
        """
        Increment a counter by value.

        Args:
            counter_name: Name of counter to increment
            value: Amount to increment (default 1)
        """
        with self._lock:
            self._counters[counter_name] += value

    def increment_rejection(self, reason: str, value: int = 1):
        """
        Increment rejection counter for specific reason.

        Args:
            reason: Rejection reason code (should be in REJECTION_REASONS)
            value: Amount to increment (default 1)
        """
        if reason not in self.REJECTION_REASONS:
            # Unknown reasons are still counted
            logger.warning(f"Unknown rejection reason '{reason}'")

        with self._lock:
            self._rejection_reasons[reason] += value
            self._counters['rejections'] += value

    def get_counter(self, counter_name: str) -> int:
        """
        Get current value of a counter.

        Args:
            counter_name: Name of counter

        Returns:
            Current counter value
        """
        with self._lock:
            return self._counters.get(counter_name, 0)

    def get_rejections(self, reason: str) -> int:
        """Get current count for a rejection reason."""
        with self._lock:
            return self._rejection_reasons.get(reason, 0)

    def record_histogram(self, histogram_name: str, value: float, max_samples: int = 10000):
        """
        Record a value in a histogram.

        Args:
            histogram_name: Name of histogram
            value: Value to record
            max_samples: Maximum samples to keep (prevents unbounded growth)
        """
        with self._lock:
            samples = self._histograms[histogram_name]
            samples.append(value)

            # Keep only recent samples to bound memory
            if len(samples) > max_samples:
                self._histograms[histogram_name] = samples[-max_samples//2:]

    def get_histogram_stats(self, histogram_name: str) -> Optional[Dict[str, float]]:
        """
        Get statistics for a histogram.

        Args:
            histogram_name: Name of histogram

        Returns:
            Dict with min, max, mean, median, p95, count
            None if histogram is empty
        """
        with self._lock:
            samples = self._histograms.get(histogram_name, [])

            if not samples:
                return None

            sorted_samples = sorted(samples)
            count = len(sorted_samples)

            return {
                'count': count,
                'min': sorted_samples[0],
                'max': sorted_samples[-1],
                'mean': statistics.mean(sorted_samples),
                'median': statistics.median(sorted_samples),
                'p95': sorted_samples[int(count * 0.95)] if count > 1 else sorted_samples[0],
            }

    def snapshot(self) -> CounterSnapshot:
        """
        Get a snapshot of current metrics state.

        Returns:
            CounterSnapshot with copies of all metrics
        """
        with self._lock:
            return CounterSnapshot(
                timestamp=time.time(),
                counters=dict(self._counters),
                rejection_reasons=dict(self._rejection_reasons),
                histograms={k: list(v) for k, v in self._histograms.items()},
            )

    def reset(self):
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self._counters.clear()
            self._rejection_reasons.clear()
            self._histograms.clear()
            self._start_time = time.time()
        self._init_standard_counters()

    def get_uptime(self) -> float:
        """Get uptime in seconds since initialization."""
        return time.time() - self._start_time

    def log_summary(self, level: int = logging.INFO):
        """Log a human-readable metrics summary."""
        snapshot = self.snapshot()

        logger.log(level, f"Metrics summary (uptime: {self.get_uptime():.1f}s)")
        for name, value in sorted(snapshot.counters.items()):
            logger.log(level, f"  {name:30s}: {value:8d}")

        total_rejected = snapshot.total_rejected()
        if total_rejected > 0:
            for reason, count in sorted(snapshot.rejection_reasons.items()):
                if count > 0:
                    pct = (count / total_rejected) * 100
                    logger.log(level, f"  rejected/{reason:21s}: {count:8d} ({pct:5.1f}%)")

        for name in sorted(snapshot.histograms.keys()):
            stats = self.get_histogram_stats(name)
            if stats:
                logger.log(
                    level,
                    f"  {name}: count={stats['count']}, mean={stats['mean']:.3f}, "
                    f"p95={stats['p95']:.3f}"
                )
