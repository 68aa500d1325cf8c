"""
Metrics Module: Diagnostics, counters, histograms.

Tracks estimator activity:
- Counters: estimate attempts, successes, robust iterations
- Rejection reasons: why a measurement, subset or estimate was discarded
- Histograms: iterations per run, inlier ratio, refinement iterations

Usage:
    from ips_core.metrics import get_metrics

    metrics = get_metrics()
    metrics.increment('estimate_attempts')
    metrics.increment_rejection('degenerate_subset')
    metrics.record_histogram('inlier_ratio', 0.85)
"""

from .counters import MetricsCollector, CounterSnapshot

# Global singleton for easy access
_global_metrics = None


def get_metrics() -> MetricsCollector:
    """
    Get the global metrics collector singleton.

    Returns:
        MetricsCollector instance
    """
    global _global_metrics
    if _global_metrics is None:
        _global_metrics = MetricsCollector()
    return _global_metrics


def reset_metrics():
    """Reset global metrics (for testing)."""
    global _global_metrics
    _global_metrics = MetricsCollector()


__all__ = ['MetricsCollector', 'CounterSnapshot', 'get_metrics', 'reset_metrics']
