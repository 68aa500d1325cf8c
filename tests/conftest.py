"""
Pytest configuration and shared fixtures for ips_core tests.

Provides source layouts, synthetic measurement generators and a recording
listener used across the lateration, robust and sequential estimator tests.
"""

from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np
import pytest

from ips_core.localization import EstimatorListener, received_power_dbm
from ips_core.metrics import reset_metrics
from ips_core.proto import (
    Fingerprint,
    RadioSource,
    located_source,
    ranging_and_rssi_reading,
    ranging_reading,
    rssi_reading,
)

TX_POWER_DBM = 20.0
FREQUENCY_HZ = 2.4e9


# =============================================================================
# Global State
# =============================================================================


@pytest.fixture(autouse=True)
def fresh_metrics():
    """Start every test with an empty metrics collector."""
    reset_metrics()
    yield
    reset_metrics()


# =============================================================================
# Source Layouts
# =============================================================================


@pytest.fixture
def square_sources_2d() -> np.ndarray:
    """
    Six 2D source positions around a 10m x 10m room.

    Returns:
        (6, 2) array in meters
    """
    return np.array([
        [0.0, 0.0],
        [10.0, 0.0],
        [10.0, 10.0],
        [0.0, 10.0],
        [5.0, -2.0],
        [-2.0, 5.0],
    ])


@pytest.fixture
def cube_sources_3d() -> np.ndarray:
    """
    Eight non-coplanar 3D source positions.

    Returns:
        (8, 3) array in meters
    """
    return np.array([
        [0.0, 0.0, 0.0],
        [10.0, 0.0, 1.0],
        [10.0, 10.0, 3.0],
        [5.0, 5.0, 8.0],
        [0.0, 10.0, 2.0],
        [0.0, 5.0, 6.0],
        [10.0, 5.0, 5.0],
        [5.0, 0.0, 4.0],
    ])


# =============================================================================
# Synthetic Measurements
# =============================================================================


def _exact(positions: Sequence, receiver: Sequence) -> Tuple[np.ndarray, np.ndarray]:
    positions = np.asarray(positions, dtype=float)
    distances = np.linalg.norm(positions - np.asarray(receiver, dtype=float), axis=1)
    return positions, distances


@pytest.fixture
def exact_measurements() -> Callable:
    """
    Factory for noise-free distances.

    Usage:
        positions, distances = exact_measurements(sources, receiver)
    """
    return _exact


@pytest.fixture
def outlier_measurements() -> Callable:
    """
    Factory for random layouts with a fraction of corrupted distances.

    Usage:
        positions, distances, receiver, outliers = outlier_measurements(
            rng, dimensions=2, num_sources=20, outlier_fraction=0.2,
            outlier_std=10.0, inlier_std=0.0)
    """
    def make(
        rng: np.random.Generator,
        dimensions: int = 2,
        num_sources: int = 20,
        outlier_fraction: float = 0.2,
        outlier_std: float = 10.0,
        inlier_std: float = 0.0
    ):
        positions = rng.uniform(-50.0, 50.0, size=(num_sources, dimensions))
        receiver = rng.uniform(-50.0, 50.0, size=dimensions)
        distances = np.linalg.norm(positions - receiver, axis=1)

        if inlier_std > 0:
            distances = distances + rng.normal(0.0, inlier_std, size=num_sources)

        num_outliers = int(outlier_fraction * num_sources)
        outliers = np.zeros(num_sources, dtype=bool)
        outliers[rng.choice(num_sources, size=num_outliers, replace=False)] = True
        distances[outliers] += np.abs(rng.normal(0.0, outlier_std, size=num_outliers)) + 1.0
        return positions, np.abs(distances), receiver, outliers

    return make


# =============================================================================
# Radio Sources and Fingerprints
# =============================================================================


@pytest.fixture
def radio_sources() -> Callable:
    """
    Factory for located radio sources with known transmitted power.

    Usage:
        sources = radio_sources(square_sources_2d)
    """
    def make(positions: Sequence, prefix: str = "AP", **kwargs) -> List[RadioSource]:
        kwargs.setdefault('transmitted_power_dbm', TX_POWER_DBM)
        kwargs.setdefault('frequency_hz', FREQUENCY_HZ)
        return [
            located_source(f"{prefix}{i}", tuple(p), **kwargs)
            for i, p in enumerate(positions)
        ]
    return make


def expected_rssi(source: RadioSource, receiver: Sequence) -> float:
    """Noise-free received power at receiver."""
    distance = float(np.linalg.norm(np.asarray(source.position) - np.asarray(receiver)))
    return received_power_dbm(source.transmitted_power_dbm, distance, source.frequency_hz, 2.0)


@pytest.fixture
def make_fingerprint() -> Callable:
    """
    Factory for noise-free fingerprints.

    Usage:
        fingerprint = make_fingerprint(sources, receiver, kind="mixed")

    kind:
        "ranging": ranging reading per source
        "rssi": RSSI reading per source
        "mixed": ranging and RSSI readings per source
        "combined": one ranging-and-RSSI reading per source
    """
    def make(sources: Sequence[RadioSource], receiver: Sequence, kind: str = "ranging",
             distance_std: Optional[float] = None) -> Fingerprint:
        readings = []
        for source in sources:
            distance = float(np.linalg.norm(np.asarray(source.position) - np.asarray(receiver)))
            rssi = expected_rssi(source, receiver)
            if kind in ("ranging", "mixed"):
                readings.append(ranging_reading(source, distance, distance_std))
            if kind in ("rssi", "mixed"):
                readings.append(rssi_reading(source, rssi))
            if kind == "combined":
                readings.append(ranging_and_rssi_reading(source, distance, rssi, distance_std))
        return Fingerprint(readings)
    return make


# =============================================================================
# Listener
# =============================================================================


class RecordingListener(EstimatorListener):
    """
    Listener that records every callback.

    Set `action` to a callable(event, estimator) to act from inside a
    callback; exceptions it raises are stored in `errors`.
    """

    def __init__(self):
        self.events: List[str] = []
        self.iterations: List[int] = []
        self.progress: List[float] = []
        self.errors: List[Exception] = []
        self.action: Optional[Callable] = None

    def _act(self, event: str, estimator):
        self.events.append(event)
        if self.action is not None:
            try:
                self.action(event, estimator)
            except Exception as e:
                self.errors.append(e)

    def on_estimate_start(self, estimator):
        self._act('start', estimator)

    def on_estimate_end(self, estimator):
        self._act('end', estimator)

    def on_estimate_next_iteration(self, estimator, iteration: int):
        self.iterations.append(iteration)
        self._act('iteration', estimator)

    def on_estimate_progress_change(self, estimator, progress: float):
        self.progress.append(progress)
        self._act('progress', estimator)


@pytest.fixture
def recording_listener() -> RecordingListener:
    return RecordingListener()
