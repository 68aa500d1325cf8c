"""
Measurement Builder.

Flattens located radio sources and fingerprint readings into the arrays a
lateration solver consumes: one row per usable distance.

- Ranging readings give their measured distance
- RSSI readings give a pseudo-range from the path loss model
- Ranging-and-RSSI readings give one row of each
- Readings whose source is unknown, unlocated, or (for RSSI) without
  transmitted power are skipped and counted as rejections
"""

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np

from ips_core.config import PATH_LOSS_DEFAULTS
from ips_core.errors import InvalidArgumentError
from ips_core.localization.path_loss import estimate_distance
from ips_core.metrics import get_metrics
from ips_core.proto.radio_source import RadioSource
from ips_core.proto.reading import Reading

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class Measurements:
    """
    Flattened lateration input.

    Attributes:
        positions: Source positions (n x d)
        distances: Distances to each source (n)
        distance_stds: Distance standard deviations (n)
        quality_scores: Combined source + reading quality scores (n), or
            None when no scores were provided
        source_ids: Source ID for each row
    """

    positions: np.ndarray
    distances: np.ndarray
    distance_stds: np.ndarray
    quality_scores: Optional[np.ndarray]
    source_ids: tuple

    def __len__(self) -> int:
        return len(self.distances)

    @property
    def dimensions(self) -> int:
        return self.positions.shape[1] if self.positions.ndim == 2 else 0

    def subset(self, indices: Sequence[int]) -> 'Measurements':
        """Rows at the given indices, in that order."""
        indices = np.asarray(indices, dtype=int)
        return Measurements(
            positions=self.positions[indices],
            distances=self.distances[indices],
            distance_stds=self.distance_stds[indices],
            quality_scores=self.quality_scores[indices] if self.quality_scores is not None else None,
            source_ids=tuple(self.source_ids[i] for i in indices),
        )

    def best(self, count: int) -> 'Measurements':
        """
        Keep the count highest-quality rows.

        Without quality scores the first count rows are kept. The original
        row order is preserved.
        """
        if count >= len(self):
            return self
        if self.quality_scores is None:
            return self.subset(np.arange(count))
        # Stable sort keeps earlier rows first among equal scores
        order = np.argsort(-self.quality_scores, kind='stable')[:count]
        return self.subset(np.sort(order))


def position_covariance_std(covariance: np.ndarray) -> Optional[float]:
    """
    Average standard deviation of a source position covariance.

    The mean of the covariance singular values is taken as the average
    variance along the principal axes.
    """
    try:
        singular_values = np.linalg.svd(covariance, compute_uv=False)
    except np.linalg.LinAlgError:
        return None
    return math.sqrt(float(np.mean(singular_values)))


def build_measurements(
    sources: Sequence[RadioSource],
    readings: Sequence[Reading],
    dimensions: int,
    source_quality_scores: Optional[Sequence[float]] = None,
    reading_quality_scores: Optional[Sequence[float]] = None,
    path_loss_exponent: float = PATH_LOSS_DEFAULTS["path_loss_exponent"],
    use_source_path_loss_exponent: bool = PATH_LOSS_DEFAULTS["use_source_path_loss_exponent"],
    use_source_position_covariance: bool = True,
    fallback_distance_std: float = PATH_LOSS_DEFAULTS["fallback_distance_std_m"],
) -> Measurements:
    """
    Build lateration measurements from sources and readings.

    Args:
        sources: Located radio sources
        readings: Readings taken at the unknown position
        dimensions: 2 or 3
        source_quality_scores: One score per source (optional)
        reading_quality_scores: One score per reading (optional)
        path_loss_exponent: Default path loss exponent for RSSI readings
        use_source_path_loss_exponent: Prefer exponents exposed by sources
        use_source_position_covariance: Add source position uncertainty to
            the distance standard deviation
        fallback_distance_std: Standard deviation used when none is known

    Returns:
        Measurements (possibly empty)
    """
    if fallback_distance_std < 0:
        raise InvalidArgumentError(
            f"Fallback distance std cannot be negative: {fallback_distance_std}"
        )
    if source_quality_scores is not None and len(source_quality_scores) != len(sources):
        raise InvalidArgumentError(
            f"Expected {len(sources)} source quality scores, got {len(source_quality_scores)}"
        )
    if reading_quality_scores is not None and len(reading_quality_scores) != len(readings):
        raise InvalidArgumentError(
            f"Expected {len(readings)} reading quality scores, got {len(reading_quality_scores)}"
        )

    metrics = get_metrics()
    source_index: Dict[str, int] = {s.source_id: i for i, s in enumerate(sources)}
    with_scores = source_quality_scores is not None or reading_quality_scores is not None

    positions: List[tuple] = []
    distances: List[float] = []
    stds: List[float] = []
    scores: List[float] = []
    source_ids: List[str] = []

    for reading_idx, reading in enumerate(readings):
        idx = source_index.get(reading.source.source_id)
        if idx is None or not sources[idx].is_located:
            metrics.increment_rejection('unknown_source')
            logger.debug(f"Skipping reading for unknown source {reading.source.source_id}")
            continue

        source = sources[idx]
        if source.dimensions != dimensions:
            raise InvalidArgumentError(
                f"Source {source.source_id} has {source.dimensions} coordinates, "
                f"expected {dimensions}"
            )

        score = 0.0
        if source_quality_scores is not None:
            score += float(source_quality_scores[idx])
        if reading_quality_scores is not None:
            score += float(reading_quality_scores[reading_idx])

        position_variance = 0.0
        if use_source_position_covariance and source.position_covariance is not None:
            position_std = position_covariance_std(source.position_covariance)
            if position_std is not None:
                position_variance = position_std ** 2

        rows = []
        if reading.has_distance:
            if reading.distance_std_m is not None or position_variance > 0:
                variance = position_variance
                if reading.distance_std_m is not None:
                    variance += reading.distance_std_m ** 2
                std = math.sqrt(variance)
            else:
                std = fallback_distance_std
            rows.append((reading.distance_m, std))

        if reading.has_rssi:
            if not source.has_power:
                metrics.increment_rejection('missing_power')
                logger.debug(f"Skipping RSSI reading for {source.source_id}: no transmitted power")
            else:
                estimate = estimate_distance(
                    reading.rssi_dbm,
                    source,
                    path_loss_exponent=path_loss_exponent,
                    rssi_std_db=reading.rssi_std_db,
                    use_source_path_loss_exponent=use_source_path_loss_exponent,
                    fallback_distance_std=fallback_distance_std,
                )
                if estimate.uses_fallback and position_variance > 0:
                    variance = position_variance
                else:
                    variance = estimate.variance_m2 + position_variance
                rows.append((estimate.distance_m, math.sqrt(variance)))

        for distance, std in rows:
            positions.append(source.position)
            distances.append(distance)
            stds.append(std)
            scores.append(score)
            source_ids.append(source.source_id)

    return Measurements(
        positions=np.array(positions, dtype=float).reshape(-1, dimensions),
        distances=np.array(distances, dtype=float),
        distance_stds=np.array(stds, dtype=float),
        quality_scores=np.array(scores, dtype=float) if with_scores else None,
        source_ids=tuple(source_ids),
    )
