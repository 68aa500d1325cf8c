"""
Position Estimate Output Schemas.

Defines the outputs of a robust estimation run:
- InliersData: which measurements agreed with the consensus solution
- EstimatedPosition: estimated point plus optional covariance
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np


@dataclass(frozen=True, eq=False)
class InliersData:
    """
    Inlier information from one consensus run.

    Attributes:
        inliers: Boolean mask, one entry per measurement
        residuals: Absolute distance residual per measurement (m)
        num_inliers: Number of True entries in the mask
        threshold: Residual threshold actually used to classify inliers (m)
        num_iterations: Sampling iterations consumed
        best_median_residual: Median squared residual (median methods only)

    Notes:
        - Replaced (never merged) on every estimate() call
    """

    inliers: np.ndarray
    residuals: np.ndarray
    num_inliers: int
    threshold: float
    num_iterations: int
    best_median_residual: Optional[float] = None

    @property
    def inlier_ratio(self) -> float:
        """Fraction of measurements classified as inliers."""
        if len(self.inliers) == 0:
            return 0.0
        return self.num_inliers / len(self.inliers)

    @property
    def inlier_indices(self) -> np.ndarray:
        """Indices of inlier measurements."""
        return np.flatnonzero(self.inliers)


@dataclass(frozen=True, eq=False)
class EstimatedPosition:
    """
    Estimated receiver position.

    Attributes:
        position: Estimated point (2 or 3 coordinates, meters)
        covariance: Position covariance (d x d), only when refinement and
            covariance keeping are both enabled
        method: Name of the robust method (or "FUSED") that produced it
        num_measurements: Measurements available to the estimator
        num_inliers: Measurements that agreed with the solution

    Notes:
        - Never partially populated; estimators replace the whole object
    """

    position: np.ndarray
    covariance: Optional[np.ndarray] = None
    method: Optional[str] = None
    num_measurements: int = 0
    num_inliers: int = 0

    def __post_init__(self):
        """Validate estimate."""
        position = np.asarray(self.position, dtype=float)
        if position.ndim != 1 or len(position) not in (2, 3):
            raise ValueError(f"Position must have 2 or 3 coordinates: {self.position}")
        object.__setattr__(self, 'position', position)

        if self.covariance is not None:
            covariance = np.asarray(self.covariance, dtype=float)
            if covariance.shape != (len(position), len(position)):
                raise ValueError(f"Covariance shape mismatch: {covariance.shape}")
            object.__setattr__(self, 'covariance', covariance)

    @property
    def dimensions(self) -> int:
        """Number of position coordinates."""
        return len(self.position)

    @property
    def has_covariance(self) -> bool:
        """Check if a covariance is available."""
        return self.covariance is not None

    @property
    def position_std(self) -> Optional[Tuple[float, ...]]:
        """Per-axis standard deviation (None if no covariance)."""
        if self.covariance is None:
            return None
        return tuple(float(s) for s in np.sqrt(np.clip(np.diag(self.covariance), 0.0, None)))

    def distance_to(self, point) -> float:
        """Euclidean distance from the estimate to a point."""
        return float(np.linalg.norm(self.position - np.asarray(point, dtype=float)))

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'position': self.position.tolist(),
            'covariance': self.covariance.tolist() if self.covariance is not None else None,
            'method': self.method,
            'num_measurements': self.num_measurements,
            'num_inliers': self.num_inliers,
            'position_std': self.position_std,
        }
