"""
Position Fusion.

Combines independent position estimates of the same receiver (e.g. a
ranging-only and an RSSI-only solution) by inverse-covariance weighting:

    P = (sum_i P_i^-1)^-1
    x = P * sum_i P_i^-1 x_i

Estimates without covariance cannot be weighted; they are averaged.
"""

import logging
from typing import List, Optional, Sequence

import numpy as np

from ips_core.errors import InvalidArgumentError, NonSymmetricPositiveDefiniteMatrixError
from ips_core.metrics import get_metrics
from ips_core.proto.position_estimate import EstimatedPosition

logger = logging.getLogger(__name__)

FUSED_METHOD = "FUSED"


def _information(covariance: np.ndarray) -> np.ndarray:
    try:
        return np.linalg.inv(covariance)
    except np.linalg.LinAlgError as e:
        raise NonSymmetricPositiveDefiniteMatrixError("Covariance is not invertible") from e


def fuse_estimates(estimates: Sequence[Optional[EstimatedPosition]]) -> EstimatedPosition:
    """
    Fuse independent estimates into one.

    Args:
        estimates: Estimates to fuse (None entries are ignored)

    Returns:
        The single estimate when only one is given, otherwise a fused
        EstimatedPosition with method "FUSED":
        - all with covariance: inverse-covariance weighted position and
          covariance
        - none with covariance: plain mean, no covariance
        - mixed: plain mean of positions, covariance fused from the
          estimates that have one

    Raises:
        InvalidArgumentError: if there is nothing to fuse or dimensions differ
        NonSymmetricPositiveDefiniteMatrixError: if a covariance cannot be inverted
    """
    available: List[EstimatedPosition] = [e for e in estimates if e is not None]
    if not available:
        raise InvalidArgumentError("No estimates to fuse")

    dimensions = available[0].dimensions
    if any(e.dimensions != dimensions for e in available):
        raise InvalidArgumentError("Cannot fuse estimates with different dimensions")

    if len(available) == 1:
        return available[0]

    get_metrics().increment('fusion_runs')

    with_covariance = [e for e in available if e.has_covariance]
    covariance = None
    if with_covariance:
        informations = [_information(e.covariance) for e in with_covariance]
        covariance = _information(np.sum(informations, axis=0))
        # Symmetrize against round-off
        covariance = 0.5 * (covariance + covariance.T)

    if len(with_covariance) == len(available):
        weighted = np.sum([info @ e.position for info, e in zip(informations, with_covariance)],
                          axis=0)
        position = covariance @ weighted
    else:
        position = np.mean([e.position for e in available], axis=0)
        logger.debug(
            f"Fusing {len(available)} estimates by plain mean "
            f"({len(with_covariance)} with covariance)"
        )

    return EstimatedPosition(
        position=position,
        covariance=covariance,
        method=FUSED_METHOD,
        num_measurements=sum(e.num_measurements for e in available),
        num_inliers=sum(e.num_inliers for e in available),
    )
