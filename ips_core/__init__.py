"""
Indoor Positioning System (IPS) Core Package.

Robust position estimation from ranging and RSSI readings against radio
sources of known location.

Package structure:
- proto: Radio sources, readings, fingerprints and estimate schemas
- localization: Path-loss model, lateration solvers, robust consensus
  engine and the sequential ranging + RSSI estimator
- metrics: Diagnostics, counters, histograms
- config: Default parameter tables and logging setup
- errors: Error taxonomy shared by every component
"""

__version__ = "0.1.0"
__author__ = "IPS Core Team"

from .errors import (
    PositioningError,
    InvalidArgumentError,
    LockedError,
    NotReadyError,
    RobustEstimatorError,
    LaterationError,
    DegenerateSubsetError,
    NonSymmetricPositiveDefiniteMatrixError,
)

__all__ = [
    'PositioningError',
    'InvalidArgumentError',
    'LockedError',
    'NotReadyError',
    'RobustEstimatorError',
    'LaterationError',
    'DegenerateSubsetError',
    'NonSymmetricPositiveDefiniteMatrixError',
]
