"""
Error taxonomy for position estimation.

Every failure is surfaced as one of these types, never as a silent default:
- InvalidArgumentError: bad configuration, detected before any state change
- NotReadyError: estimate() called without the mandatory inputs
- LockedError: mutation or re-entrant estimate() while an estimation runs
- RobustEstimatorError: consensus loop found no usable solution
- NonSymmetricPositiveDefiniteMatrixError: consensus found, but geometry
  too weak to compute a covariance
"""


class PositioningError(Exception):
    """Base class for all position estimation errors."""


class InvalidArgumentError(PositioningError, ValueError):
    """Invalid configuration value or collection."""


class LockedError(PositioningError):
    """Raised when an estimator is modified while it is estimating."""

    def __init__(self, message: str = "estimator is locked"):
        super().__init__(message)


class NotReadyError(PositioningError):
    """Raised when estimate() is called before mandatory inputs are set."""

    def __init__(self, message: str = "estimator is not ready"):
        super().__init__(message)


class RobustEstimatorError(PositioningError):
    """Raised when no consensus solution can be found."""


class LaterationError(PositioningError):
    """Raised when a lateration solve fails."""


class DegenerateSubsetError(LaterationError):
    """Raised when a measurement subset has degenerate geometry."""


class NonSymmetricPositiveDefiniteMatrixError(PositioningError):
    """Raised when the normal matrix of a refinement is not positive definite."""
