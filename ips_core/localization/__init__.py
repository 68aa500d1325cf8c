"""
Localization Module: Distance models, lateration and robust estimation.

Key classes:
- LaterationSolver: Linear (homogeneous/inhomogeneous) solve + LM refinement
- RobustLaterationSolver: RANSAC / LMedS / MSAC / PROSAC / PROMedS consensus
- SequentialRobustMixedPositionEstimator: Ranging + RSSI streams, fused
- LockGuard / EstimatorListener: Estimation state machine and callbacks
"""

from .path_loss import (
    DistanceEstimate,
    SPEED_OF_LIGHT,
    dbm_to_power_mw,
    power_mw_to_dbm,
    received_power_dbm,
    distance_from_power,
    distance_jacobian,
    estimate_distance,
)
from .measurements import (
    Measurements,
    build_measurements,
    position_covariance_std,
)
from .lateration_solver import (
    LaterationSolver,
    RefinementConfig,
    RefinementResult,
    distance_residuals,
)
from .estimator_state import (
    EstimatorState,
    EstimatorListener,
    LockGuard,
    ProgressNotifier,
)
from .robust_lateration import (
    RobustMethod,
    RobustLaterationConfig,
    RobustLaterationSolver,
    SolverStage,
    create_scoring_strategy,
    required_iterations,
)
from .position_fusion import fuse_estimates
from .sequential_estimator import (
    SequentialEstimatorConfig,
    SequentialRobustMixedPositionEstimator,
)

__all__ = [
    # Distance model
    'DistanceEstimate',
    'SPEED_OF_LIGHT',
    'dbm_to_power_mw',
    'power_mw_to_dbm',
    'received_power_dbm',
    'distance_from_power',
    'distance_jacobian',
    'estimate_distance',
    # Measurements
    'Measurements',
    'build_measurements',
    'position_covariance_std',
    # Lateration
    'LaterationSolver',
    'RefinementConfig',
    'RefinementResult',
    'distance_residuals',
    # State machine
    'EstimatorState',
    'EstimatorListener',
    'LockGuard',
    'ProgressNotifier',
    # Robust estimation
    'RobustMethod',
    'RobustLaterationConfig',
    'RobustLaterationSolver',
    'SolverStage',
    'create_scoring_strategy',
    'required_iterations',
    # Fusion
    'fuse_estimates',
    'SequentialEstimatorConfig',
    'SequentialRobustMixedPositionEstimator',
]
