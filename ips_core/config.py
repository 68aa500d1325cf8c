"""
Default parameters for position estimation.

The dataclass configurations in ips_core.localization read their defaults
from these tables, so a deployment can adjust them in one place.
"""

import logging
from typing import Optional

# Robust lateration defaults (per stream)
ROBUST_DEFAULTS = {
    "method": "PROMEDS",
    "confidence": 0.99,                # probability of picking an outlier-free subset
    "max_iterations": 5000,
    "ransac_threshold": 1e-2,          # residual threshold (m)
    "msac_threshold": 1e-2,            # residual threshold (m)
    "lmeds_stop_threshold": 1e-3,      # median residual (m) that stops sampling
    "inlier_factor": 1.5,              # median methods: robust std multiplier
    "refine_result": True,
    "keep_covariance": True,
    "use_linear_solver": True,
    "use_homogeneous_linear_solver": False,
    "refine_preliminary_solutions": True,
    "progress_delta": 0.05,
}

# Levenberg-Marquardt refinement
REFINEMENT_DEFAULTS = {
    "max_iterations": 100,
    "convergence_tol": 1e-12,          # relative chi-square change
    "initial_damping": 1e-3,
}

# Path loss model
PATH_LOSS_DEFAULTS = {
    "path_loss_exponent": 2.0,
    "use_source_path_loss_exponent": True,
    "frequency_hz": 2.4e9,
    "fallback_distance_std_m": 1e-3,
}

# Sequential ranging + RSSI estimator
SEQUENTIAL_DEFAULTS = {
    "dimensions": 2,
    "min_subset_size": 1,
    "max_subset_size": -1,             # -1 = unconstrained
    "use_source_position_covariance": True,
}

# Logging
LOGGING_CONFIG = {
    "level": "INFO",
    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
}


def configure_logging(level: Optional[str] = None):
    """
    Configure root logging from LOGGING_CONFIG.

    Intended for applications and scripts; the library itself only creates
    module loggers.

    Args:
        level: Override for LOGGING_CONFIG["level"] (e.g. "DEBUG")
    """
    logging.basicConfig(
        level=getattr(logging, (level or LOGGING_CONFIG["level"]).upper()),
        format=LOGGING_CONFIG["format"],
    )
