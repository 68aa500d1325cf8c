"""
Robust Lateration (Consensus Engine).

Wraps the lateration solver in a sample-and-score loop that tolerates
outlier measurements. One engine serves 2D and 3D and all five robust
methods; the method selects a scoring strategy and a sampling policy:

    Method    Sampling                  Score (lower is better)        threshold meaning
    RANSAC    uniform                   -(number of inliers)           inlier residual (m)
    PROSAC    quality-score weighted    -(number of inliers)           inlier residual (m)
    MSAC      uniform                   sum(min(r^2, t^2))             inlier residual (m)
    LMedS     uniform                   median(r^2)                    stop residual (m)
    PROMedS   quality-score weighted    median(r^2)                    stop residual (m)

Iterations adapt to the best inlier ratio w found so far:

    N = log(1 - confidence) / log(1 - w^k)

capped by max_iterations. The best candidate is finally refined with
Levenberg-Marquardt on its inliers, optionally keeping the covariance.

Stages per estimate(): IDLE -> SAMPLING -> SCORING -> (REFINING) -> DONE
"""

import logging
import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Sequence, Tuple

import numpy as np

from ips_core.config import ROBUST_DEFAULTS
from ips_core.errors import (
    InvalidArgumentError,
    LaterationError,
    NonSymmetricPositiveDefiniteMatrixError,
    NotReadyError,
    RobustEstimatorError,
)
from ips_core.localization.estimator_state import (
    EstimatorListener,
    LockGuard,
    ProgressNotifier,
    validate_progress_delta,
)
from ips_core.localization.lateration_solver import (
    LaterationSolver,
    distance_residuals,
)
from ips_core.metrics import get_metrics
from ips_core.proto.position_estimate import EstimatedPosition, InliersData

logger = logging.getLogger(__name__)

# Consistency constant of the median absolute deviation for Gaussian noise
MAD_SCALE = 1.4826

# Median methods never assume more than half of the measurements are inliers
MEDIAN_INLIER_RATIO_CAP = 0.5


class RobustMethod(Enum):
    """Robust estimation policy."""

    RANSAC = "RANSAC"
    LMEDS = "LMEDS"
    MSAC = "MSAC"
    PROSAC = "PROSAC"
    PROMEDS = "PROMEDS"

    @property
    def uses_quality_scores(self) -> bool:
        """Check if sampling is biased by quality scores."""
        return self in (RobustMethod.PROSAC, RobustMethod.PROMEDS)

    @property
    def is_median_based(self) -> bool:
        """Check if candidates are scored by median residual."""
        return self in (RobustMethod.LMEDS, RobustMethod.PROMEDS)

    @classmethod
    def parse(cls, value) -> 'RobustMethod':
        """Accept a RobustMethod or its (case-insensitive) name."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            raise InvalidArgumentError(f"Unknown robust method: {value}") from None


def default_threshold(method: RobustMethod) -> float:
    """Default threshold for a robust method."""
    if method.is_median_based:
        return ROBUST_DEFAULTS["lmeds_stop_threshold"]
    if method == RobustMethod.MSAC:
        return ROBUST_DEFAULTS["msac_threshold"]
    return ROBUST_DEFAULTS["ransac_threshold"]


@dataclass
class RobustLaterationConfig:
    """
    Configuration for robust lateration.

    Attributes:
        method: Robust method
        confidence: Probability of drawing at least one outlier-free subset
        max_iterations: Upper bound on sampling iterations
        threshold: Inlier residual threshold (RANSAC/PROSAC/MSAC) or stop
            residual threshold (LMedS/PROMedS); None uses the method default
        preliminary_subset_size: Measurements per sampled subset; None uses
            dimensions + 1
        refine_result: Refine the best candidate on all its inliers
        keep_covariance: Keep the covariance of the refined result
        use_linear_solver: Obtain candidates with a linear solve (otherwise
            non-linear only, seeded by initial_position)
        use_homogeneous_linear_solver: Use the homogeneous linear system
        refine_preliminary_solutions: Refine each candidate on its subset
        initial_position: Seed for non-linear solves
        inlier_factor: Median methods: inliers lie within inlier_factor
            robust standard deviations
        progress_delta: Minimum progress change between notifications
        seed: Random seed (None for fresh entropy on every estimate)
    """

    method: RobustMethod = RobustMethod[ROBUST_DEFAULTS["method"]]
    confidence: float = ROBUST_DEFAULTS["confidence"]
    max_iterations: int = ROBUST_DEFAULTS["max_iterations"]
    threshold: Optional[float] = None
    preliminary_subset_size: Optional[int] = None
    refine_result: bool = ROBUST_DEFAULTS["refine_result"]
    keep_covariance: bool = ROBUST_DEFAULTS["keep_covariance"]
    use_linear_solver: bool = ROBUST_DEFAULTS["use_linear_solver"]
    use_homogeneous_linear_solver: bool = ROBUST_DEFAULTS["use_homogeneous_linear_solver"]
    refine_preliminary_solutions: bool = ROBUST_DEFAULTS["refine_preliminary_solutions"]
    initial_position: Optional[Tuple[float, ...]] = None
    inlier_factor: float = ROBUST_DEFAULTS["inlier_factor"]
    progress_delta: float = ROBUST_DEFAULTS["progress_delta"]
    seed: Optional[int] = None

    def validate(self, dimensions: int) -> 'RobustLaterationConfig':
        """
        Check every field for the given dimensions.

        Returns:
            self (with method normalized to RobustMethod)

        Raises:
            InvalidArgumentError: on the first invalid field
        """
        self.method = RobustMethod.parse(self.method)
        if not 0.0 < self.confidence < 1.0:
            raise InvalidArgumentError(f"Confidence must be in (0, 1): {self.confidence}")
        if self.max_iterations < 1:
            raise InvalidArgumentError(f"Max iterations must be >= 1: {self.max_iterations}")
        if self.threshold is not None and self.threshold <= 0:
            raise InvalidArgumentError(f"Threshold must be positive: {self.threshold}")
        if self.preliminary_subset_size is not None and \
                self.preliminary_subset_size < dimensions + 1:
            raise InvalidArgumentError(
                f"Preliminary subset size must be >= {dimensions + 1}: "
                f"{self.preliminary_subset_size}"
            )
        if self.initial_position is not None and len(self.initial_position) != dimensions:
            raise InvalidArgumentError(
                f"Initial position must have {dimensions} coordinates: {self.initial_position}"
            )
        if self.inlier_factor <= 0:
            raise InvalidArgumentError(f"Inlier factor must be positive: {self.inlier_factor}")
        validate_progress_delta(self.progress_delta)
        return self

    def resolved_threshold(self) -> float:
        """Threshold in effect (explicit or method default)."""
        if self.threshold is not None:
            return self.threshold
        return default_threshold(RobustMethod.parse(self.method))

    def resolved_subset_size(self, dimensions: int) -> int:
        """Subset size in effect (explicit or dimensions + 1)."""
        if self.preliminary_subset_size is not None:
            return self.preliminary_subset_size
        return dimensions + 1


class SolverStage(Enum):
    """Stage of a robust estimation run."""

    IDLE = "idle"
    SAMPLING = "sampling"
    SCORING = "scoring"
    REFINING = "refining"
    DONE = "done"


@dataclass(frozen=True, eq=False)
class CandidateScore:
    """
    Score of one candidate position.

    Attributes:
        cost: Comparable cost, lower is better
        inliers: Inlier mask over all measurements
        threshold: Residual threshold used for the mask (m)
        median_residual: Median squared residual (median methods)
    """

    cost: tuple
    inliers: np.ndarray
    threshold: float
    median_residual: Optional[float] = None

    @property
    def num_inliers(self) -> int:
        return int(np.count_nonzero(self.inliers))


class ScoringStrategy:
    """Scores a candidate from its residuals against every measurement."""

    def __init__(self, threshold: float):
        self.threshold = threshold

    def score(self, residuals: np.ndarray, subset_size: int) -> CandidateScore:
        raise NotImplementedError

    def should_stop(self, best: CandidateScore) -> bool:
        """Check if the best score is good enough to stop sampling."""
        return False

    def inlier_ratio(self, best: CandidateScore) -> float:
        """Inlier ratio used by the adaptive stopping rule."""
        return best.num_inliers / len(best.inliers)


class InlierCountScoring(ScoringStrategy):
    """RANSAC/PROSAC: most inliers wins, ties broken by inlier residual sum."""

    def score(self, residuals: np.ndarray, subset_size: int) -> CandidateScore:
        inliers = residuals < self.threshold
        cost = (-int(np.count_nonzero(inliers)), float(np.sum(residuals[inliers])))
        return CandidateScore(cost=cost, inliers=inliers, threshold=self.threshold)


class TruncatedLossScoring(ScoringStrategy):
    """MSAC: residuals above the threshold contribute the capped loss."""

    def score(self, residuals: np.ndarray, subset_size: int) -> CandidateScore:
        cap = self.threshold ** 2
        loss = float(np.sum(np.minimum(residuals ** 2, cap)))
        inliers = residuals < self.threshold
        return CandidateScore(cost=(loss,), inliers=inliers, threshold=self.threshold)


class MedianScoring(ScoringStrategy):
    """
    LMedS/PROMedS: lowest median squared residual wins.

    Inliers are residuals within inlier_factor robust standard deviations,
    sigma = 1.4826 * (1 + 5 / (n - k)) * sqrt(median), never tighter than
    the stop threshold.
    """

    def __init__(self, threshold: float, inlier_factor: float):
        super().__init__(threshold)
        self.inlier_factor = inlier_factor

    def score(self, residuals: np.ndarray, subset_size: int) -> CandidateScore:
        n = len(residuals)
        median = float(np.median(residuals ** 2))
        sigma = MAD_SCALE * (1.0 + 5.0 / max(n - subset_size, 1)) * math.sqrt(median)
        inlier_threshold = max(self.inlier_factor * sigma, self.threshold)
        inliers = residuals <= inlier_threshold
        return CandidateScore(cost=(median,), inliers=inliers, threshold=inlier_threshold,
                              median_residual=median)

    def should_stop(self, best: CandidateScore) -> bool:
        return math.sqrt(best.median_residual) <= self.threshold

    def inlier_ratio(self, best: CandidateScore) -> float:
        return min(super().inlier_ratio(best), MEDIAN_INLIER_RATIO_CAP)


def create_scoring_strategy(method: RobustMethod, threshold: float,
                            inlier_factor: float = ROBUST_DEFAULTS["inlier_factor"]) -> ScoringStrategy:
    """Build the scoring strategy for a robust method."""
    method = RobustMethod.parse(method)
    if method.is_median_based:
        return MedianScoring(threshold, inlier_factor)
    if method == RobustMethod.MSAC:
        return TruncatedLossScoring(threshold)
    return InlierCountScoring(threshold)


def required_iterations(inlier_ratio: float, subset_size: int, confidence: float,
                        max_iterations: int) -> int:
    """
    Adaptive stopping rule.

    Args:
        inlier_ratio: Best inlier ratio found so far (w)
        subset_size: Measurements per subset (k)
        confidence: Target probability of an outlier-free subset
        max_iterations: Upper bound

    Returns:
        ceil(log(1 - confidence) / log(1 - w^k)), within [1, max_iterations]
    """
    good_subset_probability = inlier_ratio ** subset_size
    if good_subset_probability <= 0.0:
        return max_iterations
    if good_subset_probability >= 1.0:
        return 1
    n = math.log(1.0 - confidence) / math.log(1.0 - good_subset_probability)
    if not math.isfinite(n):
        return max_iterations
    return int(min(max(math.ceil(n), 1), max_iterations))


class RobustLaterationSolver:
    """
    Robust consensus lateration in 2D or 3D.

    Usage:
        config = RobustLaterationConfig(method=RobustMethod.RANSAC, threshold=0.1, seed=7)
        solver = RobustLaterationSolver(2, config)
        solver.set_measurements(positions, distances, distance_stds)

        estimate = solver.estimate()
        print(estimate.position, solver.inliers_data.num_inliers)
    """

    def __init__(
        self,
        dimensions: int,
        config: Optional[RobustLaterationConfig] = None,
        listener: Optional[EstimatorListener] = None
    ):
        """
        Initialize robust lateration solver.

        Args:
            dimensions: 2 or 3
            config: Solver configuration (uses defaults if None)
            listener: Observer of estimation runs
        """
        if dimensions not in (2, 3):
            raise InvalidArgumentError(f"Dimensions must be 2 or 3: {dimensions}")
        self.dimensions = dimensions
        self._config = (config or RobustLaterationConfig()).validate(dimensions)
        self._listener = listener
        self._guard = LockGuard()
        self._stage = SolverStage.IDLE
        self.metrics = get_metrics()

        self._positions: Optional[np.ndarray] = None
        self._distances: Optional[np.ndarray] = None
        self._distance_stds: Optional[np.ndarray] = None
        self._quality_scores: Optional[np.ndarray] = None

        self._estimated_position: Optional[EstimatedPosition] = None
        self._inliers_data: Optional[InliersData] = None

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def config(self) -> RobustLaterationConfig:
        return self._config

    def configure(self, **changes) -> RobustLaterationConfig:
        """
        Replace configuration fields atomically.

        Raises:
            LockedError: while estimating
            InvalidArgumentError: if the new configuration is invalid (the
                current one is kept)
        """
        self._guard.ensure_unlocked()
        new_config = replace(self._config, **changes).validate(self.dimensions)
        self._config = new_config
        return new_config

    @property
    def listener(self) -> Optional[EstimatorListener]:
        return self._listener

    @listener.setter
    def listener(self, listener: Optional[EstimatorListener]):
        self._guard.ensure_unlocked()
        self._listener = listener

    @property
    def method(self) -> RobustMethod:
        return self._config.method

    @property
    def threshold(self) -> float:
        return self._config.resolved_threshold()

    @property
    def subset_size(self) -> int:
        return self._config.resolved_subset_size(self.dimensions)

    def set_measurements(
        self,
        positions: Sequence,
        distances: Sequence,
        distance_stds: Optional[Sequence] = None,
        quality_scores: Optional[Sequence] = None
    ):
        """
        Set lateration measurements.

        Args:
            positions: Source positions (n x d)
            distances: Distances (n)
            distance_stds: Distance standard deviations (n), optional
            quality_scores: Sampling quality scores (n), optional

        Raises:
            LockedError: while estimating
            InvalidArgumentError: on inconsistent shapes
        """
        self._guard.ensure_unlocked()

        positions = np.asarray(positions, dtype=float)
        distances = np.asarray(distances, dtype=float)
        n = len(distances)
        if positions.ndim != 2 or positions.shape != (n, self.dimensions):
            raise InvalidArgumentError(
                f"Positions must be ({n}, {self.dimensions}): got {positions.shape}"
            )
        if distance_stds is not None:
            distance_stds = np.asarray(distance_stds, dtype=float)
            if distance_stds.shape != (n,):
                raise InvalidArgumentError(f"Expected {n} distance standard deviations")
        if quality_scores is not None:
            quality_scores = np.asarray(quality_scores, dtype=float)
            if quality_scores.shape != (n,):
                raise InvalidArgumentError(
                    f"Expected {n} quality scores, got {len(quality_scores)}"
                )

        self._positions = positions
        self._distances = distances
        self._distance_stds = distance_stds
        self._quality_scores = quality_scores

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def stage(self) -> SolverStage:
        return self._stage

    def is_locked(self) -> bool:
        return self._guard.is_locked

    def is_ready(self) -> bool:
        """Check measurements (and quality scores when sampling needs them) are set."""
        if self._positions is None or self._distances is None:
            return False
        if self._config.method.uses_quality_scores and self._quality_scores is None:
            return False
        return True

    @property
    def positions(self) -> Optional[np.ndarray]:
        return self._positions

    @property
    def distances(self) -> Optional[np.ndarray]:
        return self._distances

    @property
    def distance_stds(self) -> Optional[np.ndarray]:
        return self._distance_stds

    @property
    def quality_scores(self) -> Optional[np.ndarray]:
        return self._quality_scores

    @property
    def estimated_position(self) -> Optional[EstimatedPosition]:
        return self._estimated_position

    @property
    def covariance(self) -> Optional[np.ndarray]:
        if self._estimated_position is None:
            return None
        return self._estimated_position.covariance

    @property
    def inliers_data(self) -> Optional[InliersData]:
        return self._inliers_data

    # ------------------------------------------------------------------
    # Estimation
    # ------------------------------------------------------------------

    def estimate(self) -> EstimatedPosition:
        """
        Run robust estimation.

        Returns:
            EstimatedPosition (also available as estimated_position)

        Raises:
            LockedError: if already estimating
            NotReadyError: if measurements (or required quality scores) are missing
            RobustEstimatorError: if no usable consensus is found
            NonSymmetricPositiveDefiniteMatrixError: if the covariance of the
                refined result cannot be computed

        Notes:
            - A failed run keeps the previous estimate and inliers data
        """
        self._guard.ensure_unlocked()
        if not self.is_ready():
            self.metrics.increment_rejection('not_ready')
            raise NotReadyError()

        with self._guard.locked():
            self._stage = SolverStage.IDLE
            try:
                if self._listener is not None:
                    self._listener.on_estimate_start(self)

                estimate, inliers_data = self._run()

                self._estimated_position = estimate
                self._inliers_data = inliers_data
                self._stage = SolverStage.DONE

                if self._listener is not None:
                    self._listener.on_estimate_end(self)
                return estimate
            finally:
                if self._stage != SolverStage.DONE:
                    self._stage = SolverStage.IDLE

    def _run(self) -> Tuple[EstimatedPosition, InliersData]:
        cfg = self._config
        positions, distances = self._positions, self._distances
        n = len(distances)
        k = self.subset_size
        min_required = self.dimensions + 1

        if n < min_required or n < k:
            self.metrics.increment_rejection('no_consensus')
            raise RobustEstimatorError(
                f"Need at least {max(min_required, k)} measurements, got {n}"
            )

        rng = np.random.default_rng(cfg.seed)
        sampling_p = self._sampling_probabilities() if cfg.method.uses_quality_scores else None
        strategy = create_scoring_strategy(cfg.method, self.threshold, cfg.inlier_factor)
        linear = LaterationSolver(self.dimensions, use_homogeneous=cfg.use_homogeneous_linear_solver)
        progress = ProgressNotifier(self._notify_progress, cfg.progress_delta)

        best_position: Optional[np.ndarray] = None
        best_score: Optional[CandidateScore] = None
        best_residuals: Optional[np.ndarray] = None
        iteration_limit = cfg.max_iterations
        iteration = 0
        # Resampling cannot produce a different candidate
        single_subset = math.comb(n, k) == 1

        while iteration < iteration_limit:
            iteration += 1

            self._stage = SolverStage.SAMPLING
            subset = rng.choice(n, size=k, replace=False, p=sampling_p)

            candidate = self._solve_subset(linear, subset)
            if candidate is not None:
                self._stage = SolverStage.SCORING
                residuals = distance_residuals(positions, distances, candidate)
                score = strategy.score(residuals, k)

                if best_score is None or score.cost < best_score.cost:
                    best_position, best_score, best_residuals = candidate, score, residuals
                    iteration_limit = required_iterations(
                        strategy.inlier_ratio(best_score), k, cfg.confidence, cfg.max_iterations
                    )
                    iteration_limit = max(iteration_limit, iteration)

            if self._listener is not None:
                self._listener.on_estimate_next_iteration(self, iteration)
            progress.update(iteration / iteration_limit)

            if single_subset or (best_score is not None and strategy.should_stop(best_score)):
                break

        self.metrics.increment('robust_iterations', iteration)
        self.metrics.record_histogram('robust_iterations_per_run', iteration)

        if best_score is None:
            self.metrics.increment_rejection('no_consensus')
            raise RobustEstimatorError(f"No valid subset found in {iteration} iterations")
        if best_score.num_inliers < min_required:
            self.metrics.increment_rejection('no_consensus')
            raise RobustEstimatorError(
                f"Best candidate has {best_score.num_inliers} inliers, need {min_required}"
            )

        self.metrics.record_histogram('inlier_ratio', best_score.num_inliers / n)
        logger.debug(
            f"{cfg.method.value}: {iteration} iterations, "
            f"{best_score.num_inliers}/{n} inliers"
        )

        position = best_position
        covariance = None
        if cfg.refine_result:
            self._stage = SolverStage.REFINING
            position, covariance = self._refine_result(linear, best_position, best_score.inliers)

        progress.update(1.0)

        # Residuals and mask both describe the winning candidate
        inliers_data = InliersData(
            inliers=best_score.inliers.copy(),
            residuals=best_residuals,
            num_inliers=best_score.num_inliers,
            threshold=best_score.threshold,
            num_iterations=iteration,
            best_median_residual=best_score.median_residual,
        )
        estimate = EstimatedPosition(
            position=position,
            covariance=covariance,
            method=cfg.method.value,
            num_measurements=n,
            num_inliers=best_score.num_inliers,
        )
        return estimate, inliers_data

    def _sampling_probabilities(self) -> np.ndarray:
        scores = self._quality_scores
        # Shift so every measurement keeps a non-zero chance
        shifted = scores - scores.min() if scores.min() <= 0 else scores.copy()
        shifted = shifted + 1e-9 * max(float(shifted.max()), 1.0)
        return shifted / shifted.sum()

    def _solve_subset(self, linear: LaterationSolver, subset: np.ndarray) -> Optional[np.ndarray]:
        """Candidate position from a subset (None if degenerate)."""
        cfg = self._config
        positions = self._positions[subset]
        distances = self._distances[subset]
        stds = self._distance_stds[subset] if self._distance_stds is not None else None

        try:
            if cfg.use_linear_solver:
                candidate = linear.solve(positions, distances)
                if cfg.refine_preliminary_solutions:
                    candidate = linear.refine(positions, distances, candidate, stds,
                                              compute_covariance=False).position
            else:
                candidate = linear.refine(positions, distances, cfg.initial_position, stds,
                                          compute_covariance=False).position
        except LaterationError as e:
            self.metrics.increment('degenerate_subsets')
            self.metrics.increment_rejection('degenerate_subset')
            logger.debug(f"Skipping subset {subset.tolist()}: {e}")
            return None

        return candidate

    def _refine_result(
        self,
        solver: LaterationSolver,
        candidate: np.ndarray,
        inliers: np.ndarray
    ) -> Tuple[np.ndarray, Optional[np.ndarray]]:
        """Refine the best candidate on its inliers."""
        cfg = self._config
        stds = self._distance_stds[inliers] if self._distance_stds is not None else None
        try:
            result = solver.refine(
                self._positions[inliers],
                self._distances[inliers],
                candidate,
                stds,
                compute_covariance=cfg.keep_covariance,
            )
        except NonSymmetricPositiveDefiniteMatrixError:
            self.metrics.increment_rejection('ill_conditioned')
            raise
        except LaterationError as e:
            logger.warning(f"Result refinement failed, keeping unrefined candidate: {e}")
            return candidate, None

        self.metrics.record_histogram('refinement_iterations', result.iterations)
        return result.position, result.covariance if cfg.keep_covariance else None

    def _notify_progress(self, progress: float):
        if self._listener is not None:
            self._listener.on_estimate_progress_change(self, progress)
