"""
Sequential Robust Mixed Position Estimator.

Estimates a receiver position from a fingerprint that may mix ranging and
RSSI readings:

1. Readings are split into a ranging stream and an RSSI stream
   (ranging-and-RSSI readings feed both)
2. The RSSI stream (coarse) is solved first with its own robust engine
3. The ranging stream is solved next, seeded with the RSSI position
4. Both results are fused by inverse covariance

Either stream may be missing or fail; the other one is then used alone.
Progress is reported over both runs: RSSI in [0, 0.5], ranging in
[0.5, 1] when both streams are present.
"""

import logging
from dataclasses import dataclass, fields, replace
from typing import List, Optional, Sequence, Tuple

import numpy as np

from ips_core.config import PATH_LOSS_DEFAULTS, ROBUST_DEFAULTS, SEQUENTIAL_DEFAULTS
from ips_core.errors import (
    InvalidArgumentError,
    NotReadyError,
    PositioningError,
    RobustEstimatorError,
)
from ips_core.localization.estimator_state import (
    EstimatorListener,
    LockGuard,
    ProgressNotifier,
    validate_progress_delta,
)
from ips_core.localization.measurements import Measurements, build_measurements
from ips_core.localization.position_fusion import fuse_estimates
from ips_core.localization.robust_lateration import (
    RobustLaterationConfig,
    RobustLaterationSolver,
    RobustMethod,
)
from ips_core.metrics import get_metrics
from ips_core.proto.position_estimate import EstimatedPosition, InliersData
from ips_core.proto.radio_source import RadioSource
from ips_core.proto.reading import Fingerprint

logger = logging.getLogger(__name__)

_DEFAULT_METHOD = RobustMethod[ROBUST_DEFAULTS["method"]]

# Per-stream field prefixes
RANGING = "ranging"
RSSI = "rssi"

# Unset at construction, but never reset to None afterwards
_REQUIRED_FIELDS = ("sources", "fingerprint")


@dataclass
class SequentialEstimatorConfig:
    """
    Configuration for the sequential ranging + RSSI estimator.

    Attributes:
        dimensions: 2 or 3
        sources: Radio sources of known location
        fingerprint: Readings captured at the unknown position
        source_quality_scores: One score per source (PROSAC/PROMedS)
        reading_quality_scores: One score per fingerprint reading (PROSAC/PROMedS)
        listener: Observer of estimation runs
        min_subset_size: Minimum readings for a stream to be solved
        max_subset_size: Keep at most this many highest-quality readings per
            stream (-1 = no limit)
        path_loss_exponent: Default exponent for RSSI pseudo-ranges
        use_source_path_loss_exponent: Prefer exponents exposed by sources
        ranging_method / rssi_method: Robust method per stream
        ranging_confidence / rssi_confidence: Consensus confidence per stream
        ranging_max_iterations / rssi_max_iterations: Iteration cap per stream
        ranging_threshold / rssi_threshold: Threshold per stream (None uses
            the method default)
        ranging_preliminary_subset_size / rssi_preliminary_subset_size:
            Subset size per stream (None uses dimensions + 1)
        refine_result: Refine each stream result on its inliers
        keep_covariance: Keep the covariance of refined results
        use_ranging_linear_solver / use_rssi_linear_solver: Linear candidates
        use_ranging_homogeneous_linear_solver / use_rssi_homogeneous_linear_solver:
            Homogeneous instead of inhomogeneous linear system
        refine_ranging_preliminary_solutions / refine_rssi_preliminary_solutions:
            Refine each candidate on its subset
        use_ranging_source_position_covariance / use_rssi_source_position_covariance:
            Add source position uncertainty to distance standard deviations
        ranging_fallback_distance_std / rssi_fallback_distance_std: Standard
            deviation used when none is known (m)
        initial_position: Seed for the ranging solve (defaults to the RSSI result)
        progress_delta: Minimum progress change between notifications
        seed: Random seed for both robust engines
    """

    dimensions: int = SEQUENTIAL_DEFAULTS["dimensions"]
    sources: Optional[Sequence[RadioSource]] = None
    fingerprint: Optional[Fingerprint] = None
    source_quality_scores: Optional[Sequence[float]] = None
    reading_quality_scores: Optional[Sequence[float]] = None
    listener: Optional[EstimatorListener] = None

    min_subset_size: int = SEQUENTIAL_DEFAULTS["min_subset_size"]
    max_subset_size: int = SEQUENTIAL_DEFAULTS["max_subset_size"]

    path_loss_exponent: float = PATH_LOSS_DEFAULTS["path_loss_exponent"]
    use_source_path_loss_exponent: bool = PATH_LOSS_DEFAULTS["use_source_path_loss_exponent"]

    ranging_method: RobustMethod = _DEFAULT_METHOD
    rssi_method: RobustMethod = _DEFAULT_METHOD
    ranging_confidence: float = ROBUST_DEFAULTS["confidence"]
    rssi_confidence: float = ROBUST_DEFAULTS["confidence"]
    ranging_max_iterations: int = ROBUST_DEFAULTS["max_iterations"]
    rssi_max_iterations: int = ROBUST_DEFAULTS["max_iterations"]
    ranging_threshold: Optional[float] = None
    rssi_threshold: Optional[float] = None
    ranging_preliminary_subset_size: Optional[int] = None
    rssi_preliminary_subset_size: Optional[int] = None

    refine_result: bool = ROBUST_DEFAULTS["refine_result"]
    keep_covariance: bool = ROBUST_DEFAULTS["keep_covariance"]

    use_ranging_linear_solver: bool = ROBUST_DEFAULTS["use_linear_solver"]
    use_rssi_linear_solver: bool = ROBUST_DEFAULTS["use_linear_solver"]
    use_ranging_homogeneous_linear_solver: bool = ROBUST_DEFAULTS["use_homogeneous_linear_solver"]
    use_rssi_homogeneous_linear_solver: bool = ROBUST_DEFAULTS["use_homogeneous_linear_solver"]
    refine_ranging_preliminary_solutions: bool = ROBUST_DEFAULTS["refine_preliminary_solutions"]
    refine_rssi_preliminary_solutions: bool = ROBUST_DEFAULTS["refine_preliminary_solutions"]
    use_ranging_source_position_covariance: bool = \
        SEQUENTIAL_DEFAULTS["use_source_position_covariance"]
    use_rssi_source_position_covariance: bool = \
        SEQUENTIAL_DEFAULTS["use_source_position_covariance"]
    ranging_fallback_distance_std: float = PATH_LOSS_DEFAULTS["fallback_distance_std_m"]
    rssi_fallback_distance_std: float = PATH_LOSS_DEFAULTS["fallback_distance_std_m"]

    initial_position: Optional[Tuple[float, ...]] = None
    progress_delta: float = ROBUST_DEFAULTS["progress_delta"]
    seed: Optional[int] = None

    @classmethod
    def build(cls, **kwargs) -> 'SequentialEstimatorConfig':
        """Create and validate a configuration."""
        return cls(**kwargs).validate()

    def validate(self) -> 'SequentialEstimatorConfig':
        """
        Check every field.

        Normalizes methods to RobustMethod, sequences to tuples and the
        fingerprint to a Fingerprint.

        Returns:
            self

        Raises:
            InvalidArgumentError: on the first invalid field
        """
        d = self.dimensions
        if d not in (2, 3):
            raise InvalidArgumentError(f"Dimensions must be 2 or 3: {d}")

        if self.sources is not None:
            self.sources = tuple(self.sources)
            located = [s for s in self.sources if s.is_located]
            for source in located:
                if source.dimensions != d:
                    raise InvalidArgumentError(
                        f"Source {source.source_id} has {source.dimensions} coordinates, "
                        f"expected {d}"
                    )
            if len(located) < d + 1:
                raise InvalidArgumentError(
                    f"Need at least {d + 1} located sources, got {len(located)}"
                )
        if self.fingerprint is not None and not isinstance(self.fingerprint, Fingerprint):
            self.fingerprint = Fingerprint(self.fingerprint)
        if self.fingerprint is not None and len(self.fingerprint) < d + 1:
            raise InvalidArgumentError(
                f"Need at least {d + 1} fingerprint readings, got {len(self.fingerprint)}"
            )

        if self.source_quality_scores is not None:
            self.source_quality_scores = tuple(float(s) for s in self.source_quality_scores)
            if self.sources is not None and \
                    len(self.source_quality_scores) != len(self.sources):
                raise InvalidArgumentError(
                    f"Expected {len(self.sources)} source quality scores, "
                    f"got {len(self.source_quality_scores)}"
                )
        if self.reading_quality_scores is not None:
            self.reading_quality_scores = tuple(float(s) for s in self.reading_quality_scores)
            if self.fingerprint is not None and \
                    len(self.reading_quality_scores) != len(self.fingerprint):
                raise InvalidArgumentError(
                    f"Expected {len(self.fingerprint)} reading quality scores, "
                    f"got {len(self.reading_quality_scores)}"
                )

        if self.min_subset_size < 1:
            raise InvalidArgumentError(f"Min subset size must be >= 1: {self.min_subset_size}")
        if self.max_subset_size != -1 and self.max_subset_size < self.min_subset_size:
            raise InvalidArgumentError(
                f"Max subset size must be -1 or >= {self.min_subset_size}: {self.max_subset_size}"
            )
        if self.path_loss_exponent <= 0:
            raise InvalidArgumentError(
                f"Path loss exponent must be positive: {self.path_loss_exponent}"
            )

        for prefix in (RANGING, RSSI):
            fallback = getattr(self, f"{prefix}_fallback_distance_std")
            if fallback < 0:
                raise InvalidArgumentError(
                    f"{prefix} fallback distance std cannot be negative: {fallback}"
                )
            # Per-stream engine fields are checked by the engine configuration
            engine_config = self.engine_config(prefix)
            setattr(self, f"{prefix}_method", engine_config.method)

        if self.initial_position is not None:
            self.initial_position = tuple(float(c) for c in self.initial_position)
            if len(self.initial_position) != d:
                raise InvalidArgumentError(
                    f"Initial position must have {d} coordinates: {self.initial_position}"
                )
        validate_progress_delta(self.progress_delta)
        return self

    def engine_config(
        self,
        prefix: str,
        initial_position: Optional[Tuple[float, ...]] = None,
        progress_delta: Optional[float] = None
    ) -> RobustLaterationConfig:
        """
        Robust engine configuration for one stream.

        Args:
            prefix: RANGING or RSSI
            initial_position: Seed for non-linear solves
            progress_delta: Engine progress delta (defaults to this config's)

        Raises:
            InvalidArgumentError: if a per-stream field is invalid
        """
        return RobustLaterationConfig(
            method=RobustMethod.parse(getattr(self, f"{prefix}_method")),
            confidence=getattr(self, f"{prefix}_confidence"),
            max_iterations=getattr(self, f"{prefix}_max_iterations"),
            threshold=getattr(self, f"{prefix}_threshold"),
            preliminary_subset_size=getattr(self, f"{prefix}_preliminary_subset_size"),
            refine_result=self.refine_result,
            keep_covariance=self.keep_covariance,
            use_linear_solver=getattr(self, f"use_{prefix}_linear_solver"),
            use_homogeneous_linear_solver=getattr(self, f"use_{prefix}_homogeneous_linear_solver"),
            refine_preliminary_solutions=getattr(self, f"refine_{prefix}_preliminary_solutions"),
            initial_position=initial_position,
            progress_delta=self.progress_delta if progress_delta is None else progress_delta,
            seed=self.seed,
        ).validate(self.dimensions)

    def uses_quality_scores(self) -> bool:
        """Check if either stream samples by quality score."""
        return any(RobustMethod.parse(getattr(self, f"{prefix}_method")).uses_quality_scores
                   for prefix in (RANGING, RSSI))


class _StreamProgress(EstimatorListener):
    """Forwards engine progress into the coordinator's progress range."""

    def __init__(self, notifier: ProgressNotifier):
        self.notifier = notifier

    def on_estimate_progress_change(self, estimator, progress: float):
        self.notifier.update(progress)


class SequentialRobustMixedPositionEstimator:
    """
    Robust position estimator for mixed ranging and RSSI fingerprints.

    Every configuration field is also an attribute of the estimator;
    assigning one re-validates the configuration and raises LockedError
    while an estimation is running.

    Usage:
        estimator = SequentialRobustMixedPositionEstimator(
            SequentialEstimatorConfig(
                sources=sources,
                fingerprint=fingerprint,
                reading_quality_scores=scores,
            )
        )
        estimate = estimator.estimate()
        print(estimate.position, estimate.covariance)
    """

    def __init__(self, config: Optional[SequentialEstimatorConfig] = None, **overrides):
        """
        Initialize estimator.

        Args:
            config: Configuration (uses defaults if None)
            **overrides: Configuration fields overriding config

        Raises:
            InvalidArgumentError: if the configuration is invalid
        """
        base = config or SequentialEstimatorConfig()
        self._config = replace(base, **overrides).validate()
        self._guard = LockGuard()
        self.metrics = get_metrics()

        self._streams: Optional[Tuple[Measurements, Measurements]] = None
        self._estimated_position: Optional[EstimatedPosition] = None
        self._ranging_result: Optional[EstimatedPosition] = None
        self._rssi_result: Optional[EstimatedPosition] = None
        self._ranging_inliers: Optional[InliersData] = None
        self._rssi_inliers: Optional[InliersData] = None

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def config(self) -> SequentialEstimatorConfig:
        return self._config

    def _set_option(self, name: str, value):
        self.configure(**{name: value})

    def configure(self, **changes) -> SequentialEstimatorConfig:
        """
        Replace several configuration fields at once.

        Useful when fields constrain each other (e.g. sources and their
        quality scores).

        Raises:
            LockedError: while estimating
            InvalidArgumentError: if a required field is set to None or the
                result is invalid (configuration unchanged)
        """
        self._guard.ensure_unlocked()
        for name in _REQUIRED_FIELDS:
            if name in changes and changes[name] is None:
                raise InvalidArgumentError(f"{name} cannot be None")
        new_config = replace(self._config, **changes).validate()
        self._config = new_config
        self._streams = None
        return new_config

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def is_locked(self) -> bool:
        return self._guard.is_locked

    def is_ready(self) -> bool:
        """
        Check if estimate() can run.

        Requires sources and a fingerprint, and quality scores when either
        stream uses PROSAC or PROMedS.
        """
        cfg = self._config
        if cfg.sources is None or cfg.fingerprint is None:
            return False
        if cfg.uses_quality_scores() and \
                cfg.source_quality_scores is None and cfg.reading_quality_scores is None:
            return False
        return True

    @property
    def estimated_position(self) -> Optional[EstimatedPosition]:
        return self._estimated_position

    @property
    def covariance(self) -> Optional[np.ndarray]:
        if self._estimated_position is None:
            return None
        return self._estimated_position.covariance

    @property
    def ranging_result(self) -> Optional[EstimatedPosition]:
        return self._ranging_result

    @property
    def rssi_result(self) -> Optional[EstimatedPosition]:
        return self._rssi_result

    @property
    def inliers_data(self) -> Optional[InliersData]:
        """Inliers of the ranging run when present, else of the RSSI run."""
        if self._ranging_inliers is not None:
            return self._ranging_inliers
        return self._rssi_inliers

    @property
    def ranging_inliers_data(self) -> Optional[InliersData]:
        return self._ranging_inliers

    @property
    def rssi_inliers_data(self) -> Optional[InliersData]:
        return self._rssi_inliers

    def _flattened(self, attribute: str) -> Optional[np.ndarray]:
        streams = self._get_streams()
        if streams is None:
            return None
        return np.concatenate([getattr(m, attribute) for m in streams])

    @property
    def positions(self) -> Optional[np.ndarray]:
        """Source positions of both streams (ranging rows first)."""
        streams = self._get_streams()
        if streams is None:
            return None
        return np.vstack([m.positions for m in streams])

    @property
    def distances(self) -> Optional[np.ndarray]:
        return self._flattened('distances')

    @property
    def distance_standard_deviations(self) -> Optional[np.ndarray]:
        return self._flattened('distance_stds')

    # ------------------------------------------------------------------
    # Streams
    # ------------------------------------------------------------------

    def _get_streams(self) -> Optional[Tuple[Measurements, Measurements]]:
        if self._config.sources is None or self._config.fingerprint is None:
            return None
        if self._streams is None:
            self._streams = (self._build_stream(RANGING), self._build_stream(RSSI))
        return self._streams

    def _build_stream(self, prefix: str) -> Measurements:
        """Measurements of one stream, limited to max_subset_size rows."""
        cfg = self._config
        ranging = prefix == RANGING

        readings = []
        reading_scores: Optional[List[float]] = [] if cfg.reading_quality_scores is not None else None
        for i, reading in enumerate(cfg.fingerprint):
            if ranging and reading.has_distance:
                readings.append(reading.as_ranging())
            elif not ranging and reading.has_rssi:
                readings.append(reading.as_rssi())
            else:
                continue
            if reading_scores is not None:
                reading_scores.append(cfg.reading_quality_scores[i])

        measurements = build_measurements(
            cfg.sources,
            readings,
            cfg.dimensions,
            source_quality_scores=cfg.source_quality_scores,
            reading_quality_scores=reading_scores,
            path_loss_exponent=cfg.path_loss_exponent,
            use_source_path_loss_exponent=cfg.use_source_path_loss_exponent,
            use_source_position_covariance=getattr(cfg, f"use_{prefix}_source_position_covariance"),
            fallback_distance_std=getattr(cfg, f"{prefix}_fallback_distance_std"),
        )
        if cfg.max_subset_size != -1:
            measurements = measurements.best(cfg.max_subset_size)
        return measurements

    def _is_available(self, measurements: Measurements) -> bool:
        cfg = self._config
        return len(measurements) >= max(cfg.dimensions + 1, cfg.min_subset_size)

    # ------------------------------------------------------------------
    # Estimation
    # ------------------------------------------------------------------

    def estimate(self) -> EstimatedPosition:
        """
        Estimate the receiver position.

        Returns:
            Fused EstimatedPosition (also available as estimated_position)

        Raises:
            LockedError: if already estimating
            NotReadyError: if sources, fingerprint or required quality
                scores are missing
            RobustEstimatorError: if no stream can be solved
            NonSymmetricPositiveDefiniteMatrixError: if a covariance cannot
                be computed

        Notes:
            - A failed run keeps the previous estimate
        """
        self._guard.ensure_unlocked()
        if not self.is_ready():
            self.metrics.increment_rejection('not_ready')
            raise NotReadyError()

        self.metrics.increment('estimate_attempts')
        listener = self._config.listener

        with self._guard.locked():
            if listener is not None:
                listener.on_estimate_start(self)

            try:
                estimate = self._run()
            except PositioningError as e:
                self.metrics.increment('estimate_failures')
                logger.debug(f"Estimation failed: {e}")
                raise

            self._estimated_position = estimate
            self.metrics.increment('estimate_success')
            logger.debug(f"Estimated position {estimate.position.tolist()} ({estimate.method})")

            if listener is not None:
                listener.on_estimate_end(self)
        return estimate

    def _run(self) -> EstimatedPosition:
        cfg = self._config
        ranging, rssi = self._get_streams()
        run_ranging = self._is_available(ranging)
        run_rssi = self._is_available(rssi)

        if not run_ranging and not run_rssi:
            self.metrics.increment_rejection('no_consensus')
            raise RobustEstimatorError(
                f"Not enough measurements: {len(ranging)} ranging, {len(rssi)} RSSI, "
                f"need {max(cfg.dimensions + 1, cfg.min_subset_size)}"
            )

        notifier = None
        if cfg.listener is not None:
            notifier = ProgressNotifier(
                lambda p: cfg.listener.on_estimate_progress_change(self, p),
                cfg.progress_delta,
            )

        rssi_result = ranging_result = None
        rssi_inliers = ranging_inliers = None
        last_error: Optional[RobustEstimatorError] = None

        if run_rssi:
            if notifier is not None:
                notifier.offset, notifier.scale = 0.0, (0.5 if run_ranging else 1.0)
            try:
                rssi_result, rssi_inliers = self._solve_stream(RSSI, rssi, cfg.initial_position,
                                                               notifier)
            except RobustEstimatorError as e:
                last_error = e
                self._stream_failed(RSSI, e)

        if run_ranging:
            if notifier is not None:
                notifier.offset, notifier.scale = (0.5, 0.5) if run_rssi else (0.0, 1.0)
            initial = cfg.initial_position
            if initial is None and rssi_result is not None:
                initial = tuple(rssi_result.position.tolist())
            try:
                ranging_result, ranging_inliers = self._solve_stream(RANGING, ranging, initial,
                                                                     notifier)
            except RobustEstimatorError as e:
                last_error = e
                self._stream_failed(RANGING, e)

        if ranging_result is None and rssi_result is None:
            raise last_error

        estimate = fuse_estimates([ranging_result, rssi_result])

        self._ranging_result, self._rssi_result = ranging_result, rssi_result
        self._ranging_inliers, self._rssi_inliers = ranging_inliers, rssi_inliers

        if notifier is not None:
            notifier.offset, notifier.scale = 0.0, 1.0
            notifier.update(1.0)
        return estimate

    def _solve_stream(
        self,
        prefix: str,
        measurements: Measurements,
        initial_position: Optional[Tuple[float, ...]],
        notifier: Optional[ProgressNotifier]
    ) -> Tuple[EstimatedPosition, InliersData]:
        # Engine reports every change; the coordinator notifier throttles
        engine_config = self._config.engine_config(prefix, initial_position, progress_delta=0.0)
        engine = RobustLaterationSolver(
            self._config.dimensions,
            engine_config,
            listener=_StreamProgress(notifier) if notifier is not None else None,
        )
        engine.set_measurements(
            measurements.positions,
            measurements.distances,
            measurements.distance_stds,
            measurements.quality_scores,
        )
        estimate = engine.estimate()
        logger.debug(
            f"{prefix} stream: {estimate.num_inliers}/{estimate.num_measurements} inliers "
            f"at {estimate.position.tolist()}"
        )
        return estimate, engine.inliers_data

    def _stream_failed(self, prefix: str, error: RobustEstimatorError):
        self.metrics.increment('stream_failures')
        logger.warning(f"{prefix} stream could not be solved: {error}")


def _option(name: str) -> property:
    def getter(self):
        return getattr(self._config, name)

    def setter(self, value):
        self._set_option(name, value)

    return property(getter, setter, doc=f"Configuration field '{name}'.")


for _field in fields(SequentialEstimatorConfig):
    setattr(SequentialRobustMixedPositionEstimator, _field.name, _option(_field.name))
