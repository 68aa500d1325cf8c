"""
Lateration Solver.

Solves a receiver position from (source position, distance) pairs:

- Inhomogeneous linear solve: subtracting the first sphere equation
  ||p - s_0||^2 = d_0^2 from the others removes the quadratic term,
  leaving A p = b with
      A_i = 2 (s_i - s_0),   b_i = d_0^2 - d_i^2 + ||s_i||^2 - ||s_0||^2
- Homogeneous linear solve: each sphere equation is linear in the
  homogeneous vector h = w [p, ||p||^2, 1]:
      [-2 s_i^T, 1, ||s_i||^2 - d_i^2] . h = 0
  h is the right singular vector of the smallest singular value. A
  vanishing last component means a point at infinity.
- Non-linear refinement: Levenberg-Marquardt on
      chi^2(p) = sum_i w_i (||p - s_i|| - d_i)^2,   w_i = 1 / sigma_i^2
  with covariance (J^T W J)^-1 at convergence.

Both linear solves need at least dimensions + 1 measurements.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from ips_core.config import REFINEMENT_DEFAULTS
from ips_core.errors import (
    DegenerateSubsetError,
    InvalidArgumentError,
    LaterationError,
    NonSymmetricPositiveDefiniteMatrixError,
)

logger = logging.getLogger(__name__)

# Relative singular value below which a linear system is considered singular
RANK_TOLERANCE = 1e-10

# Smallest standard deviation used to build weights
MIN_STD = 1e-12


@dataclass
class RefinementConfig:
    """
    Configuration for Levenberg-Marquardt refinement.

    Attributes:
        max_iterations: Maximum LM iterations
        convergence_tol: Relative chi-square change that stops iterating
        initial_damping: Initial LM damping factor
    """

    max_iterations: int = REFINEMENT_DEFAULTS["max_iterations"]
    convergence_tol: float = REFINEMENT_DEFAULTS["convergence_tol"]
    initial_damping: float = REFINEMENT_DEFAULTS["initial_damping"]


@dataclass(frozen=True, eq=False)
class RefinementResult:
    """
    Result of a non-linear refinement.

    Attributes:
        position: Refined position
        covariance: Position covariance (None if not requested)
        chi_sq: Final weighted sum of squared residuals
        iterations: LM iterations performed
        converged: True if the convergence criterion was met
    """

    position: np.ndarray
    covariance: Optional[np.ndarray]
    chi_sq: float
    iterations: int
    converged: bool


def distance_residuals(positions: np.ndarray, distances: np.ndarray, point: np.ndarray) -> np.ndarray:
    """Absolute residuals | ||point - s_i|| - d_i |."""
    return np.abs(np.linalg.norm(positions - point, axis=1) - distances)


class LaterationSolver:
    """
    Lateration solver for 2D or 3D positions.

    Usage:
        solver = LaterationSolver(dimensions=2)

        # Linear candidate from a minimal subset
        p0 = solver.solve(positions[:3], distances[:3])

        # Non-linear refinement on all measurements
        result = solver.refine(positions, distances, p0, stds)
        print(result.position, result.covariance)
    """

    def __init__(
        self,
        dimensions: int,
        use_homogeneous: bool = False,
        refinement_config: Optional[RefinementConfig] = None
    ):
        """
        Initialize lateration solver.

        Args:
            dimensions: 2 or 3
            use_homogeneous: Use the homogeneous linear system
            refinement_config: LM configuration (uses defaults if None)
        """
        if dimensions not in (2, 3):
            raise InvalidArgumentError(f"Dimensions must be 2 or 3: {dimensions}")
        self.dimensions = dimensions
        self.use_homogeneous = use_homogeneous
        self.refinement_config = refinement_config or RefinementConfig()

    @property
    def min_required_measurements(self) -> int:
        """Minimal subset size."""
        return self.dimensions + 1

    def _check_inputs(self, positions, distances, minimum: int):
        positions = np.asarray(positions, dtype=float)
        distances = np.asarray(distances, dtype=float)
        if positions.ndim != 2 or positions.shape[1] != self.dimensions:
            raise InvalidArgumentError(
                f"Positions must be (n, {self.dimensions}): got {positions.shape}"
            )
        if len(distances) != len(positions):
            raise InvalidArgumentError(
                f"Got {len(positions)} positions and {len(distances)} distances"
            )
        if len(distances) < minimum:
            raise InvalidArgumentError(
                f"Need at least {minimum} measurements, got {len(distances)}"
            )
        return positions, distances

    def solve(self, positions: Sequence, distances: Sequence) -> np.ndarray:
        """
        Linear lateration solve.

        Args:
            positions: Source positions (k x d), k >= d + 1
            distances: Distances (k)

        Returns:
            Candidate position (d)

        Raises:
            DegenerateSubsetError: if the subset geometry is degenerate
        """
        positions, distances = self._check_inputs(
            positions, distances, self.min_required_measurements
        )
        if self.use_homogeneous:
            return self._solve_homogeneous(positions, distances)
        return self._solve_inhomogeneous(positions, distances)

    def _solve_inhomogeneous(self, positions: np.ndarray, distances: np.ndarray) -> np.ndarray:
        s0 = positions[0]
        A = 2.0 * (positions[1:] - s0)
        b = (distances[0] ** 2 - distances[1:] ** 2
             + np.sum(positions[1:] ** 2, axis=1) - np.sum(s0 ** 2))

        singular_values = np.linalg.svd(A, compute_uv=False)
        if singular_values[0] == 0 or \
                singular_values[self.dimensions - 1] / singular_values[0] < RANK_TOLERANCE:
            raise DegenerateSubsetError("Sources are coincident or collinear")

        solution, _, _, _ = np.linalg.lstsq(A, b, rcond=None)
        if not np.all(np.isfinite(solution)):
            raise DegenerateSubsetError("Non-finite linear solution")
        return solution

    def _solve_homogeneous(self, positions: np.ndarray, distances: np.ndarray) -> np.ndarray:
        k = len(positions)
        d = self.dimensions

        # Columns: [p (d), ||p||^2, 1]
        A = np.zeros((k, d + 2))
        A[:, :d] = -2.0 * positions
        A[:, d] = 1.0
        A[:, d + 1] = np.sum(positions ** 2, axis=1) - distances ** 2

        # Normalize rows for conditioning
        norms = np.linalg.norm(A, axis=1)
        if np.any(norms == 0):
            raise DegenerateSubsetError("Zero row in homogeneous system")
        A = A / norms[:, None]

        _, singular_values, vt = np.linalg.svd(A, full_matrices=True)
        # Null space must be one-dimensional
        if singular_values[d] / singular_values[0] < RANK_TOLERANCE:
            raise DegenerateSubsetError("Homogeneous system is rank deficient")

        h = vt[-1]
        if abs(h[-1]) < RANK_TOLERANCE * np.linalg.norm(h):
            raise DegenerateSubsetError("Solution is a point at infinity")

        solution = h[:d] / h[-1]
        if not np.all(np.isfinite(solution)):
            raise DegenerateSubsetError("Non-finite homogeneous solution")
        return solution

    def refine(
        self,
        positions: Sequence,
        distances: Sequence,
        initial_position: Optional[Sequence] = None,
        distance_stds: Optional[Sequence] = None,
        compute_covariance: bool = True
    ) -> RefinementResult:
        """
        Levenberg-Marquardt refinement of a position.

        Args:
            positions: Source positions (n x d)
            distances: Distances (n)
            initial_position: Starting point (weighted source centroid if None)
            distance_stds: Distance standard deviations (weights 1/sigma^2)
            compute_covariance: Compute (J^T W J)^-1 at the solution

        Returns:
            RefinementResult

        Raises:
            NonSymmetricPositiveDefiniteMatrixError: if covariance is requested
                and J^T W J is not positive definite
        """
        positions, distances = self._check_inputs(positions, distances, 1)
        n = len(distances)

        if distance_stds is not None:
            stds = np.asarray(distance_stds, dtype=float)
            if len(stds) != n:
                raise InvalidArgumentError(f"Expected {n} standard deviations, got {len(stds)}")
            weights = 1.0 / np.maximum(stds, MIN_STD) ** 2
        else:
            weights = np.ones(n)

        if initial_position is None:
            x = np.average(positions, axis=0, weights=weights)
        else:
            x = np.array(initial_position, dtype=float)
            if x.shape != (self.dimensions,):
                raise InvalidArgumentError(
                    f"Initial position must have {self.dimensions} coordinates"
                )

        cfg = self.refinement_config
        damping = cfg.initial_damping
        residuals, jacobian = self._residuals_and_jacobian(positions, distances, x)
        chi_sq = float(np.sum(weights * residuals ** 2))
        converged = chi_sq == 0.0
        iteration = 0

        while not converged and iteration < cfg.max_iterations:
            iteration += 1

            # Normal equations: (J^T W J + lambda diag) dx = -J^T W r
            JTWJ = jacobian.T @ (weights[:, None] * jacobian)
            JTWr = jacobian.T @ (weights * residuals)
            diag = np.maximum(np.diag(JTWJ), MIN_STD)

            improved = False
            while damping < 1e16:
                try:
                    delta_x = np.linalg.solve(JTWJ + damping * np.diag(diag), -JTWr)
                except np.linalg.LinAlgError:
                    damping *= 10.0
                    continue

                x_new = x + delta_x
                new_residuals, new_jacobian = self._residuals_and_jacobian(positions, distances, x_new)
                new_chi_sq = float(np.sum(weights * new_residuals ** 2))

                if new_chi_sq <= chi_sq:
                    improved = True
                    step_norm = np.linalg.norm(delta_x)
                    if chi_sq - new_chi_sq <= cfg.convergence_tol * chi_sq or \
                            step_norm <= cfg.convergence_tol * (1.0 + np.linalg.norm(x)):
                        converged = True
                    x, residuals, jacobian, chi_sq = x_new, new_residuals, new_jacobian, new_chi_sq
                    damping = max(damping / 10.0, 1e-15)
                    break
                damping *= 10.0

            if not improved:
                # No downhill step left: local minimum reached
                converged = True

        if not np.all(np.isfinite(x)):
            raise LaterationError("Refinement diverged")

        covariance = None
        if compute_covariance:
            covariance = self.covariance(positions, x, weights)

        logger.debug(f"LM refinement: {iteration} iterations, chi2={chi_sq:.3e}")
        return RefinementResult(
            position=x,
            covariance=covariance,
            chi_sq=chi_sq,
            iterations=iteration,
            converged=converged,
        )

    def covariance(self, positions: np.ndarray, point: np.ndarray, weights: np.ndarray) -> np.ndarray:
        """
        Position covariance (J^T W J)^-1 at a point.

        Raises:
            NonSymmetricPositiveDefiniteMatrixError: if J^T W J is not
                positive definite (rank deficient geometry)
        """
        jacobian = self._jacobian(np.asarray(positions, dtype=float), np.asarray(point, dtype=float))
        JTWJ = jacobian.T @ (weights[:, None] * jacobian)
        try:
            cholesky = np.linalg.cholesky(JTWJ)
        except np.linalg.LinAlgError as e:
            raise NonSymmetricPositiveDefiniteMatrixError(
                "Normal matrix is not positive definite"
            ) from e

        # Reject numerically singular factors as well
        diag = np.abs(np.diag(cholesky))
        if diag.min() ** 2 <= RANK_TOLERANCE * diag.max() ** 2:
            raise NonSymmetricPositiveDefiniteMatrixError("Normal matrix is rank deficient")

        inv_cholesky = np.linalg.inv(cholesky)
        return inv_cholesky.T @ inv_cholesky

    def _jacobian(self, positions: np.ndarray, point: np.ndarray) -> np.ndarray:
        diff = point - positions
        ranges = np.linalg.norm(diff, axis=1)
        jacobian = np.zeros_like(diff)
        valid = ranges > 1e-12
        jacobian[valid] = diff[valid] / ranges[valid, None]
        return jacobian

    def _residuals_and_jacobian(self, positions: np.ndarray, distances: np.ndarray, point: np.ndarray):
        residuals = np.linalg.norm(point - positions, axis=1) - distances
        return residuals, self._jacobian(positions, point)
