"""
Unit tests for the lateration solver.

Tests cover:
- Inhomogeneous and homogeneous linear solves (2D and 3D)
- Degenerate geometry detection
- Levenberg-Marquardt refinement and covariance
"""

import numpy as np
import pytest

from ips_core.errors import (
    DegenerateSubsetError,
    InvalidArgumentError,
    LaterationError,
    NonSymmetricPositiveDefiniteMatrixError,
)
from ips_core.localization import LaterationSolver, RefinementConfig, distance_residuals


# =============================================================================
# Linear Solves
# =============================================================================


class TestLinearSolve:
    """Tests for LaterationSolver.solve()."""

    @pytest.mark.parametrize("homogeneous", [False, True])
    def test_exact_2d_minimal_subset(self, square_sources_2d, exact_measurements, homogeneous):
        positions, distances = exact_measurements(square_sources_2d[:3], (3.0, 4.0))
        solver = LaterationSolver(2, use_homogeneous=homogeneous)

        np.testing.assert_allclose(solver.solve(positions, distances), [3.0, 4.0], atol=1e-8)

    @pytest.mark.parametrize("homogeneous", [False, True])
    def test_exact_3d_minimal_subset(self, cube_sources_3d, exact_measurements, homogeneous):
        receiver = (4.0, 6.0, 2.5)
        positions, distances = exact_measurements(cube_sources_3d[:4], receiver)
        solver = LaterationSolver(3, use_homogeneous=homogeneous)

        np.testing.assert_allclose(solver.solve(positions, distances), receiver, atol=1e-8)

    @pytest.mark.parametrize("homogeneous", [False, True])
    def test_overdetermined(self, square_sources_2d, exact_measurements, homogeneous):
        """Test more than dimensions + 1 rows are solved in least squares."""
        positions, distances = exact_measurements(square_sources_2d, (7.0, 2.0))
        solver = LaterationSolver(2, use_homogeneous=homogeneous)

        np.testing.assert_allclose(solver.solve(positions, distances), [7.0, 2.0], atol=1e-8)

    def test_collinear_sources_are_degenerate(self):
        positions = np.array([[0.0, 0.0], [1.0, 0.0], [2.0, 0.0]])
        distances = np.array([1.0, 1.0, 1.5])

        with pytest.raises(DegenerateSubsetError):
            LaterationSolver(2).solve(positions, distances)

    def test_coincident_sources_are_degenerate_homogeneous(self):
        positions = np.array([[1.0, 1.0], [1.0, 1.0], [1.0, 1.0]])
        distances = np.array([1.0, 1.0, 1.0])

        with pytest.raises(DegenerateSubsetError):
            LaterationSolver(2, use_homogeneous=True).solve(positions, distances)

    def test_degenerate_is_lateration_error(self):
        assert issubclass(DegenerateSubsetError, LaterationError)

    def test_too_few_measurements_raises(self, square_sources_2d, exact_measurements):
        positions, distances = exact_measurements(square_sources_2d[:2], (3.0, 4.0))

        with pytest.raises(InvalidArgumentError, match="at least 3"):
            LaterationSolver(2).solve(positions, distances)

    def test_shape_mismatch_raises(self):
        with pytest.raises(InvalidArgumentError, match=r"\(n, 2\)"):
            LaterationSolver(2).solve(np.zeros((3, 3)), np.ones(3))

    def test_invalid_dimensions_raise(self):
        with pytest.raises(InvalidArgumentError, match="2 or 3"):
            LaterationSolver(4)

    def test_min_required_measurements(self):
        assert LaterationSolver(2).min_required_measurements == 3
        assert LaterationSolver(3).min_required_measurements == 4


# =============================================================================
# Refinement
# =============================================================================


class TestRefinement:
    """Tests for LaterationSolver.refine()."""

    def test_converges_from_centroid(self, square_sources_2d, exact_measurements):
        positions, distances = exact_measurements(square_sources_2d, (3.0, 4.0))

        result = LaterationSolver(2).refine(positions, distances)

        np.testing.assert_allclose(result.position, [3.0, 4.0], atol=1e-6)
        assert result.converged
        assert result.chi_sq < 1e-10

    def test_converges_3d(self, cube_sources_3d, exact_measurements):
        receiver = (2.0, 7.0, 3.0)
        positions, distances = exact_measurements(cube_sources_3d, receiver)

        result = LaterationSolver(3).refine(positions, distances, initial_position=(5, 5, 5))

        np.testing.assert_allclose(result.position, receiver, atol=1e-6)

    def test_noisy_refinement_beats_noise(self, square_sources_2d):
        rng = np.random.default_rng(3)
        receiver = np.array([4.0, 6.0])
        distances = np.linalg.norm(square_sources_2d - receiver, axis=1) + rng.normal(0, 0.05, 6)

        result = LaterationSolver(2).refine(square_sources_2d, distances,
                                            distance_stds=np.full(6, 0.05))

        assert np.linalg.norm(result.position - receiver) < 0.2
        assert result.covariance.shape == (2, 2)

    def test_covariance_is_symmetric_positive_definite(self, square_sources_2d, exact_measurements):
        positions, distances = exact_measurements(square_sources_2d, (3.0, 4.0))

        result = LaterationSolver(2).refine(positions, distances, distance_stds=np.full(6, 0.1))

        np.testing.assert_allclose(result.covariance, result.covariance.T, atol=1e-12)
        assert np.all(np.linalg.eigvalsh(result.covariance) > 0)

    def test_covariance_scales_with_std(self, square_sources_2d, exact_measurements):
        """Test doubling every std quadruples the covariance."""
        positions, distances = exact_measurements(square_sources_2d, (3.0, 4.0))
        solver = LaterationSolver(2)

        small = solver.refine(positions, distances, distance_stds=np.full(6, 0.1)).covariance
        large = solver.refine(positions, distances, distance_stds=np.full(6, 0.2)).covariance

        np.testing.assert_allclose(large, 4.0 * small, rtol=1e-6)

    def test_covariance_skipped_when_not_requested(self, square_sources_2d, exact_measurements):
        positions, distances = exact_measurements(square_sources_2d, (3.0, 4.0))

        result = LaterationSolver(2).refine(positions, distances, compute_covariance=False)

        assert result.covariance is None

    def test_rank_deficient_covariance_raises(self):
        """Test all sources in one place give a singular normal matrix."""
        positions = np.array([[0.0, 0.0], [0.0, 0.0], [0.0, 0.0]])

        with pytest.raises(NonSymmetricPositiveDefiniteMatrixError):
            LaterationSolver(2).covariance(positions, np.array([3.0, 4.0]), np.ones(3))

    def test_iteration_limit(self, square_sources_2d, exact_measurements):
        positions, distances = exact_measurements(square_sources_2d, (3.0, 4.0))
        solver = LaterationSolver(2, refinement_config=RefinementConfig(max_iterations=1))

        result = solver.refine(positions, distances, initial_position=(20.0, 20.0),
                               compute_covariance=False)

        assert result.iterations == 1

    def test_std_length_mismatch_raises(self, square_sources_2d, exact_measurements):
        positions, distances = exact_measurements(square_sources_2d, (3.0, 4.0))

        with pytest.raises(InvalidArgumentError, match="standard deviations"):
            LaterationSolver(2).refine(positions, distances, distance_stds=[0.1])


class TestDistanceResiduals:
    def test_absolute_residuals(self):
        positions = np.array([[0.0, 0.0], [10.0, 0.0]])
        residuals = distance_residuals(positions, np.array([6.0, 4.0]), np.array([5.0, 0.0]))

        np.testing.assert_allclose(residuals, [1.0, 1.0])
