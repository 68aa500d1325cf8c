"""
Unit tests for inverse-covariance position fusion.
"""

import numpy as np
import pytest

from ips_core.errors import InvalidArgumentError, NonSymmetricPositiveDefiniteMatrixError
from ips_core.localization import fuse_estimates
from ips_core.metrics import get_metrics
from ips_core.proto import EstimatedPosition


def estimate(position, variance=None, **kwargs):
    covariance = None if variance is None else variance * np.eye(len(position))
    return EstimatedPosition(position=position, covariance=covariance, **kwargs)


class TestFuseEstimates:
    """Tests for fuse_estimates()."""

    def test_inverse_variance_weighting(self):
        """Test sigma_a = 1 and sigma_b = 2 fuse to variance 0.8."""
        a = estimate([0.0, 0.0], 1.0, num_measurements=4, num_inliers=4)
        b = estimate([5.0, 5.0], 4.0, num_measurements=6, num_inliers=5)

        fused = fuse_estimates([a, b])

        np.testing.assert_allclose(fused.covariance, 0.8 * np.eye(2))
        np.testing.assert_allclose(fused.position, [1.0, 1.0])
        assert fused.method == "FUSED"
        assert fused.num_measurements == 10
        assert fused.num_inliers == 9
        assert get_metrics().get_counter('fusion_runs') == 1

    def test_full_covariances(self):
        """Test fusion with correlated covariances matches the information form."""
        cov_a = np.array([[2.0, 0.5], [0.5, 1.0]])
        cov_b = np.array([[1.0, -0.2], [-0.2, 3.0]])
        a = EstimatedPosition(position=[1.0, 2.0], covariance=cov_a)
        b = EstimatedPosition(position=[2.0, 1.0], covariance=cov_b)

        fused = fuse_estimates([a, b])

        info = np.linalg.inv(cov_a) + np.linalg.inv(cov_b)
        expected_cov = np.linalg.inv(info)
        expected_pos = expected_cov @ (np.linalg.inv(cov_a) @ a.position
                                       + np.linalg.inv(cov_b) @ b.position)
        np.testing.assert_allclose(fused.covariance, expected_cov, atol=1e-12)
        np.testing.assert_allclose(fused.position, expected_pos)

    def test_single_estimate_returned_unchanged(self):
        a = estimate([1.0, 2.0], 1.0)

        assert fuse_estimates([a, None]) is a
        assert get_metrics().get_counter('fusion_runs') == 0

    def test_without_covariances_uses_mean(self):
        fused = fuse_estimates([estimate([0.0, 0.0]), estimate([2.0, 4.0])])

        np.testing.assert_allclose(fused.position, [1.0, 2.0])
        assert fused.covariance is None

    def test_mixed_covariance_uses_mean_and_known_covariance(self):
        fused = fuse_estimates([estimate([0.0, 0.0], 2.0), estimate([2.0, 4.0])])

        np.testing.assert_allclose(fused.position, [1.0, 2.0])
        np.testing.assert_allclose(fused.covariance, 2.0 * np.eye(2))

    def test_nothing_to_fuse_raises(self):
        with pytest.raises(InvalidArgumentError, match="No estimates"):
            fuse_estimates([None, None])

    def test_dimension_mismatch_raises(self):
        with pytest.raises(InvalidArgumentError, match="dimensions"):
            fuse_estimates([estimate([0.0, 0.0]), estimate([0.0, 0.0, 0.0])])

    def test_singular_covariance_raises(self):
        singular = EstimatedPosition(position=[0.0, 0.0], covariance=np.zeros((2, 2)))

        with pytest.raises(NonSymmetricPositiveDefiniteMatrixError):
            fuse_estimates([singular, estimate([1.0, 1.0], 1.0)])
