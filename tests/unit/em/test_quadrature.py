"""
Tests for Gauss-Hermite quadrature.
"""

import numpy as np
import pytest
from scipy.special import expit

from eco_em.em.config import QuadratureConfig
from eco_em.em.exceptions import ConfigurationError
from eco_em.em.quadrature import get_quadrature


class TestGaussHermiteQuadrature:
    def test_weights_sum_to_one(self) -> None:
        """Quadrature weights should sum to 1."""
        quad = get_quadrature(QuadratureConfig(n_points=41))

        np.testing.assert_allclose(quad.weights.sum(), 1.0, rtol=1e-10)
        assert (quad.weights > 0).all()

    def test_standard_normal_moments(self) -> None:
        """The rule integrates N(0, 1)."""
        quad = get_quadrature(QuadratureConfig(n_points=21))

        np.testing.assert_allclose(
            quad.expectation(lambda z: z), 0.0, atol=1e-10
        )
        np.testing.assert_allclose(
            quad.expectation(lambda z: z**2), 1.0, rtol=1e-10
        )
        np.testing.assert_allclose(
            quad.expectation(lambda z: z**4), 3.0, rtol=1e-10
        )

    def test_scaled_expectation(self) -> None:
        """mean/std rescale the rule to N(mean, std^2)."""
        quad = get_quadrature(QuadratureConfig(n_points=41))

        mean = quad.expectation(lambda z: z, mean=2.0, std=0.5)
        second = quad.expectation(lambda z: z**2, mean=2.0, std=0.5)

        np.testing.assert_allclose(mean, 2.0, rtol=1e-10)
        np.testing.assert_allclose(second - mean**2, 0.25, rtol=1e-8)

    def test_logistic_normal_symmetry(self) -> None:
        """E[expit(Z)] is 1/2 for a centred normal and 1 - E at -mean."""
        quad = get_quadrature(QuadratureConfig(n_points=41))

        np.testing.assert_allclose(
            quad.expectation(expit, mean=0.0, std=1.5), 0.5, atol=1e-10
        )
        upper = quad.expectation(expit, mean=1.0, std=0.8)
        lower = quad.expectation(expit, mean=-1.0, std=0.8)
        np.testing.assert_allclose(upper + lower, 1.0, atol=1e-10)

    def test_zero_std_is_point_mass(self) -> None:
        quad = get_quadrature(QuadratureConfig(n_points=11))

        np.testing.assert_allclose(
            quad.expectation(expit, mean=0.7, std=0.0), expit(0.7)
        )

    def test_invalid_n_points(self) -> None:
        with pytest.raises(ConfigurationError, match="n_points"):
            QuadratureConfig(n_points=0)
