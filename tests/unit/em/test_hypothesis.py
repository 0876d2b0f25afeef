"""
Tests for the linear hypothesis projection.
"""

import numpy as np
import pytest

from eco_em.em.config import LinearHypothesis
from eco_em.em.exceptions import SingularModelError
from eco_em.em.hypothesis import apply_linear_hypothesis
from eco_em.em.model_state import covariance_2x2


class TestApplyLinearHypothesis:
    def test_constraint_holds(self) -> None:
        sigma = covariance_2x2(1.5, 0.7, 0.4)
        hypothesis = LinearHypothesis(coefficients=(1.0, -2.0), target=0.3)

        mu = apply_linear_hypothesis([0.8, -0.5], sigma, hypothesis)

        np.testing.assert_allclose(mu[0] - 2.0 * mu[1], 0.3)

    def test_equal_means(self) -> None:
        """With identity covariance both means move to their average."""
        hypothesis = LinearHypothesis(coefficients=(1.0, -1.0))

        mu = apply_linear_hypothesis([1.0, -1.0], np.eye(2), hypothesis)

        np.testing.assert_allclose(mu, [0.0, 0.0], atol=1e-15)

    def test_satisfied_hypothesis_is_unchanged(self) -> None:
        sigma = covariance_2x2(1.0, 2.0, -0.3)
        hypothesis = LinearHypothesis(coefficients=(2.0, 1.0), target=1.0)

        mu = apply_linear_hypothesis([0.25, 0.5], sigma, hypothesis)

        np.testing.assert_allclose(mu, [0.25, 0.5])

    def test_correction_follows_covariance(self) -> None:
        """Fixing mu1 still moves a correlated mu2."""
        sigma = covariance_2x2(1.0, 1.0, 0.5)
        hypothesis = LinearHypothesis(coefficients=(1.0, 0.0), target=0.0)

        mu = apply_linear_hypothesis([1.0, 1.0], sigma, hypothesis)

        np.testing.assert_allclose(mu, [0.0, 0.5])

    def test_non_positive_denominator(self) -> None:
        sigma = np.array([[1.0, 1.0], [1.0, 1.0]])
        hypothesis = LinearHypothesis(coefficients=(1.0, -1.0))

        with pytest.raises(SingularModelError, match="is not positive"):
            apply_linear_hypothesis([0.0, 1.0], sigma, hypothesis)
