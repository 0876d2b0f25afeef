"""
Tests for integration along tomography lines.
"""

import numpy as np
import pytest
from scipy.integrate import trapezoid

from eco_em.em.config import IntegrationConfig
from eco_em.em.enums import Moment
from eco_em.em.exceptions import SingularModelError
from eco_em.em.model_state import covariance_2x2
from eco_em.em.tomography import (
    line_log_density,
    posterior_moments,
    prepare_line_posterior,
    tomography_line,
)

CONFIG = IntegrationConfig()


def _prepare(x: float, y: float, mean: list[float], sigma: np.ndarray):
    line = tomography_line(x, y)
    sigma_inv = np.linalg.inv(sigma)
    _, log_det = np.linalg.slogdet(sigma)
    return prepare_line_posterior(
        line, np.array(mean), sigma_inv, log_det, CONFIG
    )


def _brute_force(x: float, y: float, mean: list[float], sigma: np.ndarray):
    """Dense-grid trapezoid integration of the same density."""
    line = tomography_line(x, y)
    sigma_inv = np.linalg.inv(sigma)
    _, log_det = np.linalg.slogdet(sigma)
    w1 = np.linspace(line.lower, line.upper, 200_001)
    density = np.exp(
        line_log_density(w1, line, np.array(mean), sigma_inv, log_det)
    )
    norm_const = trapezoid(density, w1)
    w2 = line.w2_from_w1(w1)
    e_w1 = trapezoid(density * w1, w1) / norm_const
    e_w2 = trapezoid(density * w2, w1) / norm_const
    return norm_const, e_w1, e_w2


class TestTomographyLine:
    def test_bounds_full_range(self) -> None:
        line = tomography_line(0.3, 0.4)

        assert line.lower == 0.0
        assert line.upper == 1.0

    def test_bounds_truncated(self) -> None:
        line = tomography_line(0.6, 0.5)

        np.testing.assert_allclose(line.lower, 0.1 / 0.6)
        np.testing.assert_allclose(line.upper, 0.5 / 0.6)

    def test_points_satisfy_identity(self) -> None:
        """Y = X W1 + (1 - X) W2 along the whole line."""
        line = tomography_line(0.6, 0.5)
        w1 = np.linspace(line.lower, line.upper, 11)
        w2 = line.w2_from_w1(w1)

        np.testing.assert_allclose(0.6 * w1 + 0.4 * w2, 0.5)
        np.testing.assert_allclose(line.w1_from_w2(w2), w1)
        assert (w2 >= -1e-12).all() and (w2 <= 1 + 1e-12).all()

    def test_log_density_outside_support(self) -> None:
        line = tomography_line(0.3, 0.4)
        values = line_log_density(
            [0.0, 0.5, 1.0], line, np.zeros(2), np.eye(2), 0.0
        )

        assert values[0] == -np.inf
        assert np.isfinite(values[1])
        assert values[2] == -np.inf


class TestLinePosterior:
    def test_moments_match_brute_force(self) -> None:
        sigma = covariance_2x2(1.0, 0.8, 0.3)
        posterior = _prepare(0.6, 0.5, [0.2, -0.4], sigma)
        norm_const, e_w1, e_w2 = _brute_force(0.6, 0.5, [0.2, -0.4], sigma)

        np.testing.assert_allclose(
            np.exp(posterior.log_norm_const), norm_const, rtol=1e-5
        )
        moments = posterior_moments(posterior, CONFIG)
        np.testing.assert_allclose(moments[Moment.W1], e_w1, rtol=1e-5)
        np.testing.assert_allclose(moments[Moment.W2], e_w2, rtol=1e-5)

    def test_mass_is_one(self) -> None:
        posterior = _prepare(0.3, 0.4, [0.0, 0.0], np.eye(2))
        moments = posterior_moments(posterior, CONFIG)

        np.testing.assert_allclose(moments[Moment.MASS], 1.0, atol=1e-8)

    def test_natural_means_on_line(self) -> None:
        """Posterior means satisfy the tomography identity exactly."""
        posterior = _prepare(0.6, 0.5, [1.0, -1.0], 0.5 * np.eye(2))
        moments = posterior_moments(posterior, CONFIG)

        np.testing.assert_allclose(
            0.6 * moments[Moment.W1] + 0.4 * moments[Moment.W2],
            0.5,
            atol=1e-8,
        )

    def test_jensen(self) -> None:
        posterior = _prepare(0.2, 0.2, [0.0, 0.5], np.eye(2))
        moments = posterior_moments(posterior, CONFIG)

        assert moments[Moment.W1_STAR_SQ] >= moments[Moment.W1_STAR] ** 2
        assert moments[Moment.W2_STAR_SQ] >= moments[Moment.W2_STAR] ** 2

    def test_near_singular_sigma(self) -> None:
        """Correlation near one either raises or stays on the line."""
        sigma = covariance_2x2(1.0, 1.0, 0.99999999)
        try:
            posterior = _prepare(0.6, 0.5, [0.0, 0.0], sigma)
            moments = posterior_moments(posterior, CONFIG)
        except SingularModelError:
            return

        assert np.all(np.isfinite(moments))
        assert 0.0 <= moments[Moment.W1] <= 1.0
        assert 0.0 <= moments[Moment.W2] <= 1.0
        np.testing.assert_allclose(
            0.6 * moments[Moment.W1] + 0.4 * moments[Moment.W2],
            0.5,
            atol=1e-6,
        )

    def test_tight_posterior_does_not_underflow(self) -> None:
        """A concentrated posterior far from the mean still normalizes."""
        sigma = covariance_2x2(0.01, 0.01, 0.0)
        posterior = _prepare(0.5, 0.5, [3.0, 3.0], sigma)
        moments = posterior_moments(posterior, CONFIG)

        assert posterior.log_norm_const < -50
        np.testing.assert_allclose(moments[Moment.MASS], 1.0, atol=1e-6)

    def test_log_likelihood_is_density_of_y(self) -> None:
        sigma = covariance_2x2(1.0, 0.8, 0.3)
        posterior = _prepare(0.6, 0.5, [0.2, -0.4], sigma)
        norm_const, _, _ = _brute_force(0.6, 0.5, [0.2, -0.4], sigma)

        np.testing.assert_allclose(
            posterior.log_likelihood,
            np.log(norm_const) - np.log(0.4),
            atol=1e-6,
        )

    def test_zero_length_line(self) -> None:
        line = tomography_line(0.5, 1.0)
        with pytest.raises(SingularModelError, match="zero length"):
            prepare_line_posterior(line, np.zeros(2), np.eye(2), 0.0, CONFIG)


class TestPosteriorMass:
    """Moments are normalized by the mass of their own integration."""

    @pytest.fixture
    def posterior(self):
        return _prepare(0.8, 0.9, [0.5, 0.5], np.eye(2))

    def _patch_totals(
        self, monkeypatch: pytest.MonkeyPatch, totals: list[float]
    ) -> None:
        def fake_quad_vec(*args, **kwargs):
            return np.array(totals, dtype=np.float64), 0.0

        monkeypatch.setattr("eco_em.em.tomography.quad_vec", fake_quad_vec)

    def test_normalized_by_own_mass(
        self, posterior, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        mass = posterior.shifted_norm_const * (1 + 1e-4)
        self._patch_totals(monkeypatch, [0.5 * mass] * 7 + [mass])

        moments = posterior_moments(posterior, CONFIG)

        np.testing.assert_allclose(moments[: Moment.MASS], 0.5)
        np.testing.assert_allclose(moments[Moment.MASS], 1 + 1e-4)

    def test_disagreeing_constant_raises(
        self, posterior, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        mass = posterior.shifted_norm_const * 1e-12
        self._patch_totals(monkeypatch, [1e12] * 7 + [mass])

        with pytest.raises(SingularModelError, match="normalizing constant"):
            posterior_moments(posterior, CONFIG)

    @pytest.mark.parametrize("mass", [0.0, -1.0, np.inf, np.nan])
    def test_bad_mass_raises(
        self, posterior, monkeypatch: pytest.MonkeyPatch, mass: float
    ) -> None:
        self._patch_totals(monkeypatch, [0.5] * 7 + [mass])

        with pytest.raises(SingularModelError, match="posterior mass"):
            posterior_moments(posterior, CONFIG)

    def test_non_finite_moment_raises(
        self, posterior, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        mass = posterior.shifted_norm_const
        self._patch_totals(monkeypatch, [np.nan] + [0.5] * 6 + [mass])

        with pytest.raises(SingularModelError, match="non-finite"):
            posterior_moments(posterior, CONFIG)
