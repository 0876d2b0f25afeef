"""
Tests for the M-step updates.
"""

import numpy as np
import pytest

from eco_em.core.data_models import EcoDataset
from eco_em.core.utils import logit
from eco_em.em.config import (
    IntegrationConfig,
    LinearHypothesis,
    QuadratureConfig,
)
from eco_em.em.data_models import SufficientStatistics
from eco_em.em.estep import run_e_step
from eco_em.em.exceptions import SingularModelError
from eco_em.em.model_state import build_model_state
from eco_em.em.mstep import (
    fixed_rho_variances,
    m_step,
    m_step_car,
    m_step_ncar,
    regression_coefficients,
)
from eco_em.em.parameters import (
    CARParameters,
    NCARParameters,
    NCARRegressionParameters,
)
from eco_em.em.quadrature import get_quadrature


@pytest.fixture
def survey_dataset() -> EcoDataset:
    return EcoDataset.from_arrays(
        x=np.empty(0),
        y=np.empty(0),
        survey_w=[[0.2, 0.3], [0.6, 0.5], [0.4, 0.8], [0.7, 0.6]],
        survey_x=[0.3, 0.8, 0.5, 0.6],
    )


def _car_stats() -> SufficientStatistics:
    return SufficientStatistics(
        w1_star=0.5,
        w2_star=-0.2,
        w1_star_sq=1.25,
        w2_star_sq=0.8,
        w1_star_w2_star=0.1,
    )


def _survey_logits(dataset: EcoDataset) -> np.ndarray:
    return logit(
        np.array([[u.w1, u.w2] for u in dataset.units], dtype=np.float64)
    )


class TestFixedRhoVariances:
    def test_zero_rho_is_centred_moments(self) -> None:
        s11, s22 = fixed_rho_variances(1.2, 0.7, 0.3, 0.0)

        assert s11 == 1.2
        assert s22 == 0.7

    def test_formula(self) -> None:
        i11, i22, i12, rho = 1.2, 0.7, 0.3, 0.4
        s11, s22 = fixed_rho_variances(i11, i22, i12, rho)

        np.testing.assert_allclose(
            s11, (i11 - rho * i12 * np.sqrt(i11 / i22)) / (1 - rho**2)
        )
        np.testing.assert_allclose(
            s22, (i22 - rho * i12 * np.sqrt(i22 / i11)) / (1 - rho**2)
        )

    def test_non_positive_moment(self) -> None:
        with pytest.raises(SingularModelError, match="second moment"):
            fixed_rho_variances(0.0, 1.0, 0.0, 0.5)


class TestCARUpdate:
    def test_free_rho(self, survey_dataset: EcoDataset) -> None:
        state = build_model_state(CARParameters.default(), survey_dataset)

        params = m_step_car(_car_stats(), state)

        assert params.mu1 == 0.5
        assert params.mu2 == -0.2
        np.testing.assert_allclose(params.sigma11, 1.0)
        np.testing.assert_allclose(params.sigma22, 0.76)
        np.testing.assert_allclose(params.rho, 0.2 / np.sqrt(0.76))

    def test_fixed_rho_is_held(self, survey_dataset: EcoDataset) -> None:
        start = CARParameters(
            mu1=0.0, mu2=0.0, sigma11=1.0, sigma22=1.0, rho=0.5
        )
        state = build_model_state(start, survey_dataset, fixed_rho=True)

        params = m_step_car(_car_stats(), state)

        assert params.rho == 0.5
        expected = fixed_rho_variances(1.0, 0.76, 0.2, 0.5)
        np.testing.assert_allclose(
            [params.sigma11, params.sigma22], expected
        )

    def test_hypothesis(self, survey_dataset: EcoDataset) -> None:
        state = build_model_state(CARParameters.default(), survey_dataset)
        hypothesis = LinearHypothesis(coefficients=(1.0, -1.0))

        params = m_step_car(_car_stats(), state, hypothesis)

        np.testing.assert_allclose(params.mu1, params.mu2)
        np.testing.assert_allclose(params.mu1, 0.15)

    def test_degenerate_statistics(self, survey_dataset: EcoDataset) -> None:
        """Zero spread means the update leaves the parameter space."""
        stats = SufficientStatistics(
            w1_star=0.5,
            w2_star=0.5,
            w1_star_sq=0.25,
            w2_star_sq=0.25,
            w1_star_w2_star=0.25,
        )
        state = build_model_state(CARParameters.default(), survey_dataset)

        with pytest.raises(SingularModelError):
            m_step_car(stats, state)

    def test_perfect_correlation(self, survey_dataset: EcoDataset) -> None:
        stats = SufficientStatistics(
            w1_star=0.0,
            w2_star=0.0,
            w1_star_sq=1.0,
            w2_star_sq=1.0,
            w1_star_w2_star=1.0,
        )
        state = build_model_state(CARParameters.default(), survey_dataset)

        with pytest.raises(SingularModelError, match="parameter space"):
            m_step_car(stats, state)


class TestNCARUpdate:
    def test_sample_moments(self, survey_dataset: EcoDataset) -> None:
        """Fully observed data gives the sample moments back."""
        lx = survey_dataset.covariate_logits
        start = NCARParameters.default().replace(
            mu3=float(lx.mean()), sigma3=float(lx.var())
        )
        state = build_model_state(start, survey_dataset)
        e_step = run_e_step(
            survey_dataset,
            state,
            IntegrationConfig(),
            get_quadrature(QuadratureConfig()),
        )

        params = m_step_ncar(e_step.statistics, state)

        s = _survey_logits(survey_dataset)
        assert params.mu3 == start.mu3
        assert params.sigma3 == start.sigma3
        np.testing.assert_allclose([params.mu1, params.mu2], s.mean(axis=0))
        np.testing.assert_allclose(
            [params.sigma1, params.sigma2], s.var(axis=0)
        )
        full = np.column_stack([s, lx])
        corr = np.corrcoef(full, rowvar=False)
        np.testing.assert_allclose(params.rho12, corr[0, 1])
        np.testing.assert_allclose(params.rho13, corr[0, 2])
        np.testing.assert_allclose(params.rho23, corr[1, 2])

    def test_missing_cross_moments(self, survey_dataset: EcoDataset) -> None:
        lx = survey_dataset.covariate_logits
        start = NCARParameters.default().replace(
            mu3=float(lx.mean()), sigma3=float(lx.var())
        )
        state = build_model_state(start, survey_dataset)

        with pytest.raises(SingularModelError, match="cross moments"):
            m_step_ncar(_car_stats(), state)


class TestRegressionUpdate:
    def test_regression_coefficients_ols(self) -> None:
        """With observed pairs WLS reduces to per-coordinate OLS."""
        lx = np.array([-1.0, 0.0, 1.0, 2.0])
        means = np.column_stack([1.0 + 0.5 * lx, -0.5 - 2.0 * lx])

        coefficients = regression_coefficients(means, lx, 0.0, np.eye(2))

        np.testing.assert_allclose(
            coefficients, [1.0, 0.5, -0.5, -2.0], atol=1e-12
        )

    def test_singular_design(self) -> None:
        lx = np.array([0.4, 0.4, 0.4])
        means = np.zeros((3, 2))

        with pytest.raises(SingularModelError, match="singular"):
            regression_coefficients(means, lx, 0.4, np.eye(2))

    def test_fixed_update_keeps_constants(
        self, survey_dataset: EcoDataset
    ) -> None:
        lx = survey_dataset.covariate_logits
        start = NCARRegressionParameters.default().replace(
            mu3=float(lx.mean()), sigma3=float(lx.var()), rho12_3=0.3
        )
        state = build_model_state(start, survey_dataset)
        e_step = run_e_step(
            survey_dataset,
            state,
            IntegrationConfig(),
            get_quadrature(QuadratureConfig()),
        )

        params = m_step(e_step, survey_dataset, state)

        assert isinstance(params, NCARRegressionParameters)
        assert params.rho12_3 == 0.3
        assert params.mu3 == start.mu3
        assert params.sigma3 == start.sigma3
        s = _survey_logits(survey_dataset)
        centred = lx - lx.mean()
        slope1 = np.sum(centred * s[:, 0]) / np.sum(centred**2)
        np.testing.assert_allclose(params.beta1, slope1)
        np.testing.assert_allclose(params.mu1, s[:, 0].mean())


class TestDispatch:
    def test_returns_same_parameterization(
        self, survey_dataset: EcoDataset
    ) -> None:
        state = build_model_state(CARParameters.default(), survey_dataset)
        e_step = run_e_step(
            survey_dataset,
            state,
            IntegrationConfig(),
            get_quadrature(QuadratureConfig()),
        )

        assert isinstance(
            m_step(e_step, survey_dataset, state), CARParameters
        )
