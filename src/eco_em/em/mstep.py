"""
M-step: closed-form parameter updates from the E-step's statistics.

Notation: S0..S4 are the averaged E[W1*], E[W2*], E[W1*^2], E[W2*^2] and
E[W1* W2*]. Under NCAR, XW1 and XW2 are E[W1* logit X] and E[W2* logit X].
"""

import logging
import math
from typing import TypeVar

import numpy as np
from numpy.typing import NDArray
from pydantic import ValidationError

from eco_em.core.data_models import EcoDataset
from eco_em.em.config import LinearHypothesis
from eco_em.em.data_models import EStepResult, SufficientStatistics
from eco_em.em.exceptions import SingularModelError
from eco_em.em.hypothesis import apply_linear_hypothesis
from eco_em.em.model_state import ModelState
from eco_em.em.parameters import (
    AnyParameters,
    CARParameters,
    ModelParameters,
    NCARParameters,
    NCARRegressionParameters,
)

logger = logging.getLogger(__name__)

P = TypeVar("P", bound=ModelParameters)


def _validated(
    parameter_type: type[P], **values: float
) -> P:
    """Build parameters; range violations become SingularModelError."""
    try:
        return parameter_type(**values)
    except ValidationError as e:
        raise SingularModelError(
            f"M-step left the parameter space of {parameter_type.__name__}: "
            f"{e.errors()[0]['msg']}"
        ) from e


def _updated_means(
    stats: SufficientStatistics,
    state: ModelState,
    hypothesis: LinearHypothesis | None,
) -> tuple[float, float]:
    mu = np.array([stats.w1_star, stats.w2_star], dtype=np.float64)
    if hypothesis is not None:
        mu = apply_linear_hypothesis(mu, state.sigma, hypothesis)
    return float(mu[0]), float(mu[1])


def _centred_moments(
    stats: SufficientStatistics, mu1: float, mu2: float
) -> tuple[float, float, float]:
    """Second moments about (mu1, mu2): (I11, I22, I12)."""
    s0, s1 = stats.w1_star, stats.w2_star
    i11 = stats.w1_star_sq - 2.0 * s0 * mu1 + mu1 * mu1
    i22 = stats.w2_star_sq - 2.0 * s1 * mu2 + mu2 * mu2
    i12 = stats.w1_star_w2_star - s0 * mu2 - s1 * mu1 + mu1 * mu2
    return i11, i22, i12


def _correlation(cov: float, var1: float, var2: float) -> float:
    if not (var1 > 0 and var2 > 0):
        raise SingularModelError(
            f"non-positive variance in M-step: {var1}, {var2}"
        )
    return cov / math.sqrt(var1 * var2)


def fixed_rho_variances(
    i11: float, i22: float, i12: float, rho: float
) -> tuple[float, float]:
    """
    Variances maximizing the complete-data likelihood at a fixed rho.

        s11 = (I11 - rho I12 sqrt(I11 / I22)) / (1 - rho^2)
        s22 = (I22 - rho I12 sqrt(I22 / I11)) / (1 - rho^2)
    """
    if not (i11 > 0 and i22 > 0):
        raise SingularModelError(
            f"non-positive second moment in M-step: {i11}, {i22}"
        )
    scale = 1.0 - rho * rho
    s11 = (i11 - rho * i12 * math.sqrt(i11 / i22)) / scale
    s22 = (i22 - rho * i12 * math.sqrt(i22 / i11)) / scale
    return s11, s22


def m_step_car(
    stats: SufficientStatistics,
    state: ModelState,
    hypothesis: LinearHypothesis | None = None,
) -> CARParameters:
    """
    CAR update.

    Args:
        stats: Sufficient statistics from the E-step.
        state: State the E-step ran at (current Sigma, held rho).
        hypothesis: Optional linear constraint on the means.

    Returns:
        New CAR parameters.

    Raises:
        SingularModelError: If the update leaves the parameter space.
    """
    assert isinstance(state.params, CARParameters)
    mu1, mu2 = _updated_means(stats, state, hypothesis)
    i11, i22, i12 = _centred_moments(stats, mu1, mu2)

    if state.fixed_rho:
        rho = state.params.rho
        sigma11, sigma22 = fixed_rho_variances(i11, i22, i12, rho)
    else:
        sigma11, sigma22 = i11, i22
        rho = _correlation(i12, i11, i22)

    return _validated(
        CARParameters,
        mu1=mu1,
        mu2=mu2,
        sigma11=sigma11,
        sigma22=sigma22,
        rho=rho,
    )


def m_step_ncar(
    stats: SufficientStatistics,
    state: ModelState,
    hypothesis: LinearHypothesis | None = None,
) -> NCARParameters:
    """
    NCAR update with a free correlation.

    mu3 and sigma3 are carried over unchanged.
    """
    params = state.params
    assert isinstance(params, NCARParameters)
    if stats.w1_star_x_star is None or stats.w2_star_x_star is None:
        raise SingularModelError("NCAR M-step needs covariate cross moments")

    mu1, mu2 = _updated_means(stats, state, hypothesis)
    sigma1, sigma2, cov12 = _centred_moments(stats, mu1, mu2)
    rho12 = _correlation(cov12, sigma1, sigma2)
    cov13 = stats.w1_star_x_star - params.mu3 * stats.w1_star
    cov23 = stats.w2_star_x_star - params.mu3 * stats.w2_star

    return _validated(
        NCARParameters,
        mu3=params.mu3,
        mu1=mu1,
        mu2=mu2,
        sigma3=params.sigma3,
        sigma1=sigma1,
        sigma2=sigma2,
        rho13=_correlation(cov13, sigma1, params.sigma3),
        rho23=_correlation(cov23, sigma2, params.sigma3),
        rho12=rho12,
    )


def regression_coefficients(
    logit_means: NDArray[np.float64],
    covariate_logits: NDArray[np.float64],
    mu3: float,
    sigma_inv: NDArray[np.float64],
) -> NDArray[np.float64]:
    """
    Weighted least squares for (mu1, beta1, mu2, beta2).

    Every unit contributes Z_i' Sigma^-1 Z_i and Z_i' Sigma^-1 E[W_i*] with
    Z_i = [[1, c_i, 0, 0], [0, 0, 1, c_i]] and c_i = logit X_i - mu3.

    Raises:
        SingularModelError: If the normal equations are singular.
    """
    denom = np.zeros((4, 4), dtype=np.float64)
    numer = np.zeros(4, dtype=np.float64)
    for mean_i, lx in zip(logit_means, covariate_logits, strict=True):
        c = lx - mu3
        z = np.array([[1.0, c, 0.0, 0.0], [0.0, 0.0, 1.0, c]])
        weighted = z.T @ sigma_inv
        denom += weighted @ z
        numer += weighted @ mean_i

    try:
        coefficients = np.linalg.solve(denom, numer)
    except np.linalg.LinAlgError as e:
        raise SingularModelError(
            "regression on the covariate is singular "
            "(covariate logits have no spread)"
        ) from e
    if not np.all(np.isfinite(coefficients)):
        raise SingularModelError(
            f"non-finite regression coefficients {coefficients}"
        )
    result: NDArray[np.float64] = coefficients
    return result


def m_step_ncar_fixed(
    e_step: EStepResult,
    dataset: EcoDataset,
    state: ModelState,
    hypothesis: LinearHypothesis | None = None,
) -> NCARRegressionParameters:
    """
    NCAR update with the conditional correlation held fixed.

    Intercepts and slopes come from weighted least squares on the per-unit
    posterior means; conditional variances from the residualized moments
    the aggregator produced.
    """
    params = state.params
    assert isinstance(params, NCARRegressionParameters)

    mu1, beta1, mu2, beta2 = regression_coefficients(
        e_step.logit_means,
        dataset.covariate_logits,
        params.mu3,
        state.sigma_inv,
    )
    if hypothesis is not None:
        mu1, mu2 = apply_linear_hypothesis(
            [mu1, mu2], state.sigma, hypothesis
        )

    i11, i22, i12 = _centred_moments(e_step.statistics, mu1, mu2)
    sigma1_3, sigma2_3 = fixed_rho_variances(i11, i22, i12, params.rho12_3)

    return _validated(
        NCARRegressionParameters,
        mu3=params.mu3,
        mu1=float(mu1),
        mu2=float(mu2),
        sigma3=params.sigma3,
        sigma1_3=sigma1_3,
        sigma2_3=sigma2_3,
        beta1=float(beta1),
        beta2=float(beta2),
        rho12_3=params.rho12_3,
    )


def m_step(
    e_step: EStepResult,
    dataset: EcoDataset,
    state: ModelState,
    hypothesis: LinearHypothesis | None = None,
) -> AnyParameters:
    """
    Dispatch to the update for the state's parameterization.

    Args:
        e_step: Result of the E-step run at `state`.
        dataset: The fitted units.
        state: Current model state.
        hypothesis: Optional linear constraint on the means.

    Returns:
        New natural parameters of the same type as state.params.
    """
    new_params: AnyParameters
    match state.params:
        case CARParameters():
            new_params = m_step_car(e_step.statistics, state, hypothesis)
        case NCARParameters():
            new_params = m_step_ncar(e_step.statistics, state, hypothesis)
        case NCARRegressionParameters():
            new_params = m_step_ncar_fixed(e_step, dataset, state, hypothesis)
    logger.debug(f"M-step: {new_params}")
    return new_params
