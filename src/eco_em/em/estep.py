"""
E-step: posterior moments per unit and their reduction to sufficient
statistics.

Each unit kind has its own posterior:
- Regular units: the latent pair is integrated along the tomography line,
  except near Y = 0 or 1 where the line collapses to a point.
- X1-homogeneous areas observe W1; W2* given W1* is normal in closed form.
- X0-homogeneous areas observe W2; symmetric to the above.
- Survey rows observe both coordinates.
"""

import logging
import math

import numpy as np
from numpy.typing import NDArray
from scipy.stats import multivariate_normal, norm

from eco_em.core.constants import EDGE_LOWER, EDGE_UPPER
from eco_em.core.data_models import (
    EcoDataset,
    HomogeneousX0Unit,
    HomogeneousX1Unit,
    RegularUnit,
    SurveyUnit,
    Unit,
)
from eco_em.core.utils import expit
from eco_em.em.config import IntegrationConfig
from eco_em.em.data_models import (
    DiagnosticCounts,
    EStepResult,
    SufficientStatistics,
    UnitExpectation,
)
from eco_em.em.enums import ModelFlavor, Moment
from eco_em.em.model_state import ModelState
from eco_em.em.parameters import NCARRegressionParameters
from eco_em.em.quadrature import GaussHermiteQuadrature
from eco_em.em.tomography import (
    posterior_moments,
    prepare_line_posterior,
    tomography_line,
)

logger = logging.getLogger(__name__)


def _logit_jacobian(w: float) -> float:
    """log |d logit(w) / dw| = -log(w (1 - w))."""
    return -(math.log(w) + math.log1p(-w))


def _product_moments(s1: float, s2: float) -> NDArray[np.float64]:
    return np.array([s1, s2, s1 * s1, s1 * s2, s2 * s2], dtype=np.float64)


def _pair_log_likelihood(
    w1: float,
    w2: float,
    mean: NDArray[np.float64],
    sigma: NDArray[np.float64],
) -> float:
    """log density of an observed (W1, W2) pair on the proportion scale."""
    s = np.array(
        [math.log(w1) - math.log1p(-w1), math.log(w2) - math.log1p(-w2)]
    )
    return float(
        multivariate_normal.logpdf(s, mean=mean, cov=sigma)
        + _logit_jacobian(w1)
        + _logit_jacobian(w2)
    )


def _regular_expectation(
    unit: RegularUnit,
    mean: NDArray[np.float64],
    state: ModelState,
    log_det_sigma: float,
    config: IntegrationConfig,
    compute_log_likelihood: bool,
) -> UnitExpectation:
    edge = config.edge_threshold
    if unit.y <= edge or unit.y >= 1.0 - edge:
        # The tomography line degenerates to (nearly) a point
        y = min(max(unit.y, EDGE_LOWER), EDGE_UPPER)
        s = math.log(y) - math.log1p(-y)
        log_likelihood = None
        if compute_log_likelihood:
            log_likelihood = _pair_log_likelihood(y, y, mean, state.sigma)
        return UnitExpectation(
            moments=_product_moments(s, s),
            natural_mean=np.array([unit.y, unit.y], dtype=np.float64),
            log_likelihood=log_likelihood,
        )

    line = tomography_line(unit.x, unit.y)
    posterior = prepare_line_posterior(
        line, mean, state.sigma_inv, log_det_sigma, config
    )
    values = posterior_moments(posterior, config)

    e_w1, e_w2 = values[Moment.W1], values[Moment.W2]
    mismatch = bool(
        abs(e_w1 - float(line.w1_from_w2(e_w2))) > config.tomography_tolerance
    )
    jensen = bool(
        values[Moment.W1_STAR_SQ] < values[Moment.W1_STAR] ** 2
        or values[Moment.W2_STAR_SQ] < values[Moment.W2_STAR] ** 2
    )
    mass = bool(abs(values[Moment.MASS] - 1.0) > config.mass_tolerance)

    if mismatch:
        logger.warning(
            f"Posterior mean off tomography line: X={unit.x:.4g}, "
            f"Y={unit.y:.4g}, E[W1]={e_w1:.4g}, E[W2]={e_w2:.4g}"
        )
    if jensen:
        logger.warning(
            f"Jensen's inequality violated: X={unit.x:.4g}, Y={unit.y:.4g}, "
            f"moments={values[:5]}"
        )
    if mass:
        logger.warning(
            f"Posterior mass {values[Moment.MASS]:.6g} for X={unit.x:.4g}, "
            f"Y={unit.y:.4g}"
        )

    return UnitExpectation(
        moments=values[: Moment.W1].copy(),
        natural_mean=np.array([e_w1, e_w2], dtype=np.float64),
        log_likelihood=(
            posterior.log_likelihood if compute_log_likelihood else None
        ),
        tomography_mismatch=mismatch,
        jensen_violation=jensen,
        mass_deviation=mass,
    )


def _homogeneous_expectation(
    observed: float,
    observed_index: int,
    mean: NDArray[np.float64],
    sigma: NDArray[np.float64],
    quadrature: GaussHermiteQuadrature,
    compute_log_likelihood: bool,
) -> UnitExpectation:
    """
    Closed-form posterior for an area where one coordinate is observed.

    With the observed logit w and latent index j:
        E[W_j* | w] = mu_j + (S_jk / S_kk) (w - mu_k)
        Var[W_j* | w] = S_jj - S_jk^2 / S_kk
    """
    k, j = observed_index, 1 - observed_index
    w = math.log(observed) - math.log1p(-observed)
    m = mean[j] + sigma[j, k] / sigma[k, k] * (w - mean[k])
    v = max(sigma[j, j] - sigma[j, k] ** 2 / sigma[k, k], 0.0)
    latent_natural = quadrature.expectation(expit, mean=m, std=math.sqrt(v))

    log_likelihood = None
    if compute_log_likelihood:
        log_likelihood = float(
            norm.logpdf(w, loc=mean[k], scale=math.sqrt(sigma[k, k]))
            + _logit_jacobian(observed)
        )

    # Latent second moment is m^2 + v, not the plug-in m * m
    if observed_index == 0:
        moments = np.array([w, m, w * w, w * m, m * m + v], dtype=np.float64)
        natural = [observed, latent_natural]
    else:
        moments = np.array([m, w, m * m + v, m * w, w * w], dtype=np.float64)
        natural = [latent_natural, observed]

    return UnitExpectation(
        moments=moments,
        natural_mean=np.array(natural, dtype=np.float64),
        log_likelihood=log_likelihood,
    )


def compute_unit_expectation(
    unit: Unit,
    mean: NDArray[np.float64],
    state: ModelState,
    config: IntegrationConfig,
    quadrature: GaussHermiteQuadrature,
    compute_log_likelihood: bool = False,
    log_det_sigma: float | None = None,
) -> UnitExpectation:
    """
    Posterior moments of one unit's latent pair.

    Args:
        unit: The observational unit.
        mean: The unit's mean of (logit W1, logit W2).
        state: Current model state (covariance).
        config: Integration settings.
        quadrature: Standard normal Gauss-Hermite rule for homogeneous
            areas.
        compute_log_likelihood: Also return the unit's log-likelihood.
        log_det_sigma: log |Sigma|, computed from the state when omitted.

    Returns:
        UnitExpectation for the unit.

    Raises:
        SingularModelError: If a regular unit's posterior cannot be
            normalized.
    """
    if log_det_sigma is None:
        log_det_sigma = state.log_det_sigma

    match unit:
        case RegularUnit():
            return _regular_expectation(
                unit,
                mean,
                state,
                log_det_sigma,
                config,
                compute_log_likelihood,
            )
        case HomogeneousX1Unit(w1=w1):
            return _homogeneous_expectation(
                w1, 0, mean, state.sigma, quadrature, compute_log_likelihood
            )
        case HomogeneousX0Unit(w2=w2):
            return _homogeneous_expectation(
                w2, 1, mean, state.sigma, quadrature, compute_log_likelihood
            )
        case SurveyUnit(w1=w1, w2=w2):
            s1 = math.log(w1) - math.log1p(-w1)
            s2 = math.log(w2) - math.log1p(-w2)
            log_likelihood = None
            if compute_log_likelihood:
                log_likelihood = _pair_log_likelihood(
                    w1, w2, mean, state.sigma
                )
            return UnitExpectation(
                moments=_product_moments(s1, s2),
                natural_mean=np.array([w1, w2], dtype=np.float64),
                log_likelihood=log_likelihood,
            )


def residualize_moments(
    moments: NDArray[np.float64],
    covariate_logits: NDArray[np.float64],
    params: NCARRegressionParameters,
) -> NDArray[np.float64]:
    """
    Moments of W~_k = W_k* - beta_k (logit X - mu3), per unit.

    Args:
        moments: Per-unit moments, shape (n_units, 5), Moment order.
        covariate_logits: logit X per unit, shape (n_units,).
        params: Current regression parameters (betas and mu3).

    Returns:
        Residualized moments, shape (n_units, 5).
    """
    centred = covariate_logits - params.mu3
    c1 = params.beta1 * centred
    c2 = params.beta2 * centred
    e1 = moments[:, Moment.W1_STAR]
    e2 = moments[:, Moment.W2_STAR]
    return np.column_stack(
        [
            e1 - c1,
            e2 - c2,
            moments[:, Moment.W1_STAR_SQ] - 2.0 * c1 * e1 + c1 * c1,
            moments[:, Moment.W1_STAR_W2_STAR] - c1 * e2 - c2 * e1 + c1 * c2,
            moments[:, Moment.W2_STAR_SQ] - 2.0 * c2 * e2 + c2 * c2,
        ]
    )


def aggregate_sufficient_statistics(
    units: tuple[UnitExpectation, ...],
    dataset: EcoDataset,
    state: ModelState,
    include_log_likelihood: bool = False,
    log_likelihood_mask: NDArray[np.bool_] | None = None,
) -> SufficientStatistics:
    """
    Reduce per-unit expectations to population averages.

    Args:
        units: Per-unit expectations in dataset order.
        dataset: The dataset (for the divisor and covariates).
        state: State the expectations were computed at.
        include_log_likelihood: Sum the unit log-likelihoods into the
            log-likelihood slot.
        log_likelihood_mask: Units whose log-likelihood is summed; all
            units when omitted.

    Returns:
        SufficientStatistics normalized by the total number of units.
    """
    moments = np.stack([u.moments for u in units])
    n = dataset.n_units

    cross: tuple[float | None, float | None] = (None, None)
    if state.flavor == ModelFlavor.NCAR:
        lx = dataset.covariate_logits
        cross = (
            float(np.sum(moments[:, Moment.W1_STAR] * lx) / n),
            float(np.sum(moments[:, Moment.W2_STAR] * lx) / n),
        )
        if isinstance(state.params, NCARRegressionParameters):
            moments = residualize_moments(moments, lx, state.params)

    averages = moments.sum(axis=0) / n

    log_likelihood = None
    if include_log_likelihood:
        mask = (
            np.ones(len(units), dtype=np.bool_)
            if log_likelihood_mask is None
            else log_likelihood_mask
        )
        contributions = [
            u.log_likelihood
            for u, keep in zip(units, mask, strict=True)
            if keep and u.log_likelihood is not None
        ]
        log_likelihood = float(math.fsum(contributions))

    return SufficientStatistics(
        w1_star=float(averages[Moment.W1_STAR]),
        w2_star=float(averages[Moment.W2_STAR]),
        w1_star_sq=float(averages[Moment.W1_STAR_SQ]),
        w2_star_sq=float(averages[Moment.W2_STAR_SQ]),
        w1_star_w2_star=float(averages[Moment.W1_STAR_W2_STAR]),
        w1_star_x_star=cross[0],
        w2_star_x_star=cross[1],
        log_likelihood=log_likelihood,
    )


def run_e_step(
    dataset: EcoDataset,
    state: ModelState,
    config: IntegrationConfig,
    quadrature: GaussHermiteQuadrature,
    compute_log_likelihood: bool = False,
    regular_only_log_likelihood: bool = False,
) -> EStepResult:
    """
    Run one E-step over every unit.

    Args:
        dataset: Units to process.
        state: Current model state.
        config: Integration settings.
        quadrature: Standard normal Gauss-Hermite rule.
        compute_log_likelihood: Fill the log-likelihood slot.
        regular_only_log_likelihood: Sum the log-likelihood over regular
            units only.

    Returns:
        EStepResult with per-unit expectations, statistics and diagnostic
        counts.
    """
    log_det_sigma = state.log_det_sigma
    units = tuple(
        compute_unit_expectation(
            unit,
            state.unit_means[i],
            state,
            config,
            quadrature,
            compute_log_likelihood=compute_log_likelihood,
            log_det_sigma=log_det_sigma,
        )
        for i, unit in enumerate(dataset.units)
    )

    statistics = aggregate_sufficient_statistics(
        units,
        dataset,
        state,
        include_log_likelihood=compute_log_likelihood,
        log_likelihood_mask=(
            dataset.regular_mask if regular_only_log_likelihood else None
        ),
    )
    diagnostics = DiagnosticCounts(
        tomography_mismatch=sum(u.tomography_mismatch for u in units),
        jensen_violation=sum(u.jensen_violation for u in units),
        mass_deviation=sum(u.mass_deviation for u in units),
    )
    if diagnostics.total:
        logger.debug(f"E-step diagnostics: {diagnostics}")

    return EStepResult(
        units=units, statistics=statistics, diagnostics=diagnostics
    )
