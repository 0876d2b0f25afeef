"""
Immutable model state derived from a parameter vector.

Every E-step reads a ModelState; every M-step produces new parameters from
which the driver builds the next state. SEM trial points build their own
states, so nothing is ever shared between the main fit and a trial.
"""

from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

from eco_em.core.data_models import EcoDataset
from eco_em.em.enums import ModelFlavor
from eco_em.em.exceptions import SingularModelError
from eco_em.em.parameters import (
    AnyParameters,
    CARParameters,
    NCARParameters,
    NCARRegressionParameters,
)


@dataclass(frozen=True)
class ModelState:
    """
    Covariances and unit means implied by the current parameters.

    Attributes:
        params: Natural parameters this state was built from.
        fixed_rho: Whether the latent correlation is held fixed.
        sigma: 2x2 covariance of (logit W1, logit W2). Under NCAR this is
            the covariance conditional on logit X.
        sigma_inv: Inverse of sigma.
        sigma3: NCAR only, 3x3 covariance of (logit W1, logit W2, logit X).
        sigma3_inv: NCAR only, inverse of sigma3.
        unit_means: Mean of (logit W1, logit W2) for every unit, shape
            (n_units, 2). Identical rows under CAR.
        version: Iteration that produced the parameters (0 = starting
            values).
    """

    params: AnyParameters
    fixed_rho: bool
    sigma: NDArray[np.float64]
    sigma_inv: NDArray[np.float64]
    sigma3: NDArray[np.float64] | None
    sigma3_inv: NDArray[np.float64] | None
    unit_means: NDArray[np.float64]
    version: int = 0

    @property
    def flavor(self) -> ModelFlavor:
        return self.params.FLAVOR

    @property
    def n_units(self) -> int:
        return self.unit_means.shape[0]

    @property
    def log_det_sigma(self) -> float:
        _, log_det = np.linalg.slogdet(self.sigma)
        return float(log_det)


def _checked_inverse(
    matrix: NDArray[np.float64], label: str
) -> NDArray[np.float64]:
    """
    Invert a covariance matrix after checking it is symmetric PD.

    Raises:
        SingularModelError: If the matrix is not finite, not symmetric or
            not positive definite.
    """
    if not np.all(np.isfinite(matrix)):
        raise SingularModelError(f"{label} has non-finite entries")
    if not np.allclose(matrix, matrix.T, rtol=1e-10, atol=1e-12):
        raise SingularModelError(f"{label} is not symmetric")
    try:
        np.linalg.cholesky(matrix)
    except np.linalg.LinAlgError as e:
        raise SingularModelError(f"{label} is not positive definite") from e
    inverse: NDArray[np.float64] = np.linalg.inv(matrix)
    return inverse


def covariance_2x2(
    var1: float, var2: float, rho: float
) -> NDArray[np.float64]:
    """Covariance matrix from two variances and a correlation."""
    cov = rho * np.sqrt(var1 * var2)
    return np.array([[var1, cov], [cov, var2]], dtype=np.float64)


def ncar_covariance(params: NCARParameters) -> NDArray[np.float64]:
    """3x3 covariance of (logit W1, logit W2, logit X), free correlations."""
    s1, s2, s3 = params.sigma1, params.sigma2, params.sigma3
    c12 = params.rho12 * np.sqrt(s1 * s2)
    c13 = params.rho13 * np.sqrt(s1 * s3)
    c23 = params.rho23 * np.sqrt(s2 * s3)
    return np.array(
        [[s1, c12, c13], [c12, s2, c23], [c13, c23, s3]], dtype=np.float64
    )


def ncar_regression_covariance(
    params: NCARRegressionParameters,
) -> NDArray[np.float64]:
    """
    3x3 covariance implied by the regression form.

    With W_k* = mu_k + beta_k (logit X - mu3) + e_k and Cov(e) built from
    the conditional variances and conditional correlation:
        Var(W_k*) = sigma_k|3 + beta_k^2 sigma3
        Cov(W_k*, logit X) = beta_k sigma3
        Cov(W1*, W2*) = rho12|3 sqrt(sigma1|3 sigma2|3) + beta1 beta2 sigma3
    """
    s3 = params.sigma3
    b1, b2 = params.beta1, params.beta2
    c12 = params.rho12_3 * np.sqrt(params.sigma1_3 * params.sigma2_3)
    return np.array(
        [
            [params.sigma1_3 + b1 * b1 * s3, c12 + b1 * b2 * s3, b1 * s3],
            [c12 + b1 * b2 * s3, params.sigma2_3 + b2 * b2 * s3, b2 * s3],
            [b1 * s3, b2 * s3, s3],
        ],
        dtype=np.float64,
    )


def conditional_covariance(
    sigma3: NDArray[np.float64],
) -> NDArray[np.float64]:
    """
    Covariance of (W1*, W2*) given logit X (Schur complement).

    Sigma_ij = Sigma3_ij - Sigma3_i3 Sigma3_j3 / Sigma3_33
    """
    cross = sigma3[:2, 2]
    result: NDArray[np.float64] = (
        sigma3[:2, :2] - np.outer(cross, cross) / sigma3[2, 2]
    )
    return result


def build_model_state(
    params: AnyParameters,
    dataset: EcoDataset,
    fixed_rho: bool = False,
    version: int = 0,
) -> ModelState:
    """
    Derive covariances and unit means from natural parameters.

    Args:
        params: Natural parameters.
        dataset: Units the means are computed for.
        fixed_rho: Whether the correlation is held fixed. Ignored under
            NCAR, where the parameterization already says so.
        version: Iteration number recorded on the state.

    Returns:
        A new ModelState.

    Raises:
        SingularModelError: If a covariance is not positive definite.
    """
    match params:
        case CARParameters():
            sigma = covariance_2x2(params.sigma11, params.sigma22, params.rho)
            sigma_inv = _checked_inverse(sigma, "Sigma")
            unit_means = np.tile(
                np.array([params.mu1, params.mu2], dtype=np.float64),
                (dataset.n_units, 1),
            )
            return ModelState(
                params=params,
                fixed_rho=fixed_rho,
                sigma=sigma,
                sigma_inv=sigma_inv,
                sigma3=None,
                sigma3_inv=None,
                unit_means=unit_means,
                version=version,
            )
        case NCARParameters():
            sigma3 = ncar_covariance(params)
        case NCARRegressionParameters():
            sigma3 = ncar_regression_covariance(params)

    sigma3_inv = _checked_inverse(sigma3, "Sigma3")
    sigma = conditional_covariance(sigma3)
    # Symmetrize away rounding from the Schur complement
    sigma = 0.5 * (sigma + sigma.T)
    sigma_inv = _checked_inverse(sigma, "conditional Sigma")

    slopes = sigma3[:2, 2] / sigma3[2, 2]
    centred = dataset.covariate_logits - params.mu3
    unit_means = (
        np.array([params.mu1, params.mu2], dtype=np.float64)[np.newaxis, :]
        + centred[:, np.newaxis] * slopes[np.newaxis, :]
    )

    return ModelState(
        params=params,
        fixed_rho=params.FIXED_RHO is True,
        sigma=sigma,
        sigma_inv=sigma_inv,
        sigma3=sigma3,
        sigma3_inv=sigma3_inv,
        unit_means=unit_means,
        version=version,
    )
