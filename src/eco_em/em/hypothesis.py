"""
Projection of the latent means onto a linear hypothesis.

For a constraint c' mu = t and covariance Sigma, the constrained maximizer
of the complete-data likelihood is

    mu <- mu - Sigma c (c' mu - t) / (c' Sigma c)
"""

import numpy as np
from numpy.typing import ArrayLike, NDArray

from eco_em.em.config import LinearHypothesis
from eco_em.em.exceptions import SingularModelError


def apply_linear_hypothesis(
    means: ArrayLike,
    sigma: NDArray[np.float64],
    hypothesis: LinearHypothesis,
) -> NDArray[np.float64]:
    """
    Correct (mu1, mu2) so that the hypothesis holds exactly.

    Args:
        means: Unconstrained (mu1, mu2).
        sigma: Current 2x2 covariance of (logit W1, logit W2).
        hypothesis: The constraint.

    Returns:
        Corrected means, shape (2,).

    Raises:
        SingularModelError: If c' Sigma c is not positive.
    """
    mu = np.asarray(means, dtype=np.float64).ravel()
    c = np.asarray(hypothesis.coefficients, dtype=np.float64)
    sigma_c = sigma @ c
    denom = float(c @ sigma_c)
    if not denom > 0:
        raise SingularModelError(
            f"hypothesis variance c'Sigma c = {denom} is not positive"
        )
    corrected: NDArray[np.float64] = (
        mu - sigma_c * (float(c @ mu) - hypothesis.target) / denom
    )
    return corrected
