"""
Core numeric helpers shared across the estimation modules.

Thin wrappers over scipy's logistic functions plus the clamping rules
applied to observed proportions when data is loaded.
"""

import numpy as np
from numpy.typing import ArrayLike, NDArray
from scipy.special import expit as _expit
from scipy.special import logit as _logit

from eco_em.core.constants import EDGE_LOWER, EDGE_UPPER


def logit(p: ArrayLike) -> NDArray[np.float64]:
    """
    Log-odds transform, log(p / (1 - p)).

    Args:
        p: Proportions in (0, 1). Values of exactly 0 or 1 map to -inf / inf.

    Returns:
        Array of log-odds with the same shape as p.
    """
    result: NDArray[np.float64] = np.asarray(
        _logit(np.asarray(p, dtype=np.float64)), dtype=np.float64
    )
    return result


def expit(z: ArrayLike) -> NDArray[np.float64]:
    """Inverse of logit."""
    result: NDArray[np.float64] = np.asarray(
        _expit(np.asarray(z, dtype=np.float64)), dtype=np.float64
    )
    return result


def clamp_covariate(x: float) -> float:
    """
    Pull a covariate proportion strictly inside (0, 1).

    Values at or beyond the edges become EDGE_LOWER / EDGE_UPPER so that
    the tomography line and logit(X) stay well defined.
    """
    if x >= 1.0:
        return EDGE_UPPER
    if x <= 0.0:
        return EDGE_LOWER
    return float(x)


def clamp_observed_proportion(w: float) -> float:
    """Replace an observed latent proportion of exactly 0 or 1."""
    if w == 1.0:
        return EDGE_UPPER
    if w == 0.0:
        return EDGE_LOWER
    return float(w)
