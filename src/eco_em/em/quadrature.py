"""
Gauss-Hermite quadrature over a univariate normal.

Used to carry a homogeneous area's closed-form logit-scale posterior back to
the natural (proportion) scale, E[expit(Z)] for Z ~ N(mean, std^2).
"""

from collections.abc import Callable
from dataclasses import dataclass
from functools import lru_cache

import numpy as np
from numpy.typing import NDArray

from eco_em.em.config import QuadratureConfig


@dataclass(frozen=True)
class GaussHermiteQuadrature:
    """
    Gauss-Hermite quadrature points and weights for N(0, 1).

    Attributes:
        points: Quadrature points, shape (n_points,).
        weights: Quadrature weights (probabilities), shape (n_points,).
            Weights sum to 1.
    """

    points: NDArray[np.float64]
    weights: NDArray[np.float64]

    @property
    def n_points(self) -> int:
        """Number of quadrature points."""
        return len(self.points)

    def expectation(
        self,
        func: Callable[[NDArray[np.float64]], NDArray[np.float64]],
        mean: float = 0.0,
        std: float = 1.0,
    ) -> float:
        """E[func(Z)] for Z ~ N(mean, std^2)."""
        return float(np.sum(self.weights * func(mean + std * self.points)))


@lru_cache(maxsize=16)
def _standard_rule(
    n_points: int,
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    # Physicists' rule integrates exp(-x^2); rescale to the standard normal
    x_phys, w_phys = np.polynomial.hermite.hermgauss(n_points)
    x_prob = np.sqrt(2.0) * x_phys
    w_prob = w_phys / np.sqrt(np.pi)
    return x_prob, w_prob / w_prob.sum()


def get_quadrature(config: QuadratureConfig) -> GaussHermiteQuadrature:
    """
    Standard normal Gauss-Hermite rule with the configured number of points.

    Nodes and weights are cached per size; the returned arrays are copies.

    Args:
        config: Quadrature configuration specifying the number of points.

    Returns:
        GaussHermiteQuadrature for the standard normal.
    """
    x_prob, weights = _standard_rule(config.n_points)

    return GaussHermiteQuadrature(
        points=x_prob.astype(np.float64),
        weights=weights.astype(np.float64),
    )
