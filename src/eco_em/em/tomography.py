"""
Posterior of a regular unit's latent pair along its tomography line.

A regular unit observes only the marginals (X, Y). The latent pair satisfies
Y = X W1 + (1 - X) W2, so it lives on a line segment in the unit square,
parameterized here by W1:

    W2(W1) = (Y - X W1) / (1 - X)
    W1 in [max(0, (Y - (1 - X)) / X), min(1, Y / X)]

With (logit W1, logit W2) ~ N(mu, Sigma), the density of W1 on the line is
proportional to

    N([logit W1, logit W2]; mu, Sigma) / (W1 (1 - W1) W2 (1 - W2))

This module provides the bounds, the normalizing constant, expectations of
moment functions under that posterior and the unit's log-likelihood. Integrals
are computed with scipy's adaptive quadrature after shifting the log density
by its maximum on a search grid, so tight posteriors do not underflow.
"""

import math
from dataclasses import dataclass

import numpy as np
from numpy.typing import ArrayLike, NDArray
from scipy.integrate import quad, quad_vec

from eco_em.em.config import IntegrationConfig
from eco_em.em.enums import Moment
from eco_em.em.exceptions import SingularModelError

LOG_2PI = math.log(2.0 * math.pi)
N_MOMENTS = len(Moment)


@dataclass(frozen=True)
class TomographyLine:
    """
    Feasible segment of (W1, W2) for one unit.

    Attributes:
        x: Covariate proportion, strictly inside (0, 1).
        y: Target proportion.
        lower: Smallest feasible W1.
        upper: Largest feasible W1.
    """

    x: float
    y: float
    lower: float
    upper: float

    @property
    def width(self) -> float:
        return self.upper - self.lower

    def w2_from_w1(self, w1: ArrayLike) -> NDArray[np.float64]:
        result: NDArray[np.float64] = (
            self.y - self.x * np.asarray(w1, dtype=np.float64)
        ) / (1.0 - self.x)
        return result

    def w1_from_w2(self, w2: ArrayLike) -> NDArray[np.float64]:
        result: NDArray[np.float64] = (
            self.y - (1.0 - self.x) * np.asarray(w2, dtype=np.float64)
        ) / self.x
        return result


def tomography_line(x: float, y: float) -> TomographyLine:
    """
    Bounds of W1 on the unit's tomography line.

    Args:
        x: Covariate proportion in (0, 1).
        y: Target proportion in [0, 1].

    Returns:
        TomographyLine with the feasible W1 range.
    """
    lower = max(0.0, (y - (1.0 - x)) / x)
    upper = min(1.0, y / x)
    return TomographyLine(x=x, y=y, lower=lower, upper=upper)


@dataclass(frozen=True)
class LinePosterior:
    """
    A unit's posterior on its tomography line, ready to integrate.

    Attributes:
        line: The tomography line.
        mean: Unit mean of (logit W1, logit W2).
        sigma_inv: Inverse covariance of (logit W1, logit W2).
        log_det_sigma: log |Sigma|.
        mode: W1 at the largest density found on the search grid.
        shift: Log density at the mode; integrands are exp(log f - shift).
        shifted_norm_const: Integral of exp(log f - shift) over the line.
    """

    line: TomographyLine
    mean: NDArray[np.float64]
    sigma_inv: NDArray[np.float64]
    log_det_sigma: float
    mode: float
    shift: float
    shifted_norm_const: float

    @property
    def log_norm_const(self) -> float:
        """log of the integral of the (unshifted) density over the line."""
        return self.shift + math.log(self.shifted_norm_const)

    @property
    def log_likelihood(self) -> float:
        """
        log p(Y | X, mu, Sigma).

        Y = X W1 + (1 - X) W2, so for fixed W1 the density of Y is the
        density of W2 divided by (1 - X).
        """
        return self.log_norm_const - math.log1p(-self.line.x)

    def scaled_density(self, w1: float) -> float:
        """exp(log f(w1) - shift), zero outside the open unit square."""
        w2 = (self.line.y - self.line.x * w1) / (1.0 - self.line.x)
        if not (0.0 < w1 < 1.0 and 0.0 < w2 < 1.0):
            return 0.0
        return math.exp(
            _scalar_log_density(
                w1, w2, self.mean, self.sigma_inv, self.log_det_sigma
            )
            - self.shift
        )


def _scalar_log_density(
    w1: float,
    w2: float,
    mean: NDArray[np.float64],
    sigma_inv: NDArray[np.float64],
    log_det_sigma: float,
) -> float:
    log_w1, log_1mw1 = math.log(w1), math.log1p(-w1)
    log_w2, log_1mw2 = math.log(w2), math.log1p(-w2)
    z1 = log_w1 - log_1mw1 - mean[0]
    z2 = log_w2 - log_1mw2 - mean[1]
    quad_form = (
        sigma_inv[0, 0] * z1 * z1
        + 2.0 * sigma_inv[0, 1] * z1 * z2
        + sigma_inv[1, 1] * z2 * z2
    )
    return float(
        -LOG_2PI
        - 0.5 * log_det_sigma
        - 0.5 * quad_form
        - log_w1
        - log_1mw1
        - log_w2
        - log_1mw2
    )


def line_log_density(
    w1: ArrayLike,
    line: TomographyLine,
    mean: NDArray[np.float64],
    sigma_inv: NDArray[np.float64],
    log_det_sigma: float,
) -> NDArray[np.float64]:
    """
    Unnormalized log density of W1 on the line (vectorized).

    Points whose (W1, W2) fall outside the open unit square get -inf.
    """
    w1_arr = np.atleast_1d(np.asarray(w1, dtype=np.float64))
    w2_arr = line.w2_from_w1(w1_arr)
    inside = (w1_arr > 0) & (w1_arr < 1) & (w2_arr > 0) & (w2_arr < 1)

    result = np.full(w1_arr.shape, -np.inf, dtype=np.float64)
    a, b = w1_arr[inside], w2_arr[inside]
    log_a, log_1ma = np.log(a), np.log1p(-a)
    log_b, log_1mb = np.log(b), np.log1p(-b)
    z1 = log_a - log_1ma - mean[0]
    z2 = log_b - log_1mb - mean[1]
    quad_form = (
        sigma_inv[0, 0] * z1 * z1
        + 2.0 * sigma_inv[0, 1] * z1 * z2
        + sigma_inv[1, 1] * z2 * z2
    )
    result[inside] = (
        -LOG_2PI
        - 0.5 * log_det_sigma
        - 0.5 * quad_form
        - log_a
        - log_1ma
        - log_b
        - log_1mb
    )
    return result


def prepare_line_posterior(
    line: TomographyLine,
    mean: NDArray[np.float64],
    sigma_inv: NDArray[np.float64],
    log_det_sigma: float,
    config: IntegrationConfig,
) -> LinePosterior:
    """
    Locate the posterior mode and compute the normalizing constant.

    Args:
        line: The unit's tomography line.
        mean: Unit mean of (logit W1, logit W2).
        sigma_inv: Inverse covariance.
        log_det_sigma: log |Sigma|.
        config: Integration settings.

    Returns:
        LinePosterior for the unit.

    Raises:
        SingularModelError: If the line carries no posterior mass.
    """
    if not line.width > 0:
        raise SingularModelError(
            f"tomography line for X={line.x}, Y={line.y} has zero length"
        )

    fractions = np.arange(1, config.n_search_points + 1) / (
        config.n_search_points + 1
    )
    grid = line.lower + line.width * fractions
    log_dens = line_log_density(grid, line, mean, sigma_inv, log_det_sigma)
    if not np.any(np.isfinite(log_dens)):
        raise SingularModelError(
            f"no posterior mass on tomography line for X={line.x}, "
            f"Y={line.y}"
        )

    best = int(np.argmax(log_dens))
    posterior = LinePosterior(
        line=line,
        mean=mean,
        sigma_inv=sigma_inv,
        log_det_sigma=log_det_sigma,
        mode=float(grid[best]),
        shift=float(log_dens[best]),
        shifted_norm_const=1.0,
    )

    norm_const, _ = quad(
        posterior.scaled_density,
        line.lower,
        line.upper,
        points=[posterior.mode],
        epsabs=config.epsabs,
        epsrel=config.epsrel,
        limit=config.limit,
    )
    if not (np.isfinite(norm_const) and norm_const > 0):
        raise SingularModelError(
            f"normalizing constant {norm_const} for X={line.x}, Y={line.y}"
        )

    return LinePosterior(
        line=posterior.line,
        mean=posterior.mean,
        sigma_inv=posterior.sigma_inv,
        log_det_sigma=posterior.log_det_sigma,
        mode=posterior.mode,
        shift=posterior.shift,
        shifted_norm_const=float(norm_const),
    )


def _moment_values(w1: float, w2: float) -> NDArray[np.float64]:
    s1 = math.log(w1) - math.log1p(-w1)
    s2 = math.log(w2) - math.log1p(-w2)
    return np.array(
        [s1, s2, s1 * s1, s1 * s2, s2 * s2, w1, w2, 1.0], dtype=np.float64
    )


def posterior_moments(
    posterior: LinePosterior, config: IntegrationConfig
) -> NDArray[np.float64]:
    """
    Posterior expectations of every moment function at once.

    Returns:
        Array of shape (len(Moment),) indexed by Moment: E[W1*], E[W2*],
        E[W1*^2], E[W1* W2*], E[W2*^2], E[W1], E[W2] and the normalized
        total mass (1 up to integration error).

    Moments are normalized by the mass slot of the same integration, which
    must agree with the posterior's normalizing constant to within
    config.mass_tolerance.

    Raises:
        SingularModelError: If the integrated mass is not finite and
            positive, disagrees with the normalizing constant, or a moment
            is not finite.
    """
    line = posterior.line
    zeros = np.zeros(N_MOMENTS, dtype=np.float64)

    def integrand(w1: float) -> NDArray[np.float64]:
        weight = posterior.scaled_density(w1)
        if weight == 0.0:
            return zeros
        w2 = (line.y - line.x * w1) / (1.0 - line.x)
        result: NDArray[np.float64] = weight * _moment_values(w1, w2)
        return result

    totals, _ = quad_vec(
        integrand,
        line.lower,
        line.upper,
        epsabs=config.epsabs,
        epsrel=config.epsrel,
        limit=config.limit,
        points=[posterior.mode],
    )
    totals = np.asarray(totals, dtype=np.float64)

    mass = float(totals[Moment.MASS])
    if not (np.isfinite(mass) and mass > 0):
        raise SingularModelError(
            f"posterior mass {mass} for X={line.x}, Y={line.y}"
        )
    relative_mass = mass / posterior.shifted_norm_const
    if abs(relative_mass - 1.0) > config.mass_tolerance:
        raise SingularModelError(
            f"integrated mass {relative_mass:.6g} of the normalizing constant "
            f"for X={line.x}, Y={line.y}"
        )

    moments: NDArray[np.float64] = totals / mass
    if not np.all(np.isfinite(moments)):
        raise SingularModelError(
            f"non-finite posterior moments for X={line.x}, Y={line.y}"
        )
    moments[Moment.MASS] = relative_mass
    return moments
