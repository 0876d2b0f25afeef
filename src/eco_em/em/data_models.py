from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray
from pydantic import BaseModel, ConfigDict

from eco_em.em.enums import ConvergenceStatus, ModelFlavor, Moment
from eco_em.em.parameters import (
    CARParameters,
    NCARParameters,
    NCARRegressionParameters,
)


@dataclass(frozen=True)
class UnitExpectation:
    """
    Posterior summary of one unit from the E-step.

    Attributes:
        moments: E[W1*], E[W2*], E[W1*^2], E[W1* W2*], E[W2*^2], shape (5,),
            indexed by Moment.
        natural_mean: E[W1], E[W2] on the proportion scale, shape (2,).
        log_likelihood: The unit's observed-data log-likelihood, None when
            not requested.
        tomography_mismatch: E[W1] is inconsistent with E[W2] on the line.
        jensen_violation: A second moment is below the squared first moment.
        mass_deviation: The normalized posterior mass is not close to 1.
    """

    moments: NDArray[np.float64]
    natural_mean: NDArray[np.float64]
    log_likelihood: float | None = None
    tomography_mismatch: bool = False
    jensen_violation: bool = False
    mass_deviation: bool = False

    @property
    def logit_mean(self) -> NDArray[np.float64]:
        """E[W1*], E[W2*]."""
        return self.moments[[Moment.W1_STAR, Moment.W2_STAR]]


class DiagnosticCounts(BaseModel):
    """
    Number of units that tripped each consistency check.

    Attributes:
        tomography_mismatch: Posterior means off the tomography line.
        jensen_violation: Second moments below squared first moments.
        mass_deviation: Posterior mass away from 1.
    """

    model_config = ConfigDict(frozen=True)

    tomography_mismatch: int = 0
    jensen_violation: int = 0
    mass_deviation: int = 0

    @property
    def total(self) -> int:
        return (
            self.tomography_mismatch
            + self.jensen_violation
            + self.mass_deviation
        )

    def plus(self, other: "DiagnosticCounts") -> "DiagnosticCounts":
        return DiagnosticCounts(
            tomography_mismatch=self.tomography_mismatch
            + other.tomography_mismatch,
            jensen_violation=self.jensen_violation + other.jensen_violation,
            mass_deviation=self.mass_deviation + other.mass_deviation,
        )


class SufficientStatistics(BaseModel):
    """
    Averaged posterior moments over all units.

    Attributes:
        w1_star: E[W1*].
        w2_star: E[W2*].
        w1_star_sq: E[W1*^2].
        w2_star_sq: E[W2*^2].
        w1_star_w2_star: E[W1* W2*].
        w1_star_x_star: NCAR only, E[W1* logit X].
        w2_star_x_star: NCAR only, E[W2* logit X].
        log_likelihood: Summed log-likelihood, None when not computed.
    """

    model_config = ConfigDict(frozen=True)

    w1_star: float
    w2_star: float
    w1_star_sq: float
    w2_star_sq: float
    w1_star_w2_star: float
    w1_star_x_star: float | None = None
    w2_star_x_star: float | None = None
    log_likelihood: float | None = None

    @property
    def is_ncar(self) -> bool:
        return self.w1_star_x_star is not None

    def to_array(self) -> NDArray[np.float64]:
        """
        Flat statistics vector.

        Length 6 under CAR and 8 under NCAR; the last slot is the
        log-likelihood (NaN when not computed).
        """
        values = [
            self.w1_star,
            self.w2_star,
            self.w1_star_sq,
            self.w2_star_sq,
            self.w1_star_w2_star,
        ]
        if self.is_ncar:
            values.extend([self.w1_star_x_star, self.w2_star_x_star])
        values.append(
            np.nan if self.log_likelihood is None else self.log_likelihood
        )
        return np.array(values, dtype=np.float64)


@dataclass(frozen=True)
class EStepResult:
    """
    Results from one E-step.

    Attributes:
        units: Per-unit expectations in dataset order.
        statistics: Sufficient statistics for the M-step.
        diagnostics: Consistency check counts for this pass.
    """

    units: tuple[UnitExpectation, ...]
    statistics: SufficientStatistics
    diagnostics: DiagnosticCounts

    @property
    def log_likelihood(self) -> float | None:
        return self.statistics.log_likelihood

    @property
    def logit_means(self) -> NDArray[np.float64]:
        """E[W1*], E[W2*] for every unit, shape (n_units, 2)."""
        return np.array([u.logit_mean for u in self.units], dtype=np.float64)

    @property
    def natural_means(self) -> NDArray[np.float64]:
        """E[W1], E[W2] for every unit, shape (n_units, 2)."""
        return np.array(
            [u.natural_mean for u in self.units], dtype=np.float64
        )


class HistoryRecord(BaseModel):
    """
    One EM iteration.

    Attributes:
        iteration: 1-based iteration number.
        parameters: Transformed parameter vector after the M-step.
        log_likelihood: Log-likelihood computed in the iteration's E-step
            (at the previous parameters). None on the first iteration or
            when tracking is off.
    """

    model_config = ConfigDict(frozen=True)

    iteration: int
    parameters: tuple[float, ...]
    log_likelihood: float | None = None


class FitResult(BaseModel):
    """
    Result of an EM fit.

    Attributes:
        parameters: Final natural parameters.
        flavor: CAR or NCAR.
        fixed_rho: Whether the latent correlation was held fixed.
        sufficient_statistics: Statistics from the final E-step; the
            log-likelihood slot holds the total over regular units.
        posterior_means: E[W1], E[W2] per unit at the final parameters.
        posterior_logit_means: E[W1*], E[W2*] per unit.
        regular_posterior_means: E[W1], E[W2] for the regular units only.
        n_iterations: Number of EM iterations performed.
        convergence_status: How the loop terminated.
        history: One record per iteration.
        sensitivity_matrix: SEM rate matrix, rows and columns over the free
            parameters. None unless SEM ran.
        optimum: The optimum a SEM pass was anchored at.
        log_likelihood: Regular-unit log-likelihood at the final
            parameters, computed in the final E-step whether or not
            per-iteration tracking is on.
        diagnostics: Consistency check counts summed over all E-steps.
        model_version: Version string for reproducibility tracking.
    """

    model_config = ConfigDict(frozen=True)

    parameters: CARParameters | NCARParameters | NCARRegressionParameters
    flavor: ModelFlavor
    fixed_rho: bool
    sufficient_statistics: SufficientStatistics
    posterior_means: tuple[tuple[float, float], ...]
    posterior_logit_means: tuple[tuple[float, float], ...]
    regular_posterior_means: tuple[tuple[float, float], ...]
    n_iterations: int
    convergence_status: ConvergenceStatus
    history: tuple[HistoryRecord, ...]
    sensitivity_matrix: tuple[tuple[float, ...], ...] | None = None
    optimum: (
        CARParameters | NCARParameters | NCARRegressionParameters | None
    ) = None
    log_likelihood: float | None = None
    diagnostics: DiagnosticCounts = DiagnosticCounts()
    model_version: str

    @property
    def converged(self) -> bool:
        """Whether estimation converged successfully."""
        return self.convergence_status == ConvergenceStatus.CONVERGED

    @property
    def log_likelihood_trace(self) -> tuple[float | None, ...]:
        return tuple(record.log_likelihood for record in self.history)

    def sensitivity_array(self) -> NDArray[np.float64] | None:
        if self.sensitivity_matrix is None:
            return None
        return np.array(self.sensitivity_matrix, dtype=np.float64)
