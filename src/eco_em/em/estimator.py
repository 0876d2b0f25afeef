"""
EM estimator for the 2x2 ecological inference model.

The latent pair (logit W1, logit W2) of every unit is bivariate normal; under
NCAR it is jointly normal with logit X. Each iteration runs one E-step over
all units and one closed-form M-step. With SEM enabled, each iteration also
refreshes the rows of the rate matrix around a known optimum, and the loop
ends once every row has stabilized.
"""

import logging
import threading
from dataclasses import replace

import numpy as np
from numpy.typing import NDArray

from eco_em.core.data_models import EcoDataset
from eco_em.em.config import FitConfig
from eco_em.em.convergence import close_enough
from eco_em.em.data_models import (
    DiagnosticCounts,
    EStepResult,
    FitResult,
    HistoryRecord,
)
from eco_em.em.enums import ConvergenceStatus, ModelFlavor
from eco_em.em.estep import run_e_step
from eco_em.em.exceptions import ConfigurationError
from eco_em.em.model_state import ModelState, build_model_state
from eco_em.em.mstep import m_step
from eco_em.em.parameters import AnyParameters, parameter_type
from eco_em.em.quadrature import GaussHermiteQuadrature, get_quadrature
from eco_em.em.sem import SEMState, SupplementedEM
from eco_em.em.transform import transform

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation flag, checked once per EM iteration."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class EcoEMEstimator:
    """
    EM / Supplemented-EM estimator for aggregated 2x2 tables.

    CAR model (5 parameters):
        (logit W1, logit W2) ~ N((mu1, mu2), Sigma) for every unit

    NCAR model (9 parameters):
        (logit W1, logit W2, logit X) ~ N((mu1, mu2, mu3), Sigma3)
    so each unit's latent mean depends on its covariate.

    Without SEM, iteration stops when every transformed parameter moves by
    less than the tolerance. With SEM, it stops when every row of the rate
    matrix has stabilized.
    """

    def __init__(self, config: FitConfig | None = None):
        """Initialize estimator."""
        self.config = config or FitConfig()
        self._quadrature = get_quadrature(self.config.quadrature)

    @property
    def quadrature(self) -> GaussHermiteQuadrature:
        """Access quadrature points and weights."""
        return self._quadrature

    def _validate(
        self,
        dataset: EcoDataset,
        initial: AnyParameters | None,
        sem_optimum: AnyParameters | None,
    ) -> None:
        """
        Check that the inputs fit the model flags.

        Raises:
            ConfigurationError: On any mismatch.
        """
        options = self.config.options
        expected = parameter_type(options.ncar, options.fixed_rho)

        if initial is not None and type(initial) is not expected:
            raise ConfigurationError(
                f"initial parameters must be {expected.__name__} for "
                f"ncar={options.ncar}, fixed_rho={options.fixed_rho}, "
                f"got {type(initial).__name__}"
            )
        if options.ncar and not dataset.has_all_covariates:
            raise ConfigurationError(
                "NCAR model needs a covariate for every unit, including "
                "survey rows"
            )
        if options.sem and sem_optimum is None:
            raise ConfigurationError(
                "SEM pass needs the optimum of a previous fit"
            )
        if sem_optimum is not None:
            if not options.sem:
                raise ConfigurationError(
                    "sem_optimum given but the SEM option is off"
                )
            if type(sem_optimum) is not expected:
                raise ConfigurationError(
                    f"SEM optimum must be {expected.__name__}, "
                    f"got {type(sem_optimum).__name__}"
                )

    def _initialize(
        self, dataset: EcoDataset, initial: AnyParameters | None
    ) -> AnyParameters:
        """
        Starting parameters.

        Under NCAR, mu3 and sigma3 are set to the sample mean and population
        variance of logit X over all units, whatever the caller passed.
        """
        options = self.config.options
        default = parameter_type(options.ncar, options.fixed_rho).default()
        params = initial or default
        if options.flavor == ModelFlavor.CAR:
            return params

        lx = dataset.covariate_logits
        mu3 = float(np.mean(lx))
        sigma3 = float(np.var(lx))
        if not sigma3 > 0:
            raise ConfigurationError(
                "NCAR model needs covariates that are not all equal"
            )
        return params.replace(mu3=mu3, sigma3=sigma3)

    def _e_step(
        self,
        dataset: EcoDataset,
        state: ModelState,
        compute_log_likelihood: bool,
        regular_only: bool = False,
    ) -> EStepResult:
        return run_e_step(
            dataset,
            state,
            self.config.integration,
            self._quadrature,
            compute_log_likelihood=compute_log_likelihood,
            regular_only_log_likelihood=regular_only,
        )

    def fit(
        self,
        dataset: EcoDataset,
        initial: AnyParameters | None = None,
        sem_optimum: AnyParameters | None = None,
        cancellation: CancellationToken | None = None,
    ) -> FitResult:
        """
        Fit the model by EM, optionally building the SEM rate matrix.

        Args:
            dataset: Units to fit.
            initial: Starting parameters; the standard starting point for
                the configured flavor when omitted.
            sem_optimum: Optimum of a previous fit, required when the SEM
                option is on.
            cancellation: Token checked once per iteration.

        Returns:
            FitResult with the final parameters, per-unit posterior means,
            the iteration history and (SEM) the rate matrix.

        Raises:
            ConfigurationError: If the inputs do not match the model flags.
            SingularModelError: If an update leaves the parameter space.
        """
        self._validate(dataset, initial, sem_optimum)
        options = self.config.options
        convergence = self.config.convergence
        hypothesis = self.config.hypothesis

        params = self._initialize(dataset, initial)
        state = build_model_state(
            params, dataset, fixed_rho=options.fixed_rho, version=0
        )
        logger.info(
            f"Fitting {options.flavor.value.upper()} model to "
            f"{dataset.n_units} units ({dataset.n_regular} regular), "
            f"fixed_rho={options.fixed_rho}, sem={options.sem}, "
            f"hypothesis={hypothesis is not None}"
        )

        sem: SupplementedEM | None = None
        sem_state: SEMState | None = None
        if sem_optimum is not None:
            sem = SupplementedEM(
                dataset, sem_optimum, self.config, self._quadrature
            )
            sem_state = sem.start()

        history: list[HistoryRecord] = []
        diagnostics = DiagnosticCounts()
        status = ConvergenceStatus.MAX_ITERATIONS
        n_iterations = 0

        for iteration in range(1, convergence.max_iterations + 1):
            if cancellation is not None and cancellation.cancelled:
                status = ConvergenceStatus.CANCELLED
                logger.info(f"Fit cancelled before iteration {iteration}")
                break

            previous_t = transform(state.params)
            # No likelihood before the first M-step
            track = options.track_log_likelihood and iteration > 1
            e_result = self._e_step(dataset, state, track)
            diagnostics = diagnostics.plus(e_result.diagnostics)

            new_params = m_step(e_result, dataset, state, hypothesis)
            state = build_model_state(
                new_params,
                dataset,
                fixed_rho=options.fixed_rho,
                version=iteration,
            )
            current_t = transform(new_params)
            n_iterations = iteration

            history.append(
                HistoryRecord(
                    iteration=iteration,
                    parameters=tuple(float(v) for v in current_t),
                    log_likelihood=e_result.log_likelihood,
                )
            )
            ll_text = (
                "n/a"
                if e_result.log_likelihood is None
                else f"{e_result.log_likelihood:.6f}"
            )
            logger.debug(
                f"Iteration {iteration}: LL = {ll_text}, "
                f"theta = {np.round(new_params.to_array(), 6)}"
            )

            if sem is not None and sem_state is not None:
                sem_state = sem.refine(sem_state, new_params)
                if sem_state.all_done:
                    status = ConvergenceStatus.CONVERGED
                    break
            elif close_enough(current_t, previous_t, convergence.tolerance):
                status = ConvergenceStatus.CONVERGED
                break

        logger.info(
            f"EM finished after {n_iterations} iterations: {status.value}"
        )

        final = self._e_step(
            dataset, state, compute_log_likelihood=True, regular_only=True
        )
        diagnostics = diagnostics.plus(final.diagnostics)
        natural = final.natural_means
        logits = final.logit_means

        return FitResult(
            parameters=state.params,
            flavor=options.flavor,
            fixed_rho=options.fixed_rho,
            sufficient_statistics=final.statistics,
            posterior_means=_pairs(natural),
            posterior_logit_means=_pairs(logits),
            regular_posterior_means=_pairs(natural[dataset.regular_mask]),
            n_iterations=n_iterations,
            convergence_status=status,
            history=tuple(history),
            sensitivity_matrix=(
                sem_state.as_tuple() if sem_state is not None else None
            ),
            optimum=sem_optimum,
            log_likelihood=final.log_likelihood,
            diagnostics=diagnostics,
            model_version=self.config.model_version,
        )

    def fit_with_sem(
        self,
        dataset: EcoDataset,
        initial: AnyParameters | None = None,
        cancellation: CancellationToken | None = None,
    ) -> FitResult:
        """
        Plain EM fit followed by the SEM pass around its optimum.

        Both passes start from the same parameters. If the first pass is
        cancelled its result is returned as is.

        Returns:
            Result of the SEM pass; its `optimum` holds the first pass's
            parameters.
        """
        options = self.config.options
        plain = EcoEMEstimator(
            replace(self.config, options=replace(options, sem=False))
        )
        first = plain.fit(dataset, initial=initial, cancellation=cancellation)
        if first.convergence_status == ConvergenceStatus.CANCELLED:
            return first
        if not first.converged:
            logger.warning(
                "EM did not converge; SEM pass anchored at the last iterate"
            )

        supplemented = EcoEMEstimator(
            replace(self.config, options=replace(options, sem=True))
        )
        return supplemented.fit(
            dataset,
            initial=initial,
            sem_optimum=first.parameters,
            cancellation=cancellation,
        )


def _pairs(
    values: NDArray[np.float64],
) -> tuple[tuple[float, float], ...]:
    return tuple((float(a), float(b)) for a, b in values)
