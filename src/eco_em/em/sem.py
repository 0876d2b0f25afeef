"""
Supplemented EM (Meng & Rubin, 1991).

The SEM pass reruns EM from the starting values while holding on to the
optimum of a previous fit. Each iteration, every unfinished row i of the
rate matrix is refreshed: the optimum with free coordinate p_i replaced by
the current iterate's value goes through one E-step and one M-step, and

    r_ij = (T(new)_j - T(opt)_j) / (T(trial)_p_i - T(opt)_p_i)

on the transformed scale T. A row is finished once it moves by less than
sqrt(tolerance) between iterations.
"""

import logging
from dataclasses import dataclass
from typing import Self

import numpy as np
from numpy.typing import NDArray

from eco_em.core.data_models import EcoDataset
from eco_em.em.config import FitConfig
from eco_em.em.convergence import RowConvergence, close_enough
from eco_em.em.enums import RowSkip
from eco_em.em.estep import run_e_step
from eco_em.em.exceptions import SingularModelError
from eco_em.em.model_state import build_model_state
from eco_em.em.mstep import m_step
from eco_em.em.parameters import AnyParameters
from eco_em.em.quadrature import GaussHermiteQuadrature
from eco_em.em.transform import transform

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SEMState:
    """
    Rate matrix under construction.

    Attributes:
        rows: Current rows, shape (n_free, n_free).
        convergence: Per-row done flags.
        free_indices: Positions of the free parameters in the flat
            parameter vector.
    """

    rows: NDArray[np.float64]
    convergence: RowConvergence
    free_indices: tuple[int, ...]

    @classmethod
    def start(cls, free_indices: tuple[int, ...]) -> Self:
        n_free = len(free_indices)
        return cls(
            rows=np.zeros((n_free, n_free), dtype=np.float64),
            convergence=RowConvergence.start(n_free),
            free_indices=free_indices,
        )

    @property
    def all_done(self) -> bool:
        return self.convergence.all_done

    def as_tuple(self) -> tuple[tuple[float, ...], ...]:
        return tuple(tuple(float(v) for v in row) for row in self.rows)


class SupplementedEM:
    """
    Builds the SEM rate matrix around a known optimum.

    Trial fits get their own model state and never touch the main fit's.
    """

    def __init__(
        self,
        dataset: EcoDataset,
        optimum: AnyParameters,
        config: FitConfig,
        quadrature: GaussHermiteQuadrature,
    ):
        self.dataset = dataset
        self.optimum = optimum
        self.config = config
        self._quadrature = quadrature
        self._fixed_rho = config.options.fixed_rho
        self._optimum_t = transform(optimum)
        mask = type(optimum).free_mask(self._fixed_rho)
        self._free_indices = tuple(int(i) for i in np.flatnonzero(mask))

    @property
    def free_indices(self) -> tuple[int, ...]:
        return self._free_indices

    def start(self) -> SEMState:
        """Rate matrix with every row active."""
        return SEMState.start(self._free_indices)

    def _rate_row(
        self, index: int, current: AnyParameters
    ) -> NDArray[np.float64] | RowSkip:
        """
        One row of the rate matrix, or the reason there is none.

        The trial point differs from the optimum in a single coordinate, taken
        from the current EM iterate. Under NCAR that mix of correlations
        need not give a positive definite Sigma3; such a trial, or one
        whose EM step fails, yields OUTSIDE_PARAMETER_SPACE.
        """
        name = self.optimum.names()[index]
        trial = self.optimum.replace(**{name: getattr(current, name)})
        trial_t = transform(trial)
        step = trial_t[index] - self._optimum_t[index]
        if step == 0.0:
            return RowSkip.ZERO_STEP

        try:
            trial_state = build_model_state(
                trial, self.dataset, fixed_rho=self._fixed_rho
            )
            e_step = run_e_step(
                self.dataset,
                trial_state,
                self.config.integration,
                self._quadrature,
                compute_log_likelihood=False,
            )
            updated = m_step(
                e_step, self.dataset, trial_state, self.config.hypothesis
            )
        except SingularModelError as e:
            logger.debug(f"SEM trial on {name} skipped: {e}")
            return RowSkip.OUTSIDE_PARAMETER_SPACE
        free = list(self._free_indices)
        row: NDArray[np.float64] = (
            transform(updated)[free] - self._optimum_t[free]
        ) / step
        return row

    def refine(self, state: SEMState, current: AnyParameters) -> SEMState:
        """
        Refresh every active row once.

        Args:
            state: Rate matrix from the previous iteration.
            current: Current EM iterate.

        Returns:
            New SEMState; finished rows are copied unchanged.
        """
        rows = state.rows.copy()
        convergence = state.convergence
        tolerance = self.config.convergence.sem_tolerance

        # Flags are read from the incoming state and written to the new one
        for i in state.convergence.active_rows():
            row = self._rate_row(self._free_indices[i], current)
            if row is RowSkip.ZERO_STEP:
                logger.debug(f"SEM row {i}: trial equals optimum, freezing")
                convergence = convergence.with_row(i, True)
                continue
            if row is RowSkip.OUTSIDE_PARAMETER_SPACE:
                # Previous row kept; still active next round
                continue
            if close_enough(row, state.rows[i], tolerance):
                convergence = convergence.with_row(i, True)
            rows[i] = row

        logger.debug(
            f"SEM: {convergence.n_done}/{convergence.n_rows} rows done"
        )
        return SEMState(
            rows=rows,
            convergence=convergence,
            free_indices=state.free_indices,
        )
