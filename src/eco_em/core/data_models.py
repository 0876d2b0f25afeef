"""
Data models for ecological inference input.

This module defines:
- The four observational unit kinds (regular table rows, the two kinds of
  homogeneous areas, and survey rows)
- EcoDataset: the ordered collection of units a fit runs on
"""

from collections.abc import Sequence
from dataclasses import dataclass
from functools import cached_property
from typing import Self

import numpy as np
from numpy.typing import ArrayLike, NDArray

from eco_em.core.constants import (
    HOMOGENEOUS_X0_COVARIATE,
    HOMOGENEOUS_X1_COVARIATE,
)
from eco_em.core.utils import (
    clamp_covariate,
    clamp_observed_proportion,
    logit,
)


def _check_open_unit_interval(name: str, value: float) -> None:
    if not np.isfinite(value) or not (0.0 < value < 1.0):
        raise ValueError(f"{name} must be in (0, 1), got {value}")


@dataclass(frozen=True)
class RegularUnit:
    """
    An aggregated table row: only the marginals are observed.

    Attributes:
        x: Covariate proportion, strictly inside (0, 1).
        y: Target proportion in [0, 1].
    """

    x: float
    y: float

    def __post_init__(self) -> None:
        _check_open_unit_interval("x", self.x)
        if not np.isfinite(self.y) or not (0.0 <= self.y <= 1.0):
            raise ValueError(f"y must be in [0, 1], got {self.y}")

    @property
    def covariate(self) -> float:
        return self.x


@dataclass(frozen=True)
class HomogeneousX1Unit:
    """An X = 1 area, where W1 is observed directly and W2 is latent."""

    w1: float

    def __post_init__(self) -> None:
        _check_open_unit_interval("w1", self.w1)

    @property
    def covariate(self) -> float:
        return HOMOGENEOUS_X1_COVARIATE


@dataclass(frozen=True)
class HomogeneousX0Unit:
    """An X = 0 area, where W2 is observed directly and W1 is latent."""

    w2: float

    def __post_init__(self) -> None:
        _check_open_unit_interval("w2", self.w2)

    @property
    def covariate(self) -> float:
        return HOMOGENEOUS_X0_COVARIATE


@dataclass(frozen=True)
class SurveyUnit:
    """
    A survey row where both latent proportions are observed.

    Attributes:
        w1: Observed W1.
        w2: Observed W2.
        x: Covariate proportion, if the survey recorded it. Required when
            the covariate is modelled (NCAR).
    """

    w1: float
    w2: float
    x: float | None = None

    def __post_init__(self) -> None:
        _check_open_unit_interval("w1", self.w1)
        _check_open_unit_interval("w2", self.w2)
        if self.x is not None:
            _check_open_unit_interval("x", self.x)

    @property
    def covariate(self) -> float | None:
        return self.x


Unit = RegularUnit | HomogeneousX1Unit | HomogeneousX0Unit | SurveyUnit


def _unit_order(unit: Unit) -> int:
    match unit:
        case RegularUnit():
            return 0
        case HomogeneousX1Unit():
            return 1
        case HomogeneousX0Unit():
            return 2
        case SurveyUnit():
            return 3


@dataclass(frozen=True)
class EcoDataset:
    """
    The units a fit runs on.

    Units are kept in the order regular, X1-homogeneous, X0-homogeneous,
    survey. Unit indices in every per-unit output follow this order.

    Attributes:
        units: Tuple of observational units.
    """

    units: tuple[Unit, ...]

    def __post_init__(self) -> None:
        """Validate dataset."""
        if len(self.units) == 0:
            raise ValueError("dataset must contain at least one unit")
        orders = [_unit_order(unit) for unit in self.units]
        if orders != sorted(orders):
            raise ValueError(
                "units must be ordered regular, x1, x0, survey"
            )

    @classmethod
    def from_units(cls, units: Sequence[Unit]) -> Self:
        """Build a dataset from units in any order (stable re-ordering)."""
        return cls(units=tuple(sorted(units, key=_unit_order)))

    @classmethod
    def from_arrays(
        cls,
        x: ArrayLike,
        y: ArrayLike,
        x1_w1: ArrayLike | None = None,
        x0_w2: ArrayLike | None = None,
        survey_w: ArrayLike | None = None,
        survey_x: ArrayLike | None = None,
    ) -> Self:
        """
        Build a dataset from flat arrays.

        Covariates at or beyond 0 / 1 are clamped inside the unit interval;
        observed latent proportions of exactly 0 or 1 are clamped likewise.

        Args:
            x: Covariate proportions of the regular units, shape (n,).
            y: Target proportions of the regular units, shape (n,).
            x1_w1: Observed W1 for X = 1 areas, shape (n_x1,).
            x0_w2: Observed W2 for X = 0 areas, shape (n_x0,).
            survey_w: Observed (W1, W2) survey pairs, shape (n_survey, 2).
            survey_x: Optional covariates of the survey rows, shape
                (n_survey,).

        Returns:
            EcoDataset with units ordered regular, x1, x0, survey.
        """
        x_arr = np.asarray(x, dtype=np.float64).ravel()
        y_arr = np.asarray(y, dtype=np.float64).ravel()
        if x_arr.shape != y_arr.shape:
            raise ValueError(
                f"x and y must have the same length, "
                f"got {x_arr.size} and {y_arr.size}"
            )

        units: list[Unit] = [
            RegularUnit(x=clamp_covariate(float(xi)), y=float(yi))
            for xi, yi in zip(x_arr, y_arr, strict=True)
        ]

        if x1_w1 is not None:
            units.extend(
                HomogeneousX1Unit(w1=clamp_observed_proportion(float(w)))
                for w in np.asarray(x1_w1, dtype=np.float64).ravel()
            )

        if x0_w2 is not None:
            units.extend(
                HomogeneousX0Unit(w2=clamp_observed_proportion(float(w)))
                for w in np.asarray(x0_w2, dtype=np.float64).ravel()
            )

        if survey_w is not None:
            w_arr = np.asarray(survey_w, dtype=np.float64)
            if w_arr.ndim != 2 or w_arr.shape[1] != 2:
                raise ValueError(
                    f"survey_w must have shape (n, 2), got {w_arr.shape}"
                )
            covariates: list[float | None]
            if survey_x is None:
                covariates = [None] * w_arr.shape[0]
            else:
                sx = np.asarray(survey_x, dtype=np.float64).ravel()
                if sx.size != w_arr.shape[0]:
                    raise ValueError(
                        f"survey_x must have {w_arr.shape[0]} entries, "
                        f"got {sx.size}"
                    )
                covariates = [clamp_covariate(float(v)) for v in sx]
            units.extend(
                SurveyUnit(
                    w1=clamp_observed_proportion(float(row[0])),
                    w2=clamp_observed_proportion(float(row[1])),
                    x=cov,
                )
                for row, cov in zip(w_arr, covariates, strict=True)
            )

        return cls(units=tuple(units))

    @property
    def n_units(self) -> int:
        """Total number of units (the divisor of the sufficient statistics)."""
        return len(self.units)

    @property
    def n_regular(self) -> int:
        """Number of regular (marginals only) units."""
        return int(self.regular_mask.sum())

    @cached_property
    def regular_mask(self) -> NDArray[np.bool_]:
        """Boolean mask where True marks a regular unit."""
        return np.array(
            [isinstance(unit, RegularUnit) for unit in self.units],
            dtype=np.bool_,
        )

    @property
    def has_all_covariates(self) -> bool:
        """Whether every unit carries a covariate (needed under NCAR)."""
        return all(unit.covariate is not None for unit in self.units)

    @cached_property
    def covariate_logits(self) -> NDArray[np.float64]:
        """
        logit(X) for every unit, shape (n_units,).

        Survey rows without a covariate hold NaN.
        """
        values = [
            np.nan if unit.covariate is None else unit.covariate
            for unit in self.units
        ]
        return logit(np.array(values, dtype=np.float64))

    def count(self, kind: type) -> int:
        """Number of units of the given kind."""
        return sum(isinstance(unit, kind) for unit in self.units)
