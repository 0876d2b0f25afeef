"""
Convergence checks for the EM loop and for SEM rows.
"""

from dataclasses import dataclass
from typing import Self

import numpy as np
from numpy.typing import ArrayLike


def close_enough(
    a: ArrayLike,
    b: ArrayLike,
    tolerance: float,
    length: int | None = None,
) -> bool:
    """
    Whether two vectors agree coordinate-wise within a tolerance.

    True iff max_i |a_i - b_i| < tolerance over the first `length`
    coordinates (all of them when length is None). A NaN in either vector
    never counts as close.

    Args:
        a: First vector.
        b: Second vector.
        tolerance: Strict upper bound on every absolute difference.
        length: Number of leading coordinates to compare.

    Returns:
        True if every compared coordinate differs by less than tolerance.
    """
    a_arr = np.asarray(a, dtype=np.float64).ravel()
    b_arr = np.asarray(b, dtype=np.float64).ravel()
    if length is not None:
        a_arr = a_arr[:length]
        b_arr = b_arr[:length]
    if a_arr.shape != b_arr.shape:
        raise ValueError(
            f"cannot compare vectors of length {a_arr.size} and {b_arr.size}"
        )
    return bool(np.all(np.abs(a_arr - b_arr) < tolerance))


@dataclass(frozen=True)
class RowConvergence:
    """
    Done/active flags for the rows of the SEM sensitivity matrix.

    Attributes:
        done: One flag per free parameter; True once the row has stabilized.
    """

    done: tuple[bool, ...]

    @classmethod
    def start(cls, n_rows: int) -> Self:
        """Every row active."""
        return cls(done=(False,) * n_rows)

    @property
    def n_rows(self) -> int:
        return len(self.done)

    @property
    def n_done(self) -> int:
        return sum(self.done)

    @property
    def all_done(self) -> bool:
        return all(self.done)

    def active_rows(self) -> tuple[int, ...]:
        """Indices of rows that still need refinement."""
        return tuple(i for i, d in enumerate(self.done) if not d)

    def with_row(self, index: int, done: bool) -> Self:
        """Copy with one row's flag set."""
        flags = list(self.done)
        flags[index] = done
        return type(self)(done=tuple(flags))
