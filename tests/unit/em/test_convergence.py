"""
Tests for convergence checks.
"""

import numpy as np
import pytest

from eco_em.em.convergence import RowConvergence, close_enough


class TestCloseEnough:
    def test_within_tolerance(self) -> None:
        assert close_enough([1.0, 2.0], [1.0 + 1e-7, 2.0 - 1e-7], 1e-6)

    def test_outside_tolerance(self) -> None:
        assert not close_enough([1.0, 2.0], [1.0, 2.1], 1e-6)

    def test_strict_inequality(self) -> None:
        """A difference equal to the tolerance is not close."""
        assert not close_enough([0.0], [0.5], 0.5)

    def test_symmetric(self) -> None:
        a = np.array([0.1, 0.2, 0.3])
        b = np.array([0.1, 0.25, 0.3])
        for tol in (0.01, 0.06):
            assert close_enough(a, b, tol) == close_enough(b, a, tol)

    def test_length_prefix(self) -> None:
        """Only the first `length` coordinates are compared."""
        a = [0.0, 0.0, 5.0]
        b = [0.0, 0.0, -5.0]

        assert close_enough(a, b, 1e-6, length=2)
        assert not close_enough(a, b, 1e-6)

    def test_nan_never_close(self) -> None:
        assert not close_enough([np.nan], [np.nan], 1.0)
        assert not close_enough([0.0, np.nan], [0.0, 0.0], 1.0)

    def test_shape_mismatch(self) -> None:
        with pytest.raises(ValueError, match="cannot compare"):
            close_enough([0.0, 1.0], [0.0], 1e-6)


class TestRowConvergence:
    def test_start_all_active(self) -> None:
        rows = RowConvergence.start(3)

        assert rows.n_rows == 3
        assert rows.n_done == 0
        assert rows.active_rows() == (0, 1, 2)
        assert not rows.all_done

    def test_with_row_returns_copy(self) -> None:
        rows = RowConvergence.start(2)
        updated = rows.with_row(1, True)

        assert rows.done == (False, False)
        assert updated.done == (False, True)
        assert updated.active_rows() == (0,)

    def test_all_done(self) -> None:
        rows = RowConvergence.start(2).with_row(0, True).with_row(1, True)

        assert rows.all_done
        assert rows.n_done == 2
