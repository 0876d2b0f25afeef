"""
Bijective map between natural parameters and an unconstrained space.

Means and regression coefficients are left alone, variances go through the
log, correlations through the Fisher z-transform. The EM update itself always
works on natural parameters; the transformed vector only feeds convergence
comparisons and the SEM sensitivity ratios, where distances near the
boundaries of the parameter space would otherwise be distorted.
"""

from typing import TypeVar

import numpy as np
from numpy.typing import ArrayLike, NDArray

from eco_em.em.enums import FieldKind
from eco_em.em.parameters import ModelParameters

P = TypeVar("P", bound=ModelParameters)


def fisher_z(r: ArrayLike) -> NDArray[np.float64]:
    """0.5 * ln((1 + r) / (1 - r))."""
    r_arr = np.asarray(r, dtype=np.float64)
    result: NDArray[np.float64] = 0.5 * (np.log1p(r_arr) - np.log1p(-r_arr))
    return result


def inverse_fisher_z(z: ArrayLike) -> NDArray[np.float64]:
    """(e^{2z} - 1) / (e^{2z} + 1), i.e. tanh(z)."""
    result: NDArray[np.float64] = np.tanh(np.asarray(z, dtype=np.float64))
    return result


def transform_array(
    values: ArrayLike, kinds: tuple[FieldKind, ...]
) -> NDArray[np.float64]:
    """
    Transform a flat natural-parameter vector.

    Args:
        values: Natural parameters, shape (n,).
        kinds: Kind of each entry, length n.

    Returns:
        Unconstrained vector, shape (n,).
    """
    arr = np.asarray(values, dtype=np.float64).ravel()
    out = arr.copy()
    for i, kind in enumerate(kinds):
        if kind == FieldKind.VARIANCE:
            out[i] = np.log(arr[i])
        elif kind == FieldKind.CORRELATION:
            out[i] = fisher_z(arr[i])
    return out


def untransform_array(
    values: ArrayLike, kinds: tuple[FieldKind, ...]
) -> NDArray[np.float64]:
    """Inverse of transform_array."""
    arr = np.asarray(values, dtype=np.float64).ravel()
    out = arr.copy()
    for i, kind in enumerate(kinds):
        if kind == FieldKind.VARIANCE:
            out[i] = np.exp(arr[i])
        elif kind == FieldKind.CORRELATION:
            out[i] = inverse_fisher_z(arr[i])
    return out


def transform(params: ModelParameters) -> NDArray[np.float64]:
    """
    Map parameters to the unconstrained space.

    Under NCAR with a fixed correlation, entries 6/7 are regression
    coefficients and pass through unchanged.
    """
    return transform_array(params.to_array(), params.FIELD_KINDS)


def untransform(
    values: ArrayLike, parameter_type: type[P]
) -> P:
    """
    Map an unconstrained vector back to natural parameters.

    Args:
        values: Transformed vector in the parameterization's flat order.
        parameter_type: Parameterization to rebuild.

    Returns:
        Natural parameters of the requested type.
    """
    natural = untransform_array(values, parameter_type.FIELD_KINDS)
    return parameter_type.from_array(natural)
