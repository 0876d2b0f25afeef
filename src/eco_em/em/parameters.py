"""
Model parameter representations.

Three parameterizations are used, one per model variant:

CAR (the covariate is conditioned on), 5 parameters:
    (mu1, mu2, sigma11, sigma22, rho)

NCAR with a free correlation, 9 parameters over (W1*, W2*, logit X):
    (mu3, mu1, mu2, sigma3, sigma1, sigma2, rho13, rho23, rho12)

NCAR with the correlation held fixed, 9 parameters where the latent pair is
regressed on the centred covariate logit:
    (mu3, mu1, mu2, sigma3, sigma1_3, sigma2_3, beta1, beta2, rho12_3)

The flat ordering is the one used by to_array/from_array, the convergence
history and the SEM sensitivity matrix. mu3 and sigma3 are constants of the
data under NCAR and are never re-estimated.
"""

from typing import ClassVar, Self

import numpy as np
from numpy.typing import ArrayLike, NDArray
from pydantic import BaseModel, ConfigDict, model_validator

from eco_em.em.enums import FieldKind, ModelFlavor


class ModelParameters(BaseModel):
    """
    Base class for a model variant's parameter vector.

    Subclasses declare their fields in flat-vector order together with each
    field's kind, which drives validation and the convergence transform.
    """

    model_config = ConfigDict(frozen=True)

    FIELD_KINDS: ClassVar[tuple[FieldKind, ...]] = ()
    CONSTANT_FIELDS: ClassVar[frozenset[str]] = frozenset()
    HELD_CORRELATION: ClassVar[str] = ""
    FLAVOR: ClassVar[ModelFlavor] = ModelFlavor.CAR
    FIXED_RHO: ClassVar[bool | None] = None

    @model_validator(mode="after")
    def _validate_ranges(self) -> Self:
        for name, kind in zip(self.names(), self.FIELD_KINDS, strict=True):
            value = getattr(self, name)
            if not np.isfinite(value):
                raise ValueError(f"{name} must be finite, got {value}")
            if kind == FieldKind.VARIANCE and value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")
            if kind == FieldKind.CORRELATION and not (-1.0 < value < 1.0):
                raise ValueError(f"{name} must be in (-1, 1), got {value}")
        return self

    @classmethod
    def default(cls) -> Self:
        """Standard starting point for this parameterization."""
        raise NotImplementedError

    @classmethod
    def names(cls) -> tuple[str, ...]:
        """Field names in flat-vector order."""
        return tuple(cls.model_fields)

    @classmethod
    def n_parameters(cls) -> int:
        return len(cls.model_fields)

    @classmethod
    def free_mask(cls, fixed_rho: bool) -> NDArray[np.bool_]:
        """
        Which entries are estimated.

        Data constants are never free, and the held correlation is not free
        when the correlation is fixed.
        """
        mask = np.array(
            [name not in cls.CONSTANT_FIELDS for name in cls.names()],
            dtype=np.bool_,
        )
        if fixed_rho:
            mask[cls.names().index(cls.HELD_CORRELATION)] = False
        return mask

    def to_array(self) -> NDArray[np.float64]:
        """Flatten to a 1D array in declaration order."""
        return np.array(
            [getattr(self, name) for name in self.names()], dtype=np.float64
        )

    @classmethod
    def from_array(cls, values: ArrayLike) -> Self:
        """
        Reconstruct parameters from a flat array.

        Raises:
            ValueError: If the length is wrong or a value is out of range.
        """
        arr = np.asarray(values, dtype=np.float64).ravel()
        names = cls.names()
        if arr.size != len(names):
            raise ValueError(
                f"{cls.__name__} needs {len(names)} values, got {arr.size}"
            )
        return cls(**{name: float(v) for name, v in zip(names, arr)})

    def replace(self, **changes: float) -> Self:
        """Copy with some fields changed (validated)."""
        values = {name: getattr(self, name) for name in self.names()}
        values.update(changes)
        return type(self)(**values)


class CARParameters(ModelParameters):
    """
    Bivariate normal on (logit W1, logit W2), shared by every unit.

    Attributes:
        mu1: Mean of logit W1.
        mu2: Mean of logit W2.
        sigma11: Variance of logit W1.
        sigma22: Variance of logit W2.
        rho: Correlation of the latent pair.
    """

    FIELD_KINDS = (
        FieldKind.MEAN,
        FieldKind.MEAN,
        FieldKind.VARIANCE,
        FieldKind.VARIANCE,
        FieldKind.CORRELATION,
    )
    HELD_CORRELATION = "rho"
    FLAVOR = ModelFlavor.CAR

    mu1: float
    mu2: float
    sigma11: float
    sigma22: float
    rho: float

    @classmethod
    def default(cls) -> Self:
        """Standard starting point (0, 0, 1, 1, 0)."""
        return cls(mu1=0.0, mu2=0.0, sigma11=1.0, sigma22=1.0, rho=0.0)


class NCARParameters(ModelParameters):
    """
    Trivariate normal on (logit W1, logit W2, logit X), free correlations.

    Attributes:
        mu3: Mean of logit X (data constant).
        mu1: Mean of logit W1.
        mu2: Mean of logit W2.
        sigma3: Variance of logit X (data constant).
        sigma1: Variance of logit W1.
        sigma2: Variance of logit W2.
        rho13: Correlation of logit W1 with logit X.
        rho23: Correlation of logit W2 with logit X.
        rho12: Correlation of the latent pair.
    """

    FIELD_KINDS = (
        FieldKind.MEAN,
        FieldKind.MEAN,
        FieldKind.MEAN,
        FieldKind.VARIANCE,
        FieldKind.VARIANCE,
        FieldKind.VARIANCE,
        FieldKind.CORRELATION,
        FieldKind.CORRELATION,
        FieldKind.CORRELATION,
    )
    CONSTANT_FIELDS = frozenset({"mu3", "sigma3"})
    HELD_CORRELATION = "rho12"
    FLAVOR = ModelFlavor.NCAR
    FIXED_RHO = False

    mu3: float
    mu1: float
    mu2: float
    sigma3: float
    sigma1: float
    sigma2: float
    rho13: float
    rho23: float
    rho12: float

    @classmethod
    def default(cls) -> Self:
        return cls(
            mu3=0.0,
            mu1=0.0,
            mu2=0.0,
            sigma3=1.0,
            sigma1=1.0,
            sigma2=1.0,
            rho13=0.0,
            rho23=0.0,
            rho12=0.0,
        )


class NCARRegressionParameters(ModelParameters):
    """
    NCAR model written as a regression of the latent pair on logit X.

    Used when the latent correlation is held fixed: the held quantity is the
    correlation of the pair conditional on the covariate.

    Attributes:
        mu3: Mean of logit X (data constant).
        mu1: Intercept for logit W1 (at logit X == mu3).
        mu2: Intercept for logit W2.
        sigma3: Variance of logit X (data constant).
        sigma1_3: Variance of logit W1 given logit X.
        sigma2_3: Variance of logit W2 given logit X.
        beta1: Slope of logit W1 on centred logit X.
        beta2: Slope of logit W2 on centred logit X.
        rho12_3: Correlation of the pair given logit X.
    """

    FIELD_KINDS = (
        FieldKind.MEAN,
        FieldKind.MEAN,
        FieldKind.MEAN,
        FieldKind.VARIANCE,
        FieldKind.VARIANCE,
        FieldKind.VARIANCE,
        FieldKind.COEFFICIENT,
        FieldKind.COEFFICIENT,
        FieldKind.CORRELATION,
    )
    CONSTANT_FIELDS = frozenset({"mu3", "sigma3"})
    HELD_CORRELATION = "rho12_3"
    FLAVOR = ModelFlavor.NCAR
    FIXED_RHO = True

    mu3: float
    mu1: float
    mu2: float
    sigma3: float
    sigma1_3: float
    sigma2_3: float
    beta1: float
    beta2: float
    rho12_3: float

    @classmethod
    def default(cls) -> Self:
        return cls(
            mu3=0.0,
            mu1=0.0,
            mu2=0.0,
            sigma3=1.0,
            sigma1_3=1.0,
            sigma2_3=1.0,
            beta1=0.0,
            beta2=0.0,
            rho12_3=0.0,
        )


AnyParameters = CARParameters | NCARParameters | NCARRegressionParameters


def parameter_type(ncar: bool, fixed_rho: bool) -> type[AnyParameters]:
    """The parameterization used by a combination of model flags."""
    if not ncar:
        return CARParameters
    if fixed_rho:
        return NCARRegressionParameters
    return NCARParameters
