from enum import Enum, IntEnum


class ConvergenceStatus(str, Enum):
    CONVERGED = "converged"
    MAX_ITERATIONS = "max_iterations"
    CANCELLED = "cancelled"


class ModelFlavor(str, Enum):
    CAR = "car"
    NCAR = "ncar"


class FieldKind(str, Enum):
    MEAN = "mean"
    VARIANCE = "variance"
    CORRELATION = "correlation"
    COEFFICIENT = "coefficient"


class Moment(IntEnum):
    """Moment functions of a unit's posterior, in output-vector order."""

    W1_STAR = 0
    W2_STAR = 1
    W1_STAR_SQ = 2
    W1_STAR_W2_STAR = 3
    W2_STAR_SQ = 4
    W1 = 5
    W2 = 6
    MASS = 7


class RowSkip(str, Enum):
    """Why a SEM trial produced no row this round."""

    ZERO_STEP = "zero_step"
    OUTSIDE_PARAMETER_SPACE = "outside_parameter_space"
