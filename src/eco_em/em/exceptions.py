class EcoEMError(Exception):
    pass


class ConfigurationError(EcoEMError, ValueError):
    """Invalid option combination, raised before any iteration runs."""


class SingularModelError(EcoEMError, ArithmeticError):
    """The model left the valid parameter space (non-PD covariance etc.)."""
