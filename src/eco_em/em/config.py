"""
Configuration dataclasses for EM estimation.

This module defines the configuration parameters for:
- Convergence criteria of the outer EM loop
- Numerical integration along tomography lines
- Gauss-Hermite quadrature for homogeneous-area posterior means
- Model options (CAR/NCAR, fixed correlation, SEM, likelihood tracking)
- The optional linear hypothesis on the means
"""

import math
from dataclasses import dataclass, field

from eco_em import __version__
from eco_em.em.enums import ModelFlavor
from eco_em.em.exceptions import ConfigurationError

# Default convergence settings
DEFAULT_MAX_ITERATIONS = 1000
DEFAULT_TOLERANCE = 1e-6

# Default integration settings
# Targets within this distance of 0 or 1 collapse the tomography line to a
# point, so integration is skipped for them
DEFAULT_EDGE_THRESHOLD = 0.01
DEFAULT_TOMOGRAPHY_TOLERANCE = 0.01
DEFAULT_MASS_TOLERANCE = 1e-3
DEFAULT_INTEGRATION_EPSABS = 1e-12
DEFAULT_INTEGRATION_EPSREL = 1e-10
DEFAULT_INTEGRATION_LIMIT = 200
DEFAULT_SEARCH_POINTS = 201

# Default quadrature settings
DEFAULT_QUADRATURE_POINTS = 41


@dataclass(frozen=True)
class ConvergenceConfig:
    """
    Configuration for EM convergence.

    Attributes:
        max_iterations: Maximum number of outer EM iterations.
        tolerance: EM stops when every transformed parameter moves by less
            than this between iterations. SEM rows use sqrt(tolerance).
    """

    max_iterations: int = DEFAULT_MAX_ITERATIONS
    tolerance: float = DEFAULT_TOLERANCE

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ConfigurationError(
                f"max_iterations must be >= 1, got {self.max_iterations}"
            )
        if not self.tolerance > 0:
            raise ConfigurationError(
                f"tolerance must be positive, got {self.tolerance}"
            )

    @property
    def sem_tolerance(self) -> float:
        """Tolerance used to freeze rows of the sensitivity matrix."""
        return math.sqrt(self.tolerance)


@dataclass(frozen=True)
class IntegrationConfig:
    """
    Configuration for integration along a unit's tomography line.

    Attributes:
        epsabs: Absolute error target passed to scipy's integrators.
        epsrel: Relative error target passed to scipy's integrators.
        limit: Maximum number of adaptive subintervals.
        n_search_points: Grid size used to locate the posterior mode before
            integrating.
        edge_threshold: Regular units with Y within this distance of 0 or 1
            are not integrated.
        tomography_tolerance: Allowed distance between E[W1] and the value
            implied by E[W2] on the tomography line before a warning.
        mass_tolerance: Allowed deviation of the normalized posterior mass
            from 1 before a warning.
    """

    epsabs: float = DEFAULT_INTEGRATION_EPSABS
    epsrel: float = DEFAULT_INTEGRATION_EPSREL
    limit: int = DEFAULT_INTEGRATION_LIMIT
    n_search_points: int = DEFAULT_SEARCH_POINTS
    edge_threshold: float = DEFAULT_EDGE_THRESHOLD
    tomography_tolerance: float = DEFAULT_TOMOGRAPHY_TOLERANCE
    mass_tolerance: float = DEFAULT_MASS_TOLERANCE


@dataclass(frozen=True)
class QuadratureConfig:
    """
    Configuration for Gauss-Hermite quadrature.

    Attributes:
        n_points: Number of quadrature points of the standard normal rule.
    """

    n_points: int = DEFAULT_QUADRATURE_POINTS

    def __post_init__(self) -> None:
        if self.n_points < 1:
            raise ConfigurationError(
                f"n_points must be >= 1, got {self.n_points}"
            )


@dataclass(frozen=True)
class ModelOptions:
    """
    Model flags.

    Attributes:
        ncar: Model the covariate jointly with the latent pair (9 parameter
            NCAR model) instead of conditioning on it (5 parameter CAR).
        fixed_rho: Hold the latent correlation at its starting value.
        sem: Run the Supplemented-EM pass. Requires the optimum of a
            previous fit.
        track_log_likelihood: Compute the observed-data log-likelihood in
            every E-step after the first.
    """

    ncar: bool = False
    fixed_rho: bool = False
    sem: bool = False
    track_log_likelihood: bool = True

    @property
    def flavor(self) -> ModelFlavor:
        return ModelFlavor.NCAR if self.ncar else ModelFlavor.CAR


@dataclass(frozen=True)
class LinearHypothesis:
    """
    A linear equality constraint on the latent means.

    The M-step enforces coefficients[0] * mu1 + coefficients[1] * mu2 ==
    target.
    """

    coefficients: tuple[float, float]
    target: float = 0.0

    def __post_init__(self) -> None:
        if len(self.coefficients) != 2:
            raise ConfigurationError(
                f"hypothesis needs 2 coefficients, "
                f"got {len(self.coefficients)}"
            )
        if not any(c != 0 for c in self.coefficients):
            raise ConfigurationError(
                "hypothesis coefficients must not all be zero"
            )


@dataclass(frozen=True)
class FitConfig:
    """
    Master configuration for an EM fit.

    Attributes:
        convergence: Convergence criteria for the EM loop.
        integration: Settings for tomography-line integration.
        quadrature: Settings for Gauss-Hermite quadrature.
        options: Model flags.
        hypotheses: Linear hypotheses on the means. At most one is
            supported.
        model_version: Version string for reproducibility tracking.
    """

    convergence: ConvergenceConfig = ConvergenceConfig()
    integration: IntegrationConfig = IntegrationConfig()
    quadrature: QuadratureConfig = QuadratureConfig()
    options: ModelOptions = ModelOptions()
    hypotheses: tuple[LinearHypothesis, ...] = ()
    model_version: str = field(default=__version__)

    def __post_init__(self) -> None:
        if len(self.hypotheses) > 1:
            raise ConfigurationError(
                f"at most one linear hypothesis is supported, "
                f"got {len(self.hypotheses)}"
            )

    @property
    def hypothesis(self) -> LinearHypothesis | None:
        """The configured hypothesis, if any."""
        return self.hypotheses[0] if self.hypotheses else None
