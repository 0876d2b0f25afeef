"""
EM estimation module.

This module provides EM and Supplemented-EM estimation of the latent
bivariate normal model for aggregated 2x2 tables.

Key components:
- FitConfig: Configuration for estimation
- CARParameters / NCARParameters / NCARRegressionParameters: model parameters
- EcoEMEstimator: The fit driver
- FitResult: Output from estimation
- SupplementedEM: SEM rate matrix construction
"""

from eco_em.em.config import (
    ConvergenceConfig,
    FitConfig,
    IntegrationConfig,
    LinearHypothesis,
    ModelOptions,
    QuadratureConfig,
)
from eco_em.em.data_models import FitResult, HistoryRecord
from eco_em.em.enums import ConvergenceStatus, ModelFlavor
from eco_em.em.estimator import CancellationToken, EcoEMEstimator
from eco_em.em.exceptions import (
    ConfigurationError,
    EcoEMError,
    SingularModelError,
)
from eco_em.em.parameters import (
    CARParameters,
    NCARParameters,
    NCARRegressionParameters,
)
from eco_em.em.sem import SupplementedEM

__all__ = [
    "CARParameters",
    "CancellationToken",
    "ConfigurationError",
    "ConvergenceConfig",
    "ConvergenceStatus",
    "EcoEMError",
    "EcoEMEstimator",
    "FitConfig",
    "FitResult",
    "HistoryRecord",
    "IntegrationConfig",
    "LinearHypothesis",
    "ModelFlavor",
    "ModelOptions",
    "NCARParameters",
    "NCARRegressionParameters",
    "QuadratureConfig",
    "SingularModelError",
    "SupplementedEM",
]
