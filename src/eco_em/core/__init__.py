"""
Core shared types and utilities.

This module provides the observational-unit data model and the numeric
helpers the estimation engine builds on.
"""

from eco_em.core.data_models import (
    EcoDataset,
    HomogeneousX0Unit,
    HomogeneousX1Unit,
    RegularUnit,
    SurveyUnit,
    Unit,
)
from eco_em.core.utils import expit, logit

__all__ = [
    "EcoDataset",
    "HomogeneousX0Unit",
    "HomogeneousX1Unit",
    "RegularUnit",
    "SurveyUnit",
    "Unit",
    "expit",
    "logit",
]
