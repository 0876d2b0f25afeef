"""
CSV loading utilities for aggregated table data.
"""

from pathlib import Path

import numpy as np
import pandas as pd

from eco_em.core.data_models import EcoDataset

KIND_COLUMN = "kind"
VALID_KINDS = ("regular", "x1", "x0", "survey")


def _column(df: pd.DataFrame, name: str, kind: str) -> np.ndarray:
    if name not in df.columns:
        raise ValueError(f"CSV rows of kind '{kind}' need a '{name}' column")
    values = df[name].to_numpy(dtype=np.float64)
    if np.isnan(values).any():
        raise ValueError(f"Missing '{name}' value in rows of kind '{kind}'")
    return values


def load_csv_to_dataset(path: Path) -> EcoDataset:
    """Load a CSV file of table rows into an EcoDataset.

    Expected CSV columns:
        - kind: one of regular, x1, x0, survey (defaults to regular when the
          column is absent)
        - x, y: covariate and target proportions (regular rows; x is
          optional for survey rows)
        - w1: observed W1 (x1 and survey rows)
        - w2: observed W2 (x0 and survey rows)

    Raises:
        ValueError: If CSV format is invalid or data is inconsistent.
    """
    df = pd.read_csv(path)

    if KIND_COLUMN not in df.columns:
        df[KIND_COLUMN] = "regular"
    df[KIND_COLUMN] = df[KIND_COLUMN].astype(str).str.strip().str.lower()

    unknown = sorted(set(df[KIND_COLUMN]) - set(VALID_KINDS))
    if unknown:
        raise ValueError(f"Unknown row kinds: {unknown}")

    regular = df[df[KIND_COLUMN] == "regular"]
    x1 = df[df[KIND_COLUMN] == "x1"]
    x0 = df[df[KIND_COLUMN] == "x0"]
    survey = df[df[KIND_COLUMN] == "survey"]

    if len(regular) > 0:
        x = _column(regular, "x", "regular")
        y = _column(regular, "y", "regular")
    else:
        x = np.empty(0, dtype=np.float64)
        y = np.empty(0, dtype=np.float64)

    x1_w1 = _column(x1, "w1", "x1") if len(x1) > 0 else None
    x0_w2 = _column(x0, "w2", "x0") if len(x0) > 0 else None

    survey_w = None
    survey_x = None
    if len(survey) > 0:
        survey_w = np.column_stack(
            [_column(survey, "w1", "survey"), _column(survey, "w2", "survey")]
        )
        if "x" in survey.columns and survey["x"].notna().all():
            survey_x = survey["x"].to_numpy(dtype=np.float64)

    return EcoDataset.from_arrays(
        x=x,
        y=y,
        x1_w1=x1_w1,
        x0_w2=x0_w2,
        survey_w=survey_w,
        survey_x=survey_x,
    )
