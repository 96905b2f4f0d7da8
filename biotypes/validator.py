# -*- coding: utf-8 -*-
"""
Input checks for the matrices consumed by the analysis core.

All core entry points accept either a ``pandas.DataFrame`` (column names and
subject index are kept for reporting) or a 2-D ``numpy.ndarray``. These
helpers coerce inputs to float arrays and fail fast with ``InvalidParameter``
when inputs are misaligned or contain missing values.
"""

import logging
from typing import List, Optional, Tuple, Union

import numpy as np
import pandas as pd

from biotypes.errors import InvalidParameter

logger = logging.getLogger(__name__)

MatrixLike = Union[pd.DataFrame, np.ndarray]


def as_feature_matrix(
    data: MatrixLike,
    name: str = 'X',
    allow_missing: bool = False
) -> Tuple[np.ndarray, Optional[List[str]]]:
    """
    Coerce a FeatureMatrix to a float array.

    Args:
        data: DataFrame or 2-D array (subjects × features)
        name: Name used in error messages
        allow_missing: Accept NaN entries (only the loader does this)

    Returns:
        Tuple of (float array, column names or None for plain arrays)

    Raises:
        InvalidParameter: If the input is not 2-D, is empty, is not numeric,
            or contains missing values
    """
    columns = None
    if isinstance(data, pd.DataFrame):
        columns = [str(c) for c in data.columns]
        values = data.to_numpy()
    else:
        values = np.asarray(data)

    if values.ndim != 2:
        raise InvalidParameter(
            f"{name} must be 2-D (subjects × features), got {values.ndim}-D"
        )
    if values.shape[0] == 0 or values.shape[1] == 0:
        raise InvalidParameter(f"{name} is empty: shape {values.shape}")

    try:
        values = values.astype(float)
    except (TypeError, ValueError) as e:
        raise InvalidParameter(f"{name} contains non-numeric values: {e}") from e

    if not allow_missing and np.isnan(values).any():
        n_missing = int(np.isnan(values).sum())
        raise InvalidParameter(
            f"{name} contains {n_missing} missing values; impute before analysis"
        )

    return values, columns


def check_row_alignment(X: MatrixLike, Y: MatrixLike) -> int:
    """
    Check that X and Y describe the same subjects in the same order.

    Args:
        X: Connectivity matrix
        Y: Clinical matrix

    Returns:
        Number of subjects

    Raises:
        InvalidParameter: If row counts differ, subject indexes differ, or a
            subject identifier is duplicated
    """
    n_x, n_y = len(X), len(Y)
    if n_x != n_y:
        raise InvalidParameter(
            f"Row counts differ: X has {n_x} subjects, Y has {n_y}"
        )

    for name, data in (('X', X), ('Y', Y)):
        if isinstance(data, pd.DataFrame) and data.index.has_duplicates:
            dupes = data.index[data.index.duplicated()].unique().tolist()
            raise InvalidParameter(
                f"Duplicate subject identifiers in {name}: {dupes[:5]}"
            )

    if isinstance(X, pd.DataFrame) and isinstance(Y, pd.DataFrame):
        if not X.index.equals(Y.index):
            raise InvalidParameter(
                "Subject order differs between X and Y; align rows before analysis"
            )

    return n_x


def check_labels(
    labels: Optional[Union[pd.Series, np.ndarray, list]],
    n_subjects: int,
    name: str = 'labels'
) -> Optional[np.ndarray]:
    """
    Coerce a grouping/site vector and check it matches the subject count.

    Returns:
        Label array, or None when no labels were given

    Raises:
        InvalidParameter: If the length differs from the subject count or
            labels are missing
    """
    if labels is None:
        return None

    values = np.asarray(labels)
    if values.ndim != 1 or len(values) != n_subjects:
        raise InvalidParameter(
            f"{name} must have one entry per subject ({n_subjects}), "
            f"got shape {values.shape}"
        )
    if pd.isnull(values).any():
        raise InvalidParameter(f"{name} contains missing values")

    return values


def check_positive_int(value, name: str, minimum: int = 1) -> int:
    """Validate an integer parameter such as k, n_perms or n_folds."""
    if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
        raise InvalidParameter(f"{name} must be an integer, got {value!r}")
    if value < minimum:
        raise InvalidParameter(f"{name} must be >= {minimum}, got {value}")
    return int(value)


def audit_input_matrices(X: MatrixLike, Y: MatrixLike) -> pd.DataFrame:
    """
    Summarize the structure of the two input blocks before analysis.

    Returns:
        DataFrame with one row per block: n_subjects, n_features, n_missing,
        n_constant (zero-variance columns) and min/max column std
    """
    records = []
    for name, data in (('connectivity', X), ('clinical', Y)):
        values, _ = as_feature_matrix(data, name=name, allow_missing=True)
        stds = np.nanstd(values, axis=0)
        records.append({
            'block': name,
            'n_subjects': values.shape[0],
            'n_features': values.shape[1],
            'n_missing': int(np.isnan(values).sum()),
            'n_constant': int(np.sum(stds < 1e-12)),
            'min_std': float(np.min(stds)),
            'max_std': float(np.max(stds)),
        })

    audit_df = pd.DataFrame(records)
    logger.info(
        f"Audited inputs: X {audit_df.loc[0, 'n_subjects']}×{audit_df.loc[0, 'n_features']}, "
        f"Y {audit_df.loc[1, 'n_subjects']}×{audit_df.loc[1, 'n_features']}"
    )
    return audit_df
