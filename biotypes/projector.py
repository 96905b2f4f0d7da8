# -*- coding: utf-8 -*-
"""
Projection of (possibly new) subjects onto fitted canonical variates.

The projection is a pure linear map, X_sel @ W_x and Y @ W_y, without
re-centering, so it is safe to call repeatedly and concurrently with the same
model and ``project(a X1 + b X2) == a project(X1) + b project(X2)``.
"""

from typing import Tuple

import numpy as np
import pandas as pd

from biotypes.cca_fitter import CanonicalModel
from biotypes.errors import InvalidParameter
from biotypes.validator import MatrixLike, as_feature_matrix, check_row_alignment


def _restrict_connectivity(model: CanonicalModel, X: MatrixLike) -> np.ndarray:
    """
    Return the model's selected connectivity columns of X, in recorded order.

    X may be full width (the screen's input) or already restricted to the
    selected columns. Anything else is a programming error.
    """
    X_arr, columns = as_feature_matrix(X, name='X')
    n_selected = model.selection.n_selected
    n_in = model.n_features_in

    if columns is not None:
        feature_names = model.selection.feature_names
        if columns == list(model.x_names):
            return X_arr
        if feature_names is not None and columns == list(feature_names):
            return X_arr[:, model.selected_indices]
        raise InvalidParameter(
            "X columns match neither the model's selected features nor its "
            "full feature set"
        )

    if X_arr.shape[1] == n_selected:
        return X_arr
    if X_arr.shape[1] == n_in:
        return X_arr[:, model.selected_indices]
    raise InvalidParameter(
        f"X has {X_arr.shape[1]} columns; expected {n_selected} selected "
        f"or {n_in} total features"
    )


def project(
    model: CanonicalModel,
    X: MatrixLike,
    Y: MatrixLike
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Compute canonical variate scores for both blocks.

    Args:
        model: Fitted CanonicalModel
        X: Connectivity rows (full width or restricted to the selection)
        Y: Clinical rows with the model's clinical columns

    Returns:
        Tuple of (X_scores, Y_scores), each (n_rows × n_components)

    Raises:
        InvalidParameter: If the column sets do not match the model or the
            row counts differ
    """
    check_row_alignment(X, Y)
    X_sel = _restrict_connectivity(model, X)

    Y_arr, y_columns = as_feature_matrix(Y, name='Y')
    if Y_arr.shape[1] != len(model.y_names):
        raise InvalidParameter(
            f"Y has {Y_arr.shape[1]} columns; model expects {len(model.y_names)}"
        )
    if y_columns is not None and y_columns != list(model.y_names):
        raise InvalidParameter("Y columns do not match the model's clinical columns")

    return X_sel @ model.x_weights, Y_arr @ model.y_weights


def project_connectivity(model: CanonicalModel, X: MatrixLike) -> np.ndarray:
    """Connectivity canonical scores only (used to cluster subjects)."""
    return _restrict_connectivity(model, X) @ model.x_weights


def loadings_frame(model: CanonicalModel) -> pd.DataFrame:
    """
    Structure coefficients of a model in long format.

    Returns:
        DataFrame with columns: canonical_variate, variable_set
        ('connectivity' or 'clinical'), variable_name, loading
    """
    records = []
    for i in range(model.n_components):
        for name, loading in zip(model.x_names, model.x_loadings[:, i]):
            records.append({
                'canonical_variate': i + 1,
                'variable_set': 'connectivity',
                'variable_name': name,
                'loading': loading,
            })
        for name, loading in zip(model.y_names, model.y_loadings[:, i]):
            records.append({
                'canonical_variate': i + 1,
                'variable_set': 'clinical',
                'variable_name': name,
                'loading': loading,
            })
    return pd.DataFrame(records)


def first_clinical_loadings(model: CanonicalModel) -> pd.Series:
    """Correlation of each clinical variable with the first clinical variate."""
    return pd.Series(model.y_loadings[:, 0], index=model.y_names, name='loading')
