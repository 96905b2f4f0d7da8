# -*- coding: utf-8 -*-
"""
Spearman screen of connectivity features against clinical symptoms.

Each connectivity column is scored by its maximum absolute Spearman
correlation with any clinical column; the top-k columns are kept.

Ties at the threshold: columns whose score is ``>=`` the k-th largest score
are all kept, so ties can admit more than k columns. The actual count is
exposed as ``SelectionResult.n_selected``. Selected indices are returned in
original column order.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from biotypes.errors import InvalidParameter, RankDeficiencyError
from biotypes.stats_utils import spearman_matrix
from biotypes.validator import (
    MatrixLike,
    as_feature_matrix,
    check_positive_int,
    check_row_alignment,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SelectionResult:
    """
    Columns of X retained by the screen.

    Attributes:
        indices: Selected column positions, ascending
        scores: Max |Spearman rho| per X column (NaN for constant columns)
        k: Number of columns requested
        threshold: k-th largest score (the inclusive cut)
        feature_names: Names of all X columns (None for plain arrays)
    """
    indices: np.ndarray
    scores: np.ndarray
    k: int
    threshold: float
    feature_names: Optional[List[str]] = None

    @property
    def n_selected(self) -> int:
        return len(self.indices)

    @property
    def n_features_in(self) -> int:
        return len(self.scores)

    @property
    def has_ties(self) -> bool:
        """True when threshold ties admitted more than k columns."""
        return self.n_selected > self.k

    @property
    def mask(self) -> np.ndarray:
        mask = np.zeros(self.n_features_in, dtype=bool)
        mask[self.indices] = True
        return mask

    @property
    def selected_names(self) -> List[str]:
        if self.feature_names is None:
            return [f'x{i}' for i in self.indices]
        return [self.feature_names[i] for i in self.indices]


def select(X: MatrixLike, Y: MatrixLike, k: int) -> SelectionResult:
    """
    Keep the k connectivity features most associated with any symptom.

    Args:
        X: Connectivity matrix (subjects × features), no missing values
        Y: Clinical matrix (subjects × symptoms), no missing values
        k: Number of features to keep

    Returns:
        SelectionResult with at least k columns (more under threshold ties)

    Raises:
        InvalidParameter: If k is not in [1, n_features], rows are misaligned
            or inputs contain missing values
        RankDeficiencyError: If fewer than k columns have a defined
            correlation (e.g. constant columns in a resample)
    """
    check_row_alignment(X, Y)
    X_arr, x_names = as_feature_matrix(X, name='X')
    Y_arr, _ = as_feature_matrix(Y, name='Y')

    k = check_positive_int(k, 'k')
    n_features = X_arr.shape[1]
    if k > n_features:
        raise InvalidParameter(
            f"k={k} exceeds the number of connectivity features ({n_features})"
        )

    rho = spearman_matrix(X_arr, Y_arr)
    abs_rho = np.abs(rho)
    # A column is undefined only when every correlation is undefined
    all_nan = np.isnan(abs_rho).all(axis=1)
    scores = np.full(n_features, np.nan)
    scores[~all_nan] = np.nanmax(abs_rho[~all_nan], axis=1)

    finite = ~np.isnan(scores)
    n_finite = int(finite.sum())
    if n_finite < k:
        raise RankDeficiencyError(
            f"Only {n_finite} features have a defined correlation, cannot keep k={k}"
        )

    threshold = np.sort(scores[finite])[::-1][k - 1]
    selected = np.flatnonzero(finite & (scores >= threshold))

    if len(selected) > k:
        logger.debug(
            f"Threshold ties at {threshold:.6f}: kept {len(selected)} features for k={k}"
        )

    return SelectionResult(
        indices=selected,
        scores=scores,
        k=k,
        threshold=float(threshold),
        feature_names=x_names,
    )
