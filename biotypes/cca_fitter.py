# -*- coding: utf-8 -*-
"""
Canonical Correlation Analysis of connectivity and clinical blocks.

CCA finds linear combinations:
- U = X @ W_x (connectivity canonical variates)
- V = Y @ W_y (clinical canonical variates)

such that corr(U_i, V_i) is maximized for each pair i, with pairs mutually
uncorrelated.

The fit follows the QR/SVD formulation: both centered blocks are reduced by a
column-pivoted QR decomposition, the singular values of Qx' Qy are the
canonical correlations, and the weights are recovered by back-substitution
through the triangular factors. No covariance matrix is ever inverted.

Significance of the overall association is summarized by Wilks' Lambda with
Rao's F approximation, computed sequentially for dimensions k..p.
"""

import logging
import warnings
from dataclasses import dataclass, field, replace
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd
from scipy import linalg, stats

from biotypes import config
from biotypes.errors import (
    InvalidParameter,
    NumericInstabilityWarning,
    RankDeficiencyError,
)
from biotypes.feature_selector import SelectionResult, select
from biotypes.stats_utils import correlation_matrix
from biotypes.validator import MatrixLike, as_feature_matrix, check_row_alignment

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CanonicalModel:
    """
    Result of one CCA fit.

    Attributes:
        correlations: Canonical correlations, descending (n_components,)
        x_weights: Connectivity weights (n_selected × n_components)
        y_weights: Clinical weights (n_clinical × n_components)
        selection: Screen that produced the connectivity columns
        x_loadings: corr(X_j, U_i) structure coefficients (n_selected × n_components)
        y_loadings: corr(Y_k, V_i) structure coefficients (n_clinical × n_components)
        wilks: Sequential Wilks' Lambda table, one row per dimension
        n_samples: Number of subjects in the fit
        x_names: Names of the selected connectivity columns
        y_names: Names of the clinical columns
        low_confidence: True when the decomposition was ill-conditioned
        warnings: Messages of the instability warnings issued during the fit
    """
    correlations: np.ndarray
    x_weights: np.ndarray
    y_weights: np.ndarray
    selection: SelectionResult
    x_loadings: np.ndarray
    y_loadings: np.ndarray
    wilks: pd.DataFrame
    n_samples: int
    x_names: List[str]
    y_names: List[str]
    low_confidence: bool = False
    warnings: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def n_components(self) -> int:
        return len(self.correlations)

    @property
    def selected_indices(self) -> np.ndarray:
        return self.selection.indices

    @property
    def n_features_in(self) -> int:
        return self.selection.n_features_in


def _pivoted_qr(A: np.ndarray, name: str) -> Tuple[np.ndarray, np.ndarray, np.ndarray, float]:
    """
    Column-pivoted QR of a centered block with a rank check.

    Returns:
        Q, R, pivot permutation, condition estimate of R

    Raises:
        RankDeficiencyError: If the numerical rank is below the column count
    """
    Q, R, piv = linalg.qr(A, mode='economic', pivoting=True)
    diag = np.abs(np.diag(R))
    if diag.size == 0 or diag[0] == 0:
        raise RankDeficiencyError(f"{name} block has rank 0")

    rank = int(np.sum(diag > config.RANK_TOLERANCE * diag[0]))
    if rank < A.shape[1]:
        raise RankDeficiencyError(
            f"{name} block is rank deficient: rank {rank} < {A.shape[1]} columns "
            f"({A.shape[0]} subjects); reduce k or add subjects"
        )

    condition = float(diag[0] / diag[-1])
    return Q, R, piv, condition


def _orient(
    x_weights: np.ndarray,
    y_weights: np.ndarray,
    x_loadings: np.ndarray,
    y_loadings: np.ndarray
) -> None:
    """Flip components in place so clinical loadings sum to a positive value."""
    signs = np.where(y_loadings.sum(axis=0) < 0, -1.0, 1.0)
    x_weights *= signs
    y_weights *= signs
    x_loadings *= signs
    y_loadings *= signs


def wilks_lambda_table(
    correlations: np.ndarray,
    n_samples: int,
    p: int,
    q: int
) -> pd.DataFrame:
    """
    Sequential Wilks' Lambda test for canonical dimensions.

    Row k tests H0: canonical correlations k..min(p, q) are all zero.

    Lambda_k = prod_{i >= k} (1 - r_i^2)

    Rao's F approximation:
        m = N - 3/2 - (p + q)/2
        t = sqrt(((p-k)^2 (q-k)^2 - 4) / ((p-k)^2 + (q-k)^2 - 5)), 1 if the
            denominator is not positive
        df1 = (p-k)(q-k),  df2 = m t - df1/2 + 1
        F = (1 - Lambda^(1/t)) / Lambda^(1/t) * df2 / df1

    Bartlett's chi-square, -(N - 1 - (p+q+1)/2) ln(Lambda_k) on df1, is
    reported alongside.

    Args:
        correlations: Canonical correlations (descending)
        n_samples: Number of subjects (N)
        p: Number of connectivity columns
        q: Number of clinical columns

    Returns:
        DataFrame with columns: dimension, canonical_correlation,
        wilks_lambda, rao_F, df1, df2, p_value, chi_square, chi_square_p,
        valid. Rows whose statistic is undefined have NaN statistics and
        valid=False.
    """
    correlations = np.asarray(correlations, dtype=float)
    n_dims = len(correlations)
    lambdas = np.cumprod((1 - correlations ** 2)[::-1])[::-1]
    m = n_samples - 1.5 - (p + q) / 2

    records = []
    for k in range(n_dims):
        lam = float(max(lambdas[k], 0.0))
        pk, qk = p - k, q - k
        denom = pk ** 2 + qk ** 2 - 5
        t = np.sqrt((pk ** 2 * qk ** 2 - 4) / denom) if denom > 0 else 1.0
        df1 = pk * qk
        df2 = m * t - df1 / 2 + 1

        valid = df2 > 0
        if not valid:
            F = p_value = np.nan
        elif lam == 0.0:
            F, p_value = np.inf, 0.0
        else:
            w = lam ** (1 / t)
            F = (1 - w) / w * df2 / df1
            p_value = float(stats.f.sf(F, df1, df2))

        bartlett_factor = n_samples - 1 - (p + q + 1) / 2
        if lam == 0.0:
            chi_square, chi_p = np.inf, 0.0
        elif bartlett_factor > 0:
            chi_square = -bartlett_factor * np.log(lam)
            chi_p = float(stats.chi2.sf(chi_square, df1))
        else:
            chi_square = chi_p = np.nan

        records.append({
            'dimension': k + 1,
            'canonical_correlation': correlations[k],
            'wilks_lambda': lam,
            'rao_F': F,
            'df1': df1,
            'df2': df2,
            'p_value': p_value,
            'chi_square': chi_square,
            'chi_square_p': chi_p,
            'valid': bool(valid),
        })

    return pd.DataFrame(records)


def fit(
    X_selected: MatrixLike,
    Y: MatrixLike,
    selection: Optional[SelectionResult] = None
) -> CanonicalModel:
    """
    Fit CCA between selected connectivity columns and clinical scores.

    Args:
        X_selected: Connectivity matrix restricted to the selected columns
        Y: Clinical matrix
        selection: Screen that produced X_selected; when None the columns of
            X_selected are treated as the full feature set

    Returns:
        CanonicalModel with min(p, q) components

    Raises:
        InvalidParameter: If rows are misaligned, inputs contain missing
            values, or X_selected does not match ``selection``
        RankDeficiencyError: If either block is rank deficient
    """
    check_row_alignment(X_selected, Y)
    X_arr, x_names = as_feature_matrix(X_selected, name='X_selected')
    Y_arr, y_names = as_feature_matrix(Y, name='Y')
    n, p = X_arr.shape
    q = Y_arr.shape[1]

    if selection is None:
        selection = SelectionResult(
            indices=np.arange(p),
            scores=np.full(p, np.nan),
            k=p,
            threshold=np.nan,
            feature_names=x_names,
        )
    elif selection.n_selected != p:
        raise InvalidParameter(
            f"X_selected has {p} columns but the selection recorded "
            f"{selection.n_selected}"
        )

    if x_names is None:
        x_names = selection.selected_names
    if y_names is None:
        y_names = [f'y{j}' for j in range(q)]

    if n <= max(p, q):
        raise RankDeficiencyError(
            f"{n} subjects cannot support CCA with {p} connectivity and "
            f"{q} clinical columns"
        )

    Xc = X_arr - X_arr.mean(axis=0)
    Yc = Y_arr - Y_arr.mean(axis=0)
    Qx, Rx, piv_x, cond_x = _pivoted_qr(Xc, 'X')
    Qy, Ry, piv_y, cond_y = _pivoted_qr(Yc, 'Y')

    issued = []
    for name, cond in (('X', cond_x), ('Y', cond_y)):
        if cond > config.CONDITION_NUMBER_LIMIT:
            message = (
                f"{name} block is ill-conditioned (condition estimate {cond:.2e}); "
                f"canonical weights are low-confidence"
            )
            warnings.warn(message, NumericInstabilityWarning, stacklevel=2)
            issued.append(message)

    U_svd, s, Vt_svd = linalg.svd(Qx.T @ Qy, full_matrices=False)
    n_components = min(p, q)
    correlations = np.clip(s[:n_components], 0.0, 1.0)

    # Unit-variance training variates
    scale = np.sqrt(n - 1)
    x_weights = np.empty((p, n_components))
    x_weights[piv_x] = linalg.solve_triangular(Rx, U_svd[:, :n_components]) * scale
    y_weights = np.empty((q, n_components))
    y_weights[piv_y] = linalg.solve_triangular(Ry, Vt_svd.T[:, :n_components]) * scale

    x_loadings = correlation_matrix(X_arr, Xc @ x_weights)
    y_loadings = correlation_matrix(Y_arr, Yc @ y_weights)
    _orient(x_weights, y_weights, x_loadings, y_loadings)

    wilks = wilks_lambda_table(correlations, n, p, q)
    if not wilks['valid'].all():
        logger.debug(
            f"Wilks' Lambda undefined for dimensions "
            f"{wilks.loc[~wilks['valid'], 'dimension'].tolist()} (N={n}, p={p}, q={q})"
        )

    return CanonicalModel(
        correlations=correlations,
        x_weights=x_weights,
        y_weights=y_weights,
        selection=selection,
        x_loadings=x_loadings,
        y_loadings=y_loadings,
        wilks=wilks,
        n_samples=n,
        x_names=list(x_names),
        y_names=list(y_names),
        low_confidence=bool(issued),
        warnings=tuple(issued),
    )


def fit_linkage(X: MatrixLike, Y: MatrixLike, k: int) -> CanonicalModel:
    """
    Screen connectivity features and fit CCA on the survivors.

    This is the unit refit by every resampling loop.

    Args:
        X: Full connectivity matrix
        Y: Clinical matrix
        k: Number of connectivity features to keep

    Returns:
        CanonicalModel whose selection records the kept columns
    """
    selection = select(X, Y, k)
    if isinstance(X, pd.DataFrame):
        X_selected = X.iloc[:, selection.indices]
    else:
        X_selected = np.asarray(X, dtype=float)[:, selection.indices]
    return fit(X_selected, Y, selection=selection)


def align_signs(model: CanonicalModel, reference: CanonicalModel) -> CanonicalModel:
    """
    Flip components of a refit so they point the same way as a reference.

    CCA components have arbitrary signs. Clinical variables are shared by
    every refit, so each component is flipped when its clinical loadings
    correlate negatively with the reference's.

    Returns:
        A new CanonicalModel (the input is not modified)
    """
    n_shared = min(model.n_components, reference.n_components)
    signs = np.ones(model.n_components)
    for i in range(n_shared):
        if np.dot(model.y_loadings[:, i], reference.y_loadings[:, i]) < 0:
            signs[i] = -1.0

    if np.all(signs > 0):
        return model

    return replace(
        model,
        x_weights=model.x_weights * signs,
        y_weights=model.y_weights * signs,
        x_loadings=model.x_loadings * signs,
        y_loadings=model.y_loadings * signs,
    )


def compute_redundancy_index(model: CanonicalModel) -> pd.DataFrame:
    """
    Stewart-Love redundancy index for each canonical dimension.

    Redundancy of Y given X variate i = r_i^2 × mean_k(corr(Y_k, V_i)^2)
    Redundancy of X given Y variate i = r_i^2 × mean_j(corr(X_j, U_i)^2)

    Interpretation:
    - Redundancy > 10%: Meaningful shared variance
    - Redundancy < 5%: Weak relationship, potential overfitting

    Returns:
        DataFrame with columns: dimension, r_canonical, var_explained_Y_by_V,
        var_explained_X_by_U, redundancy_Y_given_X, redundancy_X_given_Y
    """
    r_sq = model.correlations ** 2
    var_y = np.mean(model.y_loadings ** 2, axis=0)
    var_x = np.mean(model.x_loadings ** 2, axis=0)

    return pd.DataFrame({
        'dimension': np.arange(1, model.n_components + 1),
        'r_canonical': model.correlations,
        'var_explained_Y_by_V': var_y,
        'var_explained_X_by_U': var_x,
        'redundancy_Y_given_X': r_sq * var_y,
        'redundancy_X_given_Y': r_sq * var_x,
    })
