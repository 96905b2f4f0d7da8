# -*- coding: utf-8 -*-
"""
Shared numeric and statistical helpers.

Correlation kernels used by the selector, the fitter and the resampling
components, the add-one empirical p-value, and summaries of fold-level
correlations (Fisher Z averaging, bootstrap confidence intervals).
"""

from typing import Optional, Tuple

import numpy as np
from scipy import stats

from biotypes import config


def _standardize_columns(A: np.ndarray) -> np.ndarray:
    """Center and scale columns; zero-variance columns become NaN."""
    centered = A - A.mean(axis=0)
    norms = np.sqrt((centered ** 2).sum(axis=0))
    with np.errstate(invalid='ignore', divide='ignore'):
        out = centered / norms
    out[:, norms < config.MIN_STD] = np.nan
    return out


def correlation_matrix(A: np.ndarray, B: np.ndarray) -> np.ndarray:
    """
    Pearson correlation between every column of A and every column of B.

    Args:
        A: Array (n_obs × p)
        B: Array (n_obs × q)

    Returns:
        Array (p × q); entries involving a constant column are NaN
    """
    return _standardize_columns(A).T @ _standardize_columns(B)


def spearman_matrix(A: np.ndarray, B: np.ndarray) -> np.ndarray:
    """
    Spearman rank correlation between every column of A and every column of B.

    Ties receive average ranks, as in ``scipy.stats.spearmanr``.
    """
    ranks_a = stats.rankdata(A, axis=0)
    ranks_b = stats.rankdata(B, axis=0)
    return correlation_matrix(ranks_a, ranks_b)


def paired_column_correlations(U: np.ndarray, V: np.ndarray) -> np.ndarray:
    """
    Correlation of column i of U with column i of V.

    This is the diagonal of the cross-correlation matrix between two sets of
    canonical scores. Columns with near-zero variance or fewer than 3 rows
    give NaN.
    """
    n_components = min(U.shape[1], V.shape[1])
    r = np.full(n_components, np.nan)
    if U.shape[0] < 3:
        return r

    for i in range(n_components):
        u, v = U[:, i], V[:, i]
        if np.std(u) < config.MIN_STD or np.std(v) < config.MIN_STD:
            continue
        r[i] = np.corrcoef(u, v)[0, 1]

    return r


def empirical_p_value(
    observed: float,
    null_values: np.ndarray,
    alternative: str = 'greater'
) -> float:
    """
    Rank-based permutation p-value with the add-one correction.

    p = (count of null values at least as extreme as observed + 1) / (n + 1)

    NaN entries of the null (excluded iterations) are dropped from both the
    count and n. With an empty null the p-value is exactly 1.

    Args:
        observed: Observed statistic
        null_values: Null statistics (one per iteration)
        alternative: 'greater' when larger values are stronger evidence,
            'less' when smaller values are

    Returns:
        p-value in (0, 1], or NaN when the observed statistic is NaN
    """
    if alternative not in ('greater', 'less'):
        raise ValueError(f"alternative must be 'greater' or 'less', got {alternative!r}")
    if np.isnan(observed):
        return np.nan

    null_values = np.asarray(null_values, dtype=float)
    valid = null_values[~np.isnan(null_values)]

    if alternative == 'greater':
        count = np.sum(valid >= observed)
    else:
        count = np.sum(valid <= observed)

    return (count + 1) / (len(valid) + 1)


def fisher_z_mean(r_values: np.ndarray) -> Tuple[float, float]:
    """
    Average correlations through the Fisher Z transform.

    Returns:
        Tuple of (mean r back-transformed, SD of z); NaN when no valid values
    """
    r_values = np.asarray(r_values, dtype=float)
    r_valid = r_values[~np.isnan(r_values)]
    if len(r_valid) == 0:
        return np.nan, np.nan

    z = np.arctanh(np.clip(r_valid, -config.FISHER_Z_CLIP, config.FISHER_Z_CLIP))
    sd_z = np.std(z, ddof=1) if len(z) > 1 else 0.0
    return float(np.tanh(np.mean(z))), float(sd_z)


def bootstrap_mean_ci(
    values: np.ndarray,
    n_bootstrap: int = config.N_BOOTSTRAP,
    ci_level: float = config.CI_LEVEL,
    seed: Optional[int] = config.RANDOM_SEED
) -> Tuple[float, float, float]:
    """
    Percentile bootstrap confidence interval of the mean.

    Args:
        values: Sample (NaN entries are ignored)
        n_bootstrap: Number of bootstrap resamples
        ci_level: Coverage of the interval (e.g. 0.95)
        seed: Seed of the bootstrap generator

    Returns:
        Tuple of (mean, ci_lower, ci_upper); NaN when fewer than 2 values
    """
    values = np.asarray(values, dtype=float)
    valid = values[~np.isnan(values)]
    if len(valid) < 2:
        return np.nan, np.nan, np.nan

    rng = np.random.default_rng(seed)
    idx = rng.integers(0, len(valid), size=(n_bootstrap, len(valid)))
    boot_means = valid[idx].mean(axis=1)

    alpha = (1 - ci_level) / 2
    ci_lower, ci_upper = np.quantile(boot_means, [alpha, 1 - alpha])
    return float(valid.mean()), float(ci_lower), float(ci_upper)
