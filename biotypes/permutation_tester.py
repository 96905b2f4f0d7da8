# -*- coding: utf-8 -*-
"""
Permutation testing of the connectivity-symptom linkage.

Clinical rows are shuffled within site blocks, which preserves site-specific
structure so a site confound cannot inflate significance. The feature screen
is repeated inside every permutation, so the null absorbs the selection of
the k best features out of many (the multiple comparisons of the screen).

P-values use the add-one correction:

    p = (count of null values at least as extreme as observed + 1) / (n + 1)

Canonical correlations and Rao's F are "more extreme" when larger; Wilks'
Lambda itself is "more extreme" when smaller.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

import numpy as np
import pandas as pd

from biotypes import config
from biotypes.cca_fitter import CanonicalModel
from biotypes.resampling import BlockPermutation, Resample, run_refits
from biotypes.stats_utils import empirical_p_value
from biotypes.validator import (
    MatrixLike,
    check_labels,
    check_positive_int,
    check_row_alignment,
)

logger = logging.getLogger(__name__)

# Direction in which each null statistic indicates stronger association
STATISTIC_ALTERNATIVES = {
    'canonical_correlation': 'greater',
    'rao_F': 'greater',
    'wilks_lambda': 'less',
}


@dataclass(frozen=True)
class NullDistribution:
    """
    Null statistics from the permutation loop.

    Attributes:
        statistics: Statistic name -> array (n_iterations × n_dimensions);
            rows of excluded iterations are NaN
        n_iterations: Number of permutations run
        n_excluded: Permutations whose refit was rank deficient
        seed: Top-level seed of the run
    """
    statistics: Dict[str, np.ndarray]
    n_iterations: int
    n_excluded: int
    seed: Optional[int] = None

    @property
    def n_valid(self) -> int:
        return self.n_iterations - self.n_excluded

    @property
    def n_dimensions(self) -> int:
        return next(iter(self.statistics.values())).shape[1]

    def values(self, statistic: str, dimension: int) -> np.ndarray:
        """Null values of one statistic for one dimension (1-based)."""
        return self.statistics[statistic][:, dimension - 1]

    def p_values(self, statistic: str, observed: np.ndarray) -> np.ndarray:
        """
        Rank-based p-value per dimension.

        Args:
            statistic: 'canonical_correlation', 'rao_F' or 'wilks_lambda'
            observed: Observed statistic per dimension

        Returns:
            p-values in (0, 1]; NaN where the observed statistic is NaN
        """
        alternative = STATISTIC_ALTERNATIVES[statistic]
        observed = np.asarray(observed, dtype=float)
        n_dims = min(len(observed), self.n_dimensions)
        return np.array([
            empirical_p_value(observed[i], self.statistics[statistic][:, i], alternative)
            for i in range(n_dims)
        ])

    def to_frame(self) -> pd.DataFrame:
        """Long table: permutation, dimension, statistic, value."""
        frames = []
        for name, values in self.statistics.items():
            n_iter, n_dims = values.shape
            frames.append(pd.DataFrame({
                'permutation': np.repeat(np.arange(n_iter), n_dims),
                'dimension': np.tile(np.arange(1, n_dims + 1), n_iter),
                'statistic': name,
                'value': values.ravel(),
            }))
        if not frames:
            return pd.DataFrame(columns=['permutation', 'dimension', 'statistic', 'value'])
        return pd.concat(frames, ignore_index=True)


def _fixed_width(values: np.ndarray, n_dims: int) -> np.ndarray:
    """Truncate or NaN-pad a per-dimension vector to n_dims entries."""
    out = np.full(n_dims, np.nan)
    n = min(n_dims, len(values))
    out[:n] = values[:n]
    return out


def run_permutation_test(
    X: MatrixLike,
    Y: MatrixLike,
    k: int,
    n_perms: int,
    block_labels: Optional[np.ndarray] = None,
    seed: int = config.RANDOM_SEED,
    n_jobs: int = config.N_JOBS,
    n_dimensions: Optional[int] = None
) -> NullDistribution:
    """
    Build the permutation null of canonical correlations and Wilks' Lambda.

    Process:
    1. For each permutation i:
       a. Shuffle Y rows within blocks (stream i of the seed)
       b. Refit the feature screen and CCA with X unchanged
       c. Record canonical correlations, Wilks' Lambda and Rao's F per dimension
    2. Stack results in permutation order; rank-deficient refits are NaN rows

    Args:
        X: Connectivity matrix
        Y: Clinical matrix
        k: Number of connectivity features kept per refit
        n_perms: Number of permutations (0 gives an empty null)
        block_labels: Site label per subject; None permutes freely
        seed: Top-level seed
        n_jobs: joblib workers
        n_dimensions: Number of canonical dimensions recorded
            (default: min(k, n_clinical))

    Returns:
        NullDistribution

    Raises:
        InvalidParameter: If inputs are misaligned or parameters are invalid
    """
    n_subjects = check_row_alignment(X, Y)
    n_perms = check_positive_int(n_perms, 'n_perms', minimum=0)
    k = check_positive_int(k, 'k')
    block_labels = check_labels(block_labels, n_subjects, name='block_labels')

    n_clinical = np.shape(Y)[1]
    n_dims = n_dimensions if n_dimensions is not None else min(k, n_clinical)

    def evaluate(model: CanonicalModel, resample: Resample) -> Dict[str, np.ndarray]:
        return {
            'canonical_correlation': _fixed_width(model.correlations, n_dims),
            'wilks_lambda': _fixed_width(model.wilks['wilks_lambda'].to_numpy(), n_dims),
            'rao_F': _fixed_width(model.wilks['rao_F'].to_numpy(), n_dims),
        }

    strategy = BlockPermutation(n_subjects, n_perms, block_labels)
    n_blocks = 1 if block_labels is None else len(np.unique(block_labels))
    logger.info(
        f"Starting permutation testing with {n_perms} iterations "
        f"({n_blocks} exchangeability blocks, seed={seed})"
    )

    outcomes = run_refits(X, Y, k, strategy, seed=seed, n_jobs=n_jobs, evaluate=evaluate)

    statistics = {
        name: np.full((n_perms, n_dims), np.nan) for name in STATISTIC_ALTERNATIVES
    }
    for outcome in outcomes:
        if outcome.ok:
            for name, values in outcome.value.items():
                statistics[name][outcome.iteration] = values

    for values in statistics.values():
        values.setflags(write=False)

    n_excluded = sum(not o.ok for o in outcomes)
    return NullDistribution(
        statistics=statistics,
        n_iterations=n_perms,
        n_excluded=n_excluded,
        seed=seed,
    )


def compute_permutation_p_values(
    observed: CanonicalModel,
    null: NullDistribution
) -> pd.DataFrame:
    """
    Compare the full-data fit with the permutation null.

    Args:
        observed: CanonicalModel fitted on the real data
        null: NullDistribution from ``run_permutation_test``

    Returns:
        DataFrame with columns:
        - canonical_variate: 1, 2, ...
        - observed_r: Observed canonical correlation
        - permutation_p_value: Rank-based p-value of the correlation
        - wilks_lambda: Observed Wilks' Lambda for dimensions k..p
        - rao_F: Observed Rao's F
        - wilks_permutation_p: Rank-based p-value of Rao's F
        - wilks_asymptotic_p: F-approximation p-value
        - n_permutations: Permutations run
        - n_valid_permutations: Permutations not excluded
    """
    wilks = observed.wilks
    n_dims = min(observed.n_components, null.n_dimensions)

    p_r = null.p_values('canonical_correlation', observed.correlations[:n_dims])
    p_wilks = null.p_values('rao_F', wilks['rao_F'].to_numpy()[:n_dims])

    results_df = pd.DataFrame({
        'canonical_variate': np.arange(1, n_dims + 1),
        'observed_r': observed.correlations[:n_dims],
        'permutation_p_value': p_r,
        'wilks_lambda': wilks['wilks_lambda'].to_numpy()[:n_dims],
        'rao_F': wilks['rao_F'].to_numpy()[:n_dims],
        'wilks_permutation_p': p_wilks,
        'wilks_asymptotic_p': wilks['p_value'].to_numpy()[:n_dims],
        'n_permutations': null.n_iterations,
        'n_valid_permutations': null.n_valid,
    })

    logger.info(
        f"Permutation p-values (r): {np.round(p_r, 4).tolist()}; "
        f"(Wilks): {np.round(p_wilks, 4).tolist()}"
    )
    return results_df
