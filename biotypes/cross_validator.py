# -*- coding: utf-8 -*-
"""
Stratified k-fold cross-validation of the connectivity-symptom linkage.

For each fold, the feature screen and CCA are refit on the training
subjects, the held-out subjects are projected through the training weights,
and the out-of-sample canonical correlation of each dimension is the
correlation between held-out connectivity and clinical scores.

Folds are stratified by site so each fold's site mix matches the full
sample. A fold whose refit is rank deficient is reported as failed and does
not abort the other folds.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import numpy as np
import pandas as pd
from scipy import stats

from biotypes import config
from biotypes.cca_fitter import CanonicalModel
from biotypes.projector import project
from biotypes.resampling import (
    FoldAssignment,
    FoldHoldout,
    Resample,
    run_refits,
    stratified_folds,
    take_rows,
)
from biotypes.stats_utils import bootstrap_mean_ci, fisher_z_mean, paired_column_correlations
from biotypes.validator import (
    MatrixLike,
    check_labels,
    check_positive_int,
    check_row_alignment,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CrossValidationResult:
    """
    Out-of-sample canonical correlations per fold.

    Attributes:
        fold_correlations: One vector per fold, in fold order (NaN when the
            fold failed or its held-out scores were degenerate)
        fold_table: Long table with columns fold, canonical_variate, r_oos,
            n_train, n_test, n_selected, status
        assignment: Subject → fold mapping used
    """
    fold_correlations: List[np.ndarray]
    fold_table: pd.DataFrame
    assignment: FoldAssignment

    @property
    def n_folds(self) -> int:
        return self.assignment.n_folds

    def r_oos(self, dimension: int = 1) -> np.ndarray:
        """Out-of-sample correlations of one dimension across folds."""
        return np.array([r[dimension - 1] for r in self.fold_correlations])


def run_cross_validation(
    X: MatrixLike,
    Y: MatrixLike,
    k: int,
    n_folds: int,
    strata_labels: Optional[np.ndarray] = None,
    seed: int = config.RANDOM_SEED,
    n_jobs: int = config.N_JOBS,
    n_dimensions: Optional[int] = None
) -> CrossValidationResult:
    """
    Cross-validate the screen + CCA procedure.

    Args:
        X: Connectivity matrix
        Y: Clinical matrix
        k: Number of connectivity features kept per refit
        n_folds: Number of folds
        strata_labels: Site label per subject; None gives plain k-fold
        seed: Seed of the fold assignment
        n_jobs: joblib workers
        n_dimensions: Number of canonical dimensions reported
            (default: min(k, n_clinical))

    Returns:
        CrossValidationResult

    Raises:
        InvalidParameter: If inputs are misaligned or folds cannot be built
    """
    n_subjects = check_row_alignment(X, Y)
    k = check_positive_int(k, 'k')
    strata_labels = check_labels(strata_labels, n_subjects, name='strata_labels')
    n_dims = n_dimensions if n_dimensions is not None else min(k, np.shape(Y)[1])

    assignment = stratified_folds(n_subjects, n_folds, strata_labels, seed)
    logger.info(
        f"Starting {assignment.n_folds}-fold cross-validation "
        f"(fold sizes {assignment.fold_sizes.tolist()})"
    )

    def evaluate(model: CanonicalModel, resample: Resample) -> Dict:
        X_scores, Y_scores = project(
            model, take_rows(X, resample.test), take_rows(Y, resample.test)
        )
        r = np.full(n_dims, np.nan)
        r_fold = paired_column_correlations(X_scores, Y_scores)
        r[:min(n_dims, len(r_fold))] = r_fold[:n_dims]
        return {'r_oos': r, 'n_selected': model.selection.n_selected}

    outcomes = run_refits(
        X, Y, k, FoldHoldout(assignment), seed=None, n_jobs=n_jobs, evaluate=evaluate
    )

    fold_correlations = []
    records = []
    for outcome in outcomes:
        fold = outcome.iteration
        n_test = int(assignment.fold_sizes[fold])
        if outcome.ok:
            r = outcome.value['r_oos']
            n_selected = outcome.value['n_selected']
            status = 'degenerate' if np.isnan(r).any() else 'ok'
        else:
            r = np.full(n_dims, np.nan)
            n_selected = np.nan
            status = 'rank_deficient'
            logger.warning(f"  Fold {fold}: refit failed ({outcome.error})")

        fold_correlations.append(r)
        for i in range(n_dims):
            records.append({
                'fold': fold,
                'canonical_variate': i + 1,
                'r_oos': r[i],
                'n_train': n_subjects - n_test,
                'n_test': n_test,
                'n_selected': n_selected,
                'status': status,
            })
        logger.debug(f"  Fold {fold}: r_oos = {np.round(r, 3).tolist()} ({status})")

    fold_table = pd.DataFrame(records)
    n_failed = sum(not o.ok for o in outcomes)
    logger.info(
        f"Cross-validation complete: {len(outcomes) - n_failed}/{len(outcomes)} folds fitted"
    )

    return CrossValidationResult(
        fold_correlations=fold_correlations,
        fold_table=fold_table,
        assignment=assignment,
    )


def summarize_cv_results(
    cv_result: CrossValidationResult,
    in_sample_corrs: np.ndarray
) -> pd.DataFrame:
    """
    Compute cross-validation summary statistics.

    Correlations are averaged through the Fisher Z transform. The
    overfitting index compares in-sample and out-of-sample correlations:
    (in_sample_r - mean_r_oos) / in_sample_r.

    Args:
        cv_result: Result of ``run_cross_validation``
        in_sample_corrs: Canonical correlations of the full-data fit

    Returns:
        DataFrame with columns: canonical_variate, mean_r_oos, sd_z,
        min_r_oos, max_r_oos, in_sample_r, overfitting_index,
        n_valid_folds, n_excluded_folds
    """
    summary_records = []
    n_dims = min(len(in_sample_corrs), len(cv_result.fold_correlations[0])) \
        if cv_result.fold_correlations else 0

    for i in range(n_dims):
        r_values = cv_result.r_oos(i + 1)
        valid = r_values[~np.isnan(r_values)]
        mean_r, sd_z = fisher_z_mean(valid)
        in_sample_r = in_sample_corrs[i]

        if len(valid) > 0 and in_sample_r != 0:
            overfitting_index = (in_sample_r - mean_r) / in_sample_r
        else:
            overfitting_index = np.nan

        summary_records.append({
            'canonical_variate': i + 1,
            'mean_r_oos': mean_r,
            'sd_z': sd_z,
            'min_r_oos': np.min(valid) if len(valid) else np.nan,
            'max_r_oos': np.max(valid) if len(valid) else np.nan,
            'in_sample_r': in_sample_r,
            'overfitting_index': overfitting_index,
            'n_valid_folds': len(valid),
            'n_excluded_folds': len(r_values) - len(valid),
        })

    return pd.DataFrame(summary_records)


def compute_cv_significance(
    cv_result: CrossValidationResult,
    n_bootstrap: int = config.N_BOOTSTRAP,
    ci_level: float = config.CI_LEVEL,
    seed: int = config.RANDOM_SEED
) -> pd.DataFrame:
    """
    Test whether out-of-sample correlations exceed zero.

    For each canonical dimension:
    1. Fisher Z-transform valid fold correlations
    2. One-sample t-test, H1: z > 0
    3. Wilcoxon signed-rank test as robust alternative
    4. Percentile bootstrap CI of the mean fold correlation

    Returns:
        DataFrame with columns: canonical_variate, n_folds, mean_r_oos,
        ci_lower, ci_upper, t_statistic, p_value_t_test, p_value_wilcoxon,
        success_rate, significant, interpretation
    """
    records = []
    n_dims = len(cv_result.fold_correlations[0]) if cv_result.fold_correlations else 0

    for i in range(n_dims):
        r_values = cv_result.r_oos(i + 1)
        valid = r_values[~np.isnan(r_values)]
        n_valid = len(valid)

        if n_valid < 3:
            logger.warning(
                f"CV{i + 1}: Only {n_valid} valid folds, "
                "skipping significance testing (minimum 3 required)"
            )
            records.append({
                'canonical_variate': i + 1,
                'n_folds': n_valid,
                'mean_r_oos': np.nan,
                'ci_lower': np.nan,
                'ci_upper': np.nan,
                't_statistic': np.nan,
                'p_value_t_test': np.nan,
                'p_value_wilcoxon': np.nan,
                'success_rate': np.nan,
                'significant': False,
                'interpretation': 'Insufficient Data',
            })
            continue

        z_scores = np.arctanh(np.clip(valid, -config.FISHER_Z_CLIP, config.FISHER_Z_CLIP))
        t_stat, p_value_t = stats.ttest_1samp(z_scores, popmean=0, alternative='greater')

        try:
            _, p_value_w = stats.wilcoxon(valid, alternative='greater')
        except ValueError as e:
            logger.warning(f"CV{i + 1}: Wilcoxon test failed ({e})")
            p_value_w = np.nan

        mean_r, ci_lower, ci_upper = bootstrap_mean_ci(
            valid, n_bootstrap=n_bootstrap, ci_level=ci_level, seed=seed
        )

        if p_value_t < 0.05:
            interpretation = 'Significant Generalization'
        elif p_value_t < 0.10:
            interpretation = 'Trend'
        else:
            interpretation = 'Not Significant'

        records.append({
            'canonical_variate': i + 1,
            'n_folds': n_valid,
            'mean_r_oos': mean_r,
            'ci_lower': ci_lower,
            'ci_upper': ci_upper,
            't_statistic': t_stat,
            'p_value_t_test': p_value_t,
            'p_value_wilcoxon': p_value_w,
            'success_rate': np.mean(valid > 0),
            'significant': bool(p_value_t < 0.05),
            'interpretation': interpretation,
        })

        logger.info(
            f"CV{i + 1}: mean_r={mean_r:.3f} [{ci_lower:.3f}, {ci_upper:.3f}], "
            f"t={t_stat:.2f}, p={p_value_t:.4f} ({interpretation})"
        )

    return pd.DataFrame(records)
