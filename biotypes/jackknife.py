# -*- coding: utf-8 -*-
"""
Leave-one-out (jackknife) stability of the linkage.

For each subject i the feature screen and CCA are refit without i, and
subject i is projected through the refit. Both the held-out prediction and
the full refit model are kept, because the instability of loadings under
single-subject removal is itself an observable, and because the refit
scores are reused to assess the stability of the cluster solution.

Refits are sign-aligned to the full-data model when one is given, so
scores and loadings are comparable across refits.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

import numpy as np
import pandas as pd

from biotypes import config
from biotypes.cca_fitter import CanonicalModel, align_signs
from biotypes.projector import project
from biotypes.resampling import LeaveOneOut, Resample, run_refits, take_rows
from biotypes.stats_utils import paired_column_correlations
from biotypes.validator import MatrixLike, check_positive_int, check_row_alignment

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JackknifeResult:
    """
    One leave-one-out refit.

    Attributes:
        held_out: Index of the omitted subject
        x_score: Held-out connectivity scores (n_components,); None if excluded
        y_score: Held-out clinical scores (n_components,); None if excluded
        model: Refit model; None when the refit was rank deficient
        error: Reason the refit was excluded
    """
    held_out: int
    x_score: Optional[np.ndarray]
    y_score: Optional[np.ndarray]
    model: Optional[CanonicalModel]
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.model is not None


def run_jackknife(
    X: MatrixLike,
    Y: MatrixLike,
    k: int,
    reference: Optional[CanonicalModel] = None,
    n_jobs: int = config.N_JOBS
) -> List[JackknifeResult]:
    """
    Refit the screen + CCA leaving each subject out once.

    Args:
        X: Connectivity matrix
        Y: Clinical matrix
        k: Number of connectivity features kept per refit
        reference: Full-data model used to align component signs
        n_jobs: joblib workers

    Returns:
        One JackknifeResult per subject, in subject order
    """
    n_subjects = check_row_alignment(X, Y)
    k = check_positive_int(k, 'k')

    def evaluate(model: CanonicalModel, resample: Resample) -> JackknifeResult:
        if reference is not None:
            model = align_signs(model, reference)
        X_scores, Y_scores = project(
            model, take_rows(X, resample.test), take_rows(Y, resample.test)
        )
        return JackknifeResult(
            held_out=int(resample.test[0]),
            x_score=X_scores[0],
            y_score=Y_scores[0],
            model=model,
        )

    logger.info(f"Starting jackknife with {n_subjects} leave-one-out refits")
    outcomes = run_refits(
        X, Y, k, LeaveOneOut(n_subjects), seed=None, n_jobs=n_jobs, evaluate=evaluate
    )

    results = []
    for outcome in outcomes:
        if outcome.ok:
            results.append(outcome.value)
        else:
            results.append(JackknifeResult(
                held_out=outcome.iteration,
                x_score=None,
                y_score=None,
                model=None,
                error=outcome.error,
            ))
    return results


def jackknife_loadings(results: List[JackknifeResult]) -> pd.DataFrame:
    """
    Loadings of each clinical variable on the first clinical variate, per refit.

    Returns:
        Wide DataFrame indexed by held_out subject, one column per clinical
        variable; rows of excluded refits are NaN
    """
    names = next((r.model.y_names for r in results if r.ok), [])
    rows = {}
    for result in results:
        if result.ok:
            rows[result.held_out] = result.model.y_loadings[:, 0]
        else:
            rows[result.held_out] = np.full(len(names), np.nan)

    loadings_df = pd.DataFrame.from_dict(rows, orient='index', columns=names)
    loadings_df.index.name = 'held_out'
    return loadings_df


def summarize_loading_stability(loadings_df: pd.DataFrame) -> pd.DataFrame:
    """
    Spread of each clinical loading across jackknife refits.

    Returns:
        DataFrame with columns: variable_name, mean_loading, sd_loading,
        min_loading, max_loading, sign_flips (refits with the minority sign)
    """
    records = []
    for name in loadings_df.columns:
        values = loadings_df[name].dropna().to_numpy()
        if len(values) == 0:
            continue
        n_positive = int(np.sum(values > 0))
        records.append({
            'variable_name': name,
            'mean_loading': values.mean(),
            'sd_loading': values.std(ddof=1) if len(values) > 1 else 0.0,
            'min_loading': values.min(),
            'max_loading': values.max(),
            'sign_flips': min(n_positive, len(values) - n_positive),
        })
    return pd.DataFrame(records)


def jackknife_predictions(results: List[JackknifeResult]) -> pd.DataFrame:
    """
    Held-out canonical scores in long format.

    Returns:
        DataFrame with columns: held_out, canonical_variate, x_score, y_score
    """
    records = []
    for result in results:
        if not result.ok:
            continue
        for i, (x, y) in enumerate(zip(result.x_score, result.y_score)):
            records.append({
                'held_out': result.held_out,
                'canonical_variate': i + 1,
                'x_score': x,
                'y_score': y,
            })
    return pd.DataFrame(records, columns=['held_out', 'canonical_variate', 'x_score', 'y_score'])


def jackknife_prediction_correlation(
    results: List[JackknifeResult],
    n_dimensions: Optional[int] = None
) -> np.ndarray:
    """
    Leave-one-out canonical correlation per dimension.

    Correlates held-out connectivity scores with held-out clinical scores
    across subjects. Only meaningful for sign-aligned refits.

    Returns:
        Array (n_dimensions,); NaN where fewer than 3 refits are valid
    """
    valid = [r for r in results if r.ok]
    if not valid:
        return np.full(n_dimensions or 0, np.nan)

    n_dims = min(len(r.x_score) for r in valid)
    if n_dimensions is not None:
        n_dims = min(n_dims, n_dimensions)
    X_scores = np.array([r.x_score[:n_dims] for r in valid])
    Y_scores = np.array([r.y_score[:n_dims] for r in valid])
    return paired_column_correlations(X_scores, Y_scores)
