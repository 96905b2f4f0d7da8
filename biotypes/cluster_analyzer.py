# -*- coding: utf-8 -*-
"""
Hierarchical clustering of canonical scores and its significance.

Subjects are clustered on their leading connectivity canonical variates with
Ward's minimum-variance linkage on Euclidean distances, and the dendrogram is
cut into exactly k groups.

Cluster quality is summarized by the variance-ratio criterion
(Calinski-Harabasz) and the mean silhouette width, each maximized over a
range of cluster counts. Significance is assessed against a multivariate
Gaussian with the observed mean and covariance: if the scores are a single
elliptical cloud, simulated Gaussian data of the same size should produce
indices as large as the observed ones.

Interpretation:
    - p < 0.05: cluster structure stronger than a single Gaussian explains
    - p >= 0.05: no evidence for discrete subgroups ("biotypes")
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from scipy import stats
from scipy.cluster.hierarchy import cut_tree, linkage
from sklearn.metrics import adjusted_rand_score, calinski_harabasz_score, silhouette_score
from statsmodels.stats.multitest import multipletests

from biotypes import config
from biotypes.errors import InvalidParameter
from biotypes.jackknife import JackknifeResult
from biotypes.projector import project_connectivity
from biotypes.resampling import parallel_map
from biotypes.stats_utils import empirical_p_value
from biotypes.validator import MatrixLike, as_feature_matrix, check_positive_int

logger = logging.getLogger(__name__)

CLUSTER_INDICES = ('calinski_harabasz', 'silhouette')


@dataclass(frozen=True)
class ClusterAssignment:
    """
    Subject → cluster mapping from one Ward clustering.

    Attributes:
        labels: Cluster id per subject (0..n_clusters-1)
        n_clusters: Number of clusters
        linkage_matrix: Ward linkage the labels were cut from
    """
    labels: np.ndarray
    n_clusters: int
    linkage_matrix: np.ndarray

    @property
    def sizes(self) -> np.ndarray:
        return np.bincount(self.labels, minlength=self.n_clusters)


@dataclass(frozen=True)
class ClusterSignificance:
    """
    Observed cluster indices against the Gaussian null.

    Attributes:
        observed: Per-k table with columns k, calinski_harabasz, silhouette
        observed_best: Max over k of each index
        best_k: k at which each index peaks
        null: Table (n_sims rows) of the max-over-k indices per simulation
        p_values: Index name -> p-value
    """
    observed: pd.DataFrame
    observed_best: Dict[str, float]
    best_k: Dict[str, int]
    null: pd.DataFrame
    p_values: Dict[str, float]

    def to_frame(self) -> pd.DataFrame:
        """One row per index: observed, best_k, null mean/95th pct, p_value."""
        return pd.DataFrame([{
            'index': name,
            'observed': self.observed_best[name],
            'best_k': self.best_k[name],
            'null_mean': self.null[name].mean(),
            'null_95th': self.null[name].quantile(0.95) if len(self.null) else np.nan,
            'p_value': self.p_values[name],
            'n_sims': len(self.null),
        } for name in CLUSTER_INDICES])


def _as_scores(scores: MatrixLike) -> np.ndarray:
    values, _ = as_feature_matrix(scores, name='scores')
    return values


def _check_k_range(min_k: int, max_k: int, n_subjects: int) -> Tuple[int, int]:
    min_k = check_positive_int(min_k, 'min_k', minimum=2)
    max_k = check_positive_int(max_k, 'max_k', minimum=2)
    if min_k > max_k:
        raise InvalidParameter(f"min_k={min_k} is larger than max_k={max_k}")
    if max_k > n_subjects - 1:
        raise InvalidParameter(
            f"max_k={max_k} needs at least {max_k + 1} subjects, got {n_subjects}"
        )
    return min_k, max_k


def ward_linkage(scores: np.ndarray) -> np.ndarray:
    """Ward linkage on Euclidean distances between subjects."""
    return linkage(scores, method='ward', metric='euclidean')


def cluster(scores: MatrixLike, k_clusters: int) -> ClusterAssignment:
    """
    Ward hierarchical clustering cut into exactly k groups.

    Deterministic: Ward linkage involves no randomness.

    Args:
        scores: Canonical scores (subjects × components)
        k_clusters: Number of clusters

    Returns:
        ClusterAssignment with labels 0..k_clusters-1

    Raises:
        InvalidParameter: If k_clusters is not in [1, n_subjects]
    """
    values = _as_scores(scores)
    n_subjects = values.shape[0]
    k_clusters = check_positive_int(k_clusters, 'k_clusters')
    if k_clusters > n_subjects:
        raise InvalidParameter(
            f"k_clusters={k_clusters} exceeds the number of subjects ({n_subjects})"
        )
    if n_subjects < 2:
        raise InvalidParameter("Clustering needs at least 2 subjects")

    Z = ward_linkage(values)
    labels = cut_tree(Z, n_clusters=k_clusters).ravel().astype(int)

    return ClusterAssignment(labels=labels, n_clusters=k_clusters, linkage_matrix=Z)


def _indices_from_linkage(
    values: np.ndarray,
    Z: np.ndarray,
    min_k: int,
    max_k: int
) -> pd.DataFrame:
    ks = list(range(min_k, max_k + 1))
    cuts = cut_tree(Z, n_clusters=ks)
    records = []
    for j, k in enumerate(ks):
        labels = cuts[:, j]
        records.append({
            'k': k,
            'calinski_harabasz': calinski_harabasz_score(values, labels),
            'silhouette': silhouette_score(values, labels, metric='euclidean'),
        })
    return pd.DataFrame(records)


def clustering_indices(scores: MatrixLike, min_k: int, max_k: int) -> pd.DataFrame:
    """
    Calinski-Harabasz and silhouette indices for k = min_k..max_k.

    Returns:
        DataFrame with columns: k, calinski_harabasz, silhouette
    """
    values = _as_scores(scores)
    min_k, max_k = _check_k_range(min_k, max_k, values.shape[0])
    return _indices_from_linkage(values, ward_linkage(values), min_k, max_k)


def _best(indices_df: pd.DataFrame) -> Tuple[Dict[str, float], Dict[str, int]]:
    best = {name: float(indices_df[name].max()) for name in CLUSTER_INDICES}
    best_k = {
        name: int(indices_df.loc[indices_df[name].idxmax(), 'k'])
        for name in CLUSTER_INDICES
    }
    return best, best_k


def test_significance(
    scores: MatrixLike,
    min_k: int = config.CLUSTER_K_RANGE[0],
    max_k: int = config.CLUSTER_K_RANGE[1],
    n_sims: int = config.N_CLUSTER_SIMS,
    seed: int = config.RANDOM_SEED,
    n_jobs: int = config.N_JOBS
) -> ClusterSignificance:
    """
    Test cluster indices against a fitted multivariate Gaussian null.

    Process:
    1. Compute both indices for k = min_k..max_k on the observed scores and
       keep the maximum of each
    2. Fit mean vector and covariance matrix to the observed scores
    3. For each simulation, draw as many subjects from that Gaussian, run
       the same clustering and keep the maximum of each index
    4. p = (count of null maxima >= observed maximum + 1) / (n_sims + 1)

    Args:
        scores: Canonical scores (subjects × components)
        min_k: Smallest cluster count evaluated
        max_k: Largest cluster count evaluated
        n_sims: Number of Gaussian simulations
        seed: Top-level seed (simulation i uses child stream i)
        n_jobs: joblib workers

    Returns:
        ClusterSignificance
    """
    values = _as_scores(scores)
    n_subjects = values.shape[0]
    min_k, max_k = _check_k_range(min_k, max_k, n_subjects)
    n_sims = check_positive_int(n_sims, 'n_sims', minimum=0)

    observed = _indices_from_linkage(values, ward_linkage(values), min_k, max_k)
    observed_best, best_k = _best(observed)

    mean = values.mean(axis=0)
    cov = np.cov(values, rowvar=False)
    cov = np.atleast_2d(cov)

    logger.info(
        f"Cluster significance: observed max CH = {observed_best['calinski_harabasz']:.2f} "
        f"(k={best_k['calinski_harabasz']}), max silhouette = "
        f"{observed_best['silhouette']:.3f} (k={best_k['silhouette']}); "
        f"{n_sims} Gaussian simulations"
    )

    def simulate(iteration: int, rng: np.random.Generator) -> Dict[str, float]:
        sample = rng.multivariate_normal(mean, cov, size=n_subjects)
        sim_best, _ = _best(_indices_from_linkage(sample, ward_linkage(sample), min_k, max_k))
        return sim_best

    outcomes = parallel_map(
        simulate, n_sims, seed=seed, n_jobs=n_jobs, label='cluster simulation'
    )
    null = pd.DataFrame(
        [o.value for o in outcomes if o.ok], columns=list(CLUSTER_INDICES)
    )

    p_values = {
        name: empirical_p_value(observed_best[name], null[name].to_numpy(), 'greater')
        for name in CLUSTER_INDICES
    }
    logger.info(
        f"Cluster significance: p(CH) = {p_values['calinski_harabasz']:.4f}, "
        f"p(silhouette) = {p_values['silhouette']:.4f}"
    )

    return ClusterSignificance(
        observed=observed,
        observed_best=observed_best,
        best_k=best_k,
        null=null,
        p_values=p_values,
    )


def cluster_stability(
    reference: ClusterAssignment,
    jackknife_results: List[JackknifeResult],
    X: MatrixLike,
    n_components: int = config.N_CLUSTER_COMPONENTS
) -> pd.DataFrame:
    """
    Agreement between the reference clusters and jackknife-refit clusters.

    Each leave-one-out refit projects every subject, the leading
    ``n_components`` connectivity scores are re-clustered into the same
    number of groups, and the adjusted Rand index against the reference
    assignment is computed. The reference assignment is reused, never
    recomputed.

    Stability Interpretation:
        - ARI > 0.8: Highly stable clustering
        - ARI 0.6-0.8: Moderately stable
        - ARI < 0.6: Unstable clustering

    Returns:
        DataFrame with columns: held_out, ari (NaN for excluded refits)
    """
    records = []
    for result in jackknife_results:
        if not result.ok:
            records.append({'held_out': result.held_out, 'ari': np.nan})
            continue
        scores = project_connectivity(result.model, X)[:, :n_components]
        labels = cluster(scores, reference.n_clusters).labels
        records.append({
            'held_out': result.held_out,
            'ari': adjusted_rand_score(reference.labels, labels),
        })

    stability_df = pd.DataFrame(records)
    logger.info(
        f"Cluster stability: median ARI = {stability_df['ari'].median():.3f} "
        f"over {stability_df['ari'].notna().sum()} refits"
    )
    return stability_df


def compare_cluster_profiles(
    data: pd.DataFrame,
    labels: np.ndarray,
    alpha: float = 0.05
) -> pd.DataFrame:
    """
    One-way ANOVA of each variable across clusters, FDR corrected.

    Args:
        data: Subjects × variables (e.g. clinical scores)
        labels: Cluster id per subject
        alpha: FDR level

    Returns:
        DataFrame with columns: variable_name, F, p_value, eta_squared,
        p_fdr, significant_fdr, plus one mean column per cluster
    """
    labels = np.asarray(labels)
    if len(labels) != len(data):
        raise InvalidParameter(
            f"labels has {len(labels)} entries for {len(data)} subjects"
        )

    clusters = np.unique(labels)
    records = []
    for name in data.columns:
        values = data[name].to_numpy(dtype=float)
        groups = [values[labels == c] for c in clusters]
        F, p_value = stats.f_oneway(*groups)
        ss_total = np.sum((values - values.mean()) ** 2)
        ss_between = sum(len(g) * (g.mean() - values.mean()) ** 2 for g in groups)
        record = {
            'variable_name': name,
            'F': F,
            'p_value': p_value,
            'eta_squared': ss_between / ss_total if ss_total > 0 else np.nan,
        }
        for c, g in zip(clusters, groups):
            record[f'mean_cluster_{c}'] = g.mean()
        records.append(record)

    profiles_df = pd.DataFrame(records)
    valid = profiles_df['p_value'].notna()
    profiles_df['p_fdr'] = np.nan
    profiles_df['significant_fdr'] = False
    if valid.any():
        reject, p_fdr, _, _ = multipletests(
            profiles_df.loc[valid, 'p_value'], alpha=alpha, method='fdr_bh'
        )
        profiles_df.loc[valid, 'p_fdr'] = p_fdr
        profiles_df.loc[valid, 'significant_fdr'] = reject

    return profiles_df


def test_site_association(labels: np.ndarray, sites: np.ndarray) -> Dict[str, float]:
    """
    Chi-square test of independence between cluster and scan site.

    Returns:
        Dict with chi_square, dof, p_value, cramers_v
    """
    table = pd.crosstab(pd.Series(labels, name='cluster'), pd.Series(sites, name='site'))
    chi_square, p_value, dof, _ = stats.chi2_contingency(table)
    n = table.to_numpy().sum()
    min_dim = min(table.shape) - 1
    cramers_v = np.sqrt(chi_square / (n * min_dim)) if min_dim > 0 else np.nan
    return {
        'chi_square': float(chi_square),
        'dof': int(dof),
        'p_value': float(p_value),
        'cramers_v': float(cramers_v),
    }
