# -*- coding: utf-8 -*-
"""
Connectivity-symptom biotype analysis.

Orchestrates the full analysis on one pair of aligned matrices:

1. Screen connectivity features by their maximal Spearman correlation with
   any clinical score and fit CCA on the retained features
2. Test the linkage by block permutation (site blocks), cross-validate it
   with site-stratified folds, and assess its stability by leave-one-out
3. Cluster subjects on their leading connectivity canonical variates and
   test the cluster structure against a Gaussian null
4. Characterize the clusters (clinical profiles, site association)

Every stage stores its results on the analyzer; ``export_results`` writes
them as CSV tables.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from biotypes import config
from biotypes.cca_fitter import CanonicalModel, compute_redundancy_index, fit_linkage
from biotypes.cluster_analyzer import (
    ClusterAssignment,
    ClusterSignificance,
    cluster,
    cluster_stability,
    compare_cluster_profiles,
    test_significance,
    test_site_association,
)
from biotypes.cross_validator import (
    CrossValidationResult,
    compute_cv_significance,
    run_cross_validation,
    summarize_cv_results,
)
from biotypes.data_loader import AnalysisData
from biotypes.jackknife import (
    JackknifeResult,
    jackknife_loadings,
    jackknife_prediction_correlation,
    jackknife_predictions,
    run_jackknife,
    summarize_loading_stability,
)
from biotypes.permutation_tester import (
    NullDistribution,
    compute_permutation_p_values,
    run_permutation_test,
)
from biotypes.projector import loadings_frame, project, project_connectivity
from biotypes.validator import (
    MatrixLike,
    as_feature_matrix,
    audit_input_matrices,
    check_labels,
    check_row_alignment,
)


class BiotypesAnalyzer:
    """
    Canonical correlation and clustering analysis of connectivity and symptoms.

    Attributes:
        connectivity: Subjects × connectivity features
        clinical: Subjects × clinical scores
        sites: Site label per subject (None when unknown)
        n_features: Number of connectivity features retained by the screen
        random_seed: Seed of every randomized stage
        n_jobs: joblib workers for the resampling loops
        model: Full-data CanonicalModel (after ``fit_cca``)

    Example:
        >>> analyzer = BiotypesAnalyzer.from_data(data, n_features=150)
        >>> analyzer.fit_cca()
        >>> analyzer.permutation_test(n_permutations=999)
        >>> analyzer.cross_validation(n_folds=10)
        >>> analyzer.jackknife()
        >>> analyzer.cluster_subjects(n_clusters=4)
        >>> analyzer.export_results('results/biotypes')
    """

    def __init__(
        self,
        connectivity: MatrixLike,
        clinical: MatrixLike,
        sites: Optional[np.ndarray] = None,
        n_features: int = config.N_FEATURES,
        random_seed: int = config.RANDOM_SEED,
        n_jobs: int = config.N_JOBS
    ):
        """
        Initialize the analyzer.

        Args:
            connectivity: Complete connectivity matrix (no missing values)
            clinical: Complete clinical matrix, rows aligned with connectivity
            sites: Site label per subject, used for permutation blocks,
                fold stratification and the site association test
            n_features: Number of connectivity features kept by the screen
            random_seed: Seed of the permutation, fold and simulation streams
            n_jobs: joblib workers

        Raises:
            InvalidParameter: If the matrices are misaligned or incomplete
        """
        self.n_subjects = check_row_alignment(connectivity, clinical)
        as_feature_matrix(connectivity, name='connectivity')
        as_feature_matrix(clinical, name='clinical')

        self.connectivity = connectivity
        self.clinical = clinical
        self.sites = check_labels(sites, self.n_subjects, name='sites')
        self.n_features = n_features
        self.random_seed = random_seed
        self.n_jobs = n_jobs

        # Storage for results
        self.model: Optional[CanonicalModel] = None
        self.null_distribution: Optional[NullDistribution] = None
        self.permutation_results: Optional[pd.DataFrame] = None
        self.cv_result: Optional[CrossValidationResult] = None
        self.cv_summary: Optional[pd.DataFrame] = None
        self.cv_significance: Optional[pd.DataFrame] = None
        self.jackknife_results: Optional[List[JackknifeResult]] = None
        self.cluster_assignment: Optional[ClusterAssignment] = None
        self.cluster_scores: Optional[np.ndarray] = None
        self.cluster_table: Optional[pd.DataFrame] = None
        self.cluster_significance: Optional[ClusterSignificance] = None
        self.stability_results: Optional[pd.DataFrame] = None

        self.logger = logging.getLogger(__name__)
        self.logger.info(
            f"Initialized BiotypesAnalyzer: {self.n_subjects} subjects, "
            f"{np.shape(connectivity)[1]} connectivity features, "
            f"{np.shape(clinical)[1]} clinical scores"
        )

    @classmethod
    def from_data(cls, data: AnalysisData, **kwargs) -> 'BiotypesAnalyzer':
        """Build an analyzer from the output of ``BiotypesDataLoader``."""
        sites = None if data.sites is None else data.sites.to_numpy()
        return cls(data.connectivity, data.clinical, sites=sites, **kwargs)

    @property
    def subject_ids(self) -> np.ndarray:
        if isinstance(self.connectivity, pd.DataFrame):
            return self.connectivity.index.to_numpy()
        return np.arange(self.n_subjects)

    def _require_model(self) -> CanonicalModel:
        if self.model is None:
            raise ValueError("Must run fit_cca() first")
        return self.model

    def audit_inputs(self) -> pd.DataFrame:
        """Shape, missingness and variance summary of both matrices."""
        return audit_input_matrices(self.connectivity, self.clinical)

    # =========================================================================
    # CCA
    # =========================================================================

    def fit_cca(self) -> CanonicalModel:
        """
        Fit the feature screen and CCA on all subjects.

        Returns:
            CanonicalModel

        Raises:
            RankDeficiencyError: If the retained features are collinear or
                there are too few subjects for the retained features
        """
        self.model = fit_linkage(self.connectivity, self.clinical, self.n_features)

        self.logger.info(
            f"Fitted CCA on {self.model.selection.n_selected} connectivity features "
            f"(k={self.n_features}): r = {np.round(self.model.correlations, 3).tolist()}"
        )
        if self.model.selection.has_ties:
            self.logger.info(
                f"  Screen ties at the threshold kept "
                f"{self.model.selection.n_selected - self.n_features} extra features"
            )
        if self.model.low_confidence:
            self.logger.warning("  CCA fit flagged as low confidence (ill-conditioned)")
        return self.model

    def extract_canonical_variates(self) -> pd.DataFrame:
        """
        Canonical correlations with the sequential Wilks' Lambda tests.

        Returns:
            DataFrame with columns: canonical_variate, canonical_correlation,
            wilks_lambda, rao_F, df1, df2, p_value, chi_square,
            chi_square_p, valid, n_obs, n_selected
        """
        model = self._require_model()
        variates_df = model.wilks.rename(columns={'dimension': 'canonical_variate'}).copy()
        variates_df['n_obs'] = model.n_samples
        variates_df['n_selected'] = model.selection.n_selected
        return variates_df

    def compute_canonical_loadings(self) -> pd.DataFrame:
        """Structure coefficients of both blocks, long format."""
        return loadings_frame(self._require_model())

    def compute_redundancy_index(self) -> pd.DataFrame:
        """Stewart-Love redundancy per dimension, with an interpretation."""
        redundancy_df = compute_redundancy_index(self._require_model())
        redundancy_df['interpretation'] = redundancy_df.apply(
            self._interpret_redundancy, axis=1
        )
        return redundancy_df

    def _interpret_redundancy(self, row: pd.Series) -> str:
        """
        Interpret redundancy index magnitude.

        - High (> 15%): Strong shared variance
        - Moderate (10-15%): Meaningful relationship
        - Low (5-10%): Weak relationship
        - Very Low (< 5%): Minimal shared variance, potential overfitting
        """
        redundancy = (row['redundancy_Y_given_X'] + row['redundancy_X_given_Y']) / 2
        if pd.isna(redundancy):
            return 'N/A'
        elif redundancy > 0.15:
            return 'High'
        elif redundancy > 0.10:
            return 'Moderate'
        elif redundancy > 0.05:
            return 'Low'
        else:
            return 'Very Low'

    def canonical_scores(self) -> pd.DataFrame:
        """Full-data canonical scores of every subject (U1.., V1..)."""
        model = self._require_model()
        U, V = project(model, self.connectivity, self.clinical)
        scores_df = pd.DataFrame(
            np.hstack([U, V]),
            columns=[f'U{i + 1}' for i in range(U.shape[1])]
            + [f'V{i + 1}' for i in range(V.shape[1])],
        )
        scores_df.insert(0, 'subject', self.subject_ids)
        return scores_df

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def permutation_test(
        self,
        n_permutations: int = config.N_PERMUTATIONS,
        use_site_blocks: bool = True
    ) -> pd.DataFrame:
        """
        Permutation test of every canonical dimension.

        Clinical rows are shuffled within sites (when site labels are known
        and ``use_site_blocks``) and the screen + CCA are refit each time.

        Args:
            n_permutations: Number of permutations
            use_site_blocks: Restrict shuffles to within-site exchanges

        Returns:
            DataFrame from ``compute_permutation_p_values``
        """
        model = self._require_model()
        blocks = self.sites if use_site_blocks else None

        self.null_distribution = run_permutation_test(
            self.connectivity,
            self.clinical,
            self.n_features,
            n_permutations,
            block_labels=blocks,
            seed=self.random_seed,
            n_jobs=self.n_jobs,
            n_dimensions=model.n_components,
        )
        self.permutation_results = compute_permutation_p_values(model, self.null_distribution)

        for _, row in self.permutation_results.iterrows():
            self.logger.info(
                f"  CV{int(row['canonical_variate'])}: r = {row['observed_r']:.3f}, "
                f"p_perm = {row['permutation_p_value']:.4f} "
                f"({int(row['n_valid_permutations'])} valid permutations)"
            )
        return self.permutation_results

    def cross_validation(
        self,
        n_folds: int = config.N_FOLDS,
        stratify_by_site: bool = True
    ) -> pd.DataFrame:
        """
        Site-stratified k-fold cross-validation.

        Returns:
            Per-fold table (fold, canonical_variate, r_oos, n_train, n_test,
            n_selected, status)
        """
        model = self._require_model()
        strata = self.sites if stratify_by_site else None

        self.cv_result = run_cross_validation(
            self.connectivity,
            self.clinical,
            self.n_features,
            n_folds,
            strata_labels=strata,
            seed=self.random_seed,
            n_jobs=self.n_jobs,
            n_dimensions=model.n_components,
        )
        return self.cv_result.fold_table

    def summarize_cv_results(self) -> pd.DataFrame:
        """Fisher-z mean out-of-sample correlation and overfitting index."""
        model = self._require_model()
        if self.cv_result is None:
            raise ValueError("Must run cross_validation() first")
        self.cv_summary = summarize_cv_results(self.cv_result, model.correlations)
        return self.cv_summary

    def compute_cv_significance(
        self,
        n_bootstrap: int = config.N_BOOTSTRAP,
        ci_level: float = config.CI_LEVEL
    ) -> pd.DataFrame:
        """t-test, Wilcoxon and bootstrap CI of the fold correlations."""
        if self.cv_result is None:
            raise ValueError("Must run cross_validation() first")
        self.cv_significance = compute_cv_significance(
            self.cv_result, n_bootstrap=n_bootstrap, ci_level=ci_level, seed=self.random_seed
        )
        return self.cv_significance

    def jackknife(self) -> List[JackknifeResult]:
        """Leave-one-out refits, sign-aligned to the full-data model."""
        model = self._require_model()
        self.jackknife_results = run_jackknife(
            self.connectivity,
            self.clinical,
            self.n_features,
            reference=model,
            n_jobs=self.n_jobs,
        )
        n_valid = sum(r.ok for r in self.jackknife_results)
        self.logger.info(f"Jackknife complete: {n_valid}/{self.n_subjects} refits valid")
        return self.jackknife_results

    def _require_jackknife(self) -> List[JackknifeResult]:
        if self.jackknife_results is None:
            raise ValueError("Must run jackknife() first")
        return self.jackknife_results

    def jackknife_loadings(self) -> pd.DataFrame:
        """First clinical-variate loadings per leave-one-out refit."""
        return jackknife_loadings(self._require_jackknife())

    def jackknife_loading_stability(self) -> pd.DataFrame:
        """Spread and sign flips of each clinical loading across refits."""
        return summarize_loading_stability(self.jackknife_loadings())

    def jackknife_predictions(self) -> Tuple[pd.DataFrame, pd.DataFrame]:
        """
        Held-out canonical scores and their leave-one-out correlation.

        Returns:
            Tuple of (long predictions table, DataFrame with columns
            canonical_variate and r_loo)
        """
        results = self._require_jackknife()
        predictions_df = jackknife_predictions(results)
        r_loo = jackknife_prediction_correlation(results, self._require_model().n_components)
        r_loo_df = pd.DataFrame({
            'canonical_variate': np.arange(1, len(r_loo) + 1),
            'r_loo': r_loo,
        })
        return predictions_df, r_loo_df

    # =========================================================================
    # CLUSTERING
    # =========================================================================

    def _clustering_scores(self, n_components: int) -> np.ndarray:
        model = self._require_model()
        n_components = min(n_components, model.n_components)
        return project_connectivity(model, self.connectivity)[:, :n_components]

    def cluster_subjects(
        self,
        n_clusters: int = config.N_CLUSTERS,
        n_components: int = config.N_CLUSTER_COMPONENTS
    ) -> pd.DataFrame:
        """
        Ward clustering of subjects on the leading connectivity variates.

        Returns:
            DataFrame with columns: subject, cluster, U1..Un
        """
        self.cluster_scores = self._clustering_scores(n_components)
        self.cluster_assignment = cluster(self.cluster_scores, n_clusters)

        assignments_df = pd.DataFrame(
            self.cluster_scores,
            columns=[f'U{i + 1}' for i in range(self.cluster_scores.shape[1])],
        )
        assignments_df.insert(0, 'cluster', self.cluster_assignment.labels)
        assignments_df.insert(0, 'subject', self.subject_ids)
        self.cluster_table = assignments_df

        self.logger.info(
            f"Clustered {self.n_subjects} subjects into {n_clusters} groups "
            f"(sizes {self.cluster_assignment.sizes.tolist()})"
        )
        return assignments_df

    def test_cluster_significance(
        self,
        k_range: Tuple[int, int] = config.CLUSTER_K_RANGE,
        n_sims: int = config.N_CLUSTER_SIMS,
        n_components: int = config.N_CLUSTER_COMPONENTS
    ) -> pd.DataFrame:
        """
        Calinski-Harabasz and silhouette against a Gaussian null.

        Returns:
            One row per index: observed, best_k, null_mean, null_95th,
            p_value, n_sims
        """
        scores = (
            self.cluster_scores if self.cluster_scores is not None
            else self._clustering_scores(n_components)
        )
        self.cluster_significance = test_significance(
            scores,
            min_k=k_range[0],
            max_k=k_range[1],
            n_sims=n_sims,
            seed=self.random_seed,
            n_jobs=self.n_jobs,
        )
        return self.cluster_significance.to_frame()

    def _require_clusters(self) -> ClusterAssignment:
        if self.cluster_assignment is None:
            raise ValueError("Must run cluster_subjects() first")
        return self.cluster_assignment

    def cluster_stability(self) -> pd.DataFrame:
        """Adjusted Rand index of each jackknife refit's clustering."""
        assignment = self._require_clusters()
        self.stability_results = cluster_stability(
            assignment,
            self._require_jackknife(),
            self.connectivity,
            n_components=self.cluster_scores.shape[1],
        )
        return self.stability_results

    def compare_cluster_profiles(self) -> pd.DataFrame:
        """ANOVA of each clinical score across clusters, FDR corrected."""
        assignment = self._require_clusters()
        clinical = self.clinical
        if not isinstance(clinical, pd.DataFrame):
            clinical = pd.DataFrame(
                clinical, columns=[f'y{j}' for j in range(np.shape(clinical)[1])]
            )
        return compare_cluster_profiles(clinical, assignment.labels)

    def test_site_association(self) -> Optional[Dict[str, float]]:
        """Chi-square test of cluster × site; None when sites are unknown."""
        assignment = self._require_clusters()
        if self.sites is None:
            self.logger.warning("No site labels: skipping site association test")
            return None
        result = test_site_association(assignment.labels, self.sites)
        self.logger.info(
            f"Cluster × site: chi2 = {result['chi_square']:.2f}, "
            f"dof = {result['dof']}, p = {result['p_value']:.4f}"
        )
        return result

    # =========================================================================
    # EXPORT
    # =========================================================================

    def export_results(self, output_dir: str) -> Dict[str, str]:
        """
        Export analysis results to CSV files.

        Creates (for every stage that has been run):
        - cca_results.csv: Canonical correlations and Wilks' Lambda tests
        - cca_loadings.csv: Structure coefficients of both blocks
        - cca_redundancy_indices.csv: Redundancy per dimension
        - cca_selected_features.csv: Features retained by the screen
        - canonical_scores.csv: Full-data scores per subject
        - permutation_pvalues.csv / permutation_null.csv
        - cross_validation_folds.csv / _summary.csv / _significance.csv
        - jackknife_loadings.csv / jackknife_loading_stability.csv
        - jackknife_predictions.csv / jackknife_loo_correlation.csv
        - cluster_assignments.csv / cluster_significance.csv
        - cluster_indices.csv / cluster_stability.csv / cluster_profiles.csv
        - cluster_site_association.csv

        Args:
            output_dir: Directory to save results

        Returns:
            Dict mapping file types to file paths
        """
        output_path = Path(output_dir)
        output_path.mkdir(parents=True, exist_ok=True)
        file_paths = {}

        def save(name: str, df: pd.DataFrame) -> None:
            path = output_path / f'{name}.csv'
            df.to_csv(path, index=False)
            file_paths[name] = str(path)
            self.logger.info(f"Exported {name} to {path}")

        if self.model is not None:
            save('cca_results', self.extract_canonical_variates())
            save('cca_loadings', self.compute_canonical_loadings())
            save('cca_redundancy_indices', self.compute_redundancy_index())
            save('cca_selected_features', pd.DataFrame({
                'feature_index': self.model.selected_indices,
                'variable_name': self.model.x_names,
                'max_abs_spearman': self.model.selection.scores[self.model.selected_indices],
            }))
            save('canonical_scores', self.canonical_scores())

        if self.permutation_results is not None:
            save('permutation_pvalues', self.permutation_results)
            save('permutation_null', self.null_distribution.to_frame())

        if self.cv_result is not None:
            save('cross_validation_folds', self.cv_result.fold_table)
            save('cross_validation_summary', self.summarize_cv_results())
            if self.cv_significance is not None:
                save('cross_validation_significance', self.cv_significance)

        if self.jackknife_results is not None:
            loadings_df = self.jackknife_loadings()
            save('jackknife_loadings', loadings_df.reset_index())
            save('jackknife_loading_stability', summarize_loading_stability(loadings_df))
            predictions_df, r_loo_df = self.jackknife_predictions()
            save('jackknife_predictions', predictions_df)
            save('jackknife_loo_correlation', r_loo_df)

        if self.cluster_assignment is not None:
            assignments_df = pd.DataFrame({
                'subject': self.subject_ids,
                'cluster': self.cluster_assignment.labels,
            })
            save('cluster_assignments', assignments_df)
            save('cluster_profiles', self.compare_cluster_profiles())
            site_result = self.test_site_association()
            if site_result is not None:
                save('cluster_site_association', pd.DataFrame([site_result]))

        if self.cluster_significance is not None:
            save('cluster_significance', self.cluster_significance.to_frame())
            save('cluster_indices', self.cluster_significance.observed)

        if self.stability_results is not None:
            save('cluster_stability', self.stability_results)

        self.logger.info(f"Exported {len(file_paths)} result files to {output_path}")
        return file_paths
