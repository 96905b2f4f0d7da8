"""
End-to-end tests of the analysis orchestration.
"""

import os

import numpy as np
import pandas as pd
import pytest

from biotypes.analyzer import BiotypesAnalyzer
from biotypes.data_loader import AnalysisData
from biotypes.errors import InvalidParameter


@pytest.fixture
def analyzer(make_data):
    X, Y, sites = make_data(n_subjects=60, seed=21)
    return BiotypesAnalyzer(X, Y, sites=sites, n_features=5, random_seed=0)


@pytest.fixture
def full_run(analyzer):
    analyzer.fit_cca()
    analyzer.permutation_test(n_permutations=19)
    analyzer.cross_validation(n_folds=3)
    analyzer.compute_cv_significance(n_bootstrap=200)
    analyzer.jackknife()
    analyzer.cluster_subjects(n_clusters=3)
    analyzer.test_cluster_significance(k_range=(2, 4), n_sims=9)
    analyzer.cluster_stability()
    return analyzer


class TestBiotypesAnalyzer:
    """Stage-by-stage analysis."""

    def test_misaligned_inputs_rejected(self, linked_data):
        X, Y, _ = linked_data
        with pytest.raises(InvalidParameter):
            BiotypesAnalyzer(X, Y.iloc[1:])

    def test_incomplete_inputs_rejected(self, linked_data):
        X, Y, _ = linked_data
        Y = Y.copy()
        Y.iloc[0, 0] = np.nan
        with pytest.raises(InvalidParameter):
            BiotypesAnalyzer(X, Y)

    def test_stage_order_enforced(self, analyzer):
        with pytest.raises(ValueError):
            analyzer.extract_canonical_variates()
        analyzer.fit_cca()
        with pytest.raises(ValueError):
            analyzer.jackknife_loadings()
        with pytest.raises(ValueError):
            analyzer.compare_cluster_profiles()

    def test_from_data(self, linked_data):
        X, Y, sites = linked_data
        data = AnalysisData(connectivity=X, clinical=Y, sites=pd.Series(sites, index=X.index))
        analyzer = BiotypesAnalyzer.from_data(data, n_features=4)

        assert analyzer.n_subjects == 50
        assert analyzer.sites.tolist() == sites.tolist()

    def test_canonical_variates_table(self, analyzer):
        analyzer.fit_cca()
        variates = analyzer.extract_canonical_variates()

        assert variates['canonical_variate'].tolist() == [1, 2, 3]
        assert variates.loc[0, 'canonical_correlation'] > 0.8
        assert (variates['n_obs'] == 60).all()

    def test_redundancy_interpreted(self, analyzer):
        analyzer.fit_cca()
        redundancy = analyzer.compute_redundancy_index()
        assert redundancy['interpretation'].isin(['High', 'Moderate', 'Low', 'Very Low', 'N/A']).all()

    def test_permutation_results(self, full_run):
        results = full_run.permutation_results
        assert results.loc[0, 'permutation_p_value'] == pytest.approx(1 / 20)
        assert full_run.null_distribution.n_iterations == 19

    def test_cluster_assignments(self, full_run):
        table = full_run.cluster_table
        assert list(table.columns) == ['subject', 'cluster', 'U1', 'U2']
        assert table['cluster'].nunique() == 3
        assert table['subject'].iloc[0] == 'sub-000'

    def test_jackknife_predictions(self, full_run):
        predictions, r_loo = full_run.jackknife_predictions()
        assert len(predictions) == 60 * 3
        assert r_loo.loc[0, 'r_loo'] > 0.7

    def test_cluster_characterization(self, full_run):
        profiles = full_run.compare_cluster_profiles()
        assert len(profiles) == 3

        site_result = full_run.test_site_association()
        assert 0 <= site_result['p_value'] <= 1

    def test_site_association_without_sites(self, linked_data):
        X, Y, _ = linked_data
        analyzer = BiotypesAnalyzer(X, Y, n_features=4)
        analyzer.fit_cca()
        analyzer.cluster_subjects(n_clusters=2)
        assert analyzer.test_site_association() is None

    def test_export_results(self, full_run, tmp_path):
        file_paths = full_run.export_results(str(tmp_path / 'results'))

        expected = {
            'cca_results', 'cca_loadings', 'cca_redundancy_indices',
            'cca_selected_features', 'canonical_scores',
            'permutation_pvalues', 'permutation_null',
            'cross_validation_folds', 'cross_validation_summary',
            'cross_validation_significance',
            'jackknife_loadings', 'jackknife_loading_stability',
            'jackknife_predictions', 'jackknife_loo_correlation',
            'cluster_assignments', 'cluster_profiles', 'cluster_site_association',
            'cluster_significance', 'cluster_indices', 'cluster_stability',
        }
        assert set(file_paths) == expected
        for path in file_paths.values():
            assert os.path.exists(path)

        selected = pd.read_csv(file_paths['cca_selected_features'])
        assert {'edge_000', 'edge_001'} <= set(selected['variable_name'])

    def test_export_before_any_stage(self, analyzer, tmp_path):
        assert analyzer.export_results(str(tmp_path)) == {}
