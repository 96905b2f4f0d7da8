"""
Tests for Ward clustering of canonical scores and its Gaussian null.
"""

import numpy as np
import pandas as pd
import pytest
from sklearn.metrics import adjusted_rand_score

from biotypes import cluster_analyzer
from biotypes.cca_fitter import fit_linkage
from biotypes.errors import InvalidParameter
from biotypes.jackknife import run_jackknife
from biotypes.projector import project_connectivity


@pytest.fixture
def blobs():
    rng = np.random.default_rng(0)
    centers = np.array([[0.0, 0.0], [10.0, 0.0], [0.0, 10.0]])
    truth = np.repeat([0, 1, 2], 20)
    scores = centers[truth] + rng.standard_normal((60, 2))
    return scores, truth


class TestCluster:
    """Ward linkage cut to exactly k groups."""

    def test_separated_groups_recovered(self, blobs):
        scores, truth = blobs
        assignment = cluster_analyzer.cluster(scores, 3)
        assert adjusted_rand_score(truth, assignment.labels) == pytest.approx(1.0)

    @pytest.mark.parametrize('k', [1, 2, 3, 4, 5, 6])
    def test_exactly_k_clusters(self, k):
        scores = np.random.default_rng(1).standard_normal((40, 2))
        assignment = cluster_analyzer.cluster(scores, k)

        assert len(np.unique(assignment.labels)) == k
        assert assignment.labels.min() == 0
        assert assignment.labels.max() == k - 1
        assert assignment.sizes.sum() == 40

    def test_deterministic(self, blobs):
        scores, _ = blobs
        first = cluster_analyzer.cluster(scores, 4)
        second = cluster_analyzer.cluster(scores, 4)
        np.testing.assert_array_equal(first.labels, second.labels)

    def test_linkage_matrix_kept(self, blobs):
        scores, _ = blobs
        assignment = cluster_analyzer.cluster(scores, 3)
        assert assignment.linkage_matrix.shape == (59, 4)

    @pytest.mark.parametrize('k', [0, 61])
    def test_invalid_k(self, blobs, k):
        scores, _ = blobs
        with pytest.raises(InvalidParameter):
            cluster_analyzer.cluster(scores, k)


class TestClusteringIndices:
    """Calinski-Harabasz and silhouette over k."""

    def test_table_layout(self, blobs):
        scores, _ = blobs
        table = cluster_analyzer.clustering_indices(scores, 2, 6)

        assert table['k'].tolist() == [2, 3, 4, 5, 6]
        assert list(table.columns) == ['k', 'calinski_harabasz', 'silhouette']

    def test_true_k_maximizes_indices(self, blobs):
        scores, _ = blobs
        table = cluster_analyzer.clustering_indices(scores, 2, 6)

        assert table.loc[table['calinski_harabasz'].idxmax(), 'k'] == 3
        assert table.loc[table['silhouette'].idxmax(), 'k'] == 3

    def test_silhouette_needs_two_clusters(self, blobs):
        scores, _ = blobs
        with pytest.raises(InvalidParameter):
            cluster_analyzer.clustering_indices(scores, 1, 4)

    def test_max_k_bounded_by_subjects(self):
        scores = np.random.default_rng(2).standard_normal((5, 2))
        with pytest.raises(InvalidParameter):
            cluster_analyzer.clustering_indices(scores, 2, 5)


class TestClusterSignificance:
    """Gaussian null of the max-over-k indices."""

    def test_separated_groups_are_significant(self, blobs):
        scores, _ = blobs
        result = cluster_analyzer.test_significance(scores, 2, 5, n_sims=49, seed=0)

        assert result.p_values['calinski_harabasz'] == pytest.approx(1 / 50)
        assert result.p_values['silhouette'] == pytest.approx(1 / 50)
        assert result.best_k['calinski_harabasz'] == 3

    def test_null_table(self, blobs):
        scores, _ = blobs
        result = cluster_analyzer.test_significance(scores, 2, 4, n_sims=9, seed=0)

        assert result.null.shape == (9, 2)
        summary = result.to_frame()
        assert summary['index'].tolist() == ['calinski_harabasz', 'silhouette']
        assert summary['p_value'].between(0.1, 1).all()

    def test_same_seed_same_null(self, blobs):
        scores, _ = blobs
        first = cluster_analyzer.test_significance(scores, 2, 4, n_sims=5, seed=3)
        second = cluster_analyzer.test_significance(scores, 2, 4, n_sims=5, seed=3)
        pd.testing.assert_frame_equal(first.null, second.null)

    def test_zero_simulations(self, blobs):
        scores, _ = blobs
        result = cluster_analyzer.test_significance(scores, 2, 4, n_sims=0, seed=0)
        assert result.p_values['silhouette'] == 1.0


class TestClusterCharacterization:
    """Stability, clinical profiles and site association."""

    def test_stability_against_jackknife(self, linked_data):
        X, Y, _ = linked_data
        model = fit_linkage(X, Y, k=3)
        reference = cluster_analyzer.cluster(project_connectivity(model, X)[:, :2], 3)
        results = run_jackknife(X, Y, k=3, reference=model)

        stability = cluster_analyzer.cluster_stability(reference, results, X, n_components=2)

        assert stability['held_out'].tolist() == list(range(50))
        assert stability['ari'].between(-1, 1).all()

    def test_profiles_detect_cluster_difference(self):
        rng = np.random.default_rng(4)
        labels = np.repeat([0, 1, 2], 15)
        data = pd.DataFrame({
            'shifted': labels * 3.0 + rng.standard_normal(45),
            'noise': rng.standard_normal(45),
        })

        profiles = cluster_analyzer.compare_cluster_profiles(data, labels).set_index('variable_name')

        assert profiles.loc['shifted', 'significant_fdr']
        assert profiles.loc['shifted', 'p_fdr'] >= profiles.loc['shifted', 'p_value']
        assert {'mean_cluster_0', 'mean_cluster_2'} <= set(profiles.columns)
        assert 0 <= profiles.loc['noise', 'eta_squared'] <= 1

    def test_profiles_reject_misaligned_labels(self):
        with pytest.raises(InvalidParameter):
            cluster_analyzer.compare_cluster_profiles(pd.DataFrame({'a': [1.0, 2.0]}), [0])

    def test_site_association_perfect(self):
        labels = np.repeat([0, 1, 2], 20)
        sites = np.repeat(['A', 'B', 'C'], 20)

        result = cluster_analyzer.test_site_association(labels, sites)

        assert result['p_value'] < 1e-10
        assert result['dof'] == 4
        assert result['cramers_v'] == pytest.approx(1.0)
