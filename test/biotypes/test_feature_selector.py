"""
Tests for the Spearman feature screen.
"""

import numpy as np
import pandas as pd
import pytest

from biotypes.errors import InvalidParameter, RankDeficiencyError
from biotypes.feature_selector import select


class TestSelect:
    """Top-k selection by max |Spearman rho|."""

    def test_informative_features_selected(self, linked_data):
        X, Y, _ = linked_data
        result = select(X, Y, k=2)

        assert result.indices.tolist() == [0, 1]
        assert result.n_selected == 2
        assert result.selected_names == ['edge_000', 'edge_001']
        assert result.n_features_in == 20

    def test_indices_in_original_order(self, linked_data):
        X, Y, _ = linked_data
        result = select(X, Y, k=5)

        assert np.all(np.diff(result.indices) > 0)
        assert result.mask.sum() == result.n_selected

    def test_scores_are_max_abs_spearman(self, linked_data):
        X, Y, _ = linked_data
        result = select(X, Y, k=3)

        j = 4
        expected = max(
            abs(pd.Series(X.iloc[:, j]).corr(Y.iloc[:, c], method='spearman'))
            for c in range(Y.shape[1])
        )
        assert result.scores[j] == pytest.approx(expected, abs=1e-10)

    def test_selected_scores_at_least_threshold(self, linked_data):
        X, Y, _ = linked_data
        result = select(X, Y, k=5)

        assert np.all(result.scores[result.indices] >= result.threshold)
        rejected = np.setdiff1d(np.arange(result.n_features_in), result.indices)
        assert np.all(result.scores[rejected] < result.threshold)

    def test_ties_at_threshold_keep_all(self):
        rng = np.random.default_rng(0)
        y = rng.standard_normal(30)
        X = np.column_stack([y, 2 * y, rng.standard_normal(30)])
        Y = np.column_stack([y, rng.standard_normal(30)])

        result = select(X, Y, k=1)

        assert result.indices.tolist() == [0, 1]
        assert result.n_selected == 2
        assert result.has_ties

    def test_k_equal_to_width_keeps_everything(self, linked_data):
        X, Y, _ = linked_data
        result = select(X, Y, k=X.shape[1])
        assert result.indices.tolist() == list(range(X.shape[1]))

    def test_constant_column_never_selected(self):
        rng = np.random.default_rng(1)
        X = rng.standard_normal((25, 4))
        X[:, 2] = 3.0
        Y = rng.standard_normal((25, 2))

        result = select(X, Y, k=3)

        assert np.isnan(result.scores[2])
        assert 2 not in result.indices

    def test_too_many_constant_columns_is_rank_deficient(self):
        rng = np.random.default_rng(2)
        X = np.ones((20, 3))
        X[:, 0] = rng.standard_normal(20)
        Y = rng.standard_normal((20, 2))

        with pytest.raises(RankDeficiencyError):
            select(X, Y, k=2)

    @pytest.mark.parametrize('k', [0, -1, 21])
    def test_invalid_k(self, linked_data, k):
        X, Y, _ = linked_data
        with pytest.raises(InvalidParameter):
            select(X, Y, k=k)

    def test_misaligned_rows(self, linked_data):
        X, Y, _ = linked_data
        with pytest.raises(InvalidParameter):
            select(X, Y.iloc[:-1], k=2)

    def test_missing_values_rejected(self, linked_data):
        X, Y, _ = linked_data
        X = X.copy()
        X.iloc[0, 0] = np.nan
        with pytest.raises(InvalidParameter):
            select(X, Y, k=2)

    def test_invalid_parameter_is_value_error(self, linked_data):
        X, Y, _ = linked_data
        with pytest.raises(ValueError):
            select(X, Y, k=0)
