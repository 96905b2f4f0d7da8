"""
Tests for the shared resampling engine.
"""

import numpy as np
import pytest

from biotypes.errors import InvalidParameter, RankDeficiencyError
from biotypes.resampling import (
    BlockPermutation,
    FoldHoldout,
    LeaveOneOut,
    parallel_map,
    reorder_rows,
    run_refits,
    spawn_seeds,
    stratified_folds,
    within_block_permutation,
)


class TestWithinBlockPermutation:
    """Shuffles that never cross block boundaries."""

    def test_rows_stay_in_their_block(self):
        labels = np.array(['a', 'b', 'a', 'c', 'b', 'a', 'c', 'c'])
        rng = np.random.default_rng(0)

        for _ in range(20):
            order = within_block_permutation(labels, rng)
            np.testing.assert_array_equal(labels[order], labels)
            assert sorted(order.tolist()) == list(range(len(labels)))

    def test_single_block_is_full_permutation(self):
        labels = np.zeros(50, dtype=int)
        order = within_block_permutation(labels, np.random.default_rng(1))
        assert sorted(order.tolist()) == list(range(50))
        assert not np.array_equal(order, np.arange(50))

    def test_same_stream_same_permutation(self):
        labels = np.repeat([0, 1], 10)
        first = within_block_permutation(labels, np.random.default_rng(5))
        second = within_block_permutation(labels, np.random.default_rng(5))
        np.testing.assert_array_equal(first, second)


class TestStratifiedFolds:
    """Fold assignment."""

    def test_every_subject_in_one_fold(self):
        assignment = stratified_folds(40, 4, seed=0)
        assert assignment.fold_sizes.sum() == 40
        assert set(assignment.folds.tolist()) == {0, 1, 2, 3}

    def test_strata_balanced(self):
        sites = np.repeat(['A', 'B'], 20)
        assignment = stratified_folds(40, 4, strata_labels=sites, seed=0)

        for fold in range(4):
            test_sites = sites[assignment.test_indices(fold)]
            assert np.sum(test_sites == 'A') == 5
            assert np.sum(test_sites == 'B') == 5

    def test_train_and_test_disjoint(self):
        assignment = stratified_folds(30, 3, seed=1)
        train = assignment.train_indices(0)
        test = assignment.test_indices(0)
        assert len(np.intersect1d(train, test)) == 0
        assert len(train) + len(test) == 30

    def test_seed_reproducible(self):
        first = stratified_folds(30, 5, seed=3)
        second = stratified_folds(30, 5, seed=3)
        np.testing.assert_array_equal(first.folds, second.folds)

    @pytest.mark.parametrize('n_folds', [1, 31])
    def test_invalid_fold_count(self, n_folds):
        with pytest.raises(InvalidParameter):
            stratified_folds(30, n_folds, seed=0)

    def test_strata_smaller_than_folds(self):
        sites = np.repeat(np.arange(15), 2)
        with pytest.raises(InvalidParameter):
            stratified_folds(30, 5, strata_labels=sites, seed=0)


class TestStrategies:
    """Rows drawn by each strategy."""

    def test_leave_one_out(self):
        resample = LeaveOneOut(5).draw(2, None)
        assert resample.train.tolist() == [0, 1, 3, 4]
        assert resample.test.tolist() == [2]

    def test_fold_holdout(self):
        assignment = stratified_folds(20, 4, seed=0)
        resample = FoldHoldout(assignment).draw(1, None)
        np.testing.assert_array_equal(resample.test, assignment.test_indices(1))

    def test_block_permutation_refits_all_rows(self):
        strategy = BlockPermutation(10, 3, block_labels=np.repeat([0, 1], 5))
        resample = strategy.draw(0, np.random.default_rng(0))
        assert resample.train.tolist() == list(range(10))
        assert resample.test is None
        assert sorted(resample.y_order[:5].tolist()) == [0, 1, 2, 3, 4]

    def test_reorder_keeps_subject_index(self, linked_data):
        _, Y, _ = linked_data
        order = np.arange(len(Y))[::-1]
        permuted = reorder_rows(Y, order)

        assert permuted.index.equals(Y.index)
        np.testing.assert_array_equal(permuted.to_numpy(), Y.to_numpy()[order])


class TestParallelMap:
    """Deterministic, order-preserving parallel map."""

    @staticmethod
    def draw_uniform(iteration, rng):
        return rng.random()

    def test_results_in_iteration_order(self):
        outcomes = parallel_map(lambda i, rng: i * 10, 6)
        assert [o.iteration for o in outcomes] == list(range(6))
        assert [o.value for o in outcomes] == [0, 10, 20, 30, 40, 50]

    def test_iteration_stream_independent_of_total(self):
        short = parallel_map(self.draw_uniform, 5, seed=11)
        long = parallel_map(self.draw_uniform, 12, seed=11)
        assert [o.value for o in short] == [o.value for o in long[:5]]

    def test_iteration_stream_is_child_of_seed(self):
        outcomes = parallel_map(self.draw_uniform, 4, seed=11)
        child = np.random.SeedSequence(11).spawn(4)[3]
        assert outcomes[3].value == np.random.default_rng(child).random()

    def test_worker_count_does_not_change_results(self):
        def draw(iteration, rng):
            return rng.random()

        serial = parallel_map(draw, 8, seed=2, n_jobs=1)
        parallel = parallel_map(draw, 8, seed=2, n_jobs=2)
        assert [o.value for o in serial] == [o.value for o in parallel]

    def test_zero_iterations(self):
        assert parallel_map(self.draw_uniform, 0, seed=1) == []

    def test_no_seed_gives_no_generator(self):
        outcomes = parallel_map(lambda i, rng: rng is None, 3)
        assert all(o.value for o in outcomes)

    def test_rank_deficient_iteration_recorded(self):
        def body(iteration, rng):
            if iteration == 2:
                raise RankDeficiencyError('collinear')
            return iteration

        outcomes = parallel_map(body, 4)
        assert [o.ok for o in outcomes] == [True, True, False, True]
        assert outcomes[2].value is None
        assert 'collinear' in outcomes[2].error

    def test_other_errors_propagate(self):
        def body(iteration, rng):
            raise InvalidParameter('bad input')

        with pytest.raises(InvalidParameter):
            parallel_map(body, 3)

    def test_spawn_seeds_without_seed(self):
        assert spawn_seeds(None, 3) == [None, None, None]


class TestRunRefits:
    """Selector + fitter refits per strategy."""

    def test_randomized_strategy_requires_seed(self, linked_data):
        X, Y, _ = linked_data
        with pytest.raises(InvalidParameter):
            run_refits(X, Y, 5, BlockPermutation(len(X), 3), seed=None)

    def test_leave_one_out_refits(self, linked_data):
        X, Y, _ = linked_data
        outcomes = run_refits(
            X, Y, 3, LeaveOneOut(len(X)),
            evaluate=lambda model, resample: model.n_samples,
        )
        assert len(outcomes) == len(X)
        assert all(o.value == len(X) - 1 for o in outcomes)

    def test_inputs_untouched(self, linked_data):
        X, Y, _ = linked_data
        X_before, Y_before = X.copy(), Y.copy()
        run_refits(X, Y, 3, BlockPermutation(len(X), 4), seed=0)
        assert X.equals(X_before)
        assert Y.equals(Y_before)
