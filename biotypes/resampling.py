# -*- coding: utf-8 -*-
"""
Generic parallel refit loop shared by the permutation, cross-validation and
jackknife components.

Each loop is a parallel map over iteration indices. Iteration i draws its
random stream from child i of ``numpy.random.SeedSequence(seed)``, so the
permutation produced for a given index never depends on worker scheduling.
Results come back in iteration order (joblib preserves input order).

A resampling strategy decides, per iteration, which rows are used to refit
and which are held out:
- BlockPermutation: shuffle clinical rows within site blocks
- FoldHoldout: train on all folds but one
- LeaveOneOut: train on all subjects but one

An iteration whose refit raises RankDeficiencyError is recorded as absent
(``IterationOutcome.error`` set, ``value`` None) and the loop continues.
InvalidParameter and any other exception propagate and abort the loop.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from sklearn.model_selection import KFold, StratifiedKFold

from biotypes import config
from biotypes.cca_fitter import CanonicalModel, fit_linkage
from biotypes.errors import InvalidParameter, RankDeficiencyError
from biotypes.validator import MatrixLike, check_positive_int

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Resample:
    """
    Rows used by one iteration.

    Attributes:
        train: Row positions used to refit
        test: Held-out row positions (None when nothing is held out)
        y_order: Row order applied to Y before subsetting (None = identity)
    """
    train: np.ndarray
    test: Optional[np.ndarray] = None
    y_order: Optional[np.ndarray] = None


@dataclass(frozen=True)
class IterationOutcome:
    """Result slot of one iteration; ``error`` is set when it was excluded."""
    iteration: int
    value: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class FoldAssignment:
    """
    Mapping from subject to cross-validation fold.

    Attributes:
        folds: Fold id per subject (0..n_folds-1)
        n_folds: Number of folds
    """
    folds: np.ndarray
    n_folds: int

    @property
    def fold_sizes(self) -> np.ndarray:
        return np.bincount(self.folds, minlength=self.n_folds)

    def test_indices(self, fold: int) -> np.ndarray:
        return np.flatnonzero(self.folds == fold)

    def train_indices(self, fold: int) -> np.ndarray:
        return np.flatnonzero(self.folds != fold)


def within_block_permutation(
    block_labels: np.ndarray,
    rng: np.random.Generator
) -> np.ndarray:
    """
    Random row order in which rows only move within their block.

    Args:
        block_labels: Block (site) label per row
        rng: Generator for this iteration

    Returns:
        Array ``order`` such that ``Y[order]`` is the blocked shuffle
    """
    block_labels = np.asarray(block_labels)
    order = np.arange(len(block_labels))
    # np.unique sorts, so blocks are visited in a fixed order
    for block in np.unique(block_labels):
        positions = np.flatnonzero(block_labels == block)
        order[positions] = rng.permutation(positions)
    return order


def stratified_folds(
    n_subjects: int,
    n_folds: int,
    strata_labels: Optional[np.ndarray] = None,
    seed: Optional[int] = config.RANDOM_SEED
) -> FoldAssignment:
    """
    Assign subjects to folds, stratified by site when labels are given.

    Raises:
        InvalidParameter: If n_folds is not in [2, n_subjects] or the strata
            cannot be split into n_folds folds
    """
    n_folds = check_positive_int(n_folds, 'n_folds', minimum=2)
    if n_folds > n_subjects:
        raise InvalidParameter(
            f"n_folds={n_folds} exceeds the number of subjects ({n_subjects})"
        )

    folds = np.empty(n_subjects, dtype=int)
    placeholder = np.zeros((n_subjects, 1))
    try:
        if strata_labels is None:
            splitter = KFold(n_splits=n_folds, shuffle=True, random_state=seed)
            splits = splitter.split(placeholder)
        else:
            splitter = StratifiedKFold(n_splits=n_folds, shuffle=True, random_state=seed)
            splits = splitter.split(placeholder, strata_labels)
        for fold_id, (_, test_idx) in enumerate(splits):
            folds[test_idx] = fold_id
    except ValueError as e:
        raise InvalidParameter(f"Cannot build {n_folds} stratified folds: {e}") from e

    return FoldAssignment(folds=folds, n_folds=n_folds)


class ResamplingStrategy:
    """Decides the rows of each refit; subclasses implement ``draw``."""

    name = 'resampling'
    uses_randomness = False

    def __init__(self, n_iterations: int):
        self.n_iterations = n_iterations

    def draw(self, iteration: int, rng: Optional[np.random.Generator]) -> Resample:
        raise NotImplementedError


class BlockPermutation(ResamplingStrategy):
    """Permute clinical rows within site blocks; all rows refit."""

    name = 'permutation'
    uses_randomness = True

    def __init__(
        self,
        n_subjects: int,
        n_permutations: int,
        block_labels: Optional[np.ndarray] = None
    ):
        super().__init__(n_permutations)
        self.n_subjects = n_subjects
        self.block_labels = (
            np.zeros(n_subjects, dtype=int) if block_labels is None
            else np.asarray(block_labels)
        )

    def draw(self, iteration: int, rng: Optional[np.random.Generator]) -> Resample:
        order = within_block_permutation(self.block_labels, rng)
        return Resample(train=np.arange(self.n_subjects), y_order=order)


class FoldHoldout(ResamplingStrategy):
    """Refit on all folds except one; hold that fold out."""

    name = 'cross-validation'

    def __init__(self, assignment: FoldAssignment):
        super().__init__(assignment.n_folds)
        self.assignment = assignment

    def draw(self, iteration: int, rng: Optional[np.random.Generator]) -> Resample:
        return Resample(
            train=self.assignment.train_indices(iteration),
            test=self.assignment.test_indices(iteration),
        )


class LeaveOneOut(ResamplingStrategy):
    """Refit on all subjects except subject ``iteration``."""

    name = 'jackknife'

    def __init__(self, n_subjects: int):
        super().__init__(n_subjects)
        self.n_subjects = n_subjects

    def draw(self, iteration: int, rng: Optional[np.random.Generator]) -> Resample:
        return Resample(
            train=np.delete(np.arange(self.n_subjects), iteration),
            test=np.array([iteration]),
        )


def take_rows(data: MatrixLike, rows: np.ndarray) -> MatrixLike:
    """Row subset of a DataFrame or array."""
    if isinstance(data, pd.DataFrame):
        return data.iloc[rows]
    return np.asarray(data)[rows]


def reorder_rows(data: MatrixLike, order: np.ndarray) -> MatrixLike:
    """
    Reorder the values of Y while keeping its subject index.

    The permuted clinical rows are re-labelled with the original subject
    order so they stay aligned with the unpermuted connectivity rows.
    """
    if isinstance(data, pd.DataFrame):
        return pd.DataFrame(
            data.to_numpy()[order], index=data.index, columns=data.columns
        )
    return np.asarray(data)[order]


def spawn_seeds(seed: Optional[int], n_iterations: int) -> List[Optional[np.random.SeedSequence]]:
    """One independent child seed per iteration index."""
    if seed is None:
        return [None] * n_iterations
    return np.random.SeedSequence(seed).spawn(n_iterations)


def _run_one(
    func: Callable[[int, Optional[np.random.Generator]], Any],
    iteration: int,
    seed_seq: Optional[np.random.SeedSequence],
    label: str,
    n_iterations: int
) -> IterationOutcome:
    rng = np.random.default_rng(seed_seq) if seed_seq is not None else None
    try:
        value = func(iteration, rng)
    except RankDeficiencyError as e:
        logger.debug(f"{label} iteration {iteration} excluded: {e}")
        return IterationOutcome(iteration=iteration, error=str(e))

    if (iteration + 1) % config.LOG_EVERY == 0:
        logger.info(f"  Completed {iteration + 1}/{n_iterations} {label} iterations")
    return IterationOutcome(iteration=iteration, value=value)


def parallel_map(
    func: Callable[[int, Optional[np.random.Generator]], Any],
    n_iterations: int,
    seed: Optional[int] = None,
    n_jobs: int = config.N_JOBS,
    label: str = 'resampling'
) -> List[IterationOutcome]:
    """
    Run ``func(iteration, rng)`` for every iteration index in parallel.

    Args:
        func: Iteration body; may raise RankDeficiencyError to be excluded
        n_iterations: Number of iterations (0 gives an empty list)
        seed: Top-level seed; None gives ``rng=None`` to every iteration
        n_jobs: joblib workers
        label: Name used in log messages

    Returns:
        IterationOutcome list in iteration order
    """
    if n_iterations == 0:
        return []

    seeds = spawn_seeds(seed, n_iterations)
    outcomes = Parallel(n_jobs=n_jobs)(
        delayed(_run_one)(func, i, seeds[i], label, n_iterations)
        for i in range(n_iterations)
    )

    n_excluded = sum(not o.ok for o in outcomes)
    if n_excluded:
        logger.warning(
            f"{label}: {n_excluded}/{n_iterations} iterations excluded (rank deficient)"
        )
    return list(outcomes)


def run_refits(
    X: MatrixLike,
    Y: MatrixLike,
    k: int,
    strategy: ResamplingStrategy,
    seed: Optional[int] = None,
    n_jobs: int = config.N_JOBS,
    evaluate: Optional[Callable[[CanonicalModel, Resample], Any]] = None
) -> List[IterationOutcome]:
    """
    Refit Selector + Fitter once per iteration of a resampling strategy.

    Args:
        X: Connectivity matrix (read-only in every iteration)
        Y: Clinical matrix (read-only in every iteration)
        k: Number of connectivity features kept per refit
        strategy: BlockPermutation, FoldHoldout or LeaveOneOut
        seed: Top-level seed (required by randomized strategies)
        n_jobs: joblib workers
        evaluate: Reduces the refit model to what the caller keeps; runs in
            the worker. Defaults to keeping the whole model.

    Returns:
        IterationOutcome list in iteration order

    Raises:
        InvalidParameter: If a randomized strategy is given no seed
    """
    if strategy.uses_randomness and seed is None:
        raise InvalidParameter(f"{strategy.name} needs an explicit seed")

    def refit(iteration: int, rng: Optional[np.random.Generator]) -> Any:
        resample = strategy.draw(iteration, rng)
        Y_iter = Y if resample.y_order is None else reorder_rows(Y, resample.y_order)
        model = fit_linkage(
            take_rows(X, resample.train), take_rows(Y_iter, resample.train), k
        )
        if evaluate is None:
            return model
        return evaluate(model, resample)

    logger.info(
        f"Running {strategy.n_iterations} {strategy.name} refits (k={k}, n_jobs={n_jobs})"
    )
    return parallel_map(
        refit, strategy.n_iterations, seed=seed, n_jobs=n_jobs, label=strategy.name
    )
