"""
Command-line run of the full pipeline on small CSV inputs.
"""

import logging
import os

import numpy as np
import pandas as pd
import pytest

from pipelines.run_biotypes_analysis import main, parse_args


@pytest.fixture
def input_tables(make_data, tmp_path):
    X, Y, sites = make_data(n_subjects=60, seed=3)
    rng = np.random.default_rng(3)

    connectivity = np.tanh(X / 4).reset_index().rename(columns={'index': 'subject_id'})
    clinical = Y.reset_index().rename(columns={'index': 'subject_id'})
    covariates = pd.DataFrame({
        'subject_id': X.index,
        'age': rng.uniform(20, 60, len(X)),
        'scan_location': sites,
        'frame_displacement': rng.uniform(0.05, 0.3, len(X)),
    })

    paths = {}
    for name, df in [('connectivity', connectivity), ('clinical', clinical),
                     ('covariates', covariates)]:
        path = tmp_path / f'{name}.csv'
        df.to_csv(path, index=False)
        paths[name] = str(path)
    return paths


@pytest.fixture(autouse=True)
def close_log_handlers():
    yield
    logger = logging.getLogger('biotypes')
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)


class TestRunBiotypesAnalysis:
    """End-to-end runs of the command-line entry point."""

    def test_defaults_come_from_config(self):
        args = parse_args([])
        assert args.n_permutations == 999
        assert args.n_folds == 10
        assert not args.skip_jackknife

    def test_full_run(self, input_tables, tmp_path):
        output_dir = tmp_path / 'results'
        main([
            '--connectivity', input_tables['connectivity'],
            '--clinical', input_tables['clinical'],
            '--covariates', input_tables['covariates'],
            '--output-dir', str(output_dir),
            '--n-features', '5',
            '--n-permutations', '9',
            '--n-folds', '3',
            '--n-clusters', '2',
            '--n-cluster-sims', '5',
        ])

        for name in ['cca_results', 'permutation_pvalues', 'cross_validation_folds',
                     'jackknife_loadings', 'cluster_assignments', 'cluster_stability',
                     'cluster_site_association']:
            assert os.path.exists(output_dir / f'{name}.csv')
        assert os.path.exists(output_dir / 'biotypes_analysis.log')
        assert len(os.listdir(output_dir / 'figures')) == 5

        assignments = pd.read_csv(output_dir / 'cluster_assignments.csv')
        assert len(assignments) == 60

    def test_missing_input_exits_with_error(self, tmp_path):
        with pytest.raises(SystemExit) as excinfo:
            main([
                '--connectivity', str(tmp_path / 'missing.csv'),
                '--clinical', str(tmp_path / 'missing.csv'),
                '--output-dir', str(tmp_path / 'results'),
                '--no-figures',
            ])
        assert excinfo.value.code == 1
