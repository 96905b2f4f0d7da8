"""
Tests for loading and preprocessing the subject tables.
"""

import numpy as np
import pandas as pd
import pytest

from biotypes.data_loader import BiotypesDataLoader
from biotypes.errors import InvalidParameter


@pytest.fixture
def raw_tables():
    rng = np.random.default_rng(12)
    n = 30
    subjects = [f's{i:02d}' for i in range(n)]

    connectivity = pd.DataFrame(
        np.tanh(0.5 * rng.standard_normal((n, 5))),
        columns=[f'e{j}' for j in range(5)],
    )
    connectivity.insert(0, 'subject_id', subjects)
    connectivity['session_id'] = 1
    connectivity.loc[3, 'e0'] = 0.0
    connectivity.loc[:9, 'e4'] = 0.0

    clinical = pd.DataFrame({
        'subject_id': subjects[::-1] + ['s99'],
        'anhedonia': rng.standard_normal(n + 1),
        'anxiety': rng.standard_normal(n + 1),
    })
    clinical.loc[2, 'anxiety'] = np.nan

    covariates = pd.DataFrame({
        'subject_id': subjects,
        'age': rng.uniform(20, 60, n),
        'scan_location': np.where(np.arange(n) % 3 == 0, 'siteA', 'siteB'),
        'frame_displacement': rng.uniform(0.05, 0.3, n),
    })
    return connectivity, clinical, covariates


class TestLoadFromFrames:
    """Join and preprocessing of in-memory tables."""

    def test_tables_aligned_by_subject(self, raw_tables):
        loader = BiotypesDataLoader(max_missing=5)
        data = loader.load_from_frames(*raw_tables)

        assert data.n_subjects == 30
        assert data.connectivity.index.equals(data.clinical.index)
        assert data.connectivity.index[0] == 's00'
        assert 's99' not in data.clinical.index

    def test_identifier_columns_dropped(self, raw_tables):
        data = BiotypesDataLoader(max_missing=5).load_from_frames(*raw_tables)
        assert 'session_id' not in data.connectivity.columns

    def test_sparse_columns_dropped(self, raw_tables):
        data = BiotypesDataLoader(max_missing=5).load_from_frames(*raw_tables)
        assert 'e4' not in data.connectivity.columns
        assert 'e0' in data.connectivity.columns

    def test_outputs_complete(self, raw_tables):
        data = BiotypesDataLoader(max_missing=5).load_from_frames(*raw_tables)
        assert not data.connectivity.isna().any().any()
        assert not data.clinical.isna().any().any()

    def test_fisher_z_without_covariates(self, raw_tables):
        connectivity, clinical, _ = raw_tables
        data = BiotypesDataLoader(max_missing=5).load_from_frames(connectivity, clinical)

        expected = np.arctanh(connectivity.set_index('subject_id')['e1'])
        np.testing.assert_allclose(data.connectivity['e1'].to_numpy(), expected.to_numpy())
        assert data.sites is None

    def test_zero_entries_median_imputed(self, raw_tables):
        connectivity, clinical, _ = raw_tables
        data = BiotypesDataLoader(max_missing=5).load_from_frames(connectivity, clinical)

        others = data.connectivity['e0'].drop(index='s03')
        assert data.connectivity.loc['s03', 'e0'] == pytest.approx(others.median())

    def test_connectivity_residualized_on_covariates(self, raw_tables):
        data = BiotypesDataLoader(max_missing=5).load_from_frames(*raw_tables)

        age = data.covariates['age'].to_numpy()
        for column in data.connectivity.columns:
            r = np.corrcoef(data.connectivity[column], age)[0, 1]
            assert abs(r) < 1e-8

    def test_site_one_hot_encoded(self, raw_tables):
        data = BiotypesDataLoader(max_missing=5).load_from_frames(*raw_tables)

        assert list(data.covariates.columns) == [
            'age', 'frame_displacement', 'scan_location_siteB'
        ]
        assert set(data.sites) == {'siteA', 'siteB'}

    def test_duplicate_subject_rejected(self, raw_tables):
        connectivity, clinical, covariates = raw_tables
        duplicated = pd.concat([connectivity, connectivity.iloc[[0]]], ignore_index=True)

        with pytest.raises(InvalidParameter):
            BiotypesDataLoader().load_from_frames(duplicated, clinical, covariates)

    def test_missing_subject_column(self, raw_tables):
        connectivity, clinical, _ = raw_tables
        with pytest.raises(InvalidParameter):
            BiotypesDataLoader().load_from_frames(
                connectivity.drop(columns='subject_id'), clinical
            )


class TestLoadData:
    """Reading the CSV tables."""

    def test_round_trip_through_csv(self, raw_tables, tmp_path):
        connectivity, clinical, covariates = raw_tables
        connectivity.to_csv(tmp_path / 'connectivity.csv', index=False)
        clinical.to_csv(tmp_path / 'clinical.csv', index=False)
        covariates.to_csv(tmp_path / 'covariates.csv', index=False)

        loader = BiotypesDataLoader(
            str(tmp_path / 'connectivity.csv'),
            str(tmp_path / 'clinical.csv'),
            str(tmp_path / 'covariates.csv'),
            max_missing=5,
        )
        data = loader.load_data()

        assert data.connectivity.shape == (30, 4)
        assert data.clinical.shape == (30, 2)

    def test_missing_file(self, tmp_path):
        loader = BiotypesDataLoader(
            str(tmp_path / 'nope.csv'), str(tmp_path / 'clinical.csv'), None
        )
        with pytest.raises(FileNotFoundError):
            loader.load_data()
