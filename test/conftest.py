"""
Shared synthetic data for the biotypes tests.
"""

import matplotlib

matplotlib.use('Agg')

import numpy as np
import pandas as pd
import pytest


def make_linked_data(
    n_subjects=50,
    n_features=20,
    n_informative=2,
    n_clinical=3,
    noise=0.3,
    seed=42,
    n_sites=2,
    linked=True
):
    """
    Connectivity/clinical frames sharing one latent factor.

    The first ``n_informative`` connectivity columns and the first clinical
    column are the latent factor plus Gaussian noise; everything else is
    independent noise. With ``linked=False`` the blocks are independent.
    """
    rng = np.random.default_rng(seed)
    latent = rng.standard_normal(n_subjects)

    X = rng.standard_normal((n_subjects, n_features))
    Y = rng.standard_normal((n_subjects, n_clinical))
    if linked:
        X[:, :n_informative] = (
            latent[:, None] + noise * rng.standard_normal((n_subjects, n_informative))
        )
        Y[:, 0] = latent + noise * rng.standard_normal(n_subjects)

    subjects = [f'sub-{i:03d}' for i in range(n_subjects)]
    connectivity = pd.DataFrame(
        X, index=subjects, columns=[f'edge_{j:03d}' for j in range(n_features)]
    )
    clinical = pd.DataFrame(
        Y, index=subjects, columns=[f'symptom_{j}' for j in range(n_clinical)]
    )
    sites = np.array([f'site_{i % n_sites}' for i in range(n_subjects)])
    return connectivity, clinical, sites


@pytest.fixture
def make_data():
    return make_linked_data


@pytest.fixture
def linked_data():
    return make_linked_data()


@pytest.fixture
def noise_data():
    return make_linked_data(n_subjects=200, linked=False, seed=7)
