# -*- coding: utf-8 -*-
"""
Configuration of the connectivity/symptom biotype analysis.

This file holds every parameter of the analysis: input paths, column
names of the tabular inputs, resampling parameters and numeric tolerances.
"""

import os

# =============================================================================
# PATHS
# =============================================================================

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
DATA_ROOT = os.path.abspath(os.path.join(PROJECT_ROOT, '..', 'data'))

CONNECTIVITY_PATH = os.path.join(DATA_ROOT, 'connectivity.csv')
CLINICAL_PATH = os.path.join(DATA_ROOT, 'clinical.csv')
COVARIATES_PATH = os.path.join(DATA_ROOT, 'covariates.csv')

RESULTS_DIR = os.path.join(PROJECT_ROOT, 'results', 'biotypes')

# =============================================================================
# INPUT COLUMNS
# =============================================================================

# Subject identifier used to join the three tables
SUBJECT_ID_COLUMN = 'subject_id'

# Identifier columns dropped from the feature tables after the join
ID_COLUMNS = ['subject_id', 'session_id', 'scan_id']

# Nuisance covariates (used only for residualization)
AGE_COLUMN = 'age'
SITE_COLUMN = 'scan_location'
MOTION_COLUMN = 'frame_displacement'
COVARIATE_COLUMNS = [AGE_COLUMN, SITE_COLUMN, MOTION_COLUMN]

# Connectivity columns with at least this many missing values are dropped
MAX_MISSING = 20

# Zero-valued connectivity entries are missing-value sentinels
CONNECTIVITY_MISSING_SENTINEL = 0.0

# Clip before arctanh so perfect correlations stay finite
FISHER_Z_CLIP = 0.99999

# =============================================================================
# ANALYSIS PARAMETERS
# =============================================================================

# Number of connectivity features retained by the Spearman screen
N_FEATURES = 150

N_PERMUTATIONS = 999
N_FOLDS = 10
N_CLUSTER_SIMS = 1000

# Candidate cluster counts for the cluster-quality indices
CLUSTER_K_RANGE = (2, 6)

# Cluster solution reported and used for stability/profile analyses
N_CLUSTERS = 4

# Number of leading connectivity canonical variates that are clustered
N_CLUSTER_COMPONENTS = 2

RANDOM_SEED = 42

# joblib workers for the resampling loops (-1 = all cores)
N_JOBS = 1

# Bootstrap resamples for confidence intervals of fold means
N_BOOTSTRAP = 2000
CI_LEVEL = 0.95

# =============================================================================
# NUMERIC TOLERANCES
# =============================================================================

# Relative tolerance on |diag(R)| of the pivoted QR used to estimate rank
RANK_TOLERANCE = 1e-7

# Condition estimate of the triangular factor above which the fit is flagged;
# must stay below 1 / RANK_TOLERANCE or rank-deficient blocks are caught first
CONDITION_NUMBER_LIMIT = 1e5

# Standard deviations below this are treated as zero variance
MIN_STD = 1e-10

# Progress is logged every LOG_EVERY resampling iterations
LOG_EVERY = 100
