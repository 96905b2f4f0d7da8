# -*- coding: utf-8 -*-
"""
Biotypes Data Loader Module

This module loads the three subject-level tables of the analysis
(resting-state connectivity, clinical symptom scores and nuisance
covariates), joins them on the subject identifier and prepares the
complete, aligned matrices consumed by the analysis core.

Preprocessing:
- Connectivity: zero entries are missing-value sentinels; columns with too
  many missing values are dropped; values are Fisher Z-transformed and
  median imputed
- Clinical: median imputation
- Covariates: age and motion numeric, scan site one-hot encoded; the
  connectivity matrix is residualized on them
"""

import logging
import os
from dataclasses import dataclass
from typing import List, Optional

import numpy as np
import pandas as pd
from sklearn.linear_model import LinearRegression

from biotypes import config
from biotypes.errors import InvalidParameter

logger = logging.getLogger(__name__)


@dataclass
class AnalysisData:
    """
    Aligned inputs of the analysis, indexed by subject identifier.

    Attributes:
        connectivity: Subjects × connectivity features (complete)
        clinical: Subjects × clinical scores (complete)
        sites: Scan site per subject, or None when no covariates were given
        covariates: Covariate design used for residualization, or None
    """
    connectivity: pd.DataFrame
    clinical: pd.DataFrame
    sites: Optional[pd.Series] = None
    covariates: Optional[pd.DataFrame] = None

    @property
    def n_subjects(self) -> int:
        return len(self.connectivity)


class BiotypesDataLoader:
    """
    Loads and preprocesses connectivity, clinical and covariate tables.

    Attributes:
        connectivity_path (str): CSV with one row per subject, one column per
            connectivity edge
        clinical_path (str): CSV with one row per subject, one column per
            clinical score
        covariates_path (str, optional): CSV with age, site and motion
        subject_column (str): Column joining the three tables
        max_missing (int): Connectivity columns with at least this many
            missing values are dropped
        residualize (bool): Regress covariates out of connectivity

    Example:
        >>> loader = BiotypesDataLoader(
        ...     'data/connectivity.csv', 'data/clinical.csv', 'data/covariates.csv'
        ... )
        >>> data = loader.load_data()
        >>> data.connectivity.shape
        (220, 33154)
    """

    def __init__(
        self,
        connectivity_path: str = config.CONNECTIVITY_PATH,
        clinical_path: str = config.CLINICAL_PATH,
        covariates_path: Optional[str] = config.COVARIATES_PATH,
        subject_column: str = config.SUBJECT_ID_COLUMN,
        max_missing: int = config.MAX_MISSING,
        residualize: bool = True
    ):
        self.connectivity_path = connectivity_path
        self.clinical_path = clinical_path
        self.covariates_path = covariates_path
        self.subject_column = subject_column
        self.max_missing = max_missing
        self.residualize = residualize
        self.logger = logging.getLogger(__name__)

    def _read_table(self, path: str, name: str) -> pd.DataFrame:
        if not os.path.exists(path):
            raise FileNotFoundError(f"{name} table not found: {path}")
        df = pd.read_csv(path)
        self.logger.info(f"Loaded {name} table: {df.shape[0]} rows × {df.shape[1]} columns")
        return df

    def load_data(self) -> AnalysisData:
        """
        Read the CSV tables and preprocess them.

        Returns:
            AnalysisData

        Raises:
            FileNotFoundError: If a table does not exist
            InvalidParameter: If a subject identifier is duplicated or missing
        """
        connectivity = self._read_table(self.connectivity_path, 'connectivity')
        clinical = self._read_table(self.clinical_path, 'clinical')
        covariates = None
        if self.covariates_path is not None:
            covariates = self._read_table(self.covariates_path, 'covariates')
        return self.load_from_frames(connectivity, clinical, covariates)

    def _indexed(self, df: pd.DataFrame, name: str) -> pd.DataFrame:
        """Index a table by subject id, rejecting missing or duplicate ids."""
        if self.subject_column not in df.columns:
            raise InvalidParameter(
                f"{name} table has no '{self.subject_column}' column"
            )
        ids = df[self.subject_column]
        if ids.duplicated().any():
            dupes = ids[ids.duplicated()].unique().tolist()
            raise InvalidParameter(f"Duplicate subject identifiers in {name}: {dupes[:5]}")
        df = df.set_index(self.subject_column)
        id_columns = [c for c in config.ID_COLUMNS if c in df.columns]
        return df.drop(columns=id_columns)

    def load_from_frames(
        self,
        connectivity: pd.DataFrame,
        clinical: pd.DataFrame,
        covariates: Optional[pd.DataFrame] = None
    ) -> AnalysisData:
        """
        Join and preprocess in-memory tables.

        Subjects present in every table are kept, in the order of the
        connectivity table.

        Args:
            connectivity: Table with the subject column and edge columns
            clinical: Table with the subject column and clinical scores
            covariates: Table with the subject column and covariates

        Returns:
            AnalysisData
        """
        tables = {
            'connectivity': self._indexed(connectivity, 'connectivity'),
            'clinical': self._indexed(clinical, 'clinical'),
        }
        if covariates is not None:
            tables['covariates'] = self._indexed(covariates, 'covariates')

        subjects = tables['connectivity'].index
        for df in tables.values():
            subjects = subjects[subjects.isin(df.index)]
        if len(subjects) == 0:
            raise InvalidParameter("No subject is present in every input table")

        n_dropped = len(tables['connectivity']) - len(subjects)
        if n_dropped:
            self.logger.warning(f"{n_dropped} subjects missing from some table were dropped")
        self.logger.info(f"Joined tables: {len(subjects)} subjects")

        conn = self.preprocess_connectivity(tables['connectivity'].loc[subjects])
        clin = self.preprocess_clinical(tables['clinical'].loc[subjects])

        sites = None
        design = None
        if covariates is not None:
            cov = tables['covariates'].loc[subjects]
            if config.SITE_COLUMN in cov.columns:
                sites = cov[config.SITE_COLUMN].astype(str).rename('site')
            design = self.encode_covariates(cov)
            if self.residualize and design.shape[1] > 0:
                conn = self.residualize_connectivity(conn, design)

        return AnalysisData(connectivity=conn, clinical=clin, sites=sites, covariates=design)

    def preprocess_connectivity(self, conn: pd.DataFrame) -> pd.DataFrame:
        """
        Clean the connectivity table.

        Process:
        1. Treat zero entries as missing
        2. Drop columns with >= max_missing missing values (and empty columns)
        3. Fisher Z-transform (arctanh of clipped correlations)
        4. Median-impute the remaining missing values
        """
        conn = conn.apply(pd.to_numeric, errors='coerce').astype(float)
        conn = conn.mask(conn == config.CONNECTIVITY_MISSING_SENTINEL)

        n_missing = conn.isna().sum()
        keep = (n_missing < self.max_missing) & (n_missing < len(conn))
        n_removed = int((~keep).sum())
        conn = conn.loc[:, keep]
        self.logger.info(
            f"Connectivity: dropped {n_removed} columns with >= {self.max_missing} "
            f"missing values, {conn.shape[1]} remain"
        )
        if conn.shape[1] == 0:
            raise InvalidParameter("No connectivity column survived the missing-value filter")

        conn = np.arctanh(conn.clip(-config.FISHER_Z_CLIP, config.FISHER_Z_CLIP))
        return conn.fillna(conn.median())

    def preprocess_clinical(self, clin: pd.DataFrame) -> pd.DataFrame:
        """Median-impute clinical scores; drop columns with no observed value."""
        clin = clin.apply(pd.to_numeric, errors='coerce').astype(float)
        empty = clin.columns[clin.isna().all()]
        if len(empty):
            self.logger.warning(f"Clinical: dropped empty columns {list(empty)}")
            clin = clin.drop(columns=empty)
        if clin.shape[1] == 0:
            raise InvalidParameter("Clinical table has no usable column")

        n_imputed = int(clin.isna().sum().sum())
        if n_imputed:
            self.logger.info(f"Clinical: median-imputed {n_imputed} missing values")
        return clin.fillna(clin.median())

    def encode_covariates(self, cov: pd.DataFrame) -> pd.DataFrame:
        """
        Build the nuisance design matrix.

        Numeric covariates (age, motion) are median imputed; the scan site is
        one-hot encoded with the first level dropped.
        """
        numeric_columns: List[str] = [
            c for c in (config.AGE_COLUMN, config.MOTION_COLUMN) if c in cov.columns
        ]
        design = cov[numeric_columns].apply(pd.to_numeric, errors='coerce').astype(float)
        design = design.fillna(design.median())

        if config.SITE_COLUMN in cov.columns:
            site_dummies = pd.get_dummies(
                cov[config.SITE_COLUMN].astype(str),
                prefix=config.SITE_COLUMN,
                drop_first=True,
                dtype=float,
            )
            design = pd.concat([design, site_dummies], axis=1)

        self.logger.info(f"Covariate design: {list(design.columns)}")
        return design

    def residualize_connectivity(
        self,
        conn: pd.DataFrame,
        design: pd.DataFrame
    ) -> pd.DataFrame:
        """Regress the covariate design out of every connectivity column."""
        model = LinearRegression()
        model.fit(design.to_numpy(), conn.to_numpy())
        residuals = conn.to_numpy() - model.predict(design.to_numpy())
        self.logger.info(
            f"Residualized {conn.shape[1]} connectivity columns on "
            f"{design.shape[1]} covariates"
        )
        return pd.DataFrame(residuals, index=conn.index, columns=conn.columns)
