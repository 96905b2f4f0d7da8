"""
Connectivity-symptom biotype analysis.

Links resting-state functional connectivity to clinical symptom scores with
a Spearman feature screen followed by canonical correlation analysis,
validates the linkage by permutation, cross-validation and jackknife, and
clusters subjects on their canonical scores.
"""

from biotypes.__version__ import __version__
from biotypes.analyzer import BiotypesAnalyzer
from biotypes.cca_fitter import CanonicalModel, fit, fit_linkage
from biotypes.data_loader import AnalysisData, BiotypesDataLoader
from biotypes.errors import (
    BiotypesError,
    InvalidParameter,
    NumericInstabilityWarning,
    RankDeficiencyError,
)
from biotypes.feature_selector import SelectionResult, select
from biotypes.projector import project

__all__ = [
    '__version__',
    'AnalysisData',
    'BiotypesAnalyzer',
    'BiotypesDataLoader',
    'BiotypesError',
    'CanonicalModel',
    'InvalidParameter',
    'NumericInstabilityWarning',
    'RankDeficiencyError',
    'SelectionResult',
    'fit',
    'fit_linkage',
    'project',
    'select',
]
