# -*- coding: utf-8 -*-
"""
Error taxonomy for the biotype analysis.

- InvalidParameter: caller misuse (bad k, misaligned rows, mismatched
  columns, missing values reaching the core). Aborts the whole run.
- RankDeficiencyError: not enough independent dimensions for CCA. Recoverable
  inside resampling loops (the iteration is recorded as absent), fatal for the
  full-data fit.
- NumericInstabilityWarning: ill-conditioned decomposition. Issued through
  ``warnings.warn`` and recorded on the fitted model.
"""

import numpy as np


class BiotypesError(Exception):
    """Base class for errors raised by the biotypes package."""


class InvalidParameter(BiotypesError, ValueError):
    """Malformed parameter or input that indicates caller misuse."""


class RankDeficiencyError(BiotypesError, np.linalg.LinAlgError):
    """A data block has fewer independent columns than CCA requires."""


class NumericInstabilityWarning(RuntimeWarning):
    """Near-singular covariance structure; results are low-confidence."""
