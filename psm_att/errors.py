"""Error taxonomy for the matching estimator.

Every failure of the pipeline is one of the classes below.  They all derive
from :class:`AttEstimationError`, so a caller can catch the whole family in
one place, and each one also derives from the builtin exception a caller
would naturally expect (``ValueError`` for bad input, ``RuntimeError`` for a
fit that did not finish, ``LinAlgError`` for a singular system).

None of these errors is retried internally: each signals malformed input or
a numerically non-identified model, and rerunning on the same input cannot
fix either.
"""

from __future__ import annotations

import numpy as np


class AttEstimationError(Exception):
    """Base class for every error raised by the ATT pipeline."""

    @property
    def kind(self) -> str:
        """Stable, programmatic name of the error (its class name)."""
        return type(self).__name__


class ConfigurationError(AttEstimationError, ValueError):
    """An :class:`~psm_att.config.EstimatorConfig` field is out of range."""


class SchemaError(AttEstimationError, ValueError):
    """The input table is malformed (ragged rows, bad values, bad columns)."""


class InsufficientCovariatesError(SchemaError):
    """No covariate columns remain once treatment and outcome are removed."""


class EmptyGroupError(AttEstimationError, ValueError):
    """The treated group, the control group or a candidate pool is empty."""


class NonconvergenceError(AttEstimationError, RuntimeError):
    """IRLS hit its iteration cap without reaching the tolerance."""


class SingularDesignError(AttEstimationError, np.linalg.LinAlgError):
    """The weighted normal equations of the logistic fit are singular.

    Typical causes are perfect separation of treatment by the covariates,
    collinear covariates and constant covariate columns.
    """


class DegenerateVarianceError(AttEstimationError, ValueError):
    """A unit has no within-group neighbour, so its variance is undefined."""
