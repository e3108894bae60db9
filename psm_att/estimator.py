"""End-to-end ATT estimation by propensity score matching.

Pipeline (strictly sequential, no randomness):

1. fit the logistic propensity model by IRLS (``psm_att/propensity.py``),
2. match every treated unit to its nearest control(s) on the score, with
   replacement (``psm_att/matching.py``),
3. average the unit-level effects into the ATT (``psm_att/att.py``),
4. estimate the Abadie-Imbens variance and the normal confidence interval
   (``psm_att/variance.py``).

Running the pipeline twice on the same table and configuration gives
bit-identical results.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from psm_att.att import compute_att
from psm_att.config import EstimatorConfig
from psm_att.errors import SchemaError
from psm_att.matching import Matching, match_nearest
from psm_att.propensity import PropensityResult, fit_propensity
from psm_att.table import NumericTable
from psm_att.variance import VarianceResult, abadie_imbens_variance, confidence_interval

logger = logging.getLogger(__name__)

# Share of all treated units matched to one control above which reuse is flagged
_HEAVY_REUSE_SHARE = 0.25
_HEAVY_REUSE_MIN_TREATED = 10


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AttResult:
    """Final output of the estimator.

    Attributes:
        att: Average Treatment Effect on the Treated.
        variance: Abadie-Imbens variance of ``att``.
        ci_lower: Lower bound of the confidence interval.
        ci_upper: Upper bound of the confidence interval.
        z_value: Normal quantile the interval was built with.
        n_treated: Number of treated units.
        n_control: Number of control units.
        distinct_control_count: Number of controls used as a match at least
            once.
    """

    att: float
    variance: float
    ci_lower: float
    ci_upper: float
    z_value: float
    n_treated: int
    n_control: int
    distinct_control_count: int

    @property
    def se(self) -> float:
        return float(np.sqrt(self.variance))

    @property
    def confidence_interval(self) -> tuple[float, float]:
        return self.ci_lower, self.ci_upper


@dataclass(frozen=True, eq=False)
class Estimation:
    """An :class:`AttResult` together with the objects it was built from.

    Attributes:
        result: The final :class:`AttResult`.
        scores: Propensity score per unit, in table order.
        propensity: The fitted propensity model, or ``None`` when the scores
            were supplied by the caller.
        matching: Treated -> control :class:`~psm_att.matching.Matching`.
        variance: The :class:`~psm_att.variance.VarianceResult`.
    """

    result: AttResult
    scores: np.ndarray = field(repr=False)
    propensity: PropensityResult | None = field(repr=False)
    matching: Matching = field(repr=False)
    variance: VarianceResult = field(repr=False)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _validate_scores(scores, n_rows: int) -> np.ndarray:
    try:
        arr = np.asarray(scores, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise SchemaError(f"Propensity scores are not numeric: {exc}") from exc
    if arr.shape != (n_rows,):
        raise SchemaError(
            f"Expected {n_rows} propensity scores, got array of shape {arr.shape}."
        )
    if not np.isfinite(arr).all():
        raise SchemaError("Propensity scores contain non-finite values.")
    if ((arr <= 0.0) | (arr >= 1.0)).any():
        raise SchemaError("Propensity scores must lie strictly inside (0, 1).")
    out = arr.copy()
    out.flags.writeable = False
    return out


def _estimate(
    table: NumericTable,
    scores: np.ndarray,
    propensity: PropensityResult | None,
    config: EstimatorConfig,
    stacklevel: int,
) -> Estimation:
    """Match, estimate and build the result.

    ``stacklevel`` is the warning stack level of the public caller, so the
    heavy-reuse warning points at user code whichever entry point was used.
    """
    matching = match_nearest(
        scores,
        table.treated_indices,
        table.control_indices,
        n_jobs=config.n_jobs,
    )
    logger.info(
        "Matched %d treated units to %d distinct controls (of %d)",
        table.n_treated,
        matching.distinct_count,
        table.n_control,
    )

    max_count = float(matching.match_counts.max())
    if (
        table.n_treated >= _HEAVY_REUSE_MIN_TREATED
        and max_count > _HEAVY_REUSE_SHARE * table.n_treated
    ):
        warnings.warn(
            f"One control unit is the match for {max_count:g} of {table.n_treated} "
            "treated units; the estimate leans heavily on a few controls.",
            UserWarning,
            stacklevel=stacklevel,
        )

    att = compute_att(matching, table.outcome)
    variance = abadie_imbens_variance(matching, scores, table.outcome, n_jobs=config.n_jobs)
    ci_lower, ci_upper = confidence_interval(att, variance.variance, config.z_value)
    logger.info(
        "ATT = %.6g, variance = %.6g, CI = (%.6g, %.6g)",
        att,
        variance.variance,
        ci_lower,
        ci_upper,
    )

    result = AttResult(
        att=att,
        variance=variance.variance,
        ci_lower=ci_lower,
        ci_upper=ci_upper,
        z_value=config.z_value,
        n_treated=table.n_treated,
        n_control=table.n_control,
        distinct_control_count=matching.distinct_count,
    )
    return Estimation(
        result=result,
        scores=scores,
        propensity=propensity,
        matching=matching,
        variance=variance,
    )


def _run_estimation(
    table: NumericTable,
    config: EstimatorConfig | None,
    stacklevel: int,
) -> Estimation:
    config = config or EstimatorConfig()
    logger.info(
        "Estimating ATT: %d units (%d treated, %d control), %d covariates",
        table.n_rows,
        table.n_treated,
        table.n_control,
        table.n_covariates,
    )
    propensity = fit_propensity(table, config)
    return _estimate(table, propensity.scores, propensity, config, stacklevel)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def run_estimation(table: NumericTable, config: EstimatorConfig | None = None) -> Estimation:
    """Run the full pipeline and keep every intermediate object.

    Args:
        table: Validated input table.
        config: Estimator settings; defaults to :class:`EstimatorConfig()`.

    Returns:
        An :class:`Estimation`.

    Raises:
        SingularDesignError: The propensity design is singular.
        NonconvergenceError: IRLS did not converge.
        DegenerateVarianceError: A group has fewer than two units.
    """
    return _run_estimation(table, config, stacklevel=4)



def estimate_att(table: NumericTable, config: EstimatorConfig | None = None) -> AttResult:
    """Estimate the ATT, its variance and confidence interval.

    See :func:`run_estimation` for the pipeline and the errors raised.
    """
    return _run_estimation(table, config, stacklevel=4).result


def match_and_estimate(
    table: NumericTable,
    scores,
    config: EstimatorConfig | None = None,
) -> Estimation:
    """Run matching and inference on externally supplied propensity scores.

    Args:
        table: Validated input table.
        scores: One score per unit, in table order, strictly inside (0, 1).
        config: Estimator settings; only ``z_value`` and ``n_jobs`` are used.

    Returns:
        An :class:`Estimation` with ``propensity=None``.

    Raises:
        SchemaError: If ``scores`` has the wrong length or invalid values.
        DegenerateVarianceError: A group has fewer than two units.
    """
    config = config or EstimatorConfig()
    checked = _validate_scores(scores, table.n_rows)
    return _estimate(table, checked, None, config, stacklevel=3)


def get_matched_data(table: NumericTable, matching: Matching) -> pd.DataFrame:
    """Build the matched sample as a tidy DataFrame.

    One row per treated unit followed by one row per (treated, matched
    control) pair.  Treated units and their controls share a ``match_id``.

    Args:
        table: The table the matching was computed on.
        matching: Treated -> control matching.

    Returns:
        The columns of :meth:`NumericTable.to_frame` plus:

        - ``unit_idx`` (int): Table index of the row.
        - ``match_id`` (int): Position of the treated unit in the matching.
        - ``match_role`` (str): ``"treated"`` or ``"control"``.
        - ``match_weight`` (float): 1 for treated rows, ``1/k`` for each of
          ``k`` tied controls.
        - ``match_distance`` (float): Score distance of the match.
    """
    frame = table.to_frame()
    pairs = matching.pairs()
    match_ids = np.searchsorted(matching.query_indices, pairs["query_idx"].to_numpy())

    treated_rows = frame.iloc[matching.query_indices].copy()
    treated_rows.insert(0, "unit_idx", matching.query_indices)
    treated_rows["match_id"] = np.arange(matching.n_queries)
    treated_rows["match_role"] = "treated"
    treated_rows["match_weight"] = 1.0
    treated_rows["match_distance"] = matching.distances

    control_rows = frame.iloc[pairs["candidate_idx"].to_numpy()].copy()
    control_rows.insert(0, "unit_idx", pairs["candidate_idx"].to_numpy())
    control_rows["match_id"] = match_ids
    control_rows["match_role"] = "control"
    control_rows["match_weight"] = pairs["weight"].to_numpy()
    control_rows["match_distance"] = pairs["distance"].to_numpy()

    return pd.concat([treated_rows, control_rows], ignore_index=True)
