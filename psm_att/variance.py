"""Abadie-Imbens variance of the matching ATT estimator.

The estimator accounts for the reuse of control units under matching with
replacement.  With ``K_j`` the (possibly fractional) number of times control
``j`` serves as a match and ``sigma2(i)`` the conditional outcome variance of
unit ``i``:

    Var(ATT) = (1 / N_T^2) * [ sum_{i in T} sigma2(i)
                               + sum_{j in C} K_j^2 * sigma2(j) ]

``sigma2(i)`` is estimated by matching ``i`` to its nearest unit(s) *within
its own treatment group* on the propensity score and averaging
``(Y_i - Y_n)^2 / 2`` over the tied neighbours ``n``.  Controls that are
never used have ``K_j = 0`` and contribute nothing.

References:
    Abadie & Imbens (2006). Large sample properties of matching estimators
        for average treatment effects. Econometrica, 74(1), 235-267.
    Abadie & Imbens (2016). Matching on the estimated propensity score.
        Econometrica, 84(2), 781-807.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from psm_att.config import DEFAULT_Z_VALUE
from psm_att.errors import DegenerateVarianceError
from psm_att.matching import Matching, match_nearest

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------


@dataclass(frozen=True, eq=False)
class VarianceResult:
    """Variance of the ATT together with its building blocks.

    Attributes:
        variance: Estimated variance of the ATT.  Never negative.
        treated_component: ``sum sigma2(i) / N_T^2`` over treated units.
        control_component: ``sum K_j^2 sigma2(j) / N_T^2`` over controls.
        treated_indices: Ascending table indices of the treated units.
        control_indices: Ascending table indices of the control units.
        sigma2_treated: Conditional variance estimate per treated unit,
            aligned with ``treated_indices``.
        sigma2_control: Conditional variance estimate per control unit,
            aligned with ``control_indices``.
        control_match_counts: ``K_j`` per control, aligned with
            ``control_indices``.
    """

    variance: float
    treated_component: float
    control_component: float
    treated_indices: np.ndarray
    control_indices: np.ndarray
    sigma2_treated: np.ndarray
    sigma2_control: np.ndarray
    control_match_counts: np.ndarray

    @property
    def se(self) -> float:
        return float(np.sqrt(self.variance))


# ---------------------------------------------------------------------------
# Conditional variances
# ---------------------------------------------------------------------------


def conditional_variances(within_matching: Matching, outcome: np.ndarray) -> np.ndarray:
    """``sigma2(i) = (1/k) * sum_n (Y_i - Y_n)^2 / 2`` for every query unit.

    Args:
        within_matching: A within-group matching (self-matches excluded).
        outcome: Outcome of every unit in the table.

    Returns:
        Array aligned with ``within_matching.query_indices``.
    """
    outcome = np.asarray(outcome, dtype=np.float64)
    y_query = outcome[within_matching.query_indices]
    return np.array(
        [
            np.mean(0.5 * (y_i - outcome[nb]) ** 2)
            for y_i, nb in zip(y_query, within_matching.neighbors)
        ],
        dtype=np.float64,
    )


def estimate_conditional_variances(
    scores: np.ndarray,
    outcome: np.ndarray,
    group_indices,
    n_jobs: int = 1,
) -> np.ndarray:
    """Match a group to itself and estimate each unit's conditional variance.

    Args:
        scores: Propensity score of every unit in the table.
        outcome: Outcome of every unit in the table.
        group_indices: Table indices of one treatment group.
        n_jobs: Worker threads for the neighbour search.

    Returns:
        Array aligned with the ascending ``group_indices``.

    Raises:
        DegenerateVarianceError: If the group has fewer than two units, so
            some unit has no within-group neighbour.
    """
    group = np.unique(np.asarray(group_indices, dtype=np.intp))
    if len(group) < 2:
        raise DegenerateVarianceError(
            f"A treatment group has only {len(group)} unit(s); at least two are "
            "needed to estimate conditional outcome variances."
        )
    within = match_nearest(scores, group, group, within_group=True, n_jobs=n_jobs)
    return conditional_variances(within, outcome)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def abadie_imbens_variance(
    att_matching: Matching,
    scores: np.ndarray,
    outcome: np.ndarray,
    n_jobs: int = 1,
) -> VarianceResult:
    """Variance of the ATT for a treated -> control matching.

    Args:
        att_matching: The matching the ATT was computed from.  Its query
            units are the treated group and its candidates the control group.
        scores: Propensity score of every unit in the table.
        outcome: Outcome of every unit in the table.
        n_jobs: Worker threads for the within-group neighbour searches.

    Returns:
        A :class:`VarianceResult`.

    Raises:
        DegenerateVarianceError: If either group has fewer than two units.
    """
    treated = att_matching.query_indices
    control = att_matching.candidate_indices
    n_treated = len(treated)

    sigma2_treated = estimate_conditional_variances(scores, outcome, treated, n_jobs)
    sigma2_control = estimate_conditional_variances(scores, outcome, control, n_jobs)
    k = att_matching.match_counts

    treated_component = float(np.sum(sigma2_treated)) / n_treated**2
    control_component = float(np.sum(k**2 * sigma2_control)) / n_treated**2
    variance = treated_component + control_component
    logger.debug(
        "Variance components: treated %.6g, control %.6g",
        treated_component,
        control_component,
    )

    for arr in (sigma2_treated, sigma2_control):
        arr.flags.writeable = False

    return VarianceResult(
        variance=variance,
        treated_component=treated_component,
        control_component=control_component,
        treated_indices=treated,
        control_indices=control,
        sigma2_treated=sigma2_treated,
        sigma2_control=sigma2_control,
        control_match_counts=k,
    )


def confidence_interval(
    att: float,
    variance: float,
    z_value: float = DEFAULT_Z_VALUE,
) -> tuple[float, float]:
    """Two-sided normal interval ``att -/+ z * sqrt(variance)``.

    Raises:
        DegenerateVarianceError: If ``variance`` is negative or not finite.
    """
    if not np.isfinite(variance) or variance < 0.0:
        raise DegenerateVarianceError(
            f"Variance must be a finite non-negative number, got {variance!r}."
        )
    half_width = z_value * float(np.sqrt(variance))
    return att - half_width, att + half_width
