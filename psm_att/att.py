"""ATT point estimate from a treated -> control matching.

For treated unit ``i`` with tied nearest controls ``J(i)`` (``k = |J(i)|``),
the imputed counterfactual is the plain mean of their outcomes and

    ATT = (1 / N_T) * sum_i ( Y_i - (1/k) * sum_{j in J(i)} Y_j ).

The per-pair weights are used here, not the aggregated match counts; the
counts only enter the variance (``psm_att/variance.py``).
"""

from __future__ import annotations

import numpy as np

from psm_att.matching import Matching


def counterfactual_outcomes(matching: Matching, outcome: np.ndarray) -> np.ndarray:
    """Weighted mean outcome of each query unit's neighbours, in query order."""
    outcome = np.asarray(outcome, dtype=np.float64)
    return np.array([outcome[nb].mean() for nb in matching.neighbors], dtype=np.float64)


def unit_effects(matching: Matching, outcome: np.ndarray) -> np.ndarray:
    """Per-treated-unit effect ``Y_i - counterfactual_i``, in query order."""
    outcome = np.asarray(outcome, dtype=np.float64)
    return outcome[matching.query_indices] - counterfactual_outcomes(matching, outcome)


def compute_att(matching: Matching, outcome: np.ndarray) -> float:
    """Average treatment effect on the treated.

    Args:
        matching: Treated -> control matching from
            :func:`~psm_att.matching.match_nearest`.
        outcome: Outcome of every unit in the table, indexed by table index.

    Returns:
        The ATT as a float.
    """
    return float(np.mean(unit_effects(matching, outcome)))
