"""Propensity score estimation by logistic regression.

Fits P(treatment=1 | covariates) by maximum likelihood using iteratively
reweighted least squares (IRLS, i.e. Newton-Raphson on the score function)
and returns one score per unit for the matching step in
``psm_att/matching.py``.

The fit is written as a pure step function, :func:`irls_step`, plus a
convergence predicate, :func:`has_converged`.  :func:`fit_logistic` only
loops over them, so a fit can be replayed or resumed from any coefficient
vector.  There is no regularisation and no silent recovery: a singular
weighted design (perfect separation, collinear or constant covariates)
raises :class:`~psm_att.errors.SingularDesignError` and running out of
iterations raises :class:`~psm_att.errors.NonconvergenceError`.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass

import numpy as np
from scipy import linalg, special
from sklearn.metrics import roc_auc_score

from psm_att.config import EstimatorConfig
from psm_att.errors import NonconvergenceError, SingularDesignError
from psm_att.table import NumericTable

logger = logging.getLogger(__name__)

# In-sample AUC above which treatment is close to perfectly predictable
_AUC_OVERLAP_WARNING = 0.95


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True, eq=False)
class FittedModel:
    """Coefficients of a finished IRLS run.

    Attributes:
        coefficients: Array of shape (p + 1,), intercept first, on the scale
            of the raw covariates.
        converged: True when the tolerance was met.  A fit that misses the
            tolerance raises instead of returning, so this is always True
            for models produced by :func:`fit_logistic`.
        n_iterations: Number of IRLS steps taken.
        log_likelihood: Binomial log-likelihood at ``coefficients``.
    """

    coefficients: np.ndarray
    converged: bool
    n_iterations: int
    log_likelihood: float


@dataclass(frozen=True, eq=False)
class PropensityResult:
    """Container for the output of :func:`fit_propensity`.

    Attributes:
        scores: Read-only array of propensity scores, one per unit of the
            table in index order, each strictly inside (0, 1).
        model: The :class:`FittedModel` the scores were computed from.
        auc: In-sample area under the ROC curve.  AUC near 0.5 suggests
            treatment is unpredictable from covariates (good overlap); AUC
            near 1.0 suggests near-perfect separation (poor overlap).
        feature_names: ``"intercept"`` followed by the covariate names, in
            coefficient order.
        n_clamped: Number of scores moved onto the clamping bounds.
    """

    scores: np.ndarray
    model: FittedModel
    auc: float
    feature_names: list[str]
    n_clamped: int


# ---------------------------------------------------------------------------
# IRLS building blocks
# ---------------------------------------------------------------------------


def log_likelihood(beta: np.ndarray, design: np.ndarray, treatment: np.ndarray) -> float:
    """Binomial log-likelihood of ``beta``, computed without overflow."""
    eta = design @ beta
    return float(
        np.sum(treatment * special.log_expit(eta) + (1.0 - treatment) * special.log_expit(-eta))
    )


def irls_step(beta: np.ndarray, design: np.ndarray, treatment: np.ndarray) -> np.ndarray:
    """Take one IRLS step from ``beta``.

    With fitted probabilities ``p = expit(X beta)`` and weights
    ``w = p (1 - p)``, the working response is ``z = X beta + (d - p) / w``
    and the update solves the weighted normal equations
    ``(X' W X) beta_new = X' W z``, written as the Newton step
    ``beta + (X' W X)^-1 X' (d - p)`` so that units with ``w == 0`` need no
    division.  Columns of ``X`` are scaled to unit norm and the rank is
    taken on ``sqrt(W) X``, never on ``X' W X``.

    Args:
        beta: Current coefficients, shape (p + 1,).
        design: Design matrix with intercept column, shape (n, p + 1).
        treatment: 0/1 response as floats, shape (n,).

    Returns:
        The updated coefficient vector.  ``beta`` is not modified.

    Raises:
        SingularDesignError: If ``sqrt(W) X`` is rank deficient or the
            normal equations cannot be factorised.
    """
    eta = design @ beta
    p = special.expit(eta)
    w = p * (1.0 - p)

    # Equilibrate columns so the rank test and the solve are scale-free
    scale = np.linalg.norm(design, axis=0)
    scale[scale == 0.0] = 1.0
    scaled = design / scale

    weighted = np.sqrt(w)[:, None] * scaled
    rank = np.linalg.matrix_rank(weighted)
    if rank < design.shape[1]:
        raise SingularDesignError(
            f"Weighted design matrix is singular (rank {rank} of {design.shape[1]}). "
            "Check for perfect separation of treatment by the covariates, "
            "collinear covariates or constant covariate columns."
        )

    hessian = weighted.T @ weighted
    gradient = scaled.T @ (treatment - p)
    try:
        step = linalg.solve(hessian, gradient, assume_a="pos")
    except np.linalg.LinAlgError as exc:
        raise SingularDesignError(
            f"Weighted normal equations could not be solved: {exc}"
        ) from exc
    return beta + step / scale


def has_converged(beta_old: np.ndarray, beta_new: np.ndarray, tolerance: float) -> bool:
    """True when no coefficient moved by ``tolerance`` or more."""
    return bool(np.max(np.abs(beta_new - beta_old)) < tolerance)


def fit_logistic(
    design: np.ndarray,
    treatment: np.ndarray,
    config: EstimatorConfig | None = None,
) -> FittedModel:
    """Fit an unpenalised logistic regression by IRLS starting from zero.

    Args:
        design: Design matrix with intercept column, shape (n, p + 1).
        treatment: 0/1 response, shape (n,).
        config: Supplies ``tolerance`` and ``max_iterations``.

    Returns:
        A converged :class:`FittedModel`.

    Raises:
        SingularDesignError: If any step meets a singular weighted design.
        NonconvergenceError: If ``max_iterations`` steps do not reach the
            tolerance, or the coefficients stop being finite.
    """
    config = config or EstimatorConfig()
    design = np.asarray(design, dtype=np.float64)
    treatment = np.asarray(treatment, dtype=np.float64)

    beta = np.zeros(design.shape[1])
    for iteration in range(1, config.max_iterations + 1):
        beta_new = irls_step(beta, design, treatment)
        if not np.isfinite(beta_new).all():
            raise NonconvergenceError(
                f"IRLS produced non-finite coefficients at iteration {iteration}."
            )
        logger.debug(
            "IRLS iteration %d: max |delta beta| = %.3e",
            iteration,
            float(np.max(np.abs(beta_new - beta))),
        )
        done = has_converged(beta, beta_new, config.tolerance)
        beta = beta_new
        if done:
            ll = log_likelihood(beta, design, treatment)
            logger.info("IRLS converged after %d iterations (log-lik %.4f)", iteration, ll)
            return FittedModel(
                coefficients=beta,
                converged=True,
                n_iterations=iteration,
                log_likelihood=ll,
            )

    raise NonconvergenceError(
        f"IRLS did not converge within {config.max_iterations} iterations "
        f"(tolerance {config.tolerance:g}). Treatment may be (quasi-)separated "
        "by the covariates."
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def fit_propensity(
    table: NumericTable,
    config: EstimatorConfig | None = None,
) -> PropensityResult:
    """Estimate propensity scores P(treatment=1 | covariates).

    Args:
        table: Validated input table.
        config: Supplies the IRLS tolerance and iteration cap and the score
            clamping epsilon.  Defaults to :class:`EstimatorConfig()`.

    Returns:
        A :class:`PropensityResult` with one score per unit, in index order.

    Raises:
        SingularDesignError: See :func:`irls_step`.
        NonconvergenceError: See :func:`fit_logistic`.
    """
    config = config or EstimatorConfig()
    design = table.design_matrix()
    model = fit_logistic(design, table.treatment, config)

    eps = config.score_epsilon
    raw = special.expit(design @ model.coefficients)
    n_clamped = int(((raw < eps) | (raw > 1.0 - eps)).sum())
    if n_clamped:
        warnings.warn(
            f"{n_clamped} propensity scores were clamped to [{eps:g}, {1.0 - eps:g}].",
            UserWarning,
            stacklevel=2,
        )
    scores = np.clip(raw, eps, 1.0 - eps)
    scores.flags.writeable = False

    auc = float(roc_auc_score(table.treatment, scores))
    if auc > _AUC_OVERLAP_WARNING:
        warnings.warn(
            f"Propensity model AUC is {auc:.3f}; treated and control units "
            "overlap poorly and matches may be distant.",
            UserWarning,
            stacklevel=2,
        )

    return PropensityResult(
        scores=scores,
        model=model,
        auc=auc,
        feature_names=["intercept", *table.covariate_names],
        n_clamped=n_clamped,
    )
