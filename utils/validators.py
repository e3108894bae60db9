"""Input validation utilities for the PSM ATT estimator.

Validates a DataFrame against its assigned column roles before estimation.
All checks produce ValidationWarning namedtuples -- warnings are advisory
only. The caller decides whether to proceed; nothing is blocked. Hard
failures are left to ``psm_att.loader`` and ``psm_att.table``, which raise.
"""

from __future__ import annotations

from collections import namedtuple
from typing import Any

import pandas as pd

# ---------------------------------------------------------------------------
# Public types
# ---------------------------------------------------------------------------

ValidationWarning = namedtuple(
    "ValidationWarning",
    ["column", "severity", "message"],
)
"""A single advisory warning raised during input validation.

Attributes:
    column: Column name the warning applies to, or ``"__dataset__"`` for
        dataset-level checks.
    severity: One of ``"info"``, ``"warning"``, or ``"error"`` (still
        advisory -- ``"error"`` means estimation is expected to fail or be
        unreliable if the issue is ignored).
    message: Human-readable description suitable for display.
"""

# Sentinel for dataset-level (non-column-specific) warnings
_DATASET = "__dataset__"

_TREATMENT_TOKENS = {"0", "1", "0.0", "1.0", "true", "false", "t", "f", "yes", "no", "y", "n"}


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _null_check(
    df: pd.DataFrame,
    column: str,
    threshold: float = 0.0,
) -> list[ValidationWarning]:
    """Flag columns where the null fraction exceeds *threshold*.

    Any null in an estimation column means the row is dropped by the
    loader, so the default threshold is zero.
    """
    null_pct = df[column].isna().mean()
    if null_pct > threshold:
        severity = "error" if null_pct > 0.50 else "warning"
        return [
            ValidationWarning(
                column=column,
                severity=severity,
                message=(
                    f"{null_pct:.1%} of values are null. These rows will be "
                    "dropped before estimation; consider imputing first."
                ),
            )
        ]
    return []


def _type_inference_check(
    df: pd.DataFrame,
    column: str,
    role: str,
) -> list[ValidationWarning]:
    """Verify that an outcome or covariate column parses as numeric."""
    series = df[column].dropna()
    if pd.api.types.is_numeric_dtype(series):
        return []

    coerced = pd.to_numeric(series, errors="coerce")
    fail_count = int(coerced.isna().sum())
    if fail_count > 0:
        return [
            ValidationWarning(
                column=column,
                severity="error",
                message=(
                    f"Assigned as '{role}' but {fail_count:,} values cannot "
                    "be parsed as numeric. Categorical covariates must be "
                    "encoded numerically before estimation."
                ),
            )
        ]
    return []


def _binary_treatment(series: pd.Series) -> pd.Series | None:
    """Return the treatment as 0/1 floats, or None if it is not binary."""
    clean = series.dropna()
    if pd.api.types.is_bool_dtype(clean):
        return clean.astype(float)
    numeric = pd.to_numeric(clean, errors="coerce")
    if numeric.notna().all():
        return numeric if numeric.isin([0, 1]).all() else None
    tokens = clean.astype(str).str.strip().str.lower()
    if not tokens.isin(_TREATMENT_TOKENS).all():
        return None
    return tokens.isin({"1", "1.0", "true", "t", "yes", "y"}).astype(float)


def _treatment_check(df: pd.DataFrame, treatment_col: str) -> list[ValidationWarning]:
    """Binary check, imbalance check (<10% or >90%) and group-size check."""
    binary = _binary_treatment(df[treatment_col])
    if binary is None:
        values = sorted(map(str, df[treatment_col].dropna().unique()))[:5]
        return [
            ValidationWarning(
                column=treatment_col,
                severity="error",
                message=f"Treatment must be binary (0/1). Found values such as {values}.",
            )
        ]

    n_treated = int((binary == 1).sum())
    n_control = int((binary == 0).sum())
    found: list[ValidationWarning] = []

    for label, count in (("treated", n_treated), ("control", n_control)):
        if count < 2:
            found.append(
                ValidationWarning(
                    column=treatment_col,
                    severity="error",
                    message=(
                        f"Only {count} {label} unit(s). At least two per group are "
                        "needed for the variance estimate."
                    ),
                )
            )
    if found:
        return found

    treated_frac = n_treated / (n_treated + n_control)
    if treated_frac < 0.10 or treated_frac > 0.90:
        found.append(
            ValidationWarning(
                column=treatment_col,
                severity="warning",
                message=(
                    f"{treated_frac:.1%} of rows are treated ({n_treated:,} treated vs "
                    f"{n_control:,} control). Severe imbalance may leave poor "
                    "overlap and heavy reuse of a few controls."
                ),
            )
        )
    return found


def _constant_check(df: pd.DataFrame, column: str) -> list[ValidationWarning]:
    """A constant covariate is collinear with the intercept."""
    if df[column].nunique(dropna=True) <= 1:
        return [
            ValidationWarning(
                column=column,
                severity="error",
                message=(
                    "Covariate is constant. It duplicates the intercept and makes "
                    "the propensity model singular; remove it."
                ),
            )
        ]
    return []


def _duplicate_id_check(df: pd.DataFrame, id_col: str) -> list[ValidationWarning]:
    n_dupes = int(df[id_col].duplicated().sum())
    if n_dupes > 0:
        return [
            ValidationWarning(
                column=_DATASET,
                severity="warning",
                message=(
                    f"{n_dupes:,} duplicate values in id column '{id_col}'. "
                    "Each row is treated as a separate unit."
                ),
            )
        ]
    return []


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def validate_frame(
    df: pd.DataFrame,
    column_roles: dict[str, Any],
) -> list[ValidationWarning]:
    """Validate a DataFrame against its assigned column roles.

    Checks performed:
        - Duplicate identifiers
        - Null values in treatment, outcome or covariates
        - Numeric type inference for outcome and covariates
        - Binary treatment, fewer than two units per group, and
          treated share below 10% or above 90%
        - Constant covariates

    Args:
        df: The input DataFrame. Must not be empty.
        column_roles: Mapping from role name to column name (str) or list of
            column names (for ``"covariates"``). Recognised role keys::

                {
                    "id":         "<col>",   # optional
                    "treatment":  "<col>",
                    "outcome":    "<col>",
                    "covariates": ["<col>", ...],
                }

            Roles absent from the dict, mapped to ``None`` or to a column
            not in *df* are skipped.

    Returns:
        List of ValidationWarning namedtuples, dataset-level checks first.

    Raises:
        ValueError: If *df* is empty.
    """
    if df.empty:
        raise ValueError("DataFrame is empty; cannot validate.")

    def _resolve(role: str) -> str | None:
        val = column_roles.get(role)
        if val is None or val == "":
            return None
        return val if val in df.columns else None

    covariates = column_roles.get("covariates") or []
    if isinstance(covariates, str):
        covariates = [covariates]

    found: list[ValidationWarning] = []

    id_col = _resolve("id")
    if id_col is not None:
        found.extend(_duplicate_id_check(df, id_col))

    treatment_col = _resolve("treatment")
    if treatment_col is not None:
        found.extend(_null_check(df, treatment_col))
        found.extend(_treatment_check(df, treatment_col))

    outcome_col = _resolve("outcome")
    if outcome_col is not None:
        found.extend(_null_check(df, outcome_col))
        found.extend(_type_inference_check(df, outcome_col, "outcome"))

    for cov_col in covariates:
        if cov_col not in df.columns:
            continue
        found.extend(_null_check(df, cov_col))
        found.extend(_type_inference_check(df, cov_col, "covariates"))
        found.extend(_constant_check(df, cov_col))

    return found
