"""Immutable in-memory table of numeric units.

A :class:`NumericTable` holds, for every unit (row), a binary treatment
indicator, a real outcome and a fixed-length covariate vector.  Units are
identified by their 0-based insertion index and never change after the
table is built.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence

import numpy as np
import pandas as pd

from psm_att.errors import EmptyGroupError, InsufficientCovariatesError, SchemaError

# Spellings accepted for the treatment indicator, compared case-insensitively
_TRUE_STRINGS = frozenset({"1", "1.0", "true", "t", "yes", "y"})
_FALSE_STRINGS = frozenset({"0", "0.0", "false", "f", "no", "n"})


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _coerce_treatment(value: Any, row: int) -> int:
    """Map one treatment cell to 0 or 1, accepting common boolean encodings."""
    if isinstance(value, (bool, np.bool_)):
        return int(value)
    if isinstance(value, str):
        token = value.strip().lower()
        if token in _TRUE_STRINGS:
            return 1
        if token in _FALSE_STRINGS:
            return 0
    elif isinstance(value, (int, float, np.integer, np.floating)):
        if value == 1:
            return 1
        if value == 0:
            return 0
    raise SchemaError(
        f"Treatment value {value!r} in row {row} is not binary (expected 0/1)."
    )


def _read_only(values: np.ndarray) -> np.ndarray:
    out = np.array(values, copy=True)
    out.flags.writeable = False
    return out


# ---------------------------------------------------------------------------
# Table
# ---------------------------------------------------------------------------


@dataclass(frozen=True, eq=False)
class NumericTable:
    """Rows of (treatment, outcome, covariates) with validated invariants.

    Attributes:
        treatment: int8 array of shape (n,), values in {0, 1}.
        outcome: float64 array of shape (n,).
        covariates: float64 array of shape (n, p) with ``p >= 1``.
        covariate_names: One label per covariate column, in column order.

    All arrays are copied and flagged read-only on construction.

    Raises:
        SchemaError: On shape mismatches, non-finite values or a
            non-binary treatment.
        InsufficientCovariatesError: If ``p == 0``.
        EmptyGroupError: If there are no treated or no control units.
    """

    treatment: np.ndarray
    outcome: np.ndarray
    covariates: np.ndarray
    covariate_names: tuple[str, ...] = field(default=())

    def __post_init__(self) -> None:
        treatment = np.asarray(self.treatment)
        try:
            outcome = np.asarray(self.outcome, dtype=np.float64)
            covariates = np.asarray(self.covariates, dtype=np.float64)
        except (TypeError, ValueError) as exc:
            raise SchemaError(f"Non-numeric value in outcome or covariates: {exc}") from exc

        if treatment.ndim != 1 or outcome.ndim != 1:
            raise SchemaError("treatment and outcome must be one-dimensional.")
        n = len(treatment)
        if n == 0:
            raise SchemaError("The dataset contains no rows.")
        if len(outcome) != n:
            raise SchemaError(
                f"outcome has {len(outcome)} rows but treatment has {n}."
            )
        if covariates.ndim == 1:
            if covariates.size % n:
                raise SchemaError(
                    f"{covariates.size} covariate values cannot be split into {n} rows."
                )
            covariates = covariates.reshape(n, -1) if covariates.size else covariates.reshape(n, 0)
        if covariates.ndim != 2 or covariates.shape[0] != n:
            raise SchemaError(
                f"covariates must have shape (n_rows, p); got {covariates.shape}."
            )
        if covariates.shape[1] == 0:
            raise InsufficientCovariatesError(
                "At least one covariate column is required."
            )

        if not np.isin(treatment, (0, 1)).all():
            bad = sorted(set(np.unique(treatment).tolist()) - {0, 1})
            raise SchemaError(
                f"Treatment must be binary (0/1). Found values: {bad}"
            )
        if not np.isfinite(outcome).all():
            rows = np.flatnonzero(~np.isfinite(outcome))[:5].tolist()
            raise SchemaError(f"Outcome contains non-finite values (rows {rows}).")
        if not np.isfinite(covariates).all():
            rows = np.flatnonzero(~np.isfinite(covariates).all(axis=1))[:5].tolist()
            raise SchemaError(f"Covariates contain non-finite values (rows {rows}).")

        names = tuple(str(c) for c in self.covariate_names)
        if not names:
            names = tuple(f"x{j}" for j in range(covariates.shape[1]))
        if len(names) != covariates.shape[1]:
            raise SchemaError(
                f"{len(names)} covariate names given for {covariates.shape[1]} columns."
            )

        treatment = treatment.astype(np.int8)
        if not (treatment == 1).any():
            raise EmptyGroupError("No treated units found.")
        if not (treatment == 0).any():
            raise EmptyGroupError("No control units found.")

        object.__setattr__(self, "treatment", _read_only(treatment))
        object.__setattr__(self, "outcome", _read_only(outcome))
        object.__setattr__(self, "covariates", _read_only(covariates))
        object.__setattr__(self, "covariate_names", names)

    # ------------------------------------------------------------------
    # Construction from a rectangular dataset
    # ------------------------------------------------------------------

    @classmethod
    def from_rows(
        cls,
        rows: Sequence[Sequence[Any]],
        treatment_index: int,
        outcome_index: int,
        covariate_names: Sequence[str] | None = None,
    ) -> NumericTable:
        """Build a table from rows of cells.

        Every column other than ``treatment_index`` and ``outcome_index``
        becomes a covariate, in its original order.

        Args:
            rows: Rectangular sequence of rows.  Cells must be numeric,
                except the treatment column which also accepts boolean
                spellings such as ``True``, ``"yes"`` or ``"f"``.
            treatment_index: Position of the treatment column.
            outcome_index: Position of the outcome column.
            covariate_names: Optional labels for the covariate columns.

        Returns:
            A validated :class:`NumericTable`.

        Raises:
            SchemaError: Ragged rows, bad indices or non-numeric cells.
            InsufficientCovariatesError: No column is left for covariates.
        """
        rows = [list(r) for r in rows]
        if not rows:
            raise SchemaError("The dataset contains no rows.")

        widths = {len(r) for r in rows}
        if len(widths) > 1:
            raise SchemaError(
                f"Rows have inconsistent column counts: {sorted(widths)}."
            )
        width = widths.pop()

        for label, idx in (("treatment", treatment_index), ("outcome", outcome_index)):
            if not 0 <= idx < width:
                raise SchemaError(
                    f"{label} column index {idx} is out of range for {width} columns."
                )
        if treatment_index == outcome_index:
            raise SchemaError("treatment and outcome must be different columns.")

        covariate_cols = [j for j in range(width) if j not in (treatment_index, outcome_index)]
        if not covariate_cols:
            raise InsufficientCovariatesError(
                "No covariate columns remain after removing treatment and outcome."
            )

        treatment = np.array(
            [_coerce_treatment(r[treatment_index], i) for i, r in enumerate(rows)],
            dtype=np.int8,
        )
        try:
            outcome = np.array([r[outcome_index] for r in rows], dtype=np.float64)
            covariates = np.array(
                [[r[j] for j in covariate_cols] for r in rows], dtype=np.float64
            )
        except (TypeError, ValueError) as exc:
            raise SchemaError(f"Non-numeric value in outcome or covariates: {exc}") from exc

        return cls(
            treatment=treatment,
            outcome=outcome,
            covariates=covariates,
            covariate_names=tuple(covariate_names) if covariate_names else (),
        )

    # ------------------------------------------------------------------
    # Read-only accessors
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self.treatment)

    @property
    def n_rows(self) -> int:
        return len(self.treatment)

    @property
    def n_covariates(self) -> int:
        return self.covariates.shape[1]

    @property
    def treated_indices(self) -> np.ndarray:
        """Ascending indices of treated units."""
        return np.flatnonzero(self.treatment == 1)

    @property
    def control_indices(self) -> np.ndarray:
        """Ascending indices of control units."""
        return np.flatnonzero(self.treatment == 0)

    @property
    def n_treated(self) -> int:
        return int((self.treatment == 1).sum())

    @property
    def n_control(self) -> int:
        return int((self.treatment == 0).sum())

    def covariates_of(self, index: int) -> np.ndarray:
        return self.covariates[index]

    def outcome_of(self, index: int) -> float:
        return float(self.outcome[index])

    def design_matrix(self) -> np.ndarray:
        """Covariates with a leading column of ones, shape (n, p + 1)."""
        return np.column_stack([np.ones(self.n_rows), self.covariates])

    def to_frame(self) -> pd.DataFrame:
        """Tabular copy with ``treatment``, ``outcome`` and covariate columns."""
        frame = pd.DataFrame(self.covariates, columns=list(self.covariate_names))
        frame.insert(0, "outcome", self.outcome)
        frame.insert(0, "treatment", self.treatment.astype(int))
        return frame
