"""Build a :class:`~psm_att.table.NumericTable` from a DataFrame or CSV file.

By convention the first column of an input file is a unit identifier and is
not used for estimation.  Treatment and outcome are located by column name
or position; every other column becomes a covariate unless ``covariates``
names them explicitly.
"""

from __future__ import annotations

import logging
import warnings
from pathlib import Path
from typing import Sequence, Union

import pandas as pd

from psm_att.errors import SchemaError
from psm_att.table import NumericTable

logger = logging.getLogger(__name__)

ColumnRef = Union[str, int]


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _resolve_column(df: pd.DataFrame, ref: ColumnRef, role: str) -> str:
    """Return the column label for a name or 0-based position."""
    if isinstance(ref, str):
        if ref in df.columns:
            return ref
        raise SchemaError(f"{role} column '{ref}' not found in the data.")
    if isinstance(ref, int) and not isinstance(ref, bool):
        if 0 <= ref < df.shape[1]:
            return df.columns[ref]
        raise SchemaError(
            f"{role} column position {ref} is out of range for {df.shape[1]} columns."
        )
    raise SchemaError(f"{role} column must be a name or a position, got {ref!r}.")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def table_from_frame(
    df: pd.DataFrame,
    treatment: ColumnRef,
    outcome: ColumnRef,
    *,
    id_column: ColumnRef | None = 0,
    covariates: Sequence[ColumnRef] | None = None,
    dropna: bool = True,
) -> NumericTable:
    """Convert a DataFrame into a validated :class:`NumericTable`.

    Args:
        df: Input data, one row per unit.
        treatment: Name or position of the 0/1 treatment column.
        outcome: Name or position of the outcome column.
        id_column: Name or position of an identifier column to exclude.
            Defaults to the first column; ``None`` keeps every column.
        covariates: Covariate columns in the order to use.  Defaults to all
            columns other than id, treatment and outcome.
        dropna: Drop rows with missing values in the used columns (with a
            ``UserWarning``).  When False such rows raise ``SchemaError``.

    Returns:
        A :class:`NumericTable` whose covariate names are the column labels.

    Raises:
        SchemaError: Unknown columns, missing values with ``dropna=False``,
            non-numeric covariates or a non-binary treatment.
        InsufficientCovariatesError: No covariate column remains.
        EmptyGroupError: No treated or no control units remain.
    """
    treatment_col = _resolve_column(df, treatment, "treatment")
    outcome_col = _resolve_column(df, outcome, "outcome")
    if treatment_col == outcome_col:
        raise SchemaError("treatment and outcome must be different columns.")

    excluded = {treatment_col, outcome_col}
    if id_column is not None:
        id_col = _resolve_column(df, id_column, "id")
        if id_col in excluded:
            raise SchemaError(f"id column '{id_col}' is also used as treatment or outcome.")
        excluded.add(id_col)

    if covariates is None:
        covariate_cols = [c for c in df.columns if c not in excluded]
    else:
        covariate_cols = [_resolve_column(df, c, "covariate") for c in covariates]
        clash = [c for c in covariate_cols if c in excluded]
        if clash:
            raise SchemaError(f"Columns {clash} cannot be covariates and id/treatment/outcome.")

    work = df[[treatment_col, outcome_col, *covariate_cols]]
    missing = work.isna().any(axis=1)
    n_missing = int(missing.sum())
    if n_missing:
        if not dropna:
            raise SchemaError(
                f"{n_missing} rows have missing values in the treatment, outcome "
                "or covariate columns."
            )
        warnings.warn(
            f"Dropped {n_missing} rows with missing values in the estimation columns.",
            UserWarning,
            stacklevel=2,
        )
        work = work.loc[~missing]

    rows = work.to_numpy(dtype=object).tolist()
    table = NumericTable.from_rows(
        rows,
        treatment_index=0,
        outcome_index=1,
        covariate_names=[str(c) for c in covariate_cols],
    )
    logger.info(
        "Loaded %d units with covariates %s", table.n_rows, list(table.covariate_names)
    )
    return table


def load_csv(
    path: str | Path,
    treatment: ColumnRef,
    outcome: ColumnRef,
    **kwargs,
) -> NumericTable:
    """Read a CSV file with pandas and convert it with :func:`table_from_frame`.

    Keyword arguments are forwarded to :func:`table_from_frame`.
    """
    df = pd.read_csv(path)
    return table_from_frame(df, treatment, outcome, **kwargs)
