"""Command line entry point: ``psm-att DATA TREATMENT OUTCOME``.

Reads a CSV file, runs the advisory input checks (printed to stderr),
estimates the ATT by propensity score matching and prints the report (or
JSON with ``--json``) to stdout.

Exit codes: 0 on success, 1 when estimation fails or the file cannot be
read, 2 on usage errors (argparse).
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Sequence

import pandas as pd

from psm_att.config import (
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_SCORE_EPSILON,
    DEFAULT_TOLERANCE,
    DEFAULT_Z_VALUE,
    EstimatorConfig,
)
from psm_att.errors import AttEstimationError
from psm_att.estimator import estimate_att
from psm_att.loader import table_from_frame
from psm_att.report import format_error, format_result, result_to_dict
from utils.validators import validate_frame

logger = logging.getLogger(__name__)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="psm-att",
        description="Estimate the ATT by 1:1 propensity score matching with replacement",
    )
    parser.add_argument("data", help="Path to the input CSV, one row per unit")
    parser.add_argument("treatment", help="Treatment column (name or 0-based position)")
    parser.add_argument("outcome", help="Outcome column (name or 0-based position)")

    id_group = parser.add_mutually_exclusive_group()
    id_group.add_argument(
        "--id-column",
        default="0",
        help="Identifier column excluded from the covariates (default: first column)",
    )
    id_group.add_argument(
        "--no-id-column",
        action="store_true",
        help="Use every column other than treatment and outcome as a covariate",
    )
    parser.add_argument(
        "--covariates",
        nargs="+",
        default=None,
        help="Covariate columns to use (default: all remaining columns)",
    )
    parser.add_argument(
        "--tolerance",
        type=float,
        default=DEFAULT_TOLERANCE,
        help="IRLS convergence tolerance on the coefficients",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=DEFAULT_MAX_ITERATIONS,
        help="Maximum number of IRLS iterations",
    )
    level_group = parser.add_mutually_exclusive_group()
    level_group.add_argument(
        "--confidence-level",
        type=float,
        default=None,
        help="Two-sided confidence level, e.g. 0.90",
    )
    level_group.add_argument(
        "--z-value",
        type=float,
        default=None,
        help=f"Normal quantile for the interval (default: {DEFAULT_Z_VALUE})",
    )
    parser.add_argument(
        "--score-epsilon",
        type=float,
        default=DEFAULT_SCORE_EPSILON,
        help="Clamp propensity scores to [eps, 1 - eps]",
    )
    parser.add_argument(
        "--n-jobs",
        type=int,
        default=1,
        help="Worker threads for the neighbour search (-1 for all cores)",
    )
    parser.add_argument("--json", action="store_true", help="Print the result as JSON")
    parser.add_argument("--verbose", action="store_true", help="Log every pipeline stage")
    return parser.parse_args(argv)


def _column_ref(df: pd.DataFrame, value: str) -> str | int:
    """A column name when one matches, else a 0-based position if numeric."""
    if value in df.columns:
        return value
    if value.isdigit():
        return int(value)
    return value


def _label(df: pd.DataFrame, ref: str | int):
    if isinstance(ref, int) and 0 <= ref < df.shape[1]:
        return df.columns[ref]
    return ref


def build_config(args: argparse.Namespace) -> EstimatorConfig:
    fields = dict(
        tolerance=args.tolerance,
        max_iterations=args.max_iterations,
        score_epsilon=args.score_epsilon,
        n_jobs=args.n_jobs,
    )
    if args.confidence_level is not None:
        return EstimatorConfig.from_confidence_level(args.confidence_level, **fields)
    z_value = args.z_value if args.z_value is not None else DEFAULT_Z_VALUE
    return EstimatorConfig(z_value=z_value, **fields)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    if args.verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(name)s %(levelname)s: %(message)s",
        )

    try:
        df = pd.read_csv(args.data)
    except (OSError, UnicodeDecodeError, pd.errors.ParserError, pd.errors.EmptyDataError) as exc:
        print(f"error: cannot read {args.data}: {exc}", file=sys.stderr)
        return 1

    treatment = _column_ref(df, args.treatment)
    outcome = _column_ref(df, args.outcome)
    id_column = None if args.no_id_column else _column_ref(df, args.id_column)
    covariates = (
        [_column_ref(df, c) for c in args.covariates] if args.covariates else None
    )

    try:
        config = build_config(args)

        roles = {
            "id": _label(df, id_column) if id_column is not None else None,
            "treatment": _label(df, treatment),
            "outcome": _label(df, outcome),
        }
        if covariates is not None:
            roles["covariates"] = [_label(df, c) for c in covariates]
        else:
            used = set(roles.values())
            roles["covariates"] = [c for c in df.columns if c not in used]
        if not df.empty:
            for warning in validate_frame(df, roles):
                print(
                    f"[{warning.severity.upper()}] {warning.column}: {warning.message}",
                    file=sys.stderr,
                )

        table = table_from_frame(
            df,
            treatment,
            outcome,
            id_column=id_column,
            covariates=covariates,
        )
        result = estimate_att(table, config)
    except AttEstimationError as exc:
        logger.debug("Estimation failed", exc_info=True)
        print(f"error: {format_error(exc)}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(result_to_dict(result), indent=2))
    else:
        print(format_result(result))
    return 0


if __name__ == "__main__":
    sys.exit(main())
