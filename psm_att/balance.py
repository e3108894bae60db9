"""Covariate balance diagnostics for a propensity score matching.

Compares covariate means of treated and control units before matching (raw)
and after matching (adjusted).  After matching, each control unit counts
with its match count ``K_j``, so the adjusted control mean is exactly the
mean covariate vector of the imputed counterfactuals.

Outputs:
  - Standardised Mean Difference (SMD) table, raw and adjusted
  - Love plot of absolute SMD before and after matching
  - Propensity score overlap plot (KDE) for treated vs control

References:
  Austin (2009) Statistics in Medicine 28(25): 3083-3107.
  Stuart (2010) Statistical Science 25(1): 1-21.
"""

from __future__ import annotations

from dataclasses import dataclass

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from matplotlib.figure import Figure

from psm_att.matching import Matching
from psm_att.table import NumericTable

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SMD_PASS_THRESHOLD = 0.10
SMD_CAUTION_THRESHOLD = 0.25

STATUS_PASS = "Pass"
STATUS_CAUTION = "Caution"
STATUS_FAIL = "Fail"

COLOUR_RAW = "#d62728"       # red for unmatched
COLOUR_ADJUSTED = "#1f77b4"  # blue for matched
COLOUR_TREATED = "#1f77b4"
COLOUR_CONTROL = "#ff7f0e"


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------


@dataclass
class BalanceResult:
    """Container for covariate balance diagnostics.

    Attributes:
        table: DataFrame with columns
            [covariate, mean_treated, mean_control, mean_control_matched,
             smd_raw, smd_adjusted, status], one row per covariate.
            Without a matching, the adjusted columns repeat the raw ones.
        max_smd: Maximum absolute adjusted SMD across all covariates.
        all_pass: True when every covariate has |adjusted SMD| < 0.10.
        matched: True when the adjusted columns reflect a matching.
    """

    table: pd.DataFrame
    max_smd: float
    all_pass: bool
    matched: bool = False


# ---------------------------------------------------------------------------
# SMD computation helpers
# ---------------------------------------------------------------------------


def _weighted_moments(values: np.ndarray, weights: np.ndarray | None) -> tuple[float, float]:
    """Mean and variance; sample variance (ddof=1) when unweighted."""
    if weights is None:
        var = float(np.var(values, ddof=1)) if len(values) > 1 else 0.0
        return float(np.mean(values)), var
    mean = float(np.average(values, weights=weights))
    return mean, float(np.average((values - mean) ** 2, weights=weights))


def _smd(
    vals_treated: np.ndarray,
    vals_control: np.ndarray,
    weights_control: np.ndarray | None = None,
) -> tuple[float, float]:
    """Signed SMD of one covariate and the (weighted) control mean.

    Continuous covariates use ``(mean_T - mean_C) / sqrt((var_T + var_C) / 2)``;
    0/1 covariates use the pooled-proportion denominator.  Returns an SMD of
    0.0 when the denominator is zero (constant columns).
    """
    mean_t, var_t = _weighted_moments(vals_treated, None)
    mean_c, var_c = _weighted_moments(vals_control, weights_control)

    is_binary = np.isin(vals_treated, (0.0, 1.0)).all() and np.isin(vals_control, (0.0, 1.0)).all()
    if is_binary:
        denom = np.sqrt((mean_t * (1 - mean_t) + mean_c * (1 - mean_c)) / 2.0)
    else:
        denom = np.sqrt((var_t + var_c) / 2.0)
    if denom == 0.0:
        return 0.0, mean_c
    return float((mean_t - mean_c) / denom), mean_c


def _smd_status(abs_smd: float) -> str:
    if abs_smd < SMD_PASS_THRESHOLD:
        return STATUS_PASS
    if abs_smd < SMD_CAUTION_THRESHOLD:
        return STATUS_CAUTION
    return STATUS_FAIL


# ---------------------------------------------------------------------------
# Public API: compute_balance
# ---------------------------------------------------------------------------


def compute_balance(table: NumericTable, matching: Matching | None = None) -> BalanceResult:
    """Compute covariate balance between treated and control units.

    Args:
        table: The estimation table.
        matching: Optional treated -> control matching.  When given, the
            adjusted SMD compares treated units with control units weighted
            by their match counts ``K_j``; unused controls drop out.

    Returns:
        A :class:`BalanceResult`.
    """
    treated = table.treated_indices
    control = table.control_indices
    weights = None
    if matching is not None:
        if not np.array_equal(matching.candidate_indices, control):
            raise ValueError("matching candidates are not the control group of this table.")
        weights = np.asarray(matching.match_counts, dtype=np.float64)

    rows: list[dict] = []
    for j, name in enumerate(table.covariate_names):
        x = table.covariates[:, j]
        smd_raw, mean_c = _smd(x[treated], x[control])
        if weights is None:
            smd_adj, mean_c_matched = smd_raw, mean_c
        else:
            smd_adj, mean_c_matched = _smd(x[treated], x[control], weights)
        rows.append({
            "covariate": name,
            "mean_treated": float(np.mean(x[treated])),
            "mean_control": mean_c,
            "mean_control_matched": mean_c_matched,
            "smd_raw": smd_raw,
            "smd_adjusted": smd_adj,
            "status": _smd_status(abs(smd_adj)),
        })

    result_table = pd.DataFrame(rows)
    abs_adj = result_table["smd_adjusted"].abs()
    return BalanceResult(
        table=result_table,
        max_smd=float(abs_adj.max()),
        all_pass=bool((abs_adj < SMD_PASS_THRESHOLD).all()),
        matched=matching is not None,
    )


# ---------------------------------------------------------------------------
# Visualization
# ---------------------------------------------------------------------------


def love_plot(
    balance: BalanceResult,
    title: str = "Love Plot: Covariate Balance",
    figsize: tuple[float, float] | None = None,
) -> Figure:
    """Horizontal dot plot of absolute SMD before and after matching.

    Covariates are sorted by raw absolute SMD.  Red dots are unmatched,
    blue dots matched; dashed lines mark the 0.10 and 0.25 thresholds.

    Returns:
        matplotlib Figure (not displayed).
    """
    data = balance.table.assign(
        abs_raw=balance.table["smd_raw"].abs(),
        abs_adj=balance.table["smd_adjusted"].abs(),
    ).sort_values("abs_raw").reset_index(drop=True)

    n = len(data)
    if figsize is None:
        figsize = (8.0, max(4.0, n * 0.35 + 1.5))
    fig, ax = plt.subplots(figsize=figsize)
    y = np.arange(n)

    if balance.matched:
        for i, row in data.iterrows():
            ax.plot([row["abs_raw"], row["abs_adj"]], [i, i], color="grey",
                    linewidth=0.6, alpha=0.5, zorder=1)
    ax.scatter(data["abs_raw"], y, color=COLOUR_RAW, s=55, zorder=3,
               label="Unmatched", edgecolors="white", linewidths=0.4)
    if balance.matched:
        ax.scatter(data["abs_adj"], y, color=COLOUR_ADJUSTED, s=55, zorder=3,
                   label="Matched", edgecolors="white", linewidths=0.4)

    ax.axvline(SMD_PASS_THRESHOLD, color="#2ca02c", linestyle="--", linewidth=1.2,
               label=f"|SMD| = {SMD_PASS_THRESHOLD}")
    ax.axvline(SMD_CAUTION_THRESHOLD, color="#ff7f0e", linestyle="--", linewidth=1.2,
               label=f"|SMD| = {SMD_CAUTION_THRESHOLD}")

    ax.set_yticks(y)
    ax.set_yticklabels(data["covariate"].tolist(), fontsize=8)
    ax.set_xlabel("Absolute Standardized Mean Difference (|SMD|)", fontsize=10)
    ax.set_title(title, fontsize=11, fontweight="bold")
    ax.legend(loc="lower right", fontsize=8, framealpha=0.9)
    ax.set_xlim(left=0)
    ax.grid(axis="x", linestyle=":", alpha=0.5)
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)

    fig.tight_layout()
    return fig


def propensity_overlap_plot(
    ps_treated: np.ndarray | pd.Series,
    ps_control: np.ndarray | pd.Series,
    title: str = "Propensity Score Overlap",
    figsize: tuple[float, float] = (8.0, 4.5),
    bw_adjust: float = 0.5,
) -> Figure:
    """Overlapping KDE plots of treated and control propensity scores.

    The common support ``[min(control), max(control)]`` is shaded and the
    share of treated units outside it is annotated; those units are matched
    to a boundary control and usually carry most of the bias.

    Returns:
        matplotlib Figure (not displayed).
    """
    ps_t = np.asarray(ps_treated, dtype=float)
    ps_c = np.asarray(ps_control, dtype=float)
    lo, hi = float(ps_c.min()), float(ps_c.max())
    pct_outside = 100.0 * np.mean((ps_t < lo) | (ps_t > hi))

    fig, ax = plt.subplots(figsize=figsize)
    for values, colour, label in (
        (ps_t, COLOUR_TREATED, f"Treated (N={len(ps_t):,})"),
        (ps_c, COLOUR_CONTROL, f"Control (N={len(ps_c):,})"),
    ):
        sns.kdeplot(values, ax=ax, color=colour, fill=True, alpha=0.35,
                    bw_adjust=bw_adjust, label=label, linewidth=1.5, warn_singular=False)

    ax.axvspan(lo, hi, alpha=0.08, color="grey",
               label=f"Common support [{lo:.3f}, {hi:.3f}]", zorder=0)
    ax.set_xlabel("Propensity Score", fontsize=10)
    ax.set_ylabel("Density", fontsize=10)
    ax.set_title(title, fontsize=11, fontweight="bold")
    ax.legend(fontsize=9, framealpha=0.9)
    ax.set_xlim(0, 1)
    ax.text(
        0.97, 0.95,
        f"{pct_outside:.1f}% of treated units outside\ncommon support",
        transform=ax.transAxes, ha="right", va="top", fontsize=8,
        color="#d62728" if pct_outside > 5 else "#2ca02c",
    )
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)

    fig.tight_layout()
    return fig


def balance_summary(result: BalanceResult) -> str:
    """Multi-line text summary of a :class:`BalanceResult`."""
    status = result.table["status"]
    label = "matched" if result.matched else "unmatched"
    lines = [
        f"Balance Summary ({len(result.table)} covariates, {label})",
        f"  Pass     (|SMD| < {SMD_PASS_THRESHOLD}):  {int((status == STATUS_PASS).sum())}",
        f"  Caution  (|SMD| < {SMD_CAUTION_THRESHOLD}):  {int((status == STATUS_CAUTION).sum())}",
        f"  Fail     (|SMD| >= {SMD_CAUTION_THRESHOLD}): {int((status == STATUS_FAIL).sum())}",
        f"  Max |adjusted SMD|: {result.max_smd:.4f}",
        f"  All pass: {result.all_pass}",
    ]
    return "\n".join(lines)
