"""Tests for psm_att/balance.py.

Covers:
  - SMD computation correctness (continuous and 0/1 covariates)
  - BalanceResult fields (max_smd, all_pass, status labels)
  - Match-count weighted SMD after matching
  - Love plot: returns a Figure with expected artist counts
  - Propensity overlap plot: common-support annotation present
  - Edge cases: zero-variance columns, mismatched candidate pool
"""

import numpy as np
import pandas as pd
import pytest
import matplotlib
matplotlib.use("Agg")  # headless backend for CI
import matplotlib.pyplot as plt
from matplotlib.figure import Figure

from psm_att.balance import (
    BalanceResult,
    SMD_PASS_THRESHOLD,
    STATUS_CAUTION,
    STATUS_FAIL,
    STATUS_PASS,
    _smd,
    _smd_status,
    balance_summary,
    compute_balance,
    love_plot,
    propensity_overlap_plot,
)
from psm_att.estimator import run_estimation
from psm_att.matching import match_nearest
from psm_att.table import NumericTable


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(42)


@pytest.fixture
def confounded_table(rng: np.random.Generator) -> NumericTable:
    """600 units; treated units are older and more often 'high_value'."""
    n = 600
    age = rng.normal(45, 8, n)
    high_value = (rng.uniform(size=n) < 0.4).astype(float)
    logit = -0.5 + 0.12 * (age - 45) + 0.8 * high_value
    treatment = (rng.uniform(size=n) < 1 / (1 + np.exp(-logit))).astype(int)
    y = 2.0 * treatment + 0.1 * age + rng.normal(0, 1, n)
    return NumericTable(
        treatment, y, np.column_stack([age, high_value]), ("age", "high_value"),
    )


@pytest.fixture
def matched_balance(confounded_table: NumericTable) -> BalanceResult:
    est = run_estimation(confounded_table)
    return compute_balance(confounded_table, est.matching)


# ---------------------------------------------------------------------------
# Unit tests: SMD helpers
# ---------------------------------------------------------------------------


class TestSmd:
    def test_continuous_formula(self) -> None:
        t = np.array([1.0, 2.0, 3.0])
        c = np.array([0.0, 1.0, 2.0])
        smd, mean_c = _smd(t, c)
        # var_T = var_C = 1 -> pooled sd 1
        assert smd == pytest.approx(1.0)
        assert mean_c == pytest.approx(1.0)

    def test_binary_formula(self) -> None:
        t = np.array([1.0, 1.0, 1.0, 0.0])
        c = np.array([1.0, 0.0, 0.0, 0.0])
        smd, _ = _smd(t, c)
        expected = (0.75 - 0.25) / np.sqrt((0.75 * 0.25 + 0.25 * 0.75) / 2)
        assert smd == pytest.approx(expected)

    def test_weighted_control_mean(self) -> None:
        t = np.array([4.0, 6.0])
        c = np.array([0.0, 5.0, 10.0])
        _, mean_c = _smd(t, c, np.array([0.0, 2.0, 0.0]))
        assert mean_c == pytest.approx(5.0)

    def test_zero_variance_returns_zero(self) -> None:
        smd, _ = _smd(np.full(5, 3.0), np.full(4, 3.0))
        assert smd == 0.0

    @pytest.mark.parametrize(
        "value, status",
        [(0.05, STATUS_PASS), (-0.05, STATUS_PASS), (0.15, STATUS_CAUTION), (0.4, STATUS_FAIL)],
    )
    def test_status_thresholds(self, value: float, status: str) -> None:
        assert _smd_status(abs(value)) == status


# ---------------------------------------------------------------------------
# compute_balance
# ---------------------------------------------------------------------------


class TestComputeBalance:
    def test_table_columns(self, confounded_table: NumericTable) -> None:
        result = compute_balance(confounded_table)
        assert list(result.table.columns) == [
            "covariate", "mean_treated", "mean_control", "mean_control_matched",
            "smd_raw", "smd_adjusted", "status",
        ]
        assert result.table["covariate"].tolist() == ["age", "high_value"]

    def test_unmatched_repeats_raw(self, confounded_table: NumericTable) -> None:
        result = compute_balance(confounded_table)
        assert not result.matched
        pd.testing.assert_series_equal(
            result.table["smd_raw"], result.table["smd_adjusted"], check_names=False,
        )

    def test_raw_imbalance_detected(self, confounded_table: NumericTable) -> None:
        result = compute_balance(confounded_table)
        age = result.table.set_index("covariate").loc["age"]
        assert age["smd_raw"] > 0.25
        assert age["status"] == STATUS_FAIL
        assert not result.all_pass

    def test_matching_improves_balance(
        self, confounded_table: NumericTable, matched_balance: BalanceResult
    ) -> None:
        raw = compute_balance(confounded_table)
        assert matched_balance.matched
        assert matched_balance.max_smd < raw.max_smd
        age = matched_balance.table.set_index("covariate").loc["age"]
        assert abs(age["smd_adjusted"]) < abs(age["smd_raw"]) / 3

    def test_matched_mean_equals_counterfactual_mean(
        self, confounded_table: NumericTable
    ) -> None:
        est = run_estimation(confounded_table)
        x = confounded_table.covariates[:, 0]
        counterfactual = np.mean([x[nb].mean() for nb in est.matching.neighbors])
        result = compute_balance(confounded_table, est.matching)
        assert result.table.loc[0, "mean_control_matched"] == pytest.approx(counterfactual)

    def test_max_smd_and_all_pass(self, matched_balance: BalanceResult) -> None:
        abs_adj = matched_balance.table["smd_adjusted"].abs()
        assert matched_balance.max_smd == pytest.approx(abs_adj.max())
        assert matched_balance.all_pass == bool((abs_adj < SMD_PASS_THRESHOLD).all())

    def test_foreign_matching_raises(self, confounded_table: NumericTable) -> None:
        scores = np.linspace(0.05, 0.95, confounded_table.n_rows)
        control = confounded_table.control_indices[:-1]
        m = match_nearest(scores, confounded_table.treated_indices, control)
        with pytest.raises(ValueError, match="control group"):
            compute_balance(confounded_table, m)


# ---------------------------------------------------------------------------
# Plots
# ---------------------------------------------------------------------------


class TestPlots:
    def test_love_plot_matched(self, matched_balance: BalanceResult) -> None:
        fig = love_plot(matched_balance)
        assert isinstance(fig, Figure)
        ax = fig.axes[0]
        # Two scatter collections (unmatched, matched)
        assert len(ax.collections) == 2
        assert [t.get_text() for t in ax.get_yticklabels()] != []
        plt.close(fig)

    def test_love_plot_unmatched_has_single_series(
        self, confounded_table: NumericTable
    ) -> None:
        fig = love_plot(compute_balance(confounded_table))
        assert len(fig.axes[0].collections) == 1
        plt.close(fig)

    def test_overlap_plot_annotation(self) -> None:
        ps_t = np.array([0.3, 0.5, 0.7, 0.95])
        ps_c = np.array([0.1, 0.2, 0.4, 0.6, 0.8])
        fig = propensity_overlap_plot(ps_t, ps_c)
        assert isinstance(fig, Figure)
        texts = [t.get_text() for t in fig.axes[0].texts]
        assert any("25.0% of treated units outside" in t for t in texts)
        plt.close(fig)


class TestBalanceSummary:
    def test_summary_text(self, matched_balance: BalanceResult) -> None:
        text = balance_summary(matched_balance)
        assert text.startswith("Balance Summary (2 covariates, matched)")
        assert "Max |adjusted SMD|" in text
