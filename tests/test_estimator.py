"""Tests for psm_att/estimator.py -- the end-to-end pipeline.

Covers:
  - ATT recovery on a synthetic dataset with a known effect
  - Hand-computed six-unit example through match_and_estimate
  - Score validation for externally supplied scores
  - Distinct control count when few controls overlap the treated
  - Idempotence across runs and across n_jobs
  - Failure propagation (separation, single-unit groups)
  - get_matched_data layout
"""

from __future__ import annotations

import dataclasses

import numpy as np
import pandas as pd
import pytest

from psm_att.config import EstimatorConfig
from psm_att.errors import (
    DegenerateVarianceError,
    NonconvergenceError,
    SchemaError,
    SingularDesignError,
)
from psm_att.estimator import (
    AttResult,
    Estimation,
    estimate_att,
    get_matched_data,
    match_and_estimate,
    run_estimation,
)
from psm_att.table import NumericTable


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def _make_table(n: int = 800, true_att: float = 5.0, seed: int = 0) -> NumericTable:
    """Synthetic dataset with known ATT.

    DGP:
        X1, X2 ~ N(0, 1)
        P(T=1 | X) = sigmoid(-0.5 + 0.8*X1 - 0.5*X2)
        Y = 10 + true_att * T + 2*X1 + X2 + eps,  eps ~ N(0, 1)
    """
    rng = np.random.default_rng(seed)
    x1 = rng.standard_normal(n)
    x2 = rng.standard_normal(n)
    ps = 1.0 / (1.0 + np.exp(-(-0.5 + 0.8 * x1 - 0.5 * x2)))
    treatment = (rng.uniform(size=n) < ps).astype(int)
    y = 10.0 + true_att * treatment + 2.0 * x1 + x2 + rng.standard_normal(n)
    return NumericTable(treatment, y, np.column_stack([x1, x2]), ("x1", "x2"))


@pytest.fixture(scope="module")
def table() -> NumericTable:
    return _make_table()


@pytest.fixture(scope="module")
def estimation(table: NumericTable) -> Estimation:
    return run_estimation(table)


@pytest.fixture
def six_unit_table() -> tuple[NumericTable, np.ndarray]:
    treatment = np.array([1, 0, 0, 1, 0, 1])
    outcome = np.array([5.0, 2.0, 4.0, 9.0, 6.0, 11.0])
    x = np.array([0.0, 0.01, 0.03, 2.0, 2.01, 2.05])
    scores = np.array([0.20, 0.21, 0.23, 0.60, 0.61, 0.64])
    return NumericTable(treatment, outcome, x, ("x",)), scores


# ---------------------------------------------------------------------------
# Full pipeline
# ---------------------------------------------------------------------------


class TestEstimateAtt:
    def test_returns_att_result(self, table: NumericTable) -> None:
        assert isinstance(estimate_att(table), AttResult)

    def test_att_close_to_truth(self, estimation: Estimation) -> None:
        assert abs(estimation.result.att - 5.0) < 0.5

    def test_ci_brackets_att(self, estimation: Estimation) -> None:
        r = estimation.result
        assert r.ci_lower < r.att < r.ci_upper
        assert r.ci_upper - r.ci_lower == pytest.approx(2 * 1.96 * r.se)
        assert r.confidence_interval == (r.ci_lower, r.ci_upper)

    def test_counts(self, table: NumericTable, estimation: Estimation) -> None:
        r = estimation.result
        assert r.n_treated == table.n_treated
        assert r.n_control == table.n_control
        assert 1 <= r.distinct_control_count <= min(r.n_treated, r.n_control)

    def test_variance_positive(self, estimation: Estimation) -> None:
        assert estimation.result.variance > 0.0
        assert estimation.result.variance == estimation.variance.variance

    def test_intermediates_kept(self, table: NumericTable, estimation: Estimation) -> None:
        assert estimation.propensity is not None
        np.testing.assert_array_equal(estimation.scores, estimation.propensity.scores)
        np.testing.assert_array_equal(estimation.matching.query_indices, table.treated_indices)
        np.testing.assert_array_equal(estimation.matching.candidate_indices, table.control_indices)

    def test_result_is_frozen(self, estimation: Estimation) -> None:
        with pytest.raises(dataclasses.FrozenInstanceError):
            estimation.result.att = 0.0  # type: ignore[misc]

    def test_repeated_runs_identical(self, table: NumericTable) -> None:
        assert estimate_att(table) == estimate_att(table)

    def test_n_jobs_does_not_change_result(self, table: NumericTable) -> None:
        assert estimate_att(table) == estimate_att(table, EstimatorConfig(n_jobs=3))

    def test_confidence_level_widens_interval(self, table: NumericTable) -> None:
        r95 = estimate_att(table)
        r99 = estimate_att(table, EstimatorConfig.from_confidence_level(0.99))
        assert r99.att == r95.att
        assert r99.ci_upper - r99.ci_lower > r95.ci_upper - r95.ci_lower

    def test_separation_raises(self) -> None:
        x = np.array([-3.0, -2.0, -1.0, 1.0, 2.0, 3.0])
        sep = NumericTable(np.array([0, 0, 0, 1, 1, 1]), np.arange(6.0), x)
        with pytest.raises((SingularDesignError, NonconvergenceError)):
            estimate_att(sep)

    def test_collinear_covariates_raise(self, table: NumericTable) -> None:
        x1 = table.covariates[:, 0]
        dup = NumericTable(table.treatment, table.outcome, np.column_stack([x1, x1]))
        with pytest.raises(SingularDesignError):
            estimate_att(dup)


# ---------------------------------------------------------------------------
# Supplied scores
# ---------------------------------------------------------------------------


class TestMatchAndEstimate:
    def test_six_unit_example(self, six_unit_table) -> None:
        tbl, scores = six_unit_table
        est = match_and_estimate(tbl, scores)
        r = est.result
        assert est.propensity is None
        assert r.att == pytest.approx(11.0 / 3.0, abs=1e-6)
        assert r.variance == pytest.approx(22.0 / 9.0, abs=1e-6)
        assert r.n_treated == 3
        assert r.n_control == 3
        assert r.distinct_control_count == 2
        half = 1.96 * np.sqrt(22.0 / 9.0)
        assert r.ci_lower == pytest.approx(11.0 / 3.0 - half, abs=1e-6)
        assert r.ci_upper == pytest.approx(11.0 / 3.0 + half, abs=1e-6)

    def test_few_overlapping_controls(self) -> None:
        # Treated near 0.9; two controls near 0.9 and many near 0.1
        treated_scores = [0.88, 0.90, 0.91, 0.92]
        near_controls = [0.89, 0.905]
        far_controls = list(np.linspace(0.05, 0.15, 20))
        scores = np.array(treated_scores + near_controls + far_controls)
        treatment = np.array([1] * 4 + [0] * 22)
        rng = np.random.default_rng(1)
        tbl = NumericTable(treatment, rng.normal(size=26), rng.normal(size=26))
        r = match_and_estimate(tbl, scores).result
        assert r.distinct_control_count == 2
        assert r.n_control == 22

    def test_identical_outcomes(self, six_unit_table) -> None:
        tbl, scores = six_unit_table
        flat = NumericTable(tbl.treatment, np.full(6, 4.0), tbl.covariates)
        r = match_and_estimate(flat, scores).result
        assert r.att == 0.0
        assert r.variance == 0.0
        assert r.ci_lower == r.ci_upper == 0.0

    @pytest.mark.parametrize(
        "bad",
        [
            [0.2, 0.3],
            [0.2, 0.21, 0.23, 0.6, 0.61, 1.0],
            [0.0, 0.21, 0.23, 0.6, 0.61, 0.64],
            [np.nan, 0.21, 0.23, 0.6, 0.61, 0.64],
            ["a", "b", "c", "d", "e", "f"],
        ],
    )
    def test_invalid_scores_raise(self, six_unit_table, bad) -> None:
        tbl, _ = six_unit_table
        with pytest.raises(SchemaError):
            match_and_estimate(tbl, bad)

    def test_single_treated_unit_raises(self) -> None:
        tbl = NumericTable(np.array([1, 0, 0]), np.array([1.0, 2.0, 3.0]), np.array([0.1, 0.2, 0.3]))
        with pytest.raises(DegenerateVarianceError):
            match_and_estimate(tbl, np.array([0.5, 0.4, 0.6]))

    def test_heavy_reuse_warns(self) -> None:
        # Twelve treated units all matched to the one overlapping control
        scores = np.array([0.9] * 12 + [0.88, 0.1, 0.12])
        treatment = np.array([1] * 12 + [0] * 3)
        rng = np.random.default_rng(3)
        tbl = NumericTable(treatment, rng.normal(size=15), rng.normal(size=15))
        with pytest.warns(UserWarning, match="leans heavily") as record:
            match_and_estimate(tbl, scores)
        assert record[0].filename == __file__

    @pytest.mark.parametrize("entry_point", [estimate_att, run_estimation])
    def test_heavy_reuse_warning_points_at_caller(self, entry_point) -> None:
        # Binary covariate: twelve treated share x = 1 with a single control
        x = np.array([1.0] * 12 + [0.0] * 2 + [1.0] + [0.0] * 20)
        treatment = np.array([1] * 14 + [0] * 21)
        rng = np.random.default_rng(5)
        tbl = NumericTable(treatment, rng.normal(size=35), x)
        with pytest.warns(UserWarning, match="leans heavily") as record:
            entry_point(tbl)
        heavy = [w for w in record if "leans heavily" in str(w.message)]
        assert heavy[0].filename == __file__


# ---------------------------------------------------------------------------
# get_matched_data
# ---------------------------------------------------------------------------


class TestGetMatchedData:
    def test_layout(self, six_unit_table) -> None:
        tbl, scores = six_unit_table
        est = match_and_estimate(tbl, scores)
        matched = get_matched_data(tbl, est.matching)
        assert isinstance(matched, pd.DataFrame)
        for col in ("unit_idx", "match_id", "match_role", "match_weight", "match_distance"):
            assert col in matched.columns
        assert len(matched) == 3 + 3
        assert (matched["match_role"] == "treated").sum() == 3

    def test_controls_share_match_id_with_treated(self, six_unit_table) -> None:
        tbl, scores = six_unit_table
        est = match_and_estimate(tbl, scores)
        matched = get_matched_data(tbl, est.matching)
        controls = matched[matched["match_role"] == "control"]
        treated = matched[matched["match_role"] == "treated"]
        assert controls["unit_idx"].tolist() == [1, 4, 4]
        assert treated["unit_idx"].tolist() == [0, 3, 5]
        assert controls["match_id"].tolist() == treated["match_id"].tolist()

    def test_tie_weights(self) -> None:
        tbl = NumericTable(np.array([1, 0, 0, 1]), np.arange(4.0), np.arange(4.0))
        est = match_and_estimate(tbl, np.array([0.5, 0.25, 0.75, 0.8]))
        matched = get_matched_data(tbl, est.matching)
        controls = matched[matched["match_role"] == "control"]
        assert controls.groupby("match_id")["match_weight"].sum().tolist() == [1.0, 1.0]
