"""PSM-ATT: propensity score matching dashboard.

Streamlit front end for the ``psm_att`` estimator:
- CSV upload (or a generated sample dataset)
- Column role assignment (id, treatment, outcome, covariates)
- Estimator settings (IRLS tolerance and cap, confidence level, threads)
- Results: ATT with Abadie-Imbens variance and confidence interval
- Balance diagnostics (SMD table, Love plot, propensity overlap)

Launch:
    streamlit run app.py --server.address 127.0.0.1 --server.headless true
"""

from __future__ import annotations

import warnings
from pathlib import Path

import matplotlib.pyplot as plt
import pandas as pd
import streamlit as st

from psm_att.balance import (
    balance_summary,
    compute_balance,
    love_plot,
    propensity_overlap_plot,
)
from psm_att.config import EstimatorConfig
from psm_att.errors import AttEstimationError
from psm_att.estimator import get_matched_data, run_estimation
from psm_att.loader import table_from_frame
from psm_att.report import format_error, format_result
from utils.validators import validate_frame

# ---------------------------------------------------------------------------
# Page configuration
# ---------------------------------------------------------------------------

st.set_page_config(
    page_title="PSM-ATT",
    layout="wide",
    initial_sidebar_state="expanded",
)

SAMPLE_DIR = Path(__file__).parent / "data" / "sample"

# Preferred column assignments for the generated sample datasets
SAMPLE_COLUMN_DEFAULTS: dict[str, dict[str, str | list[str] | None]] = {
    "synthetic_att.csv": {
        "id": "unit_id",
        "treatment": "treated",
        "outcome": "outcome",
        "covariates": ["age", "income", "prior_visits", "urban"],
    },
}

_NONE = "(none)"

# ---------------------------------------------------------------------------
# Session state defaults
# ---------------------------------------------------------------------------

_DEFAULTS: dict[str, object] = {
    "df": None,
    "estimation": None,
    "table": None,
    "estimation_warnings": [],
    "_data_source": None,
}

for key, default in _DEFAULTS.items():
    if key not in st.session_state:
        st.session_state[key] = default


def _reset_results() -> None:
    """Clear analysis results when data or settings change."""
    st.session_state.estimation = None
    st.session_state.table = None
    st.session_state.estimation_warnings = []


# ---------------------------------------------------------------------------
# Sidebar: Data source
# ---------------------------------------------------------------------------

st.sidebar.title("PSM-ATT")
st.sidebar.caption("Propensity score matching with Abadie-Imbens inference")

st.sidebar.header("1. Data")

upload_mode = st.sidebar.radio(
    "Data source",
    ["Upload CSV", "Use sample data"],
    index=1,
    horizontal=True,
    label_visibility="collapsed",
)

if upload_mode == "Upload CSV":
    uploaded_file = st.sidebar.file_uploader("Upload CSV file", type=["csv"])
    if uploaded_file is not None:
        source_key = f"upload:{uploaded_file.name}:{uploaded_file.size}"
        if st.session_state.get("_data_source") != source_key:
            try:
                st.session_state.df = pd.read_csv(uploaded_file)
                st.session_state._data_source = source_key
                _reset_results()
            except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
                st.sidebar.error(f"Error reading CSV: {e}")
else:
    sample_files = sorted(SAMPLE_DIR.glob("*.csv")) if SAMPLE_DIR.exists() else []
    if sample_files:
        sample_name = st.sidebar.selectbox(
            "Select sample dataset",
            [f.name for f in sample_files],
        )
        source_key = f"sample:{sample_name}"
        if st.session_state.get("_data_source") != source_key:
            st.session_state.df = pd.read_csv(SAMPLE_DIR / sample_name)
            st.session_state._data_source = source_key
            _reset_results()
    else:
        st.sidebar.warning("No sample data found. Run `tests/generate_sample_data.py` first.")

df: pd.DataFrame | None = st.session_state.df

if df is None:
    st.title("PSM-ATT")
    st.info(
        "Upload a CSV or select sample data from the sidebar to get started.\n\n"
        "The first column is treated as a unit identifier by default; pick a "
        "binary treatment column and an outcome, and every remaining numeric "
        "column is used as a covariate of the propensity model."
    )
    st.stop()

# ---------------------------------------------------------------------------
# Sidebar: Column role assignment
# ---------------------------------------------------------------------------

st.sidebar.header("2. Column Assignment")

_source = st.session_state.get("_data_source") or ""
_sample_defaults = SAMPLE_COLUMN_DEFAULTS.get(_source.removeprefix("sample:"), {})
columns = list(df.columns)


def _default_index(options: list[str], role: str, fallback: int) -> int:
    preferred = _sample_defaults.get(role)
    if isinstance(preferred, str) and preferred in options:
        return options.index(preferred)
    return min(fallback, len(options) - 1)


id_col = st.sidebar.selectbox(
    "Identifier column (excluded)",
    [_NONE, *columns],
    index=_default_index([_NONE, *columns], "id", 1),
    on_change=_reset_results,
)
treatment_col = st.sidebar.selectbox(
    "Treatment (0/1)",
    columns,
    index=_default_index(columns, "treatment", 1),
    on_change=_reset_results,
)
outcome_col = st.sidebar.selectbox(
    "Outcome",
    columns,
    index=_default_index(columns, "outcome", 2),
    on_change=_reset_results,
)

_reserved = {c for c in (id_col, treatment_col, outcome_col) if c != _NONE}
_candidates = [c for c in columns if c not in _reserved]
_default_covs = _sample_defaults.get("covariates") or [
    c for c in _candidates if pd.api.types.is_numeric_dtype(df[c])
]
covariate_cols = st.sidebar.multiselect(
    "Covariates",
    _candidates,
    default=[c for c in _default_covs if c in _candidates],
    on_change=_reset_results,
)

column_roles = {
    "id": None if id_col == _NONE else id_col,
    "treatment": treatment_col,
    "outcome": outcome_col,
    "covariates": covariate_cols,
}

validation_warnings = validate_frame(df, column_roles)
if validation_warnings:
    with st.sidebar.expander(f"Validation ({len(validation_warnings)} warnings)", expanded=False):
        for w in validation_warnings:
            icon = {"info": "ℹ️", "warning": "⚠️", "error": "\U0001f534"}.get(w.severity, "")
            st.markdown(f"{icon} **{w.column}**: {w.message}")

# ---------------------------------------------------------------------------
# Sidebar: Estimator settings
# ---------------------------------------------------------------------------

st.sidebar.header("3. Estimation")

with st.sidebar.expander("Estimator Settings"):
    confidence_level = st.slider("Confidence level", 0.80, 0.99, 0.95, 0.01)
    max_iterations = st.number_input("Max IRLS iterations", 1, 1000, 50)
    tolerance = st.select_slider(
        "IRLS tolerance",
        options=[1e-4, 1e-6, 1e-8, 1e-10],
        value=1e-8,
        format_func=lambda v: f"{v:g}",
    )
    n_jobs = st.number_input("Matching threads (-1 = all cores)", -1, 64, 1)

can_run = treatment_col != outcome_col and len(covariate_cols) > 0
run_clicked = st.sidebar.button(
    "Run Analysis",
    type="primary",
    disabled=not can_run,
    use_container_width=True,
)

if run_clicked:
    try:
        if confidence_level == 0.95:
            config = EstimatorConfig(
                tolerance=tolerance, max_iterations=int(max_iterations), n_jobs=int(n_jobs) or 1
            )
        else:
            config = EstimatorConfig.from_confidence_level(
                confidence_level,
                tolerance=tolerance,
                max_iterations=int(max_iterations),
                n_jobs=int(n_jobs) or 1,
            )
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            table = table_from_frame(
                df,
                treatment_col,
                outcome_col,
                id_column=column_roles["id"],
                covariates=covariate_cols,
            )
            estimation = run_estimation(table, config)
        st.session_state.table = table
        st.session_state.estimation = estimation
        st.session_state.estimation_warnings = [str(w.message) for w in caught]
    except AttEstimationError as exc:
        _reset_results()
        st.error(format_error(exc))

# ---------------------------------------------------------------------------
# Main panel tabs
# ---------------------------------------------------------------------------

tab_overview, tab_results, tab_balance = st.tabs(["Overview", "Results", "Balance"])

estimation = st.session_state.estimation
table = st.session_state.table

# ===== OVERVIEW TAB =====
with tab_overview:
    st.header("Data Overview")
    col1, col2, col3 = st.columns(3)
    col1.metric("Rows", f"{len(df):,}")
    col2.metric("Columns", f"{len(df.columns)}")
    col3.metric("Covariates", f"{len(covariate_cols)}")
    with st.expander("Data Preview (first 100 rows)"):
        st.dataframe(df.head(100), use_container_width=True)
    if validation_warnings:
        st.subheader("Validation")
        st.dataframe(pd.DataFrame(validation_warnings), use_container_width=True)

# ===== RESULTS TAB =====
with tab_results:
    st.header("Average Treatment Effect on the Treated")
    if estimation is None:
        st.info("Run the analysis from the sidebar to see results.")
    else:
        result = estimation.result
        for message in st.session_state.estimation_warnings:
            st.warning(message)

        m1, m2, m3, m4 = st.columns(4)
        m1.metric("ATT", f"{result.att:.3f}")
        m2.metric("Std. error", f"{result.se:.3f}")
        m3.metric("Treated", f"{result.n_treated:,}")
        m4.metric("Controls used", f"{result.distinct_control_count:,} / {result.n_control:,}")
        st.code(format_result(result), language=None)

        if estimation.propensity is not None:
            model = estimation.propensity.model
            st.subheader("Propensity Model")
            st.caption(
                f"IRLS converged in {model.n_iterations} iterations; "
                f"log-likelihood {model.log_likelihood:.3f}; "
                f"in-sample AUC {estimation.propensity.auc:.3f}"
            )
            st.dataframe(
                pd.DataFrame({
                    "term": estimation.propensity.feature_names,
                    "coefficient": model.coefficients,
                }),
                use_container_width=True,
            )

        st.subheader("Matched Sample")
        st.dataframe(get_matched_data(table, estimation.matching), use_container_width=True)

# ===== BALANCE TAB =====
with tab_balance:
    st.header("Covariate Balance")
    if estimation is None:
        st.info("Run the analysis from the sidebar to see balance diagnostics.")
    else:
        balance = compute_balance(table, estimation.matching)
        st.dataframe(balance.table, use_container_width=True)
        st.text(balance_summary(balance))

        fig_love = love_plot(balance)
        st.pyplot(fig_love)
        plt.close(fig_love)

        scores = estimation.scores
        fig_overlap = propensity_overlap_plot(
            scores[table.treated_indices], scores[table.control_indices],
        )
        st.pyplot(fig_overlap)
        plt.close(fig_overlap)
