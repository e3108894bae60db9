"""Plain-text and dict renderings of an :class:`~psm_att.estimator.AttResult`."""

from __future__ import annotations

from psm_att.config import EstimatorConfig
from psm_att.errors import AttEstimationError
from psm_att.estimator import AttResult

_RULE_WIDTH = 44


def _level_label(z_value: float) -> str:
    level = EstimatorConfig(z_value=z_value).confidence_level
    return f"{level * 100:.0f}%"


def format_result(result: AttResult, title: str = "PSM ATT") -> str:
    """Render the estimate as a short multi-line report.

    Example::

        PSM ATT ====================================
        # Treat: 3 | # Control (distinct): 2
        ATT: 3.667
        Variance: 2.444
        95% Confidence Interval : (0.602, 6.731)
    """
    header = f"{title} "
    lines = [
        header + "=" * max(_RULE_WIDTH - len(header), 4),
        f"# Treat: {result.n_treated} | # Control (distinct): {result.distinct_control_count}",
        f"ATT: {result.att:.3f}",
        f"Variance: {result.variance:.3f}",
        f"{_level_label(result.z_value)} Confidence Interval : "
        f"({result.ci_lower:.3f}, {result.ci_upper:.3f})",
    ]
    return "\n".join(lines)


def result_to_dict(result: AttResult) -> dict:
    """JSON-ready dict of every field plus ``se`` and ``confidence_level``."""
    return {
        "att": result.att,
        "variance": result.variance,
        "se": result.se,
        "ci_lower": result.ci_lower,
        "ci_upper": result.ci_upper,
        "z_value": result.z_value,
        "confidence_level": EstimatorConfig(z_value=result.z_value).confidence_level,
        "n_treated": result.n_treated,
        "n_control": result.n_control,
        "distinct_control_count": result.distinct_control_count,
    }


def format_error(exc: Exception) -> str:
    """``"<Kind>: <message>"`` for pipeline errors, class name otherwise."""
    kind = exc.kind if isinstance(exc, AttEstimationError) else type(exc).__name__
    return f"{kind}: {exc}"
