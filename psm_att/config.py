"""Estimator configuration.

All tunables of the pipeline live on one frozen :class:`EstimatorConfig`
value that is passed explicitly to every entry point.  Two runs with
different configurations can therefore execute side by side without
sharing any state.
"""

from __future__ import annotations

from dataclasses import dataclass, replace

from scipy import stats

from psm_att.errors import ConfigurationError

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_TOLERANCE = 1e-8
DEFAULT_MAX_ITERATIONS = 50
DEFAULT_Z_VALUE = 1.96
DEFAULT_SCORE_EPSILON = 1e-6


@dataclass(frozen=True)
class EstimatorConfig:
    """Tunables for the propensity fit, matching and inference steps.

    Attributes:
        tolerance: IRLS stops once the largest absolute change in any
            coefficient falls below this value.
        max_iterations: Maximum number of IRLS steps.  Reaching the cap
            without meeting ``tolerance`` is an error, not a warning.
        z_value: Normal quantile used for the two-sided confidence
            interval.  ``1.96`` gives the usual 95% interval.
        score_epsilon: Propensity scores are clamped to
            ``[score_epsilon, 1 - score_epsilon]``.
        n_jobs: Number of worker threads for the nearest-neighbour search.
            ``1`` runs sequentially, ``-1`` uses every core.  Results do not
            depend on this value.
    """

    tolerance: float = DEFAULT_TOLERANCE
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    z_value: float = DEFAULT_Z_VALUE
    score_epsilon: float = DEFAULT_SCORE_EPSILON
    n_jobs: int = 1

    def __post_init__(self) -> None:
        if not self.tolerance > 0.0:
            raise ConfigurationError(
                f"tolerance must be positive, got {self.tolerance!r}."
            )
        if int(self.max_iterations) != self.max_iterations or self.max_iterations < 1:
            raise ConfigurationError(
                f"max_iterations must be a positive integer, got {self.max_iterations!r}."
            )
        if not self.z_value > 0.0:
            raise ConfigurationError(
                f"z_value must be positive, got {self.z_value!r}."
            )
        if not 0.0 < self.score_epsilon < 0.5:
            raise ConfigurationError(
                f"score_epsilon must lie in (0, 0.5), got {self.score_epsilon!r}."
            )
        if self.n_jobs == 0:
            raise ConfigurationError("n_jobs must be a non-zero integer.")

    @classmethod
    def from_confidence_level(cls, level: float, **overrides) -> EstimatorConfig:
        """Build a config whose interval has the given two-sided coverage.

        Args:
            level: Coverage in (0, 1), e.g. ``0.90`` for a 90% interval.
            **overrides: Any other :class:`EstimatorConfig` field.

        Raises:
            ConfigurationError: If ``level`` is not strictly between 0 and 1.
        """
        if not 0.0 < level < 1.0:
            raise ConfigurationError(
                f"confidence level must lie in (0, 1), got {level!r}."
            )
        z_value = float(stats.norm.ppf(0.5 + level / 2.0))
        return cls(z_value=z_value, **overrides)

    @property
    def confidence_level(self) -> float:
        """Two-sided coverage implied by ``z_value`` (0.95 for 1.96, approx.)."""
        return float(2.0 * stats.norm.cdf(self.z_value) - 1.0)

    def with_overrides(self, **changes) -> EstimatorConfig:
        """Return a copy with some fields replaced (validated again)."""
        return replace(self, **changes)
