"""Nearest-neighbour matching on the propensity score, with replacement.

For every unit of a query group the matcher finds the candidate(s) whose
score is closest.  Exact ties are not broken: all tied candidates become
neighbours and each receives weight ``1/k`` from that query unit, so every
query unit hands out a total weight of exactly one.  A candidate's *match
count* is the sum of the weights it receives across all query units.

The same routine serves both uses in the estimator:

- treated -> control, which defines the counterfactuals for the ATT;
- within-group (treated -> treated, control -> control, ``within_group=True``),
  which feeds the conditional variance estimates.  A unit is never its own
  neighbour, but other units with an identical score are.

Search is a binary search into the sorted candidate scores followed by an
outward scan over tied distances.  Because floating-point subtraction is
monotone, this returns exactly the tie sets of the naive all-pairs
comparison.

References:
    Abadie & Imbens (2006). Large sample properties of matching estimators
        for average treatment effects. Econometrica, 74(1), 235-267.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pandas as pd
from joblib import Parallel, delayed, effective_n_jobs

from psm_att.errors import EmptyGroupError

# Sentinel for "nothing to exclude" in the neighbour scan
_NO_EXCLUSION = -1


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------


@dataclass(frozen=True, eq=False)
class Matching:
    """Neighbour relation between a query group and a candidate group.

    Attributes:
        query_indices: Ascending table indices of the query units.
        candidate_indices: Ascending table indices of the candidate units.
        neighbors: One ascending int array per query unit (aligned with
            ``query_indices``) holding the table indices of its tied
            nearest candidates.  Never empty.
        distances: Absolute score distance from each query unit to its
            neighbour(s).
        match_counts: Float array aligned with ``candidate_indices``: the
            total weight each candidate received.  Sums to the number of
            query units.
        within_group: True when query and candidates are the same group and
            self-matches were excluded.
    """

    query_indices: np.ndarray
    candidate_indices: np.ndarray
    neighbors: tuple[np.ndarray, ...]
    distances: np.ndarray
    match_counts: np.ndarray
    within_group: bool = False

    @property
    def n_queries(self) -> int:
        return len(self.query_indices)

    @property
    def distinct_count(self) -> int:
        """Number of candidates used at least once."""
        return int((self.match_counts > 0).sum())

    def _query_position(self, query_index: int) -> int:
        pos = int(np.searchsorted(self.query_indices, query_index))
        if pos >= len(self.query_indices) or self.query_indices[pos] != query_index:
            raise KeyError(f"Unit {query_index} is not in the query group.")
        return pos

    def neighbors_of(self, query_index: int) -> np.ndarray:
        return self.neighbors[self._query_position(query_index)]

    def weights_of(self, query_index: int) -> np.ndarray:
        """Per-neighbour weights of one query unit (``1/k`` each)."""
        k = len(self.neighbors_of(query_index))
        return np.full(k, 1.0 / k)

    def total_weight_of(self, query_index: int) -> float:
        return float(self.weights_of(query_index).sum())

    def match_count_of(self, candidate_index: int) -> float:
        pos = int(np.searchsorted(self.candidate_indices, candidate_index))
        if pos >= len(self.candidate_indices) or self.candidate_indices[pos] != candidate_index:
            raise KeyError(f"Unit {candidate_index} is not in the candidate group.")
        return float(self.match_counts[pos])

    def pairs(self) -> pd.DataFrame:
        """One row per (query, neighbour) pair.

        Returns:
            DataFrame with columns ``[query_idx, candidate_idx, weight,
            distance]``.  A query unit with ``k`` tied neighbours appears
            ``k`` times with weight ``1/k``.
        """
        sizes = np.array([len(nb) for nb in self.neighbors])
        return pd.DataFrame(
            {
                "query_idx": np.repeat(self.query_indices, sizes),
                "candidate_idx": np.concatenate(self.neighbors),
                "weight": np.repeat(1.0 / sizes, sizes),
                "distance": np.repeat(self.distances, sizes),
            }
        )


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _unique_indices(indices, label: str) -> np.ndarray:
    arr = np.asarray(indices, dtype=np.intp).ravel()
    unique = np.unique(arr)
    if len(unique) != len(arr):
        raise ValueError(f"{label} indices contain duplicates.")
    return unique


def _nearest(
    score: float,
    exclude: int,
    sorted_scores: np.ndarray,
    sorted_ids: np.ndarray,
) -> tuple[np.ndarray, float]:
    """Tied nearest candidates of one score in a sorted candidate pool.

    Args:
        score: Score of the query unit.
        exclude: Table index never returned (the query unit itself in
            within-group mode), or ``_NO_EXCLUSION``.
        sorted_scores: Candidate scores in ascending order.
        sorted_ids: Table indices aligned with ``sorted_scores``.

    Returns:
        Tuple of (ascending neighbour indices, minimum distance).
    """
    n = len(sorted_ids)
    # Everything left of pos scores strictly lower than the query
    pos = int(np.searchsorted(sorted_scores, score, side="left"))

    lo = pos - 1
    while lo >= 0 and sorted_ids[lo] == exclude:
        lo -= 1
    hi = pos
    while hi < n and sorted_ids[hi] == exclude:
        hi += 1

    d_lo = score - sorted_scores[lo] if lo >= 0 else np.inf
    d_hi = sorted_scores[hi] - score if hi < n else np.inf
    best = min(d_lo, d_hi)
    if not np.isfinite(best):
        raise EmptyGroupError(
            "No candidate left to match after excluding the query unit itself."
        )

    tied: list[int] = []
    j = lo
    while j >= 0 and (sorted_ids[j] == exclude or score - sorted_scores[j] == best):
        if sorted_ids[j] != exclude:
            tied.append(int(sorted_ids[j]))
        j -= 1
    j = hi
    while j < n and (sorted_ids[j] == exclude or sorted_scores[j] - score == best):
        if sorted_ids[j] != exclude:
            tied.append(int(sorted_ids[j]))
        j += 1

    return np.sort(np.array(tied, dtype=np.intp)), float(best)


def _match_chunk(
    query_ids: np.ndarray,
    scores: np.ndarray,
    sorted_scores: np.ndarray,
    sorted_ids: np.ndarray,
    within_group: bool,
) -> tuple[list[np.ndarray], np.ndarray]:
    neighbors: list[np.ndarray] = []
    distances = np.empty(len(query_ids), dtype=np.float64)
    for i, q in enumerate(query_ids):
        exclude = int(q) if within_group else _NO_EXCLUSION
        nb, dist = _nearest(float(scores[q]), exclude, sorted_scores, sorted_ids)
        neighbors.append(nb)
        distances[i] = dist
    return neighbors, distances


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def match_nearest(
    scores: np.ndarray,
    query_indices,
    candidate_indices,
    *,
    within_group: bool = False,
    n_jobs: int = 1,
) -> Matching:
    """Match every query unit to its nearest candidate(s) by score.

    Args:
        scores: Propensity score of every unit in the table, indexed by
            table index.
        query_indices: Table indices of the units to match.
        candidate_indices: Table indices of the candidate pool.  Either
            disjoint from ``query_indices`` or the same set of units.
        within_group: Exclude each query unit from its own candidate pool.
            Always on when both index sets are the same.
        n_jobs: Worker threads for the search (joblib).  The query units are
            split into contiguous chunks and re-joined in order, so the
            result does not depend on ``n_jobs``.

    Returns:
        A :class:`Matching` with tie-expanded neighbour sets and fractional
        match counts.

    Raises:
        EmptyGroupError: If the query group or candidate pool is empty, or a
            within-group query has no other unit to match.
        ValueError: If an index list contains duplicates, or the two lists
            overlap without being identical (and ``within_group`` is False).
    """
    scores = np.asarray(scores, dtype=np.float64)
    query = _unique_indices(query_indices, "query")
    candidates = _unique_indices(candidate_indices, "candidate")

    if len(query) == 0:
        raise EmptyGroupError("Query group is empty; nothing to match.")
    if len(candidates) == 0:
        raise EmptyGroupError("Candidate group is empty; no unit to match against.")

    # A unit never matches itself: identical groups always mean within-group
    if np.array_equal(query, candidates):
        within_group = True
    elif not within_group and np.intersect1d(query, candidates).size:
        raise ValueError("query and candidate indices must be disjoint or identical.")

    order = np.argsort(scores[candidates], kind="stable")
    sorted_ids = candidates[order]
    sorted_scores = scores[sorted_ids]

    n_workers = min(effective_n_jobs(n_jobs), len(query))
    if n_workers <= 1:
        parts = [_match_chunk(query, scores, sorted_scores, sorted_ids, within_group)]
    else:
        chunks = np.array_split(query, n_workers)
        parts = Parallel(n_jobs=n_workers, prefer="threads")(
            delayed(_match_chunk)(chunk, scores, sorted_scores, sorted_ids, within_group)
            for chunk in chunks
        )

    neighbors = tuple(nb for chunk_neighbors, _ in parts for nb in chunk_neighbors)
    distances = np.concatenate([chunk_distances for _, chunk_distances in parts])

    # Fractional match counts: each query unit spreads weight 1 over its ties
    sizes = np.array([len(nb) for nb in neighbors])
    positions = np.searchsorted(candidates, np.concatenate(neighbors))
    match_counts = np.bincount(
        positions,
        weights=np.repeat(1.0 / sizes, sizes),
        minlength=len(candidates),
    )

    for arr in (query, candidates, distances, match_counts):
        arr.flags.writeable = False

    return Matching(
        query_indices=query,
        candidate_indices=candidates,
        neighbors=neighbors,
        distances=distances,
        match_counts=match_counts,
        within_group=within_group,
    )
