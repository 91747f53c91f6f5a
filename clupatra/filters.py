from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Sequence, Tuple, TypeVar

import numpy as np
from scipy.optimize import linear_sum_assignment
from scipy.spatial.distance import cdist

from clupatra.clustering import PredicateLike, _as_callable
from clupatra.config import MULTIPLICITIES, ClupatraConfig
from clupatra.data import EventHits

logger = logging.getLogger(__name__)

T = TypeVar("T")


def layer_multiplicities(hits: Iterable[int], store: EventHits) -> Counter:
    """Number of hits per occupied pad row."""
    return Counter(int(store.layer[h]) for h in hits)


def duplicate_row_fraction(hits: Sequence[int], store: EventHits) -> float:
    r"""
    Fraction of occupied pad rows carrying more than one hit,

    .. math:: f_\text{dup} = \frac{\#\{\ell : n_\ell > 1\}}{\#\{\ell : n_\ell > 0\}} .
    """
    counts = layer_multiplicities(hits, store)
    if not counts:
        return 0.0
    return sum(1 for c in counts.values() if c > 1) / len(counts)


class DuplicatePadRows:
    """
    Duplicate-row criterion: ``True`` for clusters whose duplicate fraction
    does not exceed ``max_fraction``.
    """

    __slots__ = ("store", "max_fraction")

    def __init__(self, store: EventHits, max_fraction: float) -> None:
        self.store = store
        self.max_fraction = float(max_fraction)

    def __call__(self, hits: Sequence[int]) -> bool:
        return duplicate_row_fraction(hits, self.store) <= self.max_fraction


def split_list(items: Iterable[T], predicate: Callable[[T], bool]) -> Tuple[List[T], List[T]]:
    """Partition ``items`` into ``(passing, failing)`` preserving order."""
    passing: List[T] = []
    failing: List[T] = []
    for it in items:
        (passing if predicate(it) else failing).append(it)
    return passing, failing


def remerge_small_clusters(
    clusters: Sequence[List[int]],
    small: Sequence[List[int]],
    predicate: PredicateLike,
) -> Tuple[List[List[int]], List[List[int]]]:
    """
    Attach fragments below the minimum size to the first cluster they touch.

    A fragment touches a cluster when any of its hits is ``mergeable`` with
    any hit of that cluster. Returns ``(clusters, leftover_fragments)``; the
    input lists are not modified.
    """
    merge = _as_callable(predicate)
    out = [list(c) for c in clusters]
    leftover: List[List[int]] = []
    for frag in small:
        target = next(
            (c for c in out if any(merge(a, b) for a in frag for b in c)),
            None,
        )
        if target is None:
            leftover.append(list(frag))
        else:
            target.extend(frag)
    return out, leftover


def hit_multiplicity(hits: Sequence[int], store: EventHits, config: ClupatraConfig) -> int:
    r"""
    Multiplicity :math:`k\in\{2..5\}` of a cluster, or ``1``.

    For each :math:`k`, let :math:`n_k` be the number of pad rows holding
    exactly :math:`k` hits and :math:`f_k = n_k / n_\text{rows}`. Multiplicity
    :math:`k` is significant when :math:`f_k > f_\min(k)` **and**
    :math:`n_k > n_\min(k)`; among significant values the one with the largest
    :math:`f_k` wins (ties go to the smaller :math:`k`).
    """
    counts = layer_multiplicities(hits, store)
    n_rows = len(counts)
    if n_rows == 0:
        return 1
    per_k = Counter(counts.values())
    best_k, best_f = 1, 0.0
    for k in MULTIPLICITIES:
        n_k = per_k.get(k, 0)
        f_k = n_k / n_rows
        f_min, n_min = config.multiplicity_thresholds(k)
        if f_k > f_min and n_k > n_min and f_k > best_f:
            best_k, best_f = k, f_k
    return best_k


def split_by_multiplicity(
    hits: Sequence[int],
    k: int,
    store: EventHits,
    min_size: int = 1,
) -> List[List[int]]:
    r"""
    Decompose an over-merged cluster into ``k`` sub-tracks.

    The walk starts at the central pad row among those holding exactly
    :math:`k` hits; each of those hits opens one sub-track. Moving outward and
    then inward one occupied row at a time, the row's hits are assigned to the
    sub-tracks by a minimum-cost one-to-one matching on the 3D distance to
    each sub-track's most recent hit in that walking direction:

    .. math::

        \min_{\pi} \sum_{t} \|x_{\pi(t)} - x^\text{front}_t\|_2 ,

    solved with :func:`scipy.optimize.linear_sum_assignment` (rectangular
    matrices allowed). Surplus hits of a row stay unassigned.

    Returns
    -------
    list of list of int
        Sub-tracks with at least ``min_size`` hits, each ordered by pad row.
    """
    by_layer: Dict[int, List[int]] = {}
    for h in hits:
        by_layer.setdefault(int(store.layer[h]), []).append(int(h))
    k_rows = sorted(layer for layer, hs in by_layer.items() if len(hs) == k)
    if not k_rows:
        return [sorted(hits, key=lambda h: int(store.layer[h]))]
    start = k_rows[len(k_rows) // 2]
    rows = sorted(by_layer)
    pos = store.positions

    start_hits = sorted(by_layer[start], key=lambda h: float(pos[h, 2]))
    tracks: List[List[int]] = [[h] for h in start_hits]
    i0 = rows.index(start)

    for walk in (rows[i0 + 1:], rows[:i0][::-1]):
        front = list(start_hits)
        for layer in walk:
            cand = by_layer[layer]
            cost = cdist(pos[front], pos[cand])
            r_idx, c_idx = linear_sum_assignment(cost)
            for r, c in zip(r_idx, c_idx):
                tracks[r].append(cand[c])
                front[r] = cand[c]

    out = [sorted(t, key=lambda h: int(store.layer[h])) for t in tracks if len(t) >= min_size]
    logger.debug("Split cluster of %d hits (k=%d) into %d sub-tracks", len(hits), k, len(out))
    return out


@dataclass(slots=True)
class FilterResult:
    """Outcome of :func:`filter_clusters`."""
    accepted: List[List[int]] = field(default_factory=list)
    rejected: List[List[int]] = field(default_factory=list)
    n_split: int = 0


def filter_clusters(
    clusters: Iterable[Sequence[int]],
    store: EventHits,
    config: ClupatraConfig,
) -> FilterResult:
    r"""
    Apply the seed quality filters.

    1. **Multiplicity split** (:func:`hit_multiplicity`,
       :func:`split_by_multiplicity`); hits not picked up by any sub-track are
       reported as rejected.
    2. **Duplicate-row rejection** of every (sub-)cluster.
    3. **Minimum size**.

    Nothing is claimed here: rejected hits simply remain available.
    """
    dup_ok = DuplicatePadRows(store, config.duplicate_pad_row_fraction)
    res = FilterResult()
    for cl in clusters:
        cl = [int(h) for h in cl]
        k = hit_multiplicity(cl, store, config)
        if k > 1:
            parts = split_by_multiplicity(cl, k, store, min_size=1)
            res.n_split += 1
            used = {h for p in parts for h in p}
            rest = [h for h in cl if h not in used]
            if rest:
                res.rejected.append(rest)
        else:
            parts = [cl]
        for part in parts:
            if len(part) < config.min_cluster_size or not dup_ok(part):
                res.rejected.append(part)
            else:
                res.accepted.append(part)
    return res
