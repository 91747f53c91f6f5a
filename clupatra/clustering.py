r"""
Generic nearest-neighbour clustering.

Items are grouped into the connected components of the graph whose edges are
the pairs accepted by a *merge predicate*. Only items whose integer index
(pad row for hits, a constant for segments) differs by at most one are ever
compared, which turns the quadratic all-pairs problem into a sweep over
neighbouring buckets:

.. math::

    E \;=\; \{(a, b) : |\iota(a) - \iota(b)| \le 1,\; \text{mergeable}(a, b)\}.

Predicates are plain objects with a ``mergeable(a, b) -> bool`` method; bare
callables are accepted as well.
"""
from __future__ import annotations

import logging
from typing import Callable, Dict, Hashable, List, Optional, Protocol, Sequence, TypeVar, Union

import networkx as nx
import numpy as np

from clupatra.data import EventHits

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MergePredicate(Protocol):
    """Symmetric pairwise merge criterion."""

    def mergeable(self, a, b) -> bool:  # pragma: no cover - protocol
        ...


PredicateLike = Union[MergePredicate, Callable[[object, object], bool]]


def _as_callable(predicate: PredicateLike) -> Callable[[object, object], bool]:
    fn = getattr(predicate, "mergeable", None)
    if callable(fn):
        return fn
    if callable(predicate):
        return predicate
    raise TypeError(f"{predicate!r} is neither a merge predicate nor callable")


def cluster_nn(
    items: Sequence[T],
    index_of: Callable[[T], int],
    predicate: PredicateLike,
    min_size: int = 1,
) -> List[List[T]]:
    r"""
    Partition ``items`` into maximal connected components under ``predicate``.

    Parameters
    ----------
    items : sequence
        Items to cluster (hit handles, segments, ...).
    index_of : callable
        Integer bucket of an item. Pairs from buckets more than one apart are
        never compared, whatever the predicate says.
    predicate : MergePredicate or callable
        Symmetric ``mergeable(a, b)``.
    min_size : int, optional
        Components with fewer items are dropped.

    Returns
    -------
    list of list
        Components ordered by the position of their first item in ``items``;
        members keep the input order. Empty input yields ``[]``.
    """
    n = len(items)
    if n == 0:
        return []
    merge = _as_callable(predicate)

    buckets: Dict[int, List[int]] = {}
    for pos, item in enumerate(items):
        buckets.setdefault(int(index_of(item)), []).append(pos)

    g = nx.Graph()
    g.add_nodes_from(range(n))
    for key in sorted(buckets):
        here = buckets[key]
        for i, pa in enumerate(here):
            for pb in here[i + 1:]:
                if merge(items[pa], items[pb]):
                    g.add_edge(pa, pb)
        nxt = buckets.get(key + 1)
        if not nxt:
            continue
        for pa in here:
            for pb in nxt:
                if merge(items[pa], items[pb]):
                    g.add_edge(pa, pb)

    comps = [sorted(c) for c in nx.connected_components(g) if len(c) >= min_size]
    comps.sort(key=lambda c: c[0])
    return [[items[p] for p in c] for c in comps]


class HitDistance:
    r"""
    Spatial (and optionally angular) merge criterion between two hits.

    Two hits :math:`a, b` are mergeable iff

    - they lie on **different, adjacent** pad rows, :math:`|\ell_a-\ell_b| = 1`;
    - their sampling bins differ by at most one (when ``use_bins``);
    - :math:`\|x_a - x_b\|^2 < d_\text{cut}^2`;
    - :math:`\cos\alpha = \hat x_a\cdot\hat x_b \ge c_\text{cut}` (when a cosine cut is set).
    """

    __slots__ = ("_pos", "_layer", "_bin", "_cut2", "_cos_cut", "_use_bins", "_norm")

    def __init__(
        self,
        store: EventHits,
        cut: float,
        cos_cut: Optional[float] = None,
        use_bins: bool = True,
    ) -> None:
        self._pos = store.positions
        self._layer = store.layer
        self._bin = store.bin
        self._cut2 = float(cut) ** 2
        self._cos_cut = None if cos_cut is None else float(cos_cut)
        self._use_bins = bool(use_bins)
        self._norm = np.linalg.norm(store.positions, axis=1) if self._cos_cut is not None else None

    @property
    def cut(self) -> float:
        return float(np.sqrt(self._cut2))

    def mergeable(self, a: int, b: int) -> bool:
        la, lb = self._layer[a], self._layer[b]
        if la == lb or abs(la - lb) > 1:
            return False
        if self._use_bins and abs(self._bin[a] - self._bin[b]) > 1:
            return False
        d = self._pos[a] - self._pos[b]
        if float(d @ d) >= self._cut2:
            return False
        if self._cos_cut is not None:
            denom = self._norm[a] * self._norm[b]
            if denom <= 0.0:
                return False
            if float(self._pos[a] @ self._pos[b]) / denom < self._cos_cut:
                return False
        return True

    __call__ = mergeable


def cluster_hits(
    handles: Sequence[int],
    store: EventHits,
    predicate: PredicateLike,
    min_size: int = 1,
) -> List[List[int]]:
    """Cluster hit handles with the pad row as bucket index."""
    layer = store.layer
    return cluster_nn([int(h) for h in handles], lambda h: int(layer[h]), predicate, min_size=min_size)
