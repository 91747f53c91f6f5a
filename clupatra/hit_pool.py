from __future__ import annotations

from typing import Dict, FrozenSet, Iterable, List, Set, Tuple

import numpy as np
from scipy.spatial import cKDTree

from clupatra.data import EventHits

_EMPTY = np.empty(0, dtype=np.int64)


class HitPool:
    r"""
    Per-pad-row availability index over an :class:`~clupatra.data.EventHits` arena.

    Each pad row keeps its hit handles ordered by :math:`z` together with a
    KD-tree over their positions. A global *claimed* set marks hits that
    belong to a cluster; claimed hits are reserved, not removed, and can be
    released again (e.g. when a seed is rejected or its fit fails).

    Design goals
    ------------
    - **Single stable sort** on ``(layer, z)`` builds all rows at once (no groupby).
    - **Set-based claiming** with bulk operations.
    - Radius queries filtered by availability for the extension phase.

    Notes
    -----
    The pool is event-scoped state that is passed explicitly through the
    pipeline. Seed scanning and extension write to it one phase at a time.

    Attributes
    ----------
    store : EventHits
        The hit arena.
    _claimed : set of int
        Reserved handles.
    _rows : dict[int -> (cKDTree, ndarray(N,3), ndarray(N,))]
        Per-row spatial index, positions and handles (``z``-ordered).
    _layers_sorted : list of int
        Occupied pad rows, ascending.
    """

    __slots__ = ("store", "_claimed", "_rows", "_layers_sorted")

    def __init__(self, store: EventHits) -> None:
        self.store = store
        self._claimed: Set[int] = set()
        self._rows: Dict[int, Tuple[cKDTree, np.ndarray, np.ndarray]] = self._build_rows(store)
        self._layers_sorted: List[int] = sorted(self._rows)

    @staticmethod
    def _build_rows(store: EventHits) -> Dict[int, Tuple[cKDTree, np.ndarray, np.ndarray]]:
        r"""
        Build per-row KD-trees with a single lexicographic sort on ``(layer, z)``.

        Contiguous runs of identical ``layer`` in the sorted order are the
        rows; within a row the handles come out ordered by :math:`z`.
        Complexity is :math:`\mathcal{O}(N\log N)` plus linear passes.
        """
        n = len(store)
        rows: Dict[int, Tuple[cKDTree, np.ndarray, np.ndarray]] = {}
        if n == 0:
            return rows
        order = np.lexsort((store.positions[:, 2], store.layer)).astype(np.int64)
        lay_s = store.layer[order]

        # segment boundaries [b[i], b[i+1])
        change = np.empty(n + 1, dtype=bool)
        change[0] = True
        change[-1] = True
        if n > 1:
            change[1:-1] = lay_s[1:] != lay_s[:-1]
        bounds = np.flatnonzero(change)

        for i in range(bounds.size - 1):
            a, b = bounds[i], bounds[i + 1]
            handles = order[a:b].copy()
            pts = store.positions[handles]
            tree = cKDTree(pts, balanced_tree=True, compact_nodes=True)
            rows[int(lay_s[a])] = (tree, pts, handles)
        return rows

    @property
    def layers(self) -> List[int]:
        """Occupied pad rows, ascending."""
        return self._layers_sorted

    @property
    def claimed(self) -> FrozenSet[int]:
        return frozenset(self._claimed)

    def _unclaimed_mask(self, handles: np.ndarray) -> np.ndarray:
        claimed = self._claimed
        if not claimed:
            return np.ones(handles.size, dtype=bool)
        if handles.size <= 16:
            return np.fromiter((int(h) not in claimed for h in handles), dtype=bool, count=handles.size)
        return ~np.isin(handles, np.fromiter(claimed, dtype=np.int64, count=len(claimed)))

    def available(self, layer: int) -> np.ndarray:
        """Unclaimed handles of one pad row, ordered by ``z``."""
        entry = self._rows.get(int(layer))
        if entry is None:
            return _EMPTY
        handles = entry[2]
        return handles[self._unclaimed_mask(handles)]

    def available_in_range(self, lo: int, hi: int) -> np.ndarray:
        """
        Unclaimed handles of pad rows ``lo..hi`` (inclusive), ordered by
        ``(layer, z)``.
        """
        parts = [self.available(layer) for layer in self._layers_sorted if lo <= layer <= hi]
        parts = [p for p in parts if p.size]
        return np.concatenate(parts) if parts else _EMPTY

    def candidates_in_gate(self, point: np.ndarray, layer: int, radius: float) -> np.ndarray:
        r"""
        Radius gate: unclaimed handles of ``layer`` within ``radius`` of ``point``.

        Parameters
        ----------
        point : ndarray, shape (3,)
            Predicted position :math:`p`.
        layer : int
            Pad row to search.
        radius : float
            Gate radius; hits satisfy :math:`\|q_j - p\|_2 \le r`.

        Returns
        -------
        ndarray of int64
            Handles ordered by distance to ``point``.
        """
        entry = self._rows.get(int(layer))
        if entry is None or radius <= 0.0:
            return _EMPTY
        tree, pts, handles = entry
        idx = tree.query_ball_point(np.asarray(point, dtype=np.float64), r=float(radius))
        if not idx:
            return _EMPTY
        idx = np.asarray(idx, dtype=np.int64)
        d2 = np.sum((pts[idx] - point) ** 2, axis=1)
        idx = idx[np.argsort(d2, kind="mergesort")]
        cand = handles[idx]
        return cand[self._unclaimed_mask(cand)]

    def claim(self, handle: int) -> bool:
        """Reserve a hit; ``False`` if it was already claimed."""
        h = int(handle)
        if h in self._claimed:
            return False
        self._claimed.add(h)
        return True

    def claim_many(self, handles: Iterable[int]) -> int:
        """Reserve many hits, returning the number of **newly** claimed ones."""
        before = len(self._claimed)
        self._claimed.update(int(h) for h in handles)
        return len(self._claimed) - before

    def release(self, handle: int) -> bool:
        try:
            self._claimed.remove(int(handle))
            return True
        except KeyError:
            return False

    def release_many(self, handles: Iterable[int]) -> int:
        cnt = 0
        for h in handles:
            if self.release(h):
                cnt += 1
        return cnt

    def reset(self) -> None:
        self._claimed.clear()

    def is_available(self, handle: int) -> bool:
        return int(handle) not in self._claimed

    def n_available(self) -> int:
        return len(self.store) - len(self._claimed)

    def assignment_ratio(self) -> float:
        """Fraction of claimed hits in :math:`[0, 1]`."""
        total = len(self.store)
        return (len(self._claimed) / total) if total else 0.0

    def layer_size(self, layer: int) -> int:
        entry = self._rows.get(int(layer))
        return int(entry[2].size) if entry is not None else 0
