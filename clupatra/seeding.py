from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator, List, Tuple

from clupatra.clustering import HitDistance, cluster_hits
from clupatra.config import ClupatraConfig
from clupatra.data import EventHits
from clupatra.filters import filter_clusters, remerge_small_clusters
from clupatra.geometry import TPCGeometry
from clupatra.hit_pool import HitPool

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SeedStats:
    n_clusters: int = 0
    n_repaired: int = 0
    n_split: int = 0
    n_rejected: int = 0
    n_seeds: int = 0


def seed_windows(n_layers: int, width: int) -> List[Tuple[int, int]]:
    """
    Inclusive pad-row windows ``(lo, hi)`` of ``width`` rows, from the
    outermost row inward. The innermost window may be narrower.
    """
    out: List[Tuple[int, int]] = []
    hi = n_layers - 1
    while hi >= 0:
        lo = max(0, hi - width + 1)
        out.append((lo, hi))
        hi = lo - 1
    return out


class SeedFinder:
    r"""
    Windowed seed scan with escalating distance cuts.

    For pass :math:`p = 1..N` the hit distance cut is :math:`d_\text{cut}\,p/N`.
    Within a pass the pad plane is swept window by window from the outermost
    row inward; the available hits of each window are clustered with
    :class:`~clupatra.clustering.HitDistance`, fragments are remerged, wide
    clusters repaired, and the survivors of
    :func:`~clupatra.filters.filter_clusters` become seeds.

    Seeds are claimed in the pool **before** they are yielded, and the next
    window is only clustered once the consumer asks for it. A consumer that
    extends each seed (claiming more hits) therefore changes what later
    windows and passes see, which is the intended outer-to-inner ordering.

    Parameters
    ----------
    store : EventHits
    pool : HitPool
    geometry : TPCGeometry
    config : ClupatraConfig
    """

    __slots__ = ("store", "pool", "geometry", "config", "stats")

    def __init__(self, store: EventHits, pool: HitPool, geometry: TPCGeometry, config: ClupatraConfig) -> None:
        self.store = store
        self.pool = pool
        self.geometry = geometry
        self.config = config
        self.stats = SeedStats()

    def _predicate(self, cut: float) -> HitDistance:
        return HitDistance(self.store, cut, cos_cut=self.config.cos_alpha_cut)

    def _span(self, hits: List[int]) -> int:
        layers = self.store.layer[hits]
        return int(layers.max() - layers.min()) + 1

    def _repair(self, clusters: List[List[int]], lo: int, hi: int, cut: float) -> List[List[int]]:
        """Pool clusters spanning most of the window and recluster with a relaxed cut."""
        width = hi - lo + 1
        wide, narrow = [], []
        for c in clusters:
            (wide if self._span(c) >= self.config.repair_span_fraction * width else narrow).append(c)
        if len(wide) < 2:
            return clusters
        pooled = sorted((h for c in wide for h in c),
                        key=lambda h: (int(self.store.layer[h]), float(self.store.positions[h, 2])))
        relaxed = self._predicate(cut * self.config.repair_cut_multiplier)
        repaired = cluster_hits(pooled, self.store, relaxed, min_size=self.config.min_cluster_size)
        self.stats.n_repaired += len(wide)
        logger.debug("Window [%d,%d]: repaired %d wide clusters into %d", lo, hi, len(wide), len(repaired))
        return repaired + narrow

    def window_clusters(self, lo: int, hi: int, cut: float) -> List[List[int]]:
        """Seeds of one window at one distance cut; nothing is claimed here."""
        handles = self.pool.available_in_range(lo, hi)
        if handles.size < self.config.min_cluster_size:
            return []
        cfg = self.config
        clusters = cluster_hits(handles, self.store, self._predicate(cut), min_size=1)
        big = [c for c in clusters if len(c) >= cfg.min_cluster_size]
        small = [c for c in clusters if len(c) < cfg.min_cluster_size]
        if small and big:
            big, _ = remerge_small_clusters(big, small, self._predicate(cut * cfg.repair_cut_multiplier))
        if not big:
            return []
        self.stats.n_clusters += len(big)
        big = self._repair(big, lo, hi, cut)

        res = filter_clusters(big, self.store, cfg)
        self.stats.n_split += res.n_split
        self.stats.n_rejected += len(res.rejected)
        return res.accepted

    def iter_seeds(self) -> Iterator[List[int]]:
        """
        Yield accepted seed clusters (lists of handles, ordered by pad row)
        pass by pass, window by window, outer to inner.
        """
        windows = seed_windows(self.geometry.n_layers, self.config.pad_row_range)
        layer = self.store.layer
        for p in range(1, self.config.n_loop + 1):
            cut = self.config.pass_cut(p)
            n_before = self.stats.n_seeds
            for lo, hi in windows:
                seeds = self.window_clusters(lo, hi, cut)
                for s in seeds:
                    self.pool.claim_many(s)
                self.stats.n_seeds += len(seeds)
                for s in seeds:
                    yield sorted(s, key=lambda h: int(layer[h]))
            logger.debug("Pass %d/%d (cut=%.2f mm): %d seeds, %.1f%% hits claimed",
                         p, self.config.n_loop, cut, self.stats.n_seeds - n_before,
                         100.0 * self.pool.assignment_ratio())
