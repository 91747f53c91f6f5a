from __future__ import annotations

import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional

import numpy as np
import pandas as pd
from scipy.spatial import cKDTree

from clupatra.config import ClupatraConfig
from clupatra.data import EventHits
from clupatra.extension import aux_arrays, extend_and_fit, pickup_auxiliary_hits
from clupatra.fitter import HelixFitter, IncrementalFitter
from clupatra.geometry import TPCGeometry
from clupatra.hit_pool import HitPool
from clupatra.merging import run_merge_stage
from clupatra.seeding import SeedFinder
from clupatra.segments import Segment, SegmentState

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EventResult:
    r"""
    Output of :meth:`ClupatraProcessor.process_event`.

    Attributes
    ----------
    tracks : list of Segment
        Promoted segments, ordered by id.
    segments : list of Segment
        Every segment created for the event (merged constituents and discarded
        seeds included).
    store : EventHits
        The event's hit arena; segment hits index into it.
    claimed : frozenset of int
        Handles reserved in the availability index at the end of the event.
    elapsed : float
        Wall-clock processing time (s).
    """
    tracks: List[Segment] = field(default_factory=list)
    segments: List[Segment] = field(default_factory=list)
    store: EventHits = field(default_factory=EventHits.empty)
    claimed: FrozenSet[int] = frozenset()
    elapsed: float = 0.0

    @property
    def n_tracks(self) -> int:
        return len(self.tracks)

    def tracks_frame(self) -> pd.DataFrame:
        """One row per (track, hit): ``track_id, hit_id`` (+ ``particle_id`` if known)."""
        rows_t: List[int] = []
        rows_h: List[int] = []
        for t in self.tracks:
            rows_t.extend([t.id] * len(t.hits))
            rows_h.extend(t.hits)
        handles = np.asarray(rows_h, dtype=np.int64)
        df = pd.DataFrame({
            "track_id": np.asarray(rows_t, dtype=np.int64),
            "hit_id": self.store.hit_id[handles] if handles.size else np.empty(0, dtype=np.int64),
        })
        if self.store.particle_id is not None:
            df["particle_id"] = self.store.particle_id[handles] if handles.size else np.empty(0, dtype=np.int64)
        return df

    def summary_frame(self) -> pd.DataFrame:
        """One row per track with fit parameters and classification flags."""
        rows = []
        for t in self.tracks:
            f, fl = t.fit, t.flags
            rows.append({
                "track_id": t.id,
                "n_hits": len(t.hits),
                "n_aux_hits": len(t.aux_hits),
                "chi2": f.chi2 if f is not None else np.nan,
                "ndf": f.ndf if f is not None else 0,
                "radius": f.radius if f is not None else np.nan,
                "tan_lambda": f.tan_lambda if f is not None else np.nan,
                "starts_inner": fl.starts_inner if fl is not None else False,
                "is_central": fl.is_central if fl is not None else False,
                "is_forward": fl.is_forward if fl is not None else False,
                "is_curler": fl.is_curler if fl is not None else False,
                "z_min": fl.z_min if fl is not None else np.nan,
                "z_max": fl.z_max if fl is not None else np.nan,
                "z_avg": fl.z_avg if fl is not None else np.nan,
                "parents": ",".join(str(p) for p in t.parents),
            })
        return pd.DataFrame(rows)


class ClupatraProcessor:
    r"""
    Event-level driver of the pattern recognition.

    Pipeline per event
    ------------------
    1. Build the hit arena (:class:`~clupatra.data.EventHits`) and the
       availability index (:class:`~clupatra.hit_pool.HitPool`).
    2. Seed scan (:class:`~clupatra.seeding.SeedFinder`), extending each seed
       with the fitter (:func:`~clupatra.extension.extend_and_fit`) as soon as
       it is found so later windows only see what is still free.
    3. Classification and merging (:func:`~clupatra.merging.run_merge_stage`).
    4. Optional auxiliary-layer pickup.

    Only the aggregate counters in :attr:`counters` survive between events.

    Parameters
    ----------
    geometry : TPCGeometry
    config : ClupatraConfig, optional
    fitter : IncrementalFitter, optional
        Defaults to a :class:`~clupatra.fitter.HelixFitter` with the
        configured resolutions.
    """

    def __init__(
        self,
        geometry: TPCGeometry,
        config: Optional[ClupatraConfig] = None,
        fitter: Optional[IncrementalFitter] = None,
    ) -> None:
        self.geometry = geometry
        self.config = config if config is not None else ClupatraConfig()
        self.fitter = fitter if fitter is not None else HelixFitter(
            geometry, self.config.rphi_resolution, self.config.z_resolution
        )
        self.counters: Dict[str, int] = {
            "n_events": 0,
            "n_hits": 0,
            "n_seeds": 0,
            "n_seeds_rejected": 0,
            "n_discarded": 0,
            "n_merged": 0,
            "n_tracks": 0,
            "n_aux_hits": 0,
        }

    def process_event(
        self,
        hits: Optional[pd.DataFrame],
        aux_hits: Optional[pd.DataFrame] = None,
    ) -> EventResult:
        """
        Run the full pattern recognition on one event's hit table.

        Missing or empty input yields an empty :class:`EventResult` and a
        warning; nothing is raised from inside the algorithm.
        """
        t0 = time.perf_counter()
        self.counters["n_events"] += 1
        ev = self.counters["n_events"]
        cfg = self.config

        store = EventHits.from_frame(hits, self.geometry, cfg.n_z_bins, cfg.r_cut)
        if len(store) == 0:
            logger.warning("Event %d: no usable hits, nothing to do", ev)
            return EventResult(store=store, elapsed=time.perf_counter() - t0)

        pool = HitPool(store)
        finder = SeedFinder(store, pool, self.geometry, cfg)
        ids = itertools.count()
        segments: List[Segment] = []
        for seed in finder.iter_seeds():
            seg = Segment(id=next(ids), hits=seed)
            extend_and_fit(seg, self.fitter, store, pool, self.geometry, cfg)
            segments.append(seg)

        stage = run_merge_stage(segments, self.fitter, store, self.geometry, cfg, ids)

        n_aux = 0
        if cfg.pickup_auxiliary_hits and self.geometry.aux_layer_radii:
            aux_pos, aux_ids = aux_arrays(aux_hits)
            if aux_pos.shape[0]:
                tree = cKDTree(aux_pos)
                used: set = set()
                for t in stage.tracks:
                    n_aux += pickup_auxiliary_hits(
                        t, aux_pos, aux_ids, used, self.fitter, store, self.geometry, cfg, tree=tree
                    )

        n_discarded = sum(1 for s in stage.segments if s.state is SegmentState.DISCARDED)
        self.counters["n_hits"] += len(store)
        self.counters["n_seeds"] += finder.stats.n_seeds
        self.counters["n_seeds_rejected"] += finder.stats.n_rejected
        self.counters["n_discarded"] += n_discarded
        self.counters["n_merged"] += stage.n_merged
        self.counters["n_tracks"] += len(stage.tracks)
        self.counters["n_aux_hits"] += n_aux

        elapsed = time.perf_counter() - t0
        logger.info(
            "Event %d: %d hits, %d seeds, %d merged, %d tracks (%.1f%% hits used) in %.3f s",
            ev, len(store), finder.stats.n_seeds, stage.n_merged, len(stage.tracks),
            100.0 * pool.assignment_ratio(), elapsed,
        )
        return EventResult(
            tracks=stage.tracks,
            segments=stage.segments,
            store=store,
            claimed=pool.claimed,
            elapsed=elapsed,
        )
