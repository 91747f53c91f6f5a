r"""
Second-stage clustering of fitted segments.

Segments that do not span the detector on their own are clustered in
trajectory-parameter space with the same nearest-neighbour engine that groups
hits. Two criteria are provided:

- :class:`CircleCenterDistance`: transverse circles agree,

  .. math::

      \frac{2|R_a - R_b|}{R_a + R_b} < \epsilon_R ,\qquad
      \|c_a - c_b\| < d_c ;

- :class:`TrajectoryDistance`: a combined refit of both hit sets with
  :math:`\chi^2/\text{ndf}` below the merge cut.

Merged groups are refit once; if that fails the group is left alone.
"""
from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence

import numpy as np

from clupatra.clustering import PredicateLike, cluster_nn
from clupatra.config import ClupatraConfig
from clupatra.data import EventHits
from clupatra.fitter import IncrementalFitter, open_fit, snapshot_fit
from clupatra.geometry import TPCGeometry
from clupatra.segments import Segment, SegmentState, classify_segment, order_hits

logger = logging.getLogger(__name__)


class CircleCenterDistance:
    """Curler merge criterion: compatible radii and nearby circle centres."""

    __slots__ = ("center_cut", "radius_tolerance")

    def __init__(self, center_cut: float, radius_tolerance: float) -> None:
        self.center_cut = float(center_cut)
        self.radius_tolerance = float(radius_tolerance)

    def mergeable(self, a: Segment, b: Segment) -> bool:
        if a.fit is None or b.fit is None:
            return False
        ra, rb = a.fit.radius, b.fit.radius
        if 2.0 * abs(ra - rb) / (ra + rb) >= self.radius_tolerance:
            return False
        dc = a.fit.center - b.fit.center
        return float(np.hypot(dc[0], dc[1])) < self.center_cut


class TrajectoryDistance:
    r"""
    Incomplete-segment merge criterion.

    Both hit sets are refit together and the pair is compatible when the
    combined :math:`\chi^2/\text{ndf}` stays below ``max_chi2_ndf``. The
    separately fitted circles are not compared.
    """

    __slots__ = ("fitter", "store", "max_chi2_ndf")

    def __init__(self, fitter: IncrementalFitter, store: EventHits, max_chi2_ndf: float) -> None:
        self.fitter = fitter
        self.store = store
        self.max_chi2_ndf = float(max_chi2_ndf)

    def mergeable(self, a: Segment, b: Segment) -> bool:
        if a.fit is None or b.fit is None:
            return False
        hits = order_hits(set(a.hits) | set(b.hits), self.store)
        with open_fit(self.fitter, self.store.positions[hits]) as handle:
            if handle is None:
                return False
            state = self.fitter.propagate(handle, self.store.positions[hits[0]])
        if state is None or state.ndf <= 0:
            return False
        return state.chi2 / state.ndf < self.max_chi2_ndf


def merge_segments(
    segments: Sequence[Segment],
    predicate: PredicateLike,
    fitter: IncrementalFitter,
    store: EventHits,
    ids: Iterator[int],
) -> List[Segment]:
    """
    Merge groups of mutually compatible segments.

    All pairs are compared (one common bucket); every connected group of at
    least two segments is united and refit once. On success the constituents
    become ``MERGED`` with ``consumed_by`` pointing to the new segment; on
    failure nothing changes.

    Returns
    -------
    list of Segment
        The newly created merged segments (state ``EXTENDED``).
    """
    groups = cluster_nn(list(segments), lambda s: 0, predicate, min_size=2)
    merged: List[Segment] = []
    for group in groups:
        hits = order_hits({h for s in group for h in s.hits}, store)
        with open_fit(fitter, store.positions[hits]) as handle:
            if handle is None:
                logger.debug("Merge of segments %s rejected: refit failed", [s.id for s in group])
                continue
            fitter.smooth(handle)
            fit = snapshot_fit(fitter, handle, store.positions[hits])
        if fit is None:
            continue
        seg = Segment(
            id=next(ids),
            hits=hits,
            state=SegmentState.EXTENDED,
            fit=fit,
            parents=tuple(s.id for s in group),
        )
        for s in group:
            s.state = SegmentState.MERGED
            s.consumed_by = seg.id
        merged.append(seg)
        logger.debug("Merged segments %s into %d (%d hits)", seg.parents, seg.id, len(hits))
    return merged


@dataclass(slots=True)
class MergeStageResult:
    tracks: List[Segment]
    segments: List[Segment]
    n_merged: int = 0


def run_merge_stage(
    segments: Sequence[Segment],
    fitter: IncrementalFitter,
    store: EventHits,
    geometry: TPCGeometry,
    config: ClupatraConfig,
    ids: Optional[Iterator[int]] = None,
) -> MergeStageResult:
    r"""
    Classify fitted segments and merge the incomplete ones.

    1. Classify every live segment; complete ones are promoted.
    2. Two rounds of :class:`TrajectoryDistance` merging over the incomplete,
       non-curling candidates; merged results that are complete are promoted,
       the rest stay candidates for the next round.
    3. One round of :class:`CircleCenterDistance` merging over the curlers.
    4. Every remaining live candidate is promoted as it is.

    Returns
    -------
    MergeStageResult
        ``tracks`` (promoted, ordered by id) and ``segments`` (every segment
        including merged constituents and discarded ones, for traceability).
    """
    if ids is None:
        ids = itertools.count(max((s.id for s in segments), default=-1) + 1)
    all_segments: List[Segment] = list(segments)
    candidates: List[Segment] = []

    def settle(seg: Segment) -> None:
        flags = classify_segment(seg, store, geometry, config)
        if flags is None:
            seg.hits = []
            seg.state = SegmentState.DISCARDED
        elif flags.complete:
            seg.state = SegmentState.PROMOTED
        else:
            seg.state = SegmentState.MERGE_CANDIDATE
            candidates.append(seg)

    for seg in segments:
        if seg.is_live:
            settle(seg)

    n_merged = 0
    trajectory = TrajectoryDistance(fitter, store, config.max_merge_chi2)
    for _ in range(2):
        pool = [s for s in candidates
                if s.state is SegmentState.MERGE_CANDIDATE and not s.flags.is_curler]
        merged = merge_segments(pool, trajectory, fitter, store, ids)
        for m in merged:
            all_segments.append(m)
            settle(m)
        n_merged += len(merged)
        if not merged:
            break

    curlers = [s for s in candidates if s.state is SegmentState.MERGE_CANDIDATE and s.flags.is_curler]
    merged = merge_segments(
        curlers, CircleCenterDistance(config.circle_center_cut, config.radius_tolerance), fitter, store, ids
    )
    for m in merged:
        all_segments.append(m)
        classify_segment(m, store, geometry, config)
    n_merged += len(merged)

    for s in all_segments:
        if s.state in (SegmentState.MERGE_CANDIDATE, SegmentState.CLASSIFIED, SegmentState.EXTENDED):
            s.state = SegmentState.PROMOTED
    tracks = sorted((s for s in all_segments if s.state is SegmentState.PROMOTED), key=lambda s: s.id)
    return MergeStageResult(tracks=tracks, segments=all_segments, n_merged=n_merged)
