from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, List, Optional, Sequence, Tuple

import numpy as np

from clupatra.config import ClupatraConfig
from clupatra.data import EventHits
from clupatra.fitter import TrackFit
from clupatra.geometry import TPCGeometry


class SegmentState(Enum):
    """Lifecycle state of a segment."""
    SEEDED = "seeded"
    EXTENDED = "extended"
    CLASSIFIED = "classified"
    MERGE_CANDIDATE = "merge_candidate"
    MERGED = "merged"
    PROMOTED = "promoted"
    DISCARDED = "discarded"


@dataclass(frozen=True, slots=True)
class SegmentFlags:
    r"""
    Boundary classification of a fitted segment.

    A segment is **complete** when it starts at the inner boundary, ends at
    the outer radial (*central*) or longitudinal (*forward*) boundary and does
    not curl:

    .. math::

        \text{complete} = \text{starts\_inner} \wedge
        (\text{is\_central} \vee \text{is\_forward}) \wedge \neg\,\text{is\_curler}.
    """
    starts_inner: bool
    is_central: bool
    is_forward: bool
    is_curler: bool
    z_min: float
    z_max: float
    z_avg: float

    @property
    def complete(self) -> bool:
        return self.starts_inner and (self.is_central or self.is_forward) and not self.is_curler


@dataclass(slots=True, eq=False)
class Segment:
    r"""
    A cluster of hit handles on its way to becoming a track.

    Attributes
    ----------
    id : int
        Event-unique identifier.
    hits : list of int
        Duplicate-free hit handles, ordered by pad row once fitted. Empty
        once the segment is ``DISCARDED``.
    state : SegmentState
        Lifecycle state
        (``SEEDED → EXTENDED → CLASSIFIED → {PROMOTED | MERGE_CANDIDATE → MERGED}``,
        or ``DISCARDED``).
    fit : TrackFit, optional
        Frozen fit result. The live fitter handle is never stored here.
    flags : SegmentFlags, optional
        Cached classification, valid for the hit content it was computed on.
    parents : tuple of int
        Ids of the segments merged into this one.
    consumed_by : int, optional
        Id of the merged segment that absorbed this one.
    aux_hits : list of int
        External ids of auxiliary-layer hits attached by the pickup.
    """
    id: int
    hits: List[int]
    state: SegmentState = SegmentState.SEEDED
    fit: Optional[TrackFit] = None
    flags: Optional[SegmentFlags] = None
    parents: Tuple[int, ...] = ()
    consumed_by: Optional[int] = None
    aux_hits: List[int] = field(default_factory=list)
    _flags_key: Optional[FrozenSet[int]] = field(default=None, repr=False)

    def __len__(self) -> int:
        return len(self.hits)

    @property
    def is_live(self) -> bool:
        """Neither merged away nor discarded."""
        return self.state not in (SegmentState.MERGED, SegmentState.DISCARDED)

    def hit_key(self) -> FrozenSet[int]:
        return frozenset(self.hits)


def order_hits(hits: Sequence[int], store: EventHits) -> List[int]:
    """Hits ordered by pad row, then by z."""
    return sorted((int(h) for h in hits),
                  key=lambda h: (int(store.layer[h]), float(store.positions[h, 2])))


def classify_segment(
    segment: Segment,
    store: EventHits,
    geometry: TPCGeometry,
    config: ClupatraConfig,
) -> Optional[SegmentFlags]:
    r"""
    Classify a fitted segment against the detector boundaries.

    - ``starts_inner``: radius of the fitted first point within
      ``inner_distance_cut`` of :math:`r_\min`.
    - ``is_central``: radius of the fitted last point within
      ``outer_distance_cut`` of :math:`r_\max`.
    - ``is_forward``: :math:`|z|` of the fitted last point within
      ``forward_distance_cut`` of :math:`z_\max`.
    - ``is_curler``: curvature above ``curler_curvature_cut``.

    The result is cached on the segment together with its hit content;
    calling again without a change of hits returns the cached flags.
    Unfitted segments yield ``None``.
    """
    if segment.fit is None:
        return None
    key = segment.hit_key()
    if segment.flags is not None and segment._flags_key == key:
        return segment.flags

    first = segment.fit.first.position
    last = segment.fit.last.position
    r_first = float(np.hypot(first[0], first[1]))
    r_last = float(np.hypot(last[0], last[1]))
    z = store.positions[segment.hits, 2] if segment.hits else np.zeros(1)

    flags = SegmentFlags(
        starts_inner=(r_first - geometry.r_min) < config.inner_distance_cut,
        is_central=(geometry.r_max - r_last) < config.outer_distance_cut,
        is_forward=(geometry.z_max - abs(float(last[2]))) < config.forward_distance_cut,
        is_curler=segment.fit.curvature > config.curler_curvature_cut,
        z_min=float(z.min()),
        z_max=float(z.max()),
        z_avg=float(z.mean()),
    )
    segment.flags = flags
    segment._flags_key = key
    if segment.state in (SegmentState.SEEDED, SegmentState.EXTENDED):
        segment.state = SegmentState.CLASSIFIED
    return flags
