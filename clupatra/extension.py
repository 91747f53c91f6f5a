from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Set, Tuple

import numpy as np
from scipy.spatial import cKDTree

from clupatra.config import ClupatraConfig
from clupatra.data import EventHits
from clupatra.fitter import FitHandle, IncrementalFitter, open_fit, snapshot_fit
from clupatra.geometry import TPCGeometry
from clupatra.hit_pool import HitPool
from clupatra.segments import Segment, SegmentState, order_hits

logger = logging.getLogger(__name__)


class Direction(Enum):
    """Extension direction; the value is the pad-row step."""
    FORWARD = -1    # towards decreasing pad row
    BACKWARD = 1    # towards increasing pad row


@dataclass(slots=True)
class ExtensionResult:
    direction: Direction
    n_added: int = 0
    n_missed: int = 0
    aborted: bool = False


def extend_segment(
    segment: Segment,
    handle: FitHandle,
    fitter: IncrementalFitter,
    store: EventHits,
    pool: HitPool,
    geometry: TPCGeometry,
    config: ClupatraConfig,
    direction: Direction,
) -> ExtensionResult:
    r"""
    Grow ``segment`` one pad row at a time in ``direction``.

    At each row the trajectory is intersected with the row, available hits
    within ``extension_gate`` of the crossing point and within one sampling
    bin of its predicted bin are scored with the fitter, and the best one is
    added if its :math:`\Delta\chi^2` is below ``max_delta_chi2``. A row
    without an accepted hit is a *miss*; the direction is abandoned once the
    number of consecutive misses exceeds ``max_step_without_hit``.

    Accepted hits are claimed in ``pool`` and appended to ``segment.hits``.
    """
    res = ExtensionResult(direction)
    if not segment.hits:
        return res
    layers = store.layer[segment.hits]
    edge = int(layers.min() if direction is Direction.FORWARD else layers.max())
    edge_hit = segment.hits[int(np.flatnonzero(layers == edge)[0])]
    near = store.positions[edge_hit]

    step = direction.value
    layer = edge + step
    misses = 0
    while 0 <= layer < geometry.n_layers:
        added = False
        crossing = fitter.intersect_layer(handle, layer, near=near)
        if crossing is not None:
            point, _ = crossing
            cand = pool.candidates_in_gate(point, layer, config.extension_gate)
            if cand.size:
                pred_bin = int(geometry.bin_from_z(point[2], config.n_z_bins))
                cand = cand[np.abs(store.bin[cand] - pred_bin) <= 1]
            if cand.size:
                delta = fitter.test_hits(handle, store.positions[cand])
                best = int(np.argmin(delta))
                h = int(cand[best])
                if delta[best] < config.max_delta_chi2:
                    ok, _ = fitter.add_hit(handle, store.positions[h], config.max_delta_chi2)
                    if ok and pool.claim(h):
                        segment.hits.append(h)
                        near = store.positions[h]
                        res.n_added += 1
                        added = True
        if added:
            misses = 0
        else:
            misses += 1
            res.n_missed += 1
            if misses > config.max_step_without_hit:
                res.aborted = True
                break
        layer += step
    logger.debug("Segment %d %s: +%d hits, %d misses%s", segment.id, direction.name.lower(),
                 res.n_added, res.n_missed, " (aborted)" if res.aborted else "")
    return res


def _discard(segment: Segment, pool: HitPool) -> None:
    """Give the hits back to the pool; a discarded segment owns nothing."""
    pool.release_many(segment.hits)
    segment.hits = []
    segment.fit = None
    segment.state = SegmentState.DISCARDED


def extend_and_fit(
    segment: Segment,
    fitter: IncrementalFitter,
    store: EventHits,
    pool: HitPool,
    geometry: TPCGeometry,
    config: ClupatraConfig,
    extend: bool = True,
) -> List[ExtensionResult]:
    """
    Fit a seed, extend it forward then backward, smooth and freeze the fit.

    The fitter handle lives only inside this call. An empty segment, or one
    that cannot be fitted, ends up ``DISCARDED`` with its hits released back
    to ``pool`` and removed from the segment; no exception is raised.

    Returns
    -------
    list of ExtensionResult
        One entry per direction that was run (empty if the segment was
        discarded or ``extend`` is false).
    """
    results: List[ExtensionResult] = []
    if not segment.hits:
        _discard(segment, pool)
        return results

    with open_fit(fitter, store.positions[segment.hits]) as handle:
        if handle is None:
            logger.debug("Segment %d (%d hits) discarded: fit failed", segment.id, len(segment.hits))
            _discard(segment, pool)
            return results
        if extend:
            for direction in (Direction.FORWARD, Direction.BACKWARD):
                results.append(
                    extend_segment(segment, handle, fitter, store, pool, geometry, config, direction)
                )
        fitter.smooth(handle)
        segment.hits = order_hits(segment.hits, store)
        fit = snapshot_fit(fitter, handle, store.positions[segment.hits])

    if fit is None:
        logger.debug("Segment %d (%d hits) discarded: snapshot failed", segment.id, len(segment.hits))
        _discard(segment, pool)
        return results
    segment.fit = fit
    segment.state = SegmentState.EXTENDED
    return results


def fit_segment(
    segment: Segment,
    fitter: IncrementalFitter,
    store: EventHits,
    pool: HitPool,
    geometry: TPCGeometry,
    config: ClupatraConfig,
) -> bool:
    """Fit and smooth ``segment`` without extending it; ``True`` if it now carries a fit."""
    extend_and_fit(segment, fitter, store, pool, geometry, config, extend=False)
    return segment.state is SegmentState.EXTENDED


def pickup_auxiliary_hits(
    segment: Segment,
    aux_positions: np.ndarray,
    aux_ids: np.ndarray,
    used: Set[int],
    fitter: IncrementalFitter,
    store: EventHits,
    geometry: TPCGeometry,
    config: ClupatraConfig,
    tree: Optional[cKDTree] = None,
) -> int:
    r"""
    Attach hits of auxiliary detection layers to a finished segment.

    For every radius in ``geometry.aux_layer_radii`` the trajectory crossing
    closest to the segment's innermost hit is computed, the nearest unused
    auxiliary hit within ``aux_gate`` is tested and added when its
    :math:`\Delta\chi^2` is below ``max_delta_chi2``. The fit is refrozen if
    anything was added.

    Returns
    -------
    int
        Number of attached auxiliary hits.
    """
    if segment.fit is None or not segment.hits or aux_positions.shape[0] == 0:
        return 0
    if tree is None:
        tree = cKDTree(aux_positions)
    n_added = 0
    with open_fit(fitter, store.positions[segment.hits]) as handle:
        if handle is None:
            return 0
        near = store.positions[segment.hits[0]]
        for radius in sorted(geometry.aux_layer_radii, reverse=True):
            point = fitter.intersect_radius(handle, float(radius), near=near)
            if point is None:
                continue
            idx = tree.query_ball_point(point, r=config.aux_gate)
            idx = [i for i in idx if int(aux_ids[i]) not in used]
            if not idx:
                continue
            d2 = np.sum((aux_positions[idx] - point) ** 2, axis=1)
            i = idx[int(np.argmin(d2))]
            ok, _ = fitter.add_hit(handle, aux_positions[i], config.max_delta_chi2)
            if ok:
                used.add(int(aux_ids[i]))
                segment.aux_hits.append(int(aux_ids[i]))
                near = aux_positions[i]
                n_added += 1
        if n_added:
            fitter.smooth(handle)
            ordered = [aux_positions[np.flatnonzero(aux_ids == a)[0]] for a in segment.aux_hits[::-1]]
            ordered.extend(store.positions[segment.hits])
            fit = snapshot_fit(fitter, handle, ordered)
            if fit is not None:
                segment.fit = fit
    return n_added


def aux_arrays(aux_hits) -> Tuple[np.ndarray, np.ndarray]:
    """``(positions, ids)`` of an auxiliary hit table (columns ``x, y, z`` and optional ``hit_id``)."""
    if aux_hits is None or len(aux_hits) == 0:
        return np.empty((0, 3), dtype=np.float64), np.empty(0, dtype=np.int64)
    pos = np.ascontiguousarray(aux_hits[["x", "y", "z"]].to_numpy(dtype=np.float64))
    if "hit_id" in aux_hits.columns:
        ids = aux_hits["hit_id"].to_numpy(dtype=np.int64)
    else:
        ids = np.arange(len(aux_hits), dtype=np.int64)
    return pos, ids
