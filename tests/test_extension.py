import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pandas as pd

from clupatra.config import ClupatraConfig
from clupatra.data import EventHits
from clupatra.extension import Direction, aux_arrays, extend_and_fit, fit_segment, pickup_auxiliary_hits
from clupatra.fitter import HelixFitter
from clupatra.geometry import TPCGeometry
from clupatra.hit_pool import HitPool
from clupatra.segments import Segment, SegmentState
from clupatra.utils import helix_hits, make_event

GEOM = TPCGeometry(n_layers=20, r_min=100.0, r_max=300.0, z_max=500.0)
CFG = ClupatraConfig(curler_curvature_cut=1.0 / 150.0)
TRACK = {"radius": 1000.0, "phi0": 0.3, "tan_lambda": 0.5}


def _seed(store, pool, layers, seg_id=0):
    hits = [int(h) for h in np.flatnonzero(np.isin(store.layer, list(layers)))]
    pool.claim_many(hits)
    return Segment(id=seg_id, hits=hits)


def test_forward_extension_completes_outer_seed():
    store = EventHits.from_frame(make_event([TRACK], GEOM), GEOM, CFG.n_z_bins)
    pool, fitter = HitPool(store), HelixFitter(GEOM)
    seg = _seed(store, pool, range(8, 20))

    results = extend_and_fit(seg, fitter, store, pool, GEOM, CFG)

    assert [r.direction for r in results] == [Direction.FORWARD, Direction.BACKWARD]
    fwd, bwd = results
    assert (fwd.n_added, fwd.n_missed, fwd.aborted) == (8, 0, False)
    assert (bwd.n_added, bwd.n_missed, bwd.aborted) == (0, 0, False)
    assert seg.state is SegmentState.EXTENDED
    assert store.layer[seg.hits].tolist() == list(range(20))
    assert pool.claimed == frozenset(range(20))
    assert seg.fit is not None and abs(seg.fit.radius - 1000.0) < 0.1
    assert fitter.n_active == 0


def test_extension_aborts_after_too_many_misses():
    layers = list(range(8)) + list(range(12, 20))
    store = EventHits.from_frame(make_event([dict(TRACK, layers=layers)], GEOM), GEOM, CFG.n_z_bins)
    pool, fitter = HitPool(store), HelixFitter(GEOM)
    seg = _seed(store, pool, range(12, 20))

    fwd, bwd = extend_and_fit(seg, fitter, store, pool, GEOM, CFG)

    assert fwd.aborted
    assert fwd.n_added == 0
    assert fwd.n_missed == CFG.max_step_without_hit + 1
    assert len(seg.hits) == 8
    # the inner half is untouched
    assert all(pool.is_available(h) for h in np.flatnonzero(store.layer < 8))


def test_extension_skips_claimed_hits_and_bridges_holes():
    layers = [l for l in range(20) if l != 5]
    store = EventHits.from_frame(make_event([dict(TRACK, layers=layers)], GEOM), GEOM, CFG.n_z_bins)
    pool, fitter = HitPool(store), HelixFitter(GEOM)
    taken = int(np.flatnonzero(store.layer == 2)[0])
    pool.claim(taken)
    seg = _seed(store, pool, range(10, 20))

    fwd, _ = extend_and_fit(seg, fitter, store, pool, GEOM, CFG)

    assert not fwd.aborted
    assert fwd.n_missed == 2
    assert taken not in seg.hits
    assert len(seg.hits) == 18


def test_unfittable_seed_is_discarded_and_released():
    store = EventHits.from_frame(make_event([TRACK], GEOM), GEOM, CFG.n_z_bins)
    pool, fitter = HitPool(store), HelixFitter(GEOM)
    seg = _seed(store, pool, [18, 19])

    assert extend_and_fit(seg, fitter, store, pool, GEOM, CFG) == []
    assert seg.state is SegmentState.DISCARDED
    assert pool.claimed == frozenset()
    assert seg.hits == [] and seg.fit is None

    reseed = _seed(store, pool, [18, 19, 17])
    assert pool.claimed == frozenset({17, 18, 19})
    assert not set(seg.hits) & set(reseed.hits)

    empty = Segment(id=1, hits=[])
    assert extend_and_fit(empty, fitter, store, pool, GEOM, CFG) == []
    assert empty.state is SegmentState.DISCARDED


def test_fit_only_keeps_seed_hits():
    store = EventHits.from_frame(make_event([TRACK], GEOM), GEOM, CFG.n_z_bins)
    pool, fitter = HitPool(store), HelixFitter(GEOM)
    seg = _seed(store, pool, range(8, 20))
    assert fit_segment(seg, fitter, store, pool, GEOM, CFG)
    assert len(seg.hits) == 12
    assert seg.state is SegmentState.EXTENDED


def test_auxiliary_pickup():
    geometry = TPCGeometry(n_layers=20, r_min=100.0, r_max=300.0, z_max=500.0, aux_layer_radii=(40.0, 70.0))
    cfg = ClupatraConfig(curler_curvature_cut=1.0 / 150.0, pickup_auxiliary_hits=True)
    store = EventHits.from_frame(make_event([TRACK], geometry), geometry, cfg.n_z_bins)
    pool, fitter = HitPool(store), HelixFitter(geometry)
    seg = _seed(store, pool, range(20))
    extend_and_fit(seg, fitter, store, pool, geometry, cfg)

    aux_pts = helix_hits([40.0, 70.0], 1000.0, 0.3, 0.5)
    aux = pd.DataFrame({
        "hit_id": [501, 502, 503],
        "x": [aux_pts[0, 0], aux_pts[1, 0], -aux_pts[1, 0]],
        "y": [aux_pts[0, 1], aux_pts[1, 1], -aux_pts[1, 1]],
        "z": [aux_pts[0, 2], aux_pts[1, 2], aux_pts[1, 2]],
    })
    pos, ids = aux_arrays(aux)
    used = set()
    n = pickup_auxiliary_hits(seg, pos, ids, used, fitter, store, geometry, cfg)

    assert n == 2
    assert seg.aux_hits == [502, 501]
    assert used == {501, 502}
    assert seg.fit is not None

    empty_pos, empty_ids = aux_arrays(None)
    assert empty_pos.shape == (0, 3) and empty_ids.size == 0
