import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pandas as pd
import pytest

from clupatra.config import ClupatraConfig
from clupatra.data import EventHits
from clupatra.filters import (
    DuplicatePadRows,
    duplicate_row_fraction,
    filter_clusters,
    hit_multiplicity,
    remerge_small_clusters,
    split_by_multiplicity,
    split_list,
)
from clupatra.geometry import TPCGeometry
from clupatra.hit_pool import HitPool
from clupatra.seeding import SeedFinder
from clupatra.utils import make_event

GEOM = TPCGeometry(n_layers=20, r_min=100.0, r_max=300.0, z_max=500.0)
CFG = ClupatraConfig(curler_curvature_cut=1.0 / 150.0)


def _two_close_tracks():
    """Two R=1000 tracks 0.03 rad apart; the second misses rows 3, 8, 13, 18."""
    hits = make_event(
        [
            {"radius": 1000.0, "phi0": 0.30, "tan_lambda": 0.5},
            {"radius": 1000.0, "phi0": 0.33, "tan_lambda": 0.5,
             "layers": [l for l in range(20) if l % 5 != 3]},
        ],
        GEOM,
    )
    return EventHits.from_frame(hits, GEOM, CFG.n_z_bins)


def _doubled_rows():
    """Ten rows of one track, five of them with a second hit 3 mm away in z."""
    hits = make_event([{"radius": 1000.0, "phi0": 0.3, "tan_lambda": 0.5, "layers": range(10)}], GEOM)
    extra = hits.iloc[[0, 2, 4, 6, 8]].copy()
    extra["z"] += 3.0
    extra["hit_id"] += 100
    hits = pd.concat([hits, extra], ignore_index=True)
    return EventHits.from_frame(hits, GEOM, CFG.n_z_bins)


def test_duplicate_fraction():
    store = _doubled_rows()
    everything = list(range(len(store)))
    assert duplicate_row_fraction(everything, store) == pytest.approx(0.5)
    assert duplicate_row_fraction(list(range(10)), store) == 0.0
    assert duplicate_row_fraction([], store) == 0.0
    assert not DuplicatePadRows(store, 0.1)(everything)
    assert DuplicatePadRows(store, 0.5)(everything)


def test_multiplicity_and_split_of_close_tracks():
    store = _two_close_tracks()
    cluster = list(range(len(store)))
    assert hit_multiplicity(cluster, store, CFG) == 2

    parts = split_by_multiplicity(cluster, 2, store)
    assert len(parts) == 2
    assert sorted(len(p) for p in parts) == [16, 20]
    for p in parts:
        assert len(set(store.particle_id[p].tolist())) == 1
        assert duplicate_row_fraction(p, store) == 0.0
        assert store.layer[p].tolist() == sorted(store.layer[p].tolist())


def test_multiplicity_thresholds_are_strict():
    store = _doubled_rows()
    # five of ten rows doubled: 0.5 is not above the 0.5 fraction threshold
    assert hit_multiplicity(list(range(len(store))), store, CFG) == 1
    assert hit_multiplicity([], store, CFG) == 1


def test_filter_rejects_duplicates_without_split():
    store = _doubled_rows()
    res = filter_clusters([list(range(len(store)))], store, CFG)
    assert res.accepted == []
    assert len(res.rejected) == 1
    assert res.n_split == 0


def test_filter_splits_then_accepts():
    store = _two_close_tracks()
    res = filter_clusters([list(range(len(store)))], store, CFG)
    assert res.n_split == 1
    assert len(res.accepted) == 2
    assert res.rejected == []


def test_filter_min_size():
    store = _two_close_tracks()
    res = filter_clusters([[0, 1]], store, CFG)
    assert res.accepted == []
    assert res.rejected == [[0, 1]]


def test_rejected_hits_stay_available():
    store = _doubled_rows()
    pool = HitPool(store)
    finder = SeedFinder(store, pool, GEOM, CFG)
    assert list(finder.iter_seeds()) == []
    assert pool.claimed == frozenset()
    assert finder.stats.n_rejected > 0


def test_split_list_and_remerge():
    passing, failing = split_list([1, 2, 3, 4], lambda v: v % 2 == 0)
    assert passing == [2, 4]
    assert failing == [1, 3]

    clusters = [[0, 1, 2]]
    merged, leftover = remerge_small_clusters(clusters, [[5], [9]], lambda a, b: abs(a - b) == 3)
    assert merged == [[0, 1, 2, 5]]
    assert leftover == [[9]]
    assert clusters == [[0, 1, 2]]


def test_split_without_k_rows_returns_cluster():
    store = _two_close_tracks()
    layer0 = [int(h) for h in np.flatnonzero(store.layer == 0)]
    assert len(layer0) == 2
    parts = split_by_multiplicity(layer0, 3, store)
    assert len(parts) == 1
    assert sorted(parts[0]) == sorted(layer0)
