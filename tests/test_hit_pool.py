import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np

from clupatra.data import EventHits
from clupatra.hit_pool import HitPool


def _store():
    pos = np.array([
        [105.0, 0.0, 5.0],
        [105.0, 0.0, -3.0],
        [105.0, 0.0, 1.0],
        [115.0, 0.0, 0.0],
    ])
    return EventHits(
        positions=pos,
        layer=np.array([0, 0, 0, 1]),
        bin=np.array([40, 39, 40, 40]),
        hit_id=np.arange(4),
    )


def test_rows_are_z_ordered():
    pool = HitPool(_store())
    assert pool.layers == [0, 1]
    assert pool.available(0).tolist() == [1, 2, 0]
    assert pool.available(5).size == 0
    assert pool.layer_size(0) == 3
    assert pool.layer_size(7) == 0


def test_claim_and_release():
    pool = HitPool(_store())
    assert pool.claim(2)
    assert not pool.claim(2)
    assert not pool.is_available(2)
    assert pool.available(0).tolist() == [1, 0]
    assert pool.available_in_range(0, 1).tolist() == [1, 0, 3]
    assert pool.n_available() == 3
    assert pool.assignment_ratio() == 0.25

    assert pool.claim_many([0, 1, 2]) == 2
    assert pool.claimed == frozenset({0, 1, 2})
    assert pool.release_many([0, 5]) == 1
    assert not pool.release(0)
    pool.reset()
    assert pool.claimed == frozenset()


def test_gate_query_sorted_and_filtered():
    pool = HitPool(_store())
    point = np.array([105.0, 0.0, 4.5])
    assert pool.candidates_in_gate(point, 0, 10.0).tolist() == [0, 2, 1]
    assert pool.candidates_in_gate(point, 0, 1.0).tolist() == [0]
    pool.claim(2)
    assert pool.candidates_in_gate(point, 0, 10.0).tolist() == [0, 1]
    assert pool.candidates_in_gate(point, 3, 10.0).size == 0


def test_empty_store():
    pool = HitPool(EventHits.empty())
    assert pool.layers == []
    assert pool.available_in_range(0, 10).size == 0
    assert pool.assignment_ratio() == 0.0
