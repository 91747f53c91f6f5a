import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import json

import numpy as np
import pandas as pd
import pytest

from clupatra.config import ClupatraConfig, load_config, load_settings
from clupatra.data import EventHits
from clupatra.geometry import TPCGeometry

GEOM = TPCGeometry(n_layers=20, r_min=100.0, r_max=300.0, z_max=500.0)


def test_row_lookup_and_radii():
    assert GEOM.row_height == pytest.approx(10.0)
    assert GEOM.layer_radius(0) == pytest.approx(105.0)
    assert GEOM.layer_radius(19) == pytest.approx(295.0)
    rows = GEOM.row_from_position([105.0, 0.0, 50.0, 299.0, 301.0], [0.0, 155.0, 0.0, 0.0, 0.0])
    assert rows.tolist() == [0, 5, -1, 19, -1]
    assert GEOM.row_from_position(0.0, 215.0).tolist() == [11]


def test_bin_from_z_clips():
    b = GEOM.bin_from_z(np.array([-1000.0, -500.0, 0.0, 499.9, 1000.0]), 80)
    assert b.tolist() == [0, 0, 40, 79, 79]


def test_geometry_validation():
    with pytest.raises(ValueError):
        TPCGeometry(n_layers=0)
    with pytest.raises(ValueError):
        TPCGeometry(r_min=300.0, r_max=100.0)
    with pytest.raises(ValueError):
        TPCGeometry.from_mapping({"n_layers": 10, "pads": 3})
    g = TPCGeometry.from_mapping({"n_layers": 10, "aux_layer_radii": [50, 60]})
    assert g.aux_layer_radii == (50.0, 60.0)


def test_config_defaults_and_passes():
    cfg = ClupatraConfig()
    assert cfg.pass_cut(1) == pytest.approx(10.0)
    assert cfg.pass_cut(4) == pytest.approx(40.0)
    assert cfg.multiplicity_thresholds(2) == (0.5, 3)
    assert cfg.to_dict()["pad_row_range"] == 12


def test_config_rejects_bad_values():
    with pytest.raises(ValueError):
        ClupatraConfig.from_mapping({"distance_cut": 40.0, "colour": "red"})
    with pytest.raises(ValueError):
        ClupatraConfig(min_layer_fraction=(0.5, 0.5, 0.5))
    with pytest.raises(ValueError):
        ClupatraConfig(n_loop=0)


def test_load_settings(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "geometry": {"n_layers": 20, "r_min": 100.0, "r_max": 300.0, "z_max": 500.0},
        "clupatra": {"distance_cut": 30.0, "min_layer_count": [2, 2, 2, 2]},
    }))
    geometry, cfg = load_settings(path)
    assert geometry == GEOM
    assert cfg.distance_cut == 30.0
    assert cfg.min_layer_count == (2, 2, 2, 2)

    geometry, cfg = load_settings(None)
    assert geometry.n_layers == 224
    assert cfg == ClupatraConfig()


def test_load_config_errors(tmp_path):
    bad = tmp_path / "bad.json"
    bad.write_text("{not json")
    with pytest.raises(ValueError):
        load_config(bad)
    with pytest.raises(ValueError):
        load_config(tmp_path / "missing.json")


def test_event_hits_from_frame():
    df = pd.DataFrame({
        "hit_id": [10, 11, 12, 13],
        "x": [105.0, 50.0, 0.0, 115.0],
        "y": [0.0, 0.0, 125.0, 0.0],
        "z": [0.0, 1.0, -200.0, 300.0],
    })
    store = EventHits.from_frame(df, GEOM, n_bins=80)
    assert len(store) == 3
    assert store.hit_id.tolist() == [10, 12, 13]
    assert store.layer.tolist() == [0, 2, 1]
    assert store.bin.tolist() == [40, 24, 64]
    assert store.particle_id is None

    cut = EventHits.from_frame(df, GEOM, n_bins=80, r_cut=110.0)
    assert cut.hit_id.tolist() == [12, 13]


def test_event_hits_layer_column_and_errors():
    df = pd.DataFrame({"x": [105.0, 115.0], "y": [0.0, 0.0], "z": [0.0, 0.0], "layer": [7, 25]})
    store = EventHits.from_frame(df, GEOM, n_bins=80)
    assert store.layer.tolist() == [7]
    assert store.hit_id.tolist() == [0]

    with pytest.raises(KeyError):
        EventHits.from_frame(pd.DataFrame({"x": [1.0], "y": [1.0]}), GEOM, n_bins=80)
    assert len(EventHits.from_frame(None, GEOM, n_bins=80)) == 0
