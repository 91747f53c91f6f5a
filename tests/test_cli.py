import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import json
import pstats

import matplotlib
matplotlib.use("Agg")

import pandas as pd
import pytest

from clupatra import main as cli
from clupatra.config import ClupatraConfig
from clupatra.geometry import TPCGeometry
from clupatra.plotting import plot_event_rz, plot_event_xy
from clupatra.processor import ClupatraProcessor
from clupatra.profiling import _resolve_sort_key, prof
from clupatra.utils import make_event

GEOM = TPCGeometry(n_layers=20, r_min=100.0, r_max=300.0, z_max=500.0)
TRACK = {"radius": 1000.0, "phi0": 0.3, "tan_lambda": 0.5}


def _write_events(directory, names):
    for i, name in enumerate(names):
        make_event([dict(TRACK, phi0=0.3 + i)], GEOM).to_csv(directory / name, index=False)


def test_resolve_event_paths_natural_order(tmp_path):
    _write_events(tmp_path, ["event_10.csv", "event_2.csv", "event_1.csv"])
    (tmp_path / "notes.txt").write_text("x")

    names = [p.name for p in cli._resolve_event_paths(str(tmp_path), 5)]
    assert names == ["event_1.csv", "event_2.csv", "event_10.csv"]
    names = [p.name for p in cli._resolve_event_paths(str(tmp_path / "event_2.csv"), 2)]
    assert names == ["event_2.csv", "event_10.csv"]
    names = [p.name for p in cli._resolve_event_paths(str(tmp_path / "event_*.csv"), 2)]
    assert names == ["event_1.csv", "event_2.csv"]
    assert cli._resolve_event_paths(str(tmp_path / "missing.csv"), 1) == []


def test_main_writes_track_tables(tmp_path, monkeypatch):
    _write_events(tmp_path, ["event_1.csv", "event_2.csv"])
    cfg_path = tmp_path / "config.json"
    cfg_path.write_text(json.dumps({
        "geometry": {"n_layers": 20, "r_min": 100.0, "r_max": 300.0, "z_max": 500.0},
        "clupatra": {"curler_curvature_cut": 1.0 / 150.0},
    }))
    out_dir = tmp_path / "out"
    monkeypatch.setattr(sys, "argv", [
        "clupatra", "-f", str(tmp_path / "event_*.csv"), "-n", "2",
        "--config", str(cfg_path), "-o", str(out_dir),
    ])

    cli.main()

    for stem in ("event_1", "event_2"):
        tracks = pd.read_csv(out_dir / f"{stem}_tracks.csv")
        assert len(tracks) == 20
        assert tracks["track_id"].nunique() == 1
        assert (out_dir / f"{stem}_summary.csv").exists()


def test_main_without_input(tmp_path, monkeypatch):
    monkeypatch.setattr(sys, "argv", ["clupatra", "-f", str(tmp_path / "nothing_*.csv")])
    with pytest.raises(FileNotFoundError):
        cli.main()


def test_profiler_report(tmp_path):
    with prof(False) as p:
        assert p is None
    out = tmp_path / "prof.txt"
    with prof(True, sort="cumtime", limit=5, out_path=str(out)) as p:
        assert p is not None
        sum(i * i for i in range(1000))
    assert out.read_text().startswith("[prof] elapsed=")


def test_profiler_sort_aliases(tmp_path):
    assert _resolve_sort_key("file") is pstats.SortKey.FILENAME
    assert _resolve_sort_key("CUMTIME") is pstats.SortKey.CUMULATIVE
    assert _resolve_sort_key("bogus") is pstats.SortKey.TIME
    assert _resolve_sort_key(pstats.SortKey.LINE) is pstats.SortKey.LINE

    out = tmp_path / "by_file.txt"
    with prof(True, sort="file", limit=None, out_path=str(out)):
        sorted(range(100), reverse=True)
    assert "sort=file limit=None" in out.read_text()


def test_plots_are_saved(tmp_path):
    cfg = ClupatraConfig(curler_curvature_cut=1.0 / 150.0)
    result = ClupatraProcessor(GEOM, cfg).process_event(make_event([TRACK], GEOM))
    plot_event_xy(result.store, result.tracks, GEOM, do_show=False, save_path=str(tmp_path / "xy.png"))
    plot_event_rz(result.store, result.tracks, do_show=False, save_path=str(tmp_path / "rz.png"))
    assert (tmp_path / "xy.png").exists()
    assert (tmp_path / "rz.png").exists()
