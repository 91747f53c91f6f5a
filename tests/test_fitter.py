import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pytest

from clupatra.fitter import HelixFitter, open_fit, snapshot_fit
from clupatra.geometry import TPCGeometry
from clupatra.utils import helix_hits

GEOM = TPCGeometry(n_layers=20, r_min=100.0, r_max=300.0, z_max=500.0)


def _track(radius=1000.0, tan_lambda=0.5, layers=range(20)):
    radii = GEOM.layer_radius(np.asarray(list(layers)))
    return helix_hits(radii, radius, 0.3, tan_lambda)


def test_helix_points_lie_on_layers():
    pts = _track(layers=range(5))
    assert np.allclose(np.hypot(pts[:, 0], pts[:, 1]), [105.0, 115.0, 125.0, 135.0, 145.0])
    assert np.all(np.diff(pts[:, 2]) > 0.0)
    # a radius-100 circle through the origin never reaches beyond r = 200
    assert helix_hits([150.0, 250.0], 100.0, 0.0, 0.1).shape == (1, 3)
    with pytest.raises(ValueError):
        helix_hits([150.0], 100.0, 0.0, 0.1, leg="sideways")


def test_initialize_rejects_degenerate_input():
    fitter = HelixFitter(GEOM)
    pts = _track()
    assert fitter.initialize(pts[:2]) is None
    line = np.column_stack((np.linspace(105.0, 195.0, 10), np.zeros(10), np.linspace(0.0, 50.0, 10)))
    assert fitter.initialize(line) is None
    assert fitter.n_active == 0


def test_fit_recovers_helix_parameters():
    fitter = HelixFitter(GEOM)
    pts = _track()
    with open_fit(fitter, pts) as h:
        assert h is not None
        assert fitter.n_hits(h) == 20
        assert fitter.ndf(h) == 35
        assert fitter.chi2(h) < 1e-3
        assert fitter.smooth(h)
        fit = snapshot_fit(fitter, h, pts)
    assert fitter.n_active == 0
    assert fit.radius == pytest.approx(1000.0, rel=1e-4)
    assert fit.curvature == pytest.approx(1e-3, rel=1e-4)
    assert fit.tan_lambda == pytest.approx(0.5, rel=1e-4)
    assert np.allclose(fit.center, [-1000.0 * np.sin(0.3), 1000.0 * np.cos(0.3)], atol=0.1)
    assert np.allclose(fit.first.position, pts[0], atol=1e-3)
    assert np.allclose(fit.last.position, pts[-1], atol=1e-3)
    assert fit.chi2_ndf < 1e-3


def test_incremental_hits():
    fitter = HelixFitter(GEOM)
    pts = _track()
    with open_fit(fitter, pts[:5]) as h:
        on_track = fitter.test_hits(h, pts[5:8])
        assert np.all(on_track < 1e-2)
        off_track = pts[5] + np.array([0.0, 3.0, 0.0])
        assert fitter.test_hits(h, off_track)[0] > 35.0

        ok, delta = fitter.add_hit(h, off_track, max_chi2=35.0)
        assert not ok and delta > 35.0
        assert fitter.n_hits(h) == 5

        ok, delta = fitter.add_hit(h, pts[5], max_chi2=35.0)
        assert ok and delta < 1e-2
        assert fitter.n_hits(h) == 6
        assert fitter.test_hits(h, np.empty((0, 3))).size == 0


def test_layer_intersection_picks_crossing_near_reference():
    fitter = HelixFitter(GEOM)
    pts = _track()
    with open_fit(fitter, pts[:8]) as h:
        crossing = fitter.intersect_layer(h, 10, near=pts[7])
        assert crossing is not None
        point, layer = crossing
        assert layer == 10
        assert np.allclose(point, pts[10], atol=1e-3)
        assert fitter.intersect_layer(h, 20) is None
        assert fitter.intersect_layer(h, -1) is None
        # radius 1000 through the origin reaches at most r = 2000
        assert fitter.intersect_radius(h, 2500.0) is None

        state = fitter.propagate(h, pts[3])
        assert np.allclose(state.position, pts[3], atol=1e-3)
        assert np.linalg.norm(state.direction) == pytest.approx(1.0)


def test_open_fit_releases_on_error():
    fitter = HelixFitter(GEOM)
    with pytest.raises(RuntimeError):
        with open_fit(fitter, _track()) as h:
            assert h is not None
            raise RuntimeError("boom")
    assert fitter.n_active == 0
