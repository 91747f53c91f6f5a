import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pytest

from clupatra.kernels import chi2_batch, chi2_batch_numpy, measurement_covariance


def test_measurement_covariance_is_diagonal():
    V = measurement_covariance(0.1, 0.5)
    assert np.allclose(V, np.diag([0.01, 0.01, 0.25]))


def test_chi2_matches_closed_form():
    V = measurement_covariance(0.1, 0.5)
    diff = np.array([
        [1.0, 0.0, 0.0],
        [0.0, 0.0, 1.0],
        [0.1, 0.1, 0.5],
        [0.0, 0.0, 0.0],
    ])
    expected = np.array([100.0, 4.0, 3.0, 0.0])
    assert np.allclose(chi2_batch(diff, V), expected)
    assert np.allclose(chi2_batch_numpy(diff, V), expected)


def test_chi2_full_covariance_agrees_with_inverse():
    rng = np.random.default_rng(3)
    A = rng.normal(size=(3, 3))
    S = A @ A.T + 0.5 * np.eye(3)
    diff = rng.normal(size=(50, 3))
    ref = np.einsum("ij,jk,ik->i", diff, np.linalg.inv(S), diff)
    assert np.allclose(chi2_batch(diff, S), ref, rtol=1e-6)
    assert np.allclose(chi2_batch_numpy(diff, S), ref, rtol=1e-6)


def test_chi2_empty_and_singular():
    V = measurement_covariance(0.1, 0.5)
    assert chi2_batch_numpy(np.empty((0, 3)), V).shape == (0,)
    assert chi2_batch(np.empty((0, 3)), V).shape == (0,)
    singular = np.diag([1.0, 1.0, 0.0])
    out = chi2_batch_numpy(np.array([[1.0, 1.0, 0.0]]), singular)
    assert np.all(np.isfinite(out))
    assert out[0] == pytest.approx(2.0, rel=1e-6)
