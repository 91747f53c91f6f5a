from __future__ import annotations

from typing import Iterable, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from clupatra.data import EventHits
from clupatra.geometry import TPCGeometry
from clupatra.segments import Segment


def helix_hits(
    radii: Sequence[float],
    radius: float,
    phi0: float,
    tan_lambda: float,
    *,
    charge: int = 1,
    leg: str = "out",
) -> np.ndarray:
    r"""
    Points of a helix from the origin crossing the cylinders ``radii``.

    A circle of radius :math:`R` through the origin with initial azimuth
    :math:`\varphi_0` reaches transverse distance :math:`r\le 2R` after a
    turning angle :math:`\theta = 2\arcsin(r/2R)` on its outgoing leg
    (:math:`2\pi - \theta` on the returning leg). The point lies along the
    chord direction :math:`\varphi_0 + q\,\theta/2` and at

    .. math:: z = \tan\lambda\; R\,\theta .

    Parameters
    ----------
    radii : sequence of float
        Cylinder radii; values beyond :math:`2R` are skipped.
    radius : float
        Transverse radius :math:`R` (mm).
    phi0 : float
        Initial azimuth (rad).
    tan_lambda : float
        Dip :math:`dz/ds`.
    charge : {+1, -1}, optional
        Turning sense.
    leg : {"out", "in"}, optional
        Outgoing or returning half of the circle.

    Returns
    -------
    ndarray, shape (M, 3)
    """
    r = np.asarray([v for v in radii if v <= 2.0 * radius], dtype=np.float64)
    theta = 2.0 * np.arcsin(r / (2.0 * radius))
    if leg == "in":
        theta = 2.0 * np.pi - theta
    elif leg != "out":
        raise ValueError(f"leg must be 'out' or 'in', got {leg!r}")
    direction = phi0 + np.sign(charge) * theta / 2.0
    return np.column_stack((r * np.cos(direction), r * np.sin(direction), tan_lambda * radius * theta))


def make_event(
    particles: Iterable[Mapping],
    geometry: TPCGeometry,
    *,
    noise_rphi: float = 0.0,
    noise_z: float = 0.0,
    n_noise: int = 0,
    rng: Optional[np.random.Generator] = None,
) -> pd.DataFrame:
    r"""
    Synthetic event: one hit per crossed pad row for each particle.

    Each particle mapping accepts ``radius``, ``phi0``, ``tan_lambda`` and
    optionally ``charge``, ``leg`` (``"out"``/``"in"``/``"both"``) and
    ``layers`` (pad rows to populate; default all). Particle ids start at 1;
    noise hits get ``particle_id = 0``.

    Returns
    -------
    pandas.DataFrame
        Columns ``hit_id, x, y, z, particle_id``.
    """
    rng = np.random.default_rng() if rng is None else rng
    blocks = []
    pids = []
    for pid, p in enumerate(particles, start=1):
        layers = p.get("layers", range(geometry.n_layers))
        radii = geometry.layer_radius(np.asarray(list(layers), dtype=np.int64))
        legs = ("out", "in") if p.get("leg", "out") == "both" else (p.get("leg", "out"),)
        for leg in legs:
            pts = helix_hits(
                radii, float(p["radius"]), float(p["phi0"]), float(p["tan_lambda"]),
                charge=int(p.get("charge", 1)), leg=leg,
            )
            blocks.append(pts)
            pids.append(np.full(pts.shape[0], pid, dtype=np.int64))

    if n_noise > 0:
        r = rng.uniform(geometry.r_min, geometry.r_max, n_noise)
        phi = rng.uniform(-np.pi, np.pi, n_noise)
        z = rng.uniform(-geometry.z_max, geometry.z_max, n_noise)
        blocks.append(np.column_stack((r * np.cos(phi), r * np.sin(phi), z)))
        pids.append(np.zeros(n_noise, dtype=np.int64))

    xyz = np.vstack(blocks) if blocks else np.empty((0, 3))
    pid = np.concatenate(pids) if pids else np.empty(0, dtype=np.int64)

    if xyz.shape[0] and (noise_rphi > 0.0 or noise_z > 0.0):
        rr = np.hypot(xyz[:, 0], xyz[:, 1])
        dphi = rng.normal(0.0, noise_rphi, rr.size) / np.maximum(rr, 1e-9)
        c, s = np.cos(dphi), np.sin(dphi)
        x, y = xyz[:, 0].copy(), xyz[:, 1].copy()
        xyz[:, 0] = c * x - s * y
        xyz[:, 1] = s * x + c * y
        xyz[:, 2] += rng.normal(0.0, noise_z, rr.size)

    return pd.DataFrame({
        "hit_id": np.arange(1, xyz.shape[0] + 1, dtype=np.int64),
        "x": xyz[:, 0],
        "y": xyz[:, 1],
        "z": xyz[:, 2],
        "particle_id": pid,
    })


def drop_hits(
    hits: pd.DataFrame,
    probability: float,
    *,
    rng: Optional[np.random.Generator] = None,
) -> pd.DataFrame:
    r"""
    Remove each hit independently with probability :math:`p` (pad inefficiency).

    Raises
    ------
    ValueError
        If ``probability`` is outside :math:`[0, 1]`.
    """
    if not (0.0 <= probability <= 1.0):
        raise ValueError("probability must be in [0, 1].")
    rng = np.random.default_rng() if rng is None else rng
    keep = rng.random(len(hits)) >= probability
    return hits.loc[keep].reset_index(drop=True)


def tracks_to_submission(store: EventHits, tracks: Sequence[Segment]) -> pd.DataFrame:
    r"""
    One row per hit of the event with the id of the track that owns it.

    Hits not on any track get ``track_id = -1``. If a hit appears on more
    than one track the first (lowest id) wins.

    Returns
    -------
    pandas.DataFrame
        Columns ``hit_id, track_id`` in arena order.
    """
    track_id = np.full(len(store), -1, dtype=np.int64)
    for t in sorted(tracks, key=lambda s: s.id, reverse=True):
        track_id[np.asarray(t.hits, dtype=np.int64)] = t.id
    return pd.DataFrame({"hit_id": store.hit_id, "track_id": track_id})
