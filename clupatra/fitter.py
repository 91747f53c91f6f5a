r"""
Incremental trajectory fitting.

The pattern recognition only talks to a fitter through the narrow
:class:`IncrementalFitter` contract: fits are opaque integer handles that are
acquired from a set of points, grown hit by hit, smoothed, queried and finally
released. :func:`open_fit` scopes a handle so that it is released on every
exit path.

:class:`HelixFitter` is the default implementation. In the transverse plane
the trajectory is a circle with centre :math:`(x_c, y_c)` and radius
:math:`R`; along the drift axis :math:`z` is linear in the transverse arc length

.. math::

    s_i = R\,\mathrm{wrap}(\varphi_i - \varphi_\text{ref}),\qquad
    z_i = z_0 + \tan\lambda\; s_i ,

with :math:`\varphi_i = \operatorname{atan2}(y_i - y_c, x_i - x_c)`. Each hit
contributes the residual vector

.. math::

    r_i = \big((\rho_i - R)\,\hat u_i,\; z_i - z_0 - \tan\lambda\,s_i\big),
    \qquad \rho_i = \|x_i - c\|,\; \hat u_i = (x_i - c)/\rho_i ,

scored against :math:`V=\mathrm{diag}(\sigma_{r\phi}^2,\sigma_{r\phi}^2,\sigma_z^2)`
with the batched Cholesky kernel :func:`clupatra.kernels.chi2_batch`.
"""
from __future__ import annotations

import itertools
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, Optional, Protocol, Sequence, Tuple

import numpy as np
from scipy.optimize import least_squares

from clupatra.geometry import TPCGeometry
from clupatra.kernels import chi2_batch, measurement_covariance

logger = logging.getLogger(__name__)

FitHandle = int


def _wrap(a):
    return (np.asarray(a) + np.pi) % (2.0 * np.pi) - np.pi


@dataclass(frozen=True, slots=True, eq=False)
class TrajectoryState:
    r"""
    Trajectory parameters at one point.

    Attributes
    ----------
    position : ndarray, shape (3,)
        Point on the trajectory (mm).
    direction : ndarray, shape (3,)
        Unit tangent, oriented towards increasing azimuth around the circle centre.
    curvature : float
        :math:`1/R` (1/mm).
    center : ndarray, shape (2,)
        Circle centre :math:`(x_c, y_c)`.
    radius : float
    tan_lambda : float
        :math:`dz/ds`.
    chi2 : float
        Total :math:`\chi^2` of the fit.
    ndf : int
        Degrees of freedom, :math:`2n - 5`.
    """
    position: np.ndarray
    direction: np.ndarray
    curvature: float
    center: np.ndarray
    radius: float
    tan_lambda: float
    chi2: float
    ndf: int


@dataclass(frozen=True, slots=True, eq=False)
class TrackFit:
    """Finalized fit snapshot: states at the first hit, the last hit and a reference point."""
    first: TrajectoryState
    last: TrajectoryState
    reference: TrajectoryState
    chi2: float
    ndf: int

    @property
    def radius(self) -> float:
        return self.reference.radius

    @property
    def center(self) -> np.ndarray:
        return self.reference.center

    @property
    def curvature(self) -> float:
        return self.reference.curvature

    @property
    def tan_lambda(self) -> float:
        return self.reference.tan_lambda

    @property
    def chi2_ndf(self) -> float:
        return self.chi2 / self.ndf if self.ndf > 0 else 0.0


class IncrementalFitter(Protocol):
    """Contract between the pattern recognition and a trajectory fitter."""

    def initialize(self, positions: np.ndarray) -> Optional[FitHandle]: ...

    def test_hits(self, handle: FitHandle, positions: np.ndarray) -> np.ndarray: ...

    def add_hit(self, handle: FitHandle, position: np.ndarray, max_chi2: float = np.inf) -> Tuple[bool, float]: ...

    def smooth(self, handle: FitHandle) -> bool: ...

    def propagate(self, handle: FitHandle, reference_point: np.ndarray) -> Optional[TrajectoryState]: ...

    def intersect_radius(self, handle: FitHandle, radius: float,
                         near: Optional[np.ndarray] = None) -> Optional[np.ndarray]: ...

    def intersect_layer(self, handle: FitHandle, layer: int,
                        near: Optional[np.ndarray] = None) -> Optional[Tuple[np.ndarray, int]]: ...

    def release(self, handle: FitHandle) -> None: ...


@dataclass(slots=True)
class _HelixState:
    points: np.ndarray
    cx: float
    cy: float
    radius: float
    phi_ref: float
    z0: float
    tan_lambda: float
    chi2: float = 0.0

    @property
    def ndf(self) -> int:
        return 2 * self.points.shape[0] - 5


def _circle_algebraic(xy: np.ndarray, max_radius: float) -> Optional[Tuple[float, float, float]]:
    r"""
    Algebraic (Kåsa) circle fit on centred coordinates.

    Solves :math:`u^2+v^2 = 2a\,u + 2b\,v + c` in the least-squares sense,
    giving :math:`R^2 = c + a^2 + b^2`. Returns ``None`` for rank-deficient
    (collinear) input or a non-finite/oversized radius.
    """
    n = xy.shape[0]
    if n < 3:
        return None
    m = xy.mean(axis=0)
    u = xy - m
    A = np.column_stack((2.0 * u[:, 0], 2.0 * u[:, 1], np.ones(n)))
    b = np.einsum("ij,ij->i", u, u)
    sol, _, rank, _ = np.linalg.lstsq(A, b, rcond=None)
    if rank < 3:
        return None
    a, bb, c = sol
    r2 = c + a * a + bb * bb
    if not np.isfinite(r2) or r2 <= 0.0:
        return None
    R = float(np.sqrt(r2))
    if R > max_radius:
        return None
    return float(m[0] + a), float(m[1] + bb), R


def _fit_longitudinal(points: np.ndarray, cx: float, cy: float, R: float) -> Tuple[float, float, float]:
    """``(phi_ref, z0, tan_lambda)`` of the straight-line fit :math:`z(s)`."""
    phi = np.arctan2(points[:, 1] - cy, points[:, 0] - cx)
    phi_ref = float(np.arctan2(np.sin(phi).mean(), np.cos(phi).mean()))
    s = R * _wrap(phi - phi_ref)
    z = points[:, 2]
    if np.ptp(s) < 1e-9:
        return phi_ref, float(z.mean()), 0.0
    A = np.column_stack((np.ones_like(s), s))
    (z0, tanl), *_ = np.linalg.lstsq(A, z, rcond=None)
    return phi_ref, float(z0), float(tanl)


class HelixFitter:
    r"""
    Circle + straight-line-in-:math:`s` fitter implementing :class:`IncrementalFitter`.

    Every accepted hit triggers a full (cheap, closed-form) refit of the
    handle's points; :meth:`smooth` refines the circle with a geometric
    least-squares fit (:func:`scipy.optimize.least_squares`).

    Parameters
    ----------
    geometry : TPCGeometry
        Provides pad-row radii for :meth:`intersect_layer`.
    rphi_resolution, z_resolution : float
        Point resolutions (mm).
    chi2_kernel : callable, optional
        ``chi2_kernel(diff, S) -> chi2`` (defaults to the Numba/NumPy kernel).
    max_radius : float, optional
        Circles with a larger radius are considered degenerate (straight).
    """

    __slots__ = ("geometry", "_V", "_chi2", "_fits", "_ids", "max_radius")

    def __init__(
        self,
        geometry: TPCGeometry,
        rphi_resolution: float = 0.1,
        z_resolution: float = 0.5,
        chi2_kernel: Callable[[np.ndarray, np.ndarray], np.ndarray] = chi2_batch,
        max_radius: float = 1.0e7,
    ) -> None:
        self.geometry = geometry
        self._V = measurement_covariance(rphi_resolution, z_resolution)
        self._chi2 = chi2_kernel
        self._fits: Dict[FitHandle, _HelixState] = {}
        self._ids = itertools.count(1)
        self.max_radius = float(max_radius)

    @property
    def n_active(self) -> int:
        """Number of live (unreleased) handles."""
        return len(self._fits)

    def _residuals(self, st: _HelixState, pts: np.ndarray) -> np.ndarray:
        dx = pts[:, 0] - st.cx
        dy = pts[:, 1] - st.cy
        rho = np.maximum(np.hypot(dx, dy), 1e-12)
        dr = rho - st.radius
        s = st.radius * _wrap(np.arctan2(dy, dx) - st.phi_ref)
        dz = pts[:, 2] - (st.z0 + st.tan_lambda * s)
        return np.column_stack((dr * dx / rho, dr * dy / rho, dz))

    def _build(self, pts: np.ndarray, circle: Optional[Tuple[float, float, float]] = None) -> Optional[_HelixState]:
        if circle is None:
            circle = _circle_algebraic(pts[:, :2], self.max_radius)
        if circle is None:
            return None
        cx, cy, R = circle
        phi_ref, z0, tanl = _fit_longitudinal(pts, cx, cy, R)
        st = _HelixState(pts, cx, cy, R, phi_ref, z0, tanl)
        chi2 = self._chi2(self._residuals(st, pts), self._V)
        st.chi2 = float(np.sum(chi2))
        if not np.isfinite(st.chi2):
            return None
        return st

    def initialize(self, positions: np.ndarray) -> Optional[FitHandle]:
        """Fit a new trajectory; ``None`` for fewer than 3 points or degenerate geometry."""
        pts = np.array(positions, dtype=np.float64).reshape(-1, 3)
        st = self._build(pts)
        if st is None:
            logger.debug("Fit initialisation failed for %d points", pts.shape[0])
            return None
        h = next(self._ids)
        self._fits[h] = st
        return h

    def test_hits(self, handle: FitHandle, positions: np.ndarray) -> np.ndarray:
        r"""Incremental :math:`\chi^2` of each candidate point against the current fit."""
        pts = np.asarray(positions, dtype=np.float64).reshape(-1, 3)
        if pts.shape[0] == 0:
            return np.empty(0, dtype=np.float64)
        st = self._fits[handle]
        return np.asarray(self._chi2(self._residuals(st, pts), self._V), dtype=np.float64)

    def add_hit(self, handle: FitHandle, position: np.ndarray, max_chi2: float = np.inf) -> Tuple[bool, float]:
        """
        Try to add one point. Returns ``(accepted, delta_chi2)``; the fit is
        left untouched when the point is rejected or the refit degenerates.
        """
        pos = np.asarray(position, dtype=np.float64).reshape(1, 3)
        delta = float(self.test_hits(handle, pos)[0])
        if not np.isfinite(delta) or delta > max_chi2:
            return False, delta
        st = self._fits[handle]
        new = self._build(np.vstack((st.points, pos)))
        if new is None:
            return False, delta
        self._fits[handle] = new
        return True, delta

    def chi2(self, handle: FitHandle) -> float:
        return self._fits[handle].chi2

    def ndf(self, handle: FitHandle) -> int:
        return self._fits[handle].ndf

    def n_hits(self, handle: FitHandle) -> int:
        return int(self._fits[handle].points.shape[0])

    def smooth(self, handle: FitHandle) -> bool:
        r"""
        Geometric circle refinement minimizing :math:`\sum_i(\rho_i - R)^2`,
        followed by a fresh longitudinal fit. Returns ``False`` (fit unchanged)
        if the refinement does not converge to a finite circle.
        """
        st = self._fits[handle]
        xy = st.points[:, :2]

        def resid(p: np.ndarray) -> np.ndarray:
            return np.hypot(xy[:, 0] - p[0], xy[:, 1] - p[1]) - p[2]

        try:
            res = least_squares(resid, np.array([st.cx, st.cy, st.radius]), method="trf")
        except (ValueError, np.linalg.LinAlgError) as e:
            logger.debug("Circle refinement failed: %s", e)
            return False
        cx, cy, R = (float(v) for v in res.x)
        if not res.success or not np.all(np.isfinite(res.x)) or R <= 0.0 or R > self.max_radius:
            return False
        new = self._build(st.points, circle=(cx, cy, R))
        if new is None:
            return False
        self._fits[handle] = new
        return True

    def _state_at(self, st: _HelixState, phi: float) -> TrajectoryState:
        c, s = np.cos(phi), np.sin(phi)
        z = st.z0 + st.tan_lambda * st.radius * float(_wrap(phi - st.phi_ref))
        pos = np.array([st.cx + st.radius * c, st.cy + st.radius * s, z])
        t = np.array([-s, c, st.tan_lambda])
        return TrajectoryState(
            position=pos,
            direction=t / np.linalg.norm(t),
            curvature=1.0 / st.radius,
            center=np.array([st.cx, st.cy]),
            radius=st.radius,
            tan_lambda=st.tan_lambda,
            chi2=st.chi2,
            ndf=st.ndf,
        )

    def propagate(self, handle: FitHandle, reference_point: np.ndarray) -> Optional[TrajectoryState]:
        """State at the point of closest transverse approach to ``reference_point``."""
        st = self._fits[handle]
        ref = np.asarray(reference_point, dtype=np.float64)
        dx, dy = ref[0] - st.cx, ref[1] - st.cy
        if np.hypot(dx, dy) < 1e-12:
            return None
        return self._state_at(st, float(np.arctan2(dy, dx)))

    def intersect_radius(
        self,
        handle: FitHandle,
        radius: float,
        near: Optional[np.ndarray] = None,
    ) -> Optional[np.ndarray]:
        r"""
        Crossing of the trajectory with the cylinder :math:`r = \text{radius}`.

        The two circle-circle intersections lie on the chord at distance
        :math:`a = (r^2 - R^2 + d^2)/2d` from the origin along the centre
        direction, offset by :math:`\pm\sqrt{r^2 - a^2}`. The one closest to
        ``near`` (transverse distance) is returned; ``None`` if the circles do
        not intersect.
        """
        st = self._fits[handle]
        d = float(np.hypot(st.cx, st.cy))
        R = st.radius
        if d < 1e-12 or d > R + radius or d < abs(R - radius):
            return None
        a = (radius * radius - R * R + d * d) / (2.0 * d)
        h = float(np.sqrt(max(radius * radius - a * a, 0.0)))
        ex, ey = st.cx / d, st.cy / d
        cands = [
            np.array([a * ex - h * ey, a * ey + h * ex]),
            np.array([a * ex + h * ey, a * ey - h * ex]),
        ]
        if near is not None:
            q = np.asarray(near, dtype=np.float64)[:2]
            xy = min(cands, key=lambda p: float(np.sum((p - q) ** 2)))
        else:
            xy = cands[0]
        return self._state_at(st, float(np.arctan2(xy[1] - st.cy, xy[0] - st.cx))).position

    def intersect_layer(
        self,
        handle: FitHandle,
        layer: int,
        near: Optional[np.ndarray] = None,
    ) -> Optional[Tuple[np.ndarray, int]]:
        """``(point, layer)`` where the trajectory crosses pad row ``layer``, or ``None``."""
        if layer < 0 or layer >= self.geometry.n_layers:
            return None
        p = self.intersect_radius(handle, float(self.geometry.layer_radius(layer)), near=near)
        if p is None:
            return None
        return p, int(layer)

    def release(self, handle: FitHandle) -> None:
        self._fits.pop(handle, None)


@contextmanager
def open_fit(fitter: IncrementalFitter, positions: np.ndarray) -> Iterator[Optional[FitHandle]]:
    """
    Scoped fit handle: yields ``fitter.initialize(positions)`` (possibly
    ``None``) and releases it on exit, including on exceptions.
    """
    handle = fitter.initialize(positions)
    try:
        yield handle
    finally:
        if handle is not None:
            fitter.release(handle)


def snapshot_fit(
    fitter: IncrementalFitter,
    handle: FitHandle,
    ordered_positions: Sequence[np.ndarray],
    reference_point: Sequence[float] = (0.0, 0.0, 0.0),
) -> Optional[TrackFit]:
    """
    Freeze the fit into a :class:`TrackFit` with states at the first and last
    of ``ordered_positions`` and at ``reference_point`` (falls back to the
    first state if the reference is degenerate).
    """
    if len(ordered_positions) == 0:
        return None
    first = fitter.propagate(handle, ordered_positions[0])
    last = fitter.propagate(handle, ordered_positions[-1])
    if first is None or last is None:
        return None
    ref = fitter.propagate(handle, np.asarray(reference_point, dtype=np.float64))
    if ref is None:
        ref = first
    return TrackFit(first=first, last=last, reference=ref, chi2=first.chi2, ndf=first.ndf)
