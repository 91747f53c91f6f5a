from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, Mapping, Tuple

import numpy as np


@dataclass(frozen=True, slots=True)
class TPCGeometry:
    r"""
    Static pad-plane geometry of a cylindrical drift chamber.

    The pad plane is an annulus :math:`r_\min \le r < r_\max` divided into
    ``n_layers`` concentric pad rows of equal height

    .. math::

        h \;=\; \frac{r_\max - r_\min}{N_\text{layers}},
        \qquad
        r_\ell \;=\; r_\min + (\ell + \tfrac12)\,h .

    The drift coordinate spans :math:`[-z_\max, z_\max]`; it is only used to
    derive the coarse *sampling bin* of a hit, never as a clustering coordinate.

    Attributes
    ----------
    n_layers : int
        Number of pad rows.
    r_min, r_max : float
        Inner and outer radius of the pad plane (mm).
    z_max : float
        Maximal drift length (mm).
    aux_layer_radii : tuple of float
        Radii of auxiliary (non pad-row) detection layers used by the optional
        hit pickup. Empty when no auxiliary detector is present.
    """
    n_layers: int = 224
    r_min: float = 395.0
    r_max: float = 1739.0
    z_max: float = 2750.0
    aux_layer_radii: Tuple[float, ...] = ()

    def __post_init__(self) -> None:
        if self.n_layers <= 0:
            raise ValueError(f"n_layers must be positive, got {self.n_layers}")
        if not (0.0 <= self.r_min < self.r_max):
            raise ValueError(f"Invalid radial extent r_min={self.r_min}, r_max={self.r_max}")
        if self.z_max <= 0.0:
            raise ValueError(f"z_max must be positive, got {self.z_max}")

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "TPCGeometry":
        """Build from a plain mapping (e.g. the ``"geometry"`` block of a JSON config)."""
        known = {f.name for f in fields(cls)}
        unknown = set(mapping) - known
        if unknown:
            raise ValueError(f"Unknown geometry option(s): {', '.join(sorted(unknown))}")
        kw = dict(mapping)
        if "aux_layer_radii" in kw:
            kw["aux_layer_radii"] = tuple(float(r) for r in kw["aux_layer_radii"])
        return cls(**kw)

    @property
    def row_height(self) -> float:
        return (self.r_max - self.r_min) / self.n_layers

    def layer_radius(self, layer):
        r"""
        Radius of the centre of pad row ``layer`` (scalar or array).
        """
        return self.r_min + (np.asarray(layer, dtype=np.float64) + 0.5) * self.row_height

    def row_from_position(self, x, y) -> np.ndarray:
        r"""
        Pad-row index of transverse positions.

        Parameters
        ----------
        x, y : array_like
            Transverse coordinates (mm).

        Returns
        -------
        ndarray of int64
            :math:`\lfloor (r - r_\min)/h \rfloor`, or ``-1`` for positions
            outside the pad plane.
        """
        r = np.hypot(np.atleast_1d(np.asarray(x, dtype=np.float64)),
                     np.atleast_1d(np.asarray(y, dtype=np.float64)))
        row = np.floor((r - self.r_min) / self.row_height).astype(np.int64)
        row[(row < 0) | (row >= self.n_layers)] = -1
        return row

    def bin_from_z(self, z, n_bins: int) -> np.ndarray:
        r"""
        Sampling-bin index along the drift axis.

        Bins are equally wide over :math:`[-z_\max, z_\max]`; values outside
        the drift volume are clipped to the first/last bin.
        """
        z = np.asarray(z, dtype=np.float64)
        b = np.floor((z + self.z_max) / (2.0 * self.z_max) * n_bins).astype(np.int64)
        return np.clip(b, 0, n_bins - 1)
