from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import numpy as np
import pandas as pd

from clupatra.geometry import TPCGeometry

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("x", "y", "z")


@dataclass(slots=True)
class EventHits:
    r"""
    Event-scoped hit arena.

    Every hit of an event lives in one row of these parallel arrays and is
    addressed everywhere else by its row index (the *handle*). The arena is
    never mutated once built.

    Attributes
    ----------
    positions : ndarray, shape (N, 3)
        Hit positions :math:`(x, y, z)` in mm, ``float64``.
    layer : ndarray, shape (N,)
        Pad-row index, ``int64``.
    bin : ndarray, shape (N,)
        Drift sampling-bin index, ``int64``.
    hit_id : ndarray, shape (N,)
        External hit identifiers, ``int64``.
    particle_id : ndarray or None
        Truth particle per hit (diagnostics only).
    """
    positions: np.ndarray
    layer: np.ndarray
    bin: np.ndarray
    hit_id: np.ndarray
    particle_id: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        n = self.positions.shape[0]
        if self.positions.ndim != 2 or self.positions.shape[1] != 3:
            raise ValueError(f"positions must have shape (N, 3), got {self.positions.shape}")
        sizes = [self.layer.size, self.bin.size, self.hit_id.size]
        if self.particle_id is not None:
            sizes.append(self.particle_id.size)
        if any(s != n for s in sizes):
            raise ValueError("Mismatched array lengths in EventHits.")

    def __len__(self) -> int:
        return int(self.positions.shape[0])

    @property
    def radius(self) -> np.ndarray:
        return np.hypot(self.positions[:, 0], self.positions[:, 1])

    @classmethod
    def empty(cls) -> "EventHits":
        return cls(
            positions=np.empty((0, 3), dtype=np.float64),
            layer=np.empty(0, dtype=np.int64),
            bin=np.empty(0, dtype=np.int64),
            hit_id=np.empty(0, dtype=np.int64),
        )

    @classmethod
    def from_frame(
        cls,
        hits: Optional[pd.DataFrame],
        geometry: TPCGeometry,
        n_bins: int,
        r_cut: float = 0.0,
    ) -> "EventHits":
        r"""
        Build the arena from a hit table.

        Parameters
        ----------
        hits : pandas.DataFrame or None
            Columns ``x, y, z`` (mm) are required; ``hit_id`` and
            ``particle_id`` are optional. A ``layer`` column, when present,
            overrides the pad-row lookup of the geometry.
        geometry : TPCGeometry
            Provides the row-from-position and bin-from-z lookups.
        n_bins : int
            Number of drift sampling bins.
        r_cut : float, optional
            Hits with transverse radius below this value are dropped.

        Returns
        -------
        EventHits
            Hits outside the pad plane (or below ``r_cut``) are not included.

        Raises
        ------
        KeyError
            If a required column is missing.
        """
        if hits is None or len(hits) == 0:
            return cls.empty()
        missing = [c for c in REQUIRED_COLUMNS if c not in hits.columns]
        if missing:
            raise KeyError(f"Hit table lacks required column(s): {', '.join(missing)}")

        xyz = np.ascontiguousarray(hits[list(REQUIRED_COLUMNS)].to_numpy(dtype=np.float64))
        if "layer" in hits.columns:
            layer = hits["layer"].to_numpy(dtype=np.int64)
            layer = np.where((layer >= 0) & (layer < geometry.n_layers), layer, -1)
        else:
            layer = geometry.row_from_position(xyz[:, 0], xyz[:, 1])
        if "hit_id" in hits.columns:
            hit_id = hits["hit_id"].to_numpy(dtype=np.int64)
        else:
            hit_id = np.arange(len(hits), dtype=np.int64)

        r = np.hypot(xyz[:, 0], xyz[:, 1])
        keep = (layer >= 0) & (r >= r_cut)
        n_drop = int((~keep).sum())

        pid = None
        if "particle_id" in hits.columns:
            pid = hits["particle_id"].to_numpy(dtype=np.int64)[keep]

        xyz = np.ascontiguousarray(xyz[keep])
        out = cls(
            positions=xyz,
            layer=np.ascontiguousarray(layer[keep]),
            bin=geometry.bin_from_z(xyz[:, 2], n_bins),
            hit_id=np.ascontiguousarray(hit_id[keep]),
            particle_id=pid,
        )
        logger.debug("Built hit arena: %d hits kept, %d dropped (outside pad plane or r<%.1f)",
                     len(out), n_drop, r_cut)
        return out


def load_hits(path: Union[str, Path]) -> pd.DataFrame:
    r"""
    Read one event's hits from a CSV file.

    Parameters
    ----------
    path : str or pathlib.Path
        CSV with at least columns ``x, y, z``.

    Returns
    -------
    pandas.DataFrame

    Raises
    ------
    KeyError
        If a required column is missing.
    """
    df = pd.read_csv(path)
    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise KeyError(f"{path}: missing column(s) {', '.join(missing)}")
    logger.info("Loaded %d hits from %s", len(df), Path(path).name)
    return df
