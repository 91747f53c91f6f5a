from __future__ import annotations

from typing import Optional, Sequence

import numpy as np
import matplotlib.pyplot as plt
import matplotlib.patches as patches

from clupatra.data import EventHits
from clupatra.geometry import TPCGeometry
from clupatra.segments import Segment


def _show_and_close(fig, *, do_show: bool = True) -> None:
    r"""
    Show a Matplotlib figure (optionally) and always close it.

    Layout and display errors are ignored so the helper can be used in batch
    runs where ``plt.show()`` has been patched to a no-op.
    """
    try:
        fig.tight_layout()
    except Exception:
        pass
    if do_show:
        try:
            plt.show()
        except Exception:
            pass
    plt.close(fig)


def _track_colors(n: int):
    cmap = plt.get_cmap("tab20")
    return [cmap(i % cmap.N) for i in range(n)]


def plot_event_xy(
    store: EventHits,
    tracks: Sequence[Segment],
    geometry: Optional[TPCGeometry] = None,
    *,
    title: str = "Clupatra tracks (x-y)",
    do_show: bool = True,
    save_path: Optional[str] = None,
) -> None:
    r"""
    Transverse view: all hits in grey, one colour per track.

    Parameters
    ----------
    store : EventHits
        Hit arena of the event.
    tracks : sequence of Segment
        Promoted tracks (their ``hits`` index into ``store``).
    geometry : TPCGeometry, optional
        If given, the inner and outer field-cage radii are drawn.
    do_show : bool, optional
        Call ``plt.show()`` before closing.
    save_path : str, optional
        Save the figure here (the directory must exist).
    """
    if len(store) == 0:
        return
    fig, ax = plt.subplots(figsize=(9, 9))
    pos = store.positions
    ax.scatter(pos[:, 0], pos[:, 1], s=2, c="0.75", label="hits")
    for t, color in zip(tracks, _track_colors(len(tracks))):
        p = pos[t.hits]
        ax.plot(p[:, 0], p[:, 1], ".-", ms=3, lw=0.8, color=color)
    if geometry is not None:
        for r in (geometry.r_min, geometry.r_max):
            ax.add_patch(patches.Circle((0.0, 0.0), r, fill=False, ls="--", lw=0.6, color="k"))
    ax.set_aspect("equal")
    ax.set_xlabel("x (mm)")
    ax.set_ylabel("y (mm)")
    ax.set_title(f"{title} | {len(tracks)} tracks")
    ax.grid(True, alpha=0.3)
    if save_path is not None:
        fig.savefig(save_path, dpi=150)
    _show_and_close(fig, do_show=do_show)


def plot_event_rz(
    store: EventHits,
    tracks: Sequence[Segment],
    *,
    title: str = "Clupatra tracks (z-r)",
    do_show: bool = True,
    save_path: Optional[str] = None,
) -> None:
    r"""
    Longitudinal view of the same event in :math:`(z, r)` with
    :math:`r=\sqrt{x^2+y^2}`.
    """
    if len(store) == 0:
        return
    fig, ax = plt.subplots(figsize=(12, 6))
    pos = store.positions
    r = store.radius
    ax.scatter(pos[:, 2], r, s=2, c="0.75")
    for t, color in zip(tracks, _track_colors(len(tracks))):
        h = np.asarray(t.hits, dtype=np.int64)
        ax.plot(pos[h, 2], r[h], ".-", ms=3, lw=0.8, color=color)
    ax.set_xlabel("z (mm)")
    ax.set_ylabel("r (mm)")
    ax.set_title(title)
    ax.grid(True, alpha=0.3)
    if save_path is not None:
        fig.savefig(save_path, dpi=150)
    _show_and_close(fig, do_show=do_show)
