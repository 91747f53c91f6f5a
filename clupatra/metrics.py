from __future__ import annotations

from collections import Counter
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from clupatra.data import EventHits
from clupatra.filters import duplicate_row_fraction
from clupatra.segments import Segment


def track_purity(hits: Sequence[int], store: EventHits) -> Optional[Tuple[int, float]]:
    r"""
    Dominant truth particle of a track and its hit fraction.

    .. math:: \text{purity} = \max_p \frac{n_p}{n} .

    Returns
    -------
    (particle_id, purity) or None
        ``None`` when no truth is attached or the track is empty.
    """
    if store.particle_id is None or len(hits) == 0:
        return None
    counts = Counter(int(store.particle_id[h]) for h in hits)
    pid, n = counts.most_common(1)[0]
    return pid, n / len(hits)


def odd_tracks_duplicate_rows(
    tracks: Sequence[Segment],
    store: EventHits,
    max_fraction: float,
) -> List[int]:
    """Ids of tracks whose duplicate pad-row fraction exceeds ``max_fraction``."""
    return [t.id for t in tracks if duplicate_row_fraction(t.hits, store) > max_fraction]


def odd_tracks_purity(
    tracks: Sequence[Segment],
    store: EventHits,
    min_purity: float = 0.99,
) -> List[int]:
    """Ids of tracks whose truth purity is below ``min_purity`` (empty without truth)."""
    out: List[int] = []
    for t in tracks:
        p = track_purity(t.hits, store)
        if p is not None and p[1] < min_purity:
            out.append(t.id)
    return out


def track_efficiency(
    tracks: Sequence[Segment],
    store: EventHits,
    min_purity: float = 0.5,
    min_hits: int = 3,
) -> Optional[float]:
    r"""
    Fraction of truth particles (with at least ``min_hits`` hits) matched by
    a track whose purity is at least ``min_purity``. ``None`` without truth.
    """
    if store.particle_id is None:
        return None
    per_particle = Counter(int(p) for p in store.particle_id)
    reconstructable = {p for p, n in per_particle.items() if n >= min_hits and p != 0}
    if not reconstructable:
        return None
    found = set()
    for t in tracks:
        p = track_purity(t.hits, store)
        if p is not None and p[1] >= min_purity:
            found.add(p[0])
    return len(found & reconstructable) / len(reconstructable)


def event_summary(
    tracks: Sequence[Segment],
    store: EventHits,
    max_duplicate_fraction: float,
) -> Dict[str, float]:
    """Scalar diagnostics of one processed event."""
    n_used = sum(len(t.hits) for t in tracks)
    out: Dict[str, float] = {
        "n_hits": float(len(store)),
        "n_tracks": float(len(tracks)),
        "hits_used_fraction": (n_used / len(store)) if len(store) else 0.0,
        "n_odd_duplicate_rows": float(len(odd_tracks_duplicate_rows(tracks, store, max_duplicate_fraction))),
    }
    if store.particle_id is not None:
        purities = [p[1] for p in (track_purity(t.hits, store) for t in tracks) if p is not None]
        out["mean_purity"] = float(np.mean(purities)) if purities else 0.0
        out["n_odd_purity"] = float(len(odd_tracks_purity(tracks, store)))
        eff = track_efficiency(tracks, store)
        out["efficiency"] = float(eff) if eff is not None else 0.0
    return out
