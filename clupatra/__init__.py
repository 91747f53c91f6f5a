__all__ = [
    "TPCGeometry", "ClupatraConfig", "load_config", "load_settings",
    "EventHits", "load_hits", "HitPool",
    "cluster_nn", "HitDistance", "cluster_hits",
    "DuplicatePadRows", "filter_clusters", "hit_multiplicity", "split_by_multiplicity",
    "SeedFinder", "seed_windows",
    "HelixFitter", "TrackFit", "TrajectoryState",
    "Segment", "SegmentState", "SegmentFlags", "classify_segment",
    "extend_and_fit", "fit_segment", "pickup_auxiliary_hits",
    "CircleCenterDistance", "TrajectoryDistance", "merge_segments", "run_merge_stage",
    "ClupatraProcessor", "EventResult",
    "event_summary", "track_purity",
    "helix_hits", "make_event", "drop_hits", "tracks_to_submission",
]

# Geometry & configuration
from .geometry import TPCGeometry
from .config import ClupatraConfig, load_config, load_settings

# Hits
from .data import EventHits, load_hits
from .hit_pool import HitPool

# Clustering & seeding
from .clustering import cluster_nn, HitDistance, cluster_hits
from .filters import DuplicatePadRows, filter_clusters, hit_multiplicity, split_by_multiplicity
from .seeding import SeedFinder, seed_windows

# Fitting, extension & merging
from .fitter import HelixFitter, TrackFit, TrajectoryState
from .segments import Segment, SegmentState, SegmentFlags, classify_segment
from .extension import extend_and_fit, fit_segment, pickup_auxiliary_hits
from .merging import CircleCenterDistance, TrajectoryDistance, merge_segments, run_merge_stage

# Driver
from .processor import ClupatraProcessor, EventResult

# Metrics & utilities
from .metrics import event_summary, track_purity
from .utils import helix_hits, make_event, drop_hits, tracks_to_submission
