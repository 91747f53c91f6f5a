from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping, MutableMapping, Optional, Tuple

from clupatra.geometry import TPCGeometry

try:
    import orjson as _orjson
except Exception:  # pragma: no cover
    _orjson = None


MULTIPLICITIES: Tuple[int, ...] = (2, 3, 4, 5)


@dataclass(slots=True)
class ClupatraConfig:
    r"""
    Tunable parameters of the pattern recognition.

    All distances are in millimetres. The numeric defaults are empirically
    tuned for a large TPC and should be treated as starting values.

    Attributes
    ----------
    distance_cut : float
        Nominal 3D distance cut between hits on adjacent pad rows. Pass
        :math:`p` of ``n_loop`` uses :math:`d_\text{cut}\,p/N`.
    cos_alpha_cut : float or None
        Minimal cosine between the position vectors of two linked hits.
        ``None`` disables the angular requirement.
    n_loop : int
        Number of escalation passes of the seed-window scan.
    min_cluster_size : int
        Clusters with fewer hits are never kept as seeds.
    duplicate_pad_row_fraction : float
        Clusters whose fraction of multiply-occupied pad rows exceeds this
        value are rejected.
    pad_row_range : int
        Width (in pad rows) of a seed window.
    n_z_bins : int
        Number of sampling bins along the drift axis.
    repair_span_fraction, repair_cut_multiplier : float
        Clusters spanning at least ``repair_span_fraction`` of a window are
        pooled and reclustered with ``repair_cut_multiplier`` times the cut.
    min_layer_fraction, min_layer_count : tuple
        Thresholds for multiplicity splitting, one entry per multiplicity
        :math:`k = 2..5`. Both are strict lower bounds.
    max_delta_chi2 : float
        Maximal incremental :math:`\chi^2` of a hit added during extension.
    max_merge_chi2 : float
        Maximal :math:`\chi^2/\text{ndf}` of a combined refit for two
        segments to be merge candidates.
    max_step_without_hit : int
        Consecutive empty pad rows after which an extension direction aborts.
    extension_gate : float
        Search radius around the predicted crossing point during extension.
    inner_distance_cut, outer_distance_cut, forward_distance_cut : float
        Distance from the inner radius, the outer radius and the drift-volume
        end that still counts as *at the boundary*.
    curler_curvature_cut : float
        Curvature (1/mm) above which a segment is a curler.
    circle_center_cut, radius_tolerance : float
        Circle-centre distance and relative radius agreement for merging.
    rphi_resolution, z_resolution : float
        Point resolutions used by the fitter.
    r_cut : float
        Hits with :math:`r < r_\text{cut}` are ignored.
    pickup_auxiliary_hits : bool
        Enable the auxiliary-layer pickup post-pass.
    aux_gate : float
        Search radius for auxiliary hits.
    """
    distance_cut: float = 40.0
    cos_alpha_cut: Optional[float] = 0.9
    n_loop: int = 4
    min_cluster_size: int = 3
    duplicate_pad_row_fraction: float = 0.1
    pad_row_range: int = 12
    n_z_bins: int = 80
    repair_span_fraction: float = 0.75
    repair_cut_multiplier: float = 1.5
    min_layer_fraction: Tuple[float, ...] = field(default=(0.5, 0.5, 0.5, 0.5))
    min_layer_count: Tuple[int, ...] = field(default=(3, 3, 3, 3))
    max_delta_chi2: float = 35.0
    max_merge_chi2: float = 10.0
    max_step_without_hit: int = 3
    extension_gate: float = 40.0
    inner_distance_cut: float = 25.0
    outer_distance_cut: float = 25.0
    forward_distance_cut: float = 50.0
    curler_curvature_cut: float = 0.0012
    circle_center_cut: float = 30.0
    radius_tolerance: float = 0.1
    rphi_resolution: float = 0.1
    z_resolution: float = 0.5
    r_cut: float = 0.0
    pickup_auxiliary_hits: bool = False
    aux_gate: float = 10.0

    def __post_init__(self) -> None:
        self.min_layer_fraction = tuple(float(v) for v in self.min_layer_fraction)
        self.min_layer_count = tuple(int(v) for v in self.min_layer_count)
        if len(self.min_layer_fraction) != len(MULTIPLICITIES) or len(self.min_layer_count) != len(MULTIPLICITIES):
            raise ValueError(
                f"min_layer_fraction/min_layer_count need {len(MULTIPLICITIES)} entries (k=2..5)"
            )
        if self.n_loop < 1:
            raise ValueError(f"n_loop must be >= 1, got {self.n_loop}")
        if self.min_cluster_size < 1:
            raise ValueError(f"min_cluster_size must be >= 1, got {self.min_cluster_size}")
        if self.pad_row_range < 1:
            raise ValueError(f"pad_row_range must be >= 1, got {self.pad_row_range}")
        if self.n_z_bins < 1:
            raise ValueError(f"n_z_bins must be >= 1, got {self.n_z_bins}")
        if self.distance_cut <= 0.0:
            raise ValueError(f"distance_cut must be positive, got {self.distance_cut}")

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "ClupatraConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(mapping) - known
        if unknown:
            raise ValueError(f"Unknown clupatra option(s): {', '.join(sorted(unknown))}")
        return cls(**dict(mapping))

    def to_dict(self) -> dict:
        return asdict(self)

    def pass_cut(self, pass_index: int) -> float:
        r"""Distance cut of pass ``pass_index`` (1-based): :math:`d_\text{cut}\,p/N`."""
        return self.distance_cut * float(pass_index) / float(self.n_loop)

    def multiplicity_thresholds(self, k: int) -> Tuple[float, int]:
        """``(min_layer_fraction, min_layer_count)`` for multiplicity ``k``."""
        i = MULTIPLICITIES.index(k)
        return self.min_layer_fraction[i], self.min_layer_count[i]


def load_config(config_path: Path) -> MutableMapping[str, dict]:
    r"""
    Load a JSON configuration with optional :mod:`orjson` acceleration.

    Parameters
    ----------
    config_path : pathlib.Path
        Path to the JSON file.

    Returns
    -------
    dict
        Parsed configuration.

    Raises
    ------
    ValueError
        If the file cannot be read or parsed.
    """
    try:
        if _orjson is not None:
            return _orjson.loads(Path(config_path).read_bytes())
        with Path(config_path).open("r", encoding="utf-8") as f:
            return json.load(f)
    except Exception as e:
        raise ValueError(f"Failed to parse {config_path}: {e}") from e


def load_settings(config_path: Optional[Path]) -> Tuple[TPCGeometry, ClupatraConfig]:
    """
    Geometry and algorithm settings from a JSON file with ``"geometry"`` and
    ``"clupatra"`` sections. Missing sections (or ``config_path=None``) fall
    back to the defaults.
    """
    if config_path is None:
        return TPCGeometry(), ClupatraConfig()
    raw = load_config(Path(config_path))
    if not isinstance(raw, Mapping):
        raise ValueError(f"Top-level JSON object expected in {config_path}")
    geometry = TPCGeometry.from_mapping(raw.get("geometry", {}))
    config = ClupatraConfig.from_mapping(raw.get("clupatra", {}))
    return geometry, config
