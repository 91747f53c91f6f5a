#!/usr/bin/env python3
r"""
Clupatra TPC pattern recognition runner (headless-safe).

Loads one or more events of TPC hits from CSV, runs
:class:`~clupatra.processor.ClupatraProcessor` on each, writes the track
assignment of every event and logs per-event diagnostics.

Input
-----
A CSV per event with columns ``x, y, z`` in mm and optionally ``hit_id``,
``layer`` and ``particle_id``. With ``particle_id`` present the purity and
efficiency diagnostics of :mod:`clupatra.metrics` are reported as well.

CLI overview
------------
See :func:`build_parser` for all options. Typical usage:

.. code-block:: bash

   clupatra -f events/ -n 10 --config config.json -o out/
   clupatra -f "events/event_*.csv" --plot -v
"""

from __future__ import annotations

import argparse
import logging
import os
import re
from glob import glob
from pathlib import Path
from typing import Dict, List

import numpy as np

from clupatra.config import load_settings
from clupatra.data import load_hits
from clupatra.metrics import event_summary
from clupatra.processor import ClupatraProcessor
from clupatra.profiling import prof


def build_parser() -> argparse.ArgumentParser:
    r"""
    Construct the command-line interface.

    Returns
    -------
    argparse.ArgumentParser
        Parser with options for the input events, configuration, output,
        plotting and profiling.
    """
    p = argparse.ArgumentParser(description="Run Clupatra TPC pattern recognition on hit CSV event(s).")
    p.add_argument(
        "-f", "--file", type=str, required=True,
        help="Event CSV, a directory containing *.csv, or a glob (e.g. 'data/event_*.csv').",
    )
    p.add_argument("-n", "--n-events", type=int, default=1,
                   help="Number of events to run (natural order of matches). Default: 1.")
    p.add_argument("--config", type=str, default=None,
                   help="JSON config with 'geometry' and 'clupatra' sections (default: built-in).")
    p.add_argument("-o", "--out-dir", type=str, default=None,
                   help="If set, write <event>_tracks.csv and <event>_summary.csv here.")
    p.add_argument("--plot", action="store_true", default=False,
                   help="Show the x-y and z-r views of the first event.")
    p.add_argument("--profile", action="store_true", default=False,
                   help="Enable cProfile around the reconstruction.")
    p.add_argument("--profile-out", type=str, default=None,
                   help="If set, write pstats text to this file.")
    p.add_argument("-v", "--verbose", action="store_true",
                   help="Enable verbose logging.")
    return p


def setup_logging(verbose: bool = False) -> None:
    r"""
    Configure process-wide logging (``DEBUG`` if ``verbose`` else ``INFO``).

    Format is ``'%(asctime)s | %(levelname)-8s | %(message)s'`` with
    ``%H:%M:%S`` timestamps.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(message)s",
        datefmt="%H:%M:%S",
    )


def apply_plotting_guard(enable_plots: bool) -> None:
    r"""
    Force the non-interactive ``Agg`` backend when plotting is disabled.

    Must run before :mod:`matplotlib.pyplot` is imported anywhere.
    """
    if enable_plots:
        return
    os.environ.setdefault("MPLBACKEND", "Agg")
    import matplotlib
    matplotlib.use("Agg", force=True)
    import matplotlib.pyplot as _plt
    _plt.ioff()
    _plt.show = lambda *a, **k: None  # type: ignore[assignment]


def _natural_key(path: Path):
    """Natural sort key so event_2 comes before event_10."""
    parts = re.split(r"(\d+)", path.name)
    return [int(p) if p.isdigit() else p.lower() for p in parts]


def _resolve_event_paths(file_arg: str, n_events: int) -> List[Path]:
    """
    Turn ``--file`` into at most ``n_events`` CSV paths.

    A glob pattern or a directory is expanded and naturally sorted; a single
    file with ``n_events > 1`` continues through its sibling CSVs.
    """
    n = max(1, int(n_events))
    p = Path(file_arg)

    if any(ch in file_arg for ch in "*?[]"):
        return sorted((Path(x) for x in glob(file_arg)), key=_natural_key)[:n]
    if p.is_dir():
        return sorted(p.glob("*.csv"), key=_natural_key)[:n]
    if p.is_file():
        sibs = sorted(p.parent.glob("*.csv"), key=_natural_key)
        if p in sibs:
            i = sibs.index(p)
            return sibs[i:i + n]
        return [p]
    return []


def main() -> None:
    r"""
    End-to-end runner: **config → load → reconstruct → write → report**.

    Raises
    ------
    FileNotFoundError
        If ``--file`` matches no event.
    """
    args = build_parser().parse_args()
    setup_logging(args.verbose)

    event_paths = _resolve_event_paths(args.file, args.n_events)
    if not event_paths:
        raise FileNotFoundError(f"No events found for --file={args.file}")
    if len(event_paths) > 1:
        logging.info("Running on %d events. First: %s", len(event_paths), event_paths[0].name)
    else:
        logging.info("Running on event: %s", event_paths[0].name)

    apply_plotting_guard(args.plot)

    cfg_path = Path(args.config) if args.config else None
    if cfg_path is not None:
        logging.info("Reading config from %s", cfg_path)
    geometry, config = load_settings(cfg_path)
    processor = ClupatraProcessor(geometry, config)

    out_dir = Path(args.out_dir) if args.out_dir else None
    if out_dir is not None:
        out_dir.mkdir(parents=True, exist_ok=True)

    summaries: List[Dict[str, float]] = []
    for idx, ev_path in enumerate(event_paths, start=1):
        logging.info("=== Event %d/%d: %s ===", idx, len(event_paths), ev_path.name)
        hits = load_hits(ev_path)

        with prof(args.profile, out_path=args.profile_out, logger=logging.getLogger(__name__)):
            result = processor.process_event(hits)

        summary = event_summary(result.tracks, result.store, config.duplicate_pad_row_fraction)
        summaries.append(summary)
        for k, v in summary.items():
            logging.info("  %s: %s", k, f"{v:.4g}")

        if out_dir is not None:
            stem = ev_path.stem
            result.tracks_frame().to_csv(out_dir / f"{stem}_tracks.csv", index=False)
            result.summary_frame().to_csv(out_dir / f"{stem}_summary.csv", index=False)
            logging.info("Wrote %s_tracks.csv and %s_summary.csv to %s", stem, stem, out_dir)

        if idx == 1 and args.plot:
            import clupatra.plotting as clu_plot
            clu_plot.plot_event_xy(result.store, result.tracks, geometry, title=ev_path.name)
            clu_plot.plot_event_rz(result.store, result.tracks, title=ev_path.name)

    logging.info("Counters:")
    for k, v in processor.counters.items():
        logging.info("  %s: %d", k, v)

    if len(summaries) > 1:
        logging.info("=== Aggregate over %d events ===", len(summaries))
        logging.info("Mean tracks/event: %.2f", float(np.mean([s["n_tracks"] for s in summaries])))
        logging.info("Mean hits used: %.1f%%", 100.0 * float(np.mean([s["hits_used_fraction"] for s in summaries])))
        eff = [s["efficiency"] for s in summaries if "efficiency" in s]
        if eff:
            logging.info("Mean efficiency: %.1f%%", 100.0 * float(np.mean(eff)))


if __name__ == "__main__":
    main()
