from __future__ import annotations

import cProfile
import io
import logging
import pstats
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union

SortSpec = Union[str, pstats.SortKey]

_SORT_KEYS = {
    "tottime": pstats.SortKey.TIME,
    "cumtime": pstats.SortKey.CUMULATIVE,
    "calls": pstats.SortKey.CALLS,
    "ncalls": pstats.SortKey.CALLS,
    "name": pstats.SortKey.NAME,
    "file": pstats.SortKey.FILENAME,
}


def _resolve_sort_key(sort: SortSpec) -> pstats.SortKey:
    """Map a ``pstats`` alias (``"tottime"``, ``"cumtime"``, ...) to a :class:`pstats.SortKey`; unknown names fall back to total time."""
    if isinstance(sort, pstats.SortKey):
        return sort
    return _SORT_KEYS.get(str(sort).lower(), pstats.SortKey.TIME)


def _render(stats: pstats.Stats, buf: io.StringIO, elapsed: float, sort: SortSpec, limit: Optional[int]) -> str:
    stats.print_stats(*(() if limit is None else (limit,)))
    return f"[prof] elapsed={elapsed:.6f}s sort={sort} limit={limit}\n{buf.getvalue()}"


def _emit(text: str, out_path: Optional[str], logger: Optional[logging.Logger]) -> None:
    if out_path:
        Path(out_path).write_text(text, encoding="utf-8")
    elif logger is not None:
        logger.info(text)
    else:
        print(text, end="")


@contextmanager
def prof(
    enable: bool = False,
    *,
    sort: SortSpec = "tottime",
    limit: Optional[int] = 25,
    out_path: Optional[str] = None,
    dump_path: Optional[str] = None,
    logger: Optional[logging.Logger] = None,
) -> Iterator[Optional[cProfile.Profile]]:
    r"""
    Profile the body of a ``with`` block with :mod:`cProfile`.

    When ``enable`` is false nothing is measured and ``None`` is yielded, so
    call sites can wrap their hot path unconditionally. Otherwise the live
    profiler is yielded and, once the block exits (normally or by
    exception), a report is produced: a ``[prof] elapsed=...`` header with
    the block's wall time followed by the ``pstats`` table.

    Parameters
    ----------
    enable : bool
        Turn profiling on.
    sort : str or pstats.SortKey, optional
        Table ordering: ``"tottime"``, ``"cumtime"``, ``"calls"``, ``"name"``
        or ``"file"``.
    limit : int or None, optional
        Number of table rows; ``None`` keeps all of them.
    out_path : str, optional
        Write the report to this file. Takes precedence over ``logger``.
    dump_path : str, optional
        Additionally save the raw stats (loadable with ``pstats`` or snakeviz).
    logger : logging.Logger, optional
        Log the report at INFO level; without it the report is printed.

    Examples
    --------
    >>> with prof(args.profile, sort="cumtime", limit=10, logger=log):
    ...     processor.process_event(hits)
    """
    if not enable:
        yield None
        return

    profiler = cProfile.Profile()
    start = time.perf_counter()
    profiler.enable()
    try:
        yield profiler
    finally:
        profiler.disable()
        elapsed = time.perf_counter() - start
        buf = io.StringIO()
        stats = pstats.Stats(profiler, stream=buf).strip_dirs().sort_stats(_resolve_sort_key(sort))
        text = _render(stats, buf, elapsed, sort, limit)
        if dump_path:
            stats.dump_stats(dump_path)
        _emit(text, out_path, logger)
