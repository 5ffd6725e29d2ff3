"""Timing and diagnostic reporting for the restriction build.

This module provides:
  - A small per-build timing collector (`RestrictorStats`) with labeled timers.
  - Helpers to compute min/median/max summaries of per-agglomerate quantities
    over all ranks.
  - A compact, human-readable summary printer (rank 0 only).

Typical usage
-------------
Within the orchestrator:

    stats = RestrictorStats(rank=ctx.rank, n_fine=n)
    with stats.timeit("agglomerate"):
        ... build agglomerates ...
    with stats.timeit("eigs"):
        ... solve local eigenproblems ...
    _amge_finalize_stats(stats=stats, ctx=ctx, ...)
    _amge_print_summary(stats, print_info=print_info, is_root=ctx.is_root)

The caller decides which timer keys are used; this module simply stores them.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any
import time

import numpy as np


@dataclass(slots=True)
class RestrictorStats:
    """Setup timings and summary statistics of one restriction build.

    Attributes
    ----------
    rank
        Rank that recorded the timings.
    n_fine
        Global fine dimension.
    n_aggs
        Global number of agglomerates (filled in finalize).
    n_coarse
        Global coarse dimension (filled in finalize).
    timings
        Dict mapping timer keys to elapsed seconds on this rank.
    extra
        Dict for derived metrics and summary scalars (coarsening ratio, min/med/max, etc.).
    """

    rank: int
    n_fine: int
    n_aggs: int | None = None
    n_coarse: int | None = None
    timings: dict[str, float] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    @contextmanager
    def timeit(self, key: str):
        """Context manager that accumulates elapsed time under `timings[key]`."""
        t0 = time.perf_counter()
        try:
            yield
        finally:
            self.timings[key] = self.timings.get(key, 0.0) + (time.perf_counter() - t0)


def _store_mmx(extra: dict[str, Any], base: str, arr) -> None:
    """Store min/median/max of an array-like into `extra` under `<base>_{min,med,max}`."""
    a = np.asarray(arr, dtype=float)
    if a.size == 0:
        return
    extra[f"{base}_min"] = float(np.min(a))
    extra[f"{base}_med"] = float(np.median(a))
    extra[f"{base}_max"] = float(np.max(a))


def _amge_finalize_stats(
    *,
    stats: RestrictorStats,
    ctx,
    agg_sizes,
    n_eigenvectors,
    eigenvalues,
    n_coarse: int,
    pou_error: float | None = None,
) -> None:
    """Collective: populate derived statistics for a completed build.

    Parameters
    ----------
    stats
        The stats object of this build (mutated in-place).
    ctx
        Distributed context; per-agglomerate arrays are gathered over all ranks.
    agg_sizes
        DoF count of each local agglomerate.
    n_eigenvectors
        Eigenvectors kept on each local agglomerate.
    eigenvalues
        Kept eigenvalues on this rank (flat array-like).
    n_coarse
        Global coarse dimension.
    pou_error
        Optional partition-of-unity deviation to report.
    """
    parts = ctx.allgather(
        (
            np.asarray(agg_sizes, dtype=float),
            np.asarray(n_eigenvectors, dtype=float),
            np.asarray(eigenvalues, dtype=float).ravel(),
        )
    )
    sizes = np.concatenate([p[0] for p in parts])
    nev = np.concatenate([p[1] for p in parts])
    ev = np.concatenate([p[2] for p in parts])

    stats.n_aggs = int(sizes.size)
    stats.n_coarse = int(n_coarse)
    stats.extra["cr"] = float(stats.n_fine / n_coarse) if n_coarse > 0 else float("inf")
    stats.extra["ranks"] = int(ctx.size)

    _store_mmx(stats.extra, "agg", sizes)
    _store_mmx(stats.extra, "nev", nev)
    _store_mmx(stats.extra, "eig", ev)
    if nev.size:
        stats.extra["empty_aggs"] = int(np.count_nonzero(nev == 0))
    if pou_error is not None:
        stats.extra["pou_error"] = float(pou_error)


def _fmt(x) -> str:
    """Format a scalar for compact printing."""
    try:
        x = float(x)
    except (TypeError, ValueError):
        return str(x)
    ax = abs(x)
    if ax != 0.0 and (ax < 1e-2 or ax >= 1e4):
        return f"{x:.2e}"
    return f"{x:.3g}"


def _mmx(extra: dict[str, Any], base: str) -> str:
    """Return `min/med/max` string for `base` as stored in `extra`."""
    a = extra.get(f"{base}_min")
    b = extra.get(f"{base}_med")
    c = extra.get(f"{base}_max")
    if a is None or b is None or c is None:
        return "n/a"
    return f"{_fmt(a)}/{_fmt(b)}/{_fmt(c)}"


def _fmt_ms(t: float) -> str:
    """Format a duration in seconds as either milliseconds or seconds."""
    return f"{t*1e3:7.1f}ms" if t < 1.0 else f"{t:7.2f}s"


def _amge_print_summary(
    stats: RestrictorStats,
    *,
    print_info: bool,
    is_root: bool = True,
    prefix: str = "AMGe",
    indent: str = "",
) -> None:
    """Print a compact summary of setup diagnostics and timings.

    Parameters
    ----------
    stats
        Stats object that has already been finalized.
    print_info
        If False, does nothing.
    is_root
        Only the root rank prints.
    prefix
        Short label prefix.
    indent
        Optional indentation string (useful if caller nests printing).
    """
    if not print_info or not is_root:
        return

    n_c = stats.n_coarse if stats.n_coarse is not None else "?"
    cr = _fmt(stats.extra.get("cr", "n/a"))
    print(f"{indent}{prefix:<4}  n={stats.n_fine:<7d} -> {n_c:<7}  cr={cr}  ranks={stats.extra.get('ranks', '?')}")

    print(f"{indent}      agglomerates: {stats.n_aggs}  (empty: {stats.extra.get('empty_aggs', 0)})")
    print(f"{indent}        size  : {_mmx(stats.extra, 'agg')}")
    print(f"{indent}        nev   : {_mmx(stats.extra, 'nev')}")
    print(f"{indent}        eig   : {_mmx(stats.extra, 'eig')}")
    if "pou_error" in stats.extra:
        print(f"{indent}        PoU err: {_fmt(stats.extra['pou_error'])}")

    order = [
        "agglomerate",
        "local_ops",
        "eigs",
        "collect",
        "weights",
        "assemble",
    ]
    total = 0.0
    print(f"{indent}      timing (rank {stats.rank}):")
    for k in order:
        if k in stats.timings:
            v = stats.timings[k]
            total += v
            print(f"{indent}        {k:<13} {_fmt_ms(v)}")
    print(f"{indent}        {'total':<13} {_fmt_ms(total)}")
