"""Partition-of-unity weights for DoFs shared by overlapping agglomerates.

For every (row, slot) pair with fine column c = dof_maps[row][slot]:

    multiplicity : weight = 1 / #{(row', slot') : dof_maps[row'][slot'] == c}
    diagonal     : weight = d[row][slot] / sum of d over the same pairs

where the count (or sum) runs over every rank. In both schemes the weights
referencing one column sum to one, so summing the weighted contributions of
all agglomerate eigenvectors at a shared DoF recovers the unweighted value
exactly once.

The global totals are computed with `reduce_by_owner`: local totals are sent
to the rank owning the column, summed, and returned to every rank referencing
it. A non-positive total cannot happen for well-formed input (a column only
appears if some row references it) and is reported as an invariant violation.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np

from .distributed import DistributedContext, Layout, reduce_by_owner
from .errors import ConfigurationError, InvariantViolationError, LayoutMismatchError
from .types import WEIGHTING_SCHEMES


def _flatten(arrays: Sequence[np.ndarray], dtype) -> np.ndarray:
    """Concatenate per-row arrays (empty-safe)."""
    if len(arrays) == 0:
        return np.zeros(0, dtype=dtype)
    return np.concatenate([np.asarray(a, dtype=dtype).ravel() for a in arrays])


def _split(flat: np.ndarray, lengths: Sequence[int]) -> list[np.ndarray]:
    """Inverse of `_flatten`."""
    if len(lengths) == 0:
        return []
    return np.split(flat, np.cumsum(lengths)[:-1])


def compute_weights(
    ctx: DistributedContext,
    dof_maps: Sequence[np.ndarray],
    col_layout: Layout,
    *,
    diagonals: Sequence[np.ndarray] | None = None,
    weighting: str = "multiplicity",
) -> list[np.ndarray]:
    """Collective: partition-of-unity weight of every (row, slot) pair.

    Parameters
    ----------
    ctx
        Distributed context.
    dof_maps
        Per-row global fine columns.
    col_layout
        Ownership layout of the fine DoFs.
    diagonals
        Per-row values aligned with `dof_maps`; required for "diagonal".
    weighting
        "multiplicity" or "diagonal".

    Returns
    -------
    weights
        Per-row float arrays aligned with `dof_maps`.
    """
    if weighting not in WEIGHTING_SCHEMES:
        raise ConfigurationError(f"weighting must be one of {WEIGHTING_SCHEMES}, got {weighting!r}")

    lengths = [len(m) for m in dof_maps]
    cols = _flatten(dof_maps, np.int64)
    if not np.all(col_layout.contains(cols)):
        raise LayoutMismatchError(f"DoF map references columns outside [0, {col_layout.n_global})")

    if weighting == "multiplicity":
        vals = np.ones(cols.size)
    else:
        if diagonals is None:
            raise ConfigurationError("weighting='diagonal' requires the local diagonals")
        if [len(d) for d in diagonals] != lengths:
            raise InvariantViolationError("diagonals are not aligned with the DoF maps")
        vals = _flatten(diagonals, float)
        if np.any(vals <= 0.0):
            raise InvariantViolationError("diagonal weighting needs positive local diagonals")

    totals = reduce_by_owner(ctx, col_layout, cols, vals)
    bad = totals <= 0.0
    if np.any(bad):
        raise InvariantViolationError(
            f"non-positive multiplicity for fine column(s) {np.unique(cols[bad])[:8].tolist()}"
        )
    return _split(vals / totals, lengths)


def partition_of_unity_error(
    ctx: DistributedContext,
    dof_maps: Sequence[np.ndarray],
    weights: Sequence[np.ndarray],
    col_layout: Layout,
) -> float:
    """Collective: max over referenced columns of |sum of weights - 1|."""
    cols = _flatten(dof_maps, np.int64)
    w = _flatten(weights, float)
    sums = reduce_by_owner(ctx, col_layout, cols, w)
    local = float(np.max(np.abs(sums - 1.0))) if sums.size else 0.0
    return max(ctx.allgather(local))
