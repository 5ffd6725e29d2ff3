"""Assembly of the distributed restriction operator.

Given, for every local row i (one kept eigenvector of one agglomerate),

    eigenvectors[i][j]   coefficient of slot j
    weights[i][j]        partition-of-unity weight of slot j
    dof_maps[i][j]       global fine column of slot j

the restriction matrix R has one row per local row, numbered

    coarse_row(i) = (rows owned by lower ranks) + i

and entries

    R[coarse_row(i), dof_maps[i][j]] = weights[i][j] * eigenvectors[i][j].

Local rows are ordered by agglomerate, so `n_local_eigenvectors` (rows per
agglomerate) partitions them into contiguous per-agglomerate blocks; the
numbering is gap-free and deterministic for a fixed rank count.

Entries are *set*, not accumulated: every coarse row is written by exactly one
agglomerate, even though many agglomerates reference the same fine column.
The column layout is that of the fine operator; it is validated before any
write and the matrix is finalized with a single collective step.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np
from scipy.sparse import issparse

from .distributed import DistributedContext, Layout
from .errors import InvariantViolationError, LayoutMismatchError
from .matrix import DistributedSparseMatrix
from .types import LocalBasis


def _fine_layout(ctx: DistributedContext, fine_operator) -> Layout:
    """Column layout dictated by the fine operator."""
    if isinstance(fine_operator, DistributedSparseMatrix):
        if fine_operator.ctx.size != ctx.size:
            raise LayoutMismatchError(
                f"fine operator lives on {fine_operator.ctx.size} ranks, context has {ctx.size}"
            )
        if fine_operator.row_layout != fine_operator.col_layout:
            raise LayoutMismatchError("fine operator row and column layouts differ")
        return fine_operator.col_layout
    if issparse(fine_operator):
        if ctx.size != 1:
            raise LayoutMismatchError(
                "a scipy matrix carries no distribution; pass a DistributedSparseMatrix"
            )
        n, m = fine_operator.shape
        if n != m:
            raise LayoutMismatchError(f"fine operator must be square, got shape {fine_operator.shape}")
        return Layout(np.array([0, n]))
    raise TypeError(f"Unsupported fine operator type {type(fine_operator).__name__}")


def assemble_restriction(
    ctx: DistributedContext,
    eigenvectors: Sequence[np.ndarray],
    weights: Sequence[np.ndarray],
    dof_maps: Sequence[np.ndarray],
    n_local_eigenvectors: Sequence[int],
    fine_operator,
    *,
    col_layout: Layout | None = None,
) -> DistributedSparseMatrix:
    """Collective: assemble and finalize the restriction matrix.

    Parameters
    ----------
    ctx
        Distributed context.
    eigenvectors, weights, dof_maps
        Per-local-row coefficient, weight and column arrays (equal lengths per row).
    n_local_eigenvectors
        Rows contributed by each local agglomerate; must sum to the row count.
    fine_operator
        `DistributedSparseMatrix` (or, on one process, a scipy sparse matrix)
        whose layout the restriction columns must follow.
    col_layout
        Optional explicit column layout; must equal the fine operator's.

    Returns
    -------
    R
        Finalized `DistributedSparseMatrix` of shape (n_coarse, n_fine).

    Raises
    ------
    InvariantViolationError
        Mismatched per-row inputs, counts that leave gaps or collisions in the
        coarse numbering, or a repeated column within one row.
    LayoutMismatchError
        Column layout incompatible with the fine operator.
    """
    fine_layout = _fine_layout(ctx, fine_operator)
    if col_layout is not None and col_layout != fine_layout:
        raise LayoutMismatchError(f"column layout {col_layout!r} differs from fine layout {fine_layout!r}")

    n_rows = len(eigenvectors)
    if len(weights) != n_rows or len(dof_maps) != n_rows:
        raise InvariantViolationError(
            f"{n_rows} eigenvector rows, {len(weights)} weight rows, {len(dof_maps)} DoF maps"
        )
    counts = np.asarray(n_local_eigenvectors, dtype=np.int64)
    if np.any(counts < 0) or int(counts.sum()) != n_rows:
        raise InvariantViolationError(
            f"eigenvector counts sum to {int(counts.sum())} but there are {n_rows} local rows"
        )

    p_c: list[np.ndarray] = []
    p_v: list[np.ndarray] = []
    p_n: list[int] = []
    for i, (v, w, m) in enumerate(zip(eigenvectors, weights, dof_maps)):
        v = np.asarray(v)
        w = np.asarray(w, dtype=float)
        m = np.asarray(m, dtype=np.int64)
        if not (v.ndim == 1 and v.shape == w.shape == m.shape):
            raise InvariantViolationError(
                f"row {i}: shapes {v.shape}, {w.shape}, {m.shape} do not match"
            )
        if np.unique(m).size != m.size:
            raise InvariantViolationError(f"row {i}: DoF map repeats a column")
        p_c.append(m)
        p_v.append(w * v)
        p_n.append(m.size)

    cols = np.concatenate(p_c) if p_c else np.zeros(0, dtype=np.int64)
    vals = np.concatenate(p_v) if p_v else np.zeros(0)
    if not np.all(fine_layout.contains(cols)):
        raise LayoutMismatchError(f"DoF map references columns outside [0, {fine_layout.n_global})")

    row_layout = Layout.from_local_size(ctx, n_rows)
    start, _ = row_layout.range(ctx.rank)
    rows = np.repeat(np.arange(start, start + n_rows, dtype=np.int64), p_n)

    R = DistributedSparseMatrix(ctx, row_layout, fine_layout, dtype=vals.dtype)
    R.set(rows, cols, vals)
    R.finalize()
    return R


def assemble_restriction_from_basis(
    ctx: DistributedContext,
    basis: LocalBasis,
    weights: Sequence[np.ndarray],
    fine_operator,
) -> DistributedSparseMatrix:
    """Collective: `assemble_restriction` fed from a `LocalBasis`."""
    return assemble_restriction(
        ctx,
        basis.eigenvectors,
        weights,
        basis.dof_maps,
        basis.n_eigenvectors,
        fine_operator,
    )
