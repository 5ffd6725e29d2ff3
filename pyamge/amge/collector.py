"""Local basis collection: per-row eigenvector and column tables.

Each kept eigenvector of each local agglomerate becomes one *local row*
(one coarse DoF). The row stores the eigenvector coefficients, one per slot,
and the DoF-index map giving the global fine column of every slot, which is
the agglomerate's DoF list. Rows are ordered by agglomerate, then by
eigenvalue, so the rows of one agglomerate form a contiguous block.

A fine DoF on the interface of several agglomerates therefore appears in the
rows of each of them; rows are never merged across agglomerates. Sharing is
resolved by the partition-of-unity weights (`weights.py`).
"""

from __future__ import annotations

from typing import Sequence

import numpy as np

from .errors import InvariantViolationError
from .types import EigenResult, LocalBasis


def collect_local_basis(
    agglomerates: Sequence,
    results: Sequence[EigenResult],
    diagonals: Sequence[np.ndarray] | None = None,
) -> LocalBasis:
    """Build the local row tables from per-agglomerate eigenpairs.

    Parameters
    ----------
    agglomerates
        Local agglomerates (objects with `index` and `dofs`), in build order.
    results
        Eigensolver output aligned with `agglomerates`.
    diagonals
        Optional local operator diagonals aligned with `agglomerates`, each of
        length `agg.dofs.size`; copied onto every row of the agglomerate for
        the "diagonal" weighting scheme.

    Returns
    -------
    basis
        `LocalBasis` with one row per (agglomerate, eigenvector).

    Raises
    ------
    InvariantViolationError
        If an agglomerate lists a DoF twice, or if eigenvector/diagonal lengths
        do not match its DoF count.
    """
    if len(results) != len(agglomerates):
        raise InvariantViolationError(
            f"{len(results)} eigen results for {len(agglomerates)} agglomerates"
        )
    if diagonals is not None and len(diagonals) != len(agglomerates):
        raise InvariantViolationError(
            f"{len(diagonals)} diagonals for {len(agglomerates)} agglomerates"
        )

    eigenvectors: list[np.ndarray] = []
    dof_maps: list[np.ndarray] = []
    row_diagonals: list[np.ndarray] = []
    row_agglomerate: list[int] = []
    n_eigenvectors = np.zeros(len(agglomerates), dtype=np.int64)

    for pos, (agg, res) in enumerate(zip(agglomerates, results)):
        dofs = np.asarray(agg.dofs, dtype=np.int64)
        if np.unique(dofs).size != dofs.size:
            raise InvariantViolationError(f"agglomerate {agg.index} lists a DoF more than once")

        V = np.asarray(res.eigenvectors)
        if V.shape != (dofs.size, res.count):
            raise InvariantViolationError(
                f"agglomerate {agg.index}: eigenvectors of shape {V.shape}, "
                f"expected ({dofs.size}, {res.count})"
            )
        if diagonals is not None:
            d = np.asarray(diagonals[pos], dtype=float)
            if d.shape != (dofs.size,):
                raise InvariantViolationError(
                    f"agglomerate {agg.index}: diagonal of shape {d.shape}, expected ({dofs.size},)"
                )

        n_eigenvectors[pos] = res.count
        for m in range(res.count):
            eigenvectors.append(np.array(V[:, m]))
            dof_maps.append(dofs)
            row_agglomerate.append(int(agg.index))
            if diagonals is not None:
                row_diagonals.append(d)

    return LocalBasis(
        eigenvectors=eigenvectors,
        dof_maps=dof_maps,
        n_eigenvectors=n_eigenvectors,
        row_agglomerate=np.asarray(row_agglomerate, dtype=np.int64),
        diagonals=row_diagonals if diagonals is not None else None,
    )
