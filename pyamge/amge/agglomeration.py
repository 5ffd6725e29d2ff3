"""Agglomeration providers: grouping of fine cells/DoFs into agglomerates.

An agglomeration provider implements

    agglomerate(mesh, shape) -> list[Agglomerate]

returning the agglomerates owned by the calling rank, in a deterministic
order, with globally unique ids (prefix sum of the per-rank counts).

Providers
---------
StructuredAgglomerator
    Tiles the owned cells of a `StructuredMesh` with boxes of `shape` cells
    (shape[d] cells along axis d). Boxes are clipped at the rank's slab
    boundary, so agglomerates never straddle ranks; their DoFs may still
    include ghost DoFs owned by the neighbouring rank.
AggregationAgglomerator
    Algebraic agglomerates from an assembled serial operator: a PyAMG
    strength-of-connection graph is aggregated into nonoverlapping aggregates
    omega_i, unaggregated nodes are attached to neighbouring aggregates, and
    each agglomerate is the one-ring overlap OMEGA_i of omega_i in the
    operator graph. `shape` is unused.
"""

from __future__ import annotations

from dataclasses import dataclass
from itertools import product
from typing import Any, Optional

import numpy as np
from scipy.sparse import csr_array, csr_matrix, coo_array, hstack, issparse

from pyamg.strength import (
    classical_strength_of_connection,
    symmetric_strength_of_connection,
    evolution_strength_of_connection,
)
from pyamg.aggregation.aggregate import (
    standard_aggregation,
    naive_aggregation,
    lloyd_aggregation,
    pairwise_aggregation,
)

from .distributed import DistributedContext, Layout
from .errors import ConfigurationError
from .types import IndexArray


@dataclass(slots=True)
class Agglomerate:
    """One agglomerate owned by the calling rank.

    Attributes
    ----------
    index
        Global agglomerate id.
    dofs
        Sorted unique global DoFs of the agglomerate (int64).
    cells
        Global ids of its mesh cells, or None for algebraic agglomerates.
    """

    index: int
    dofs: IndexArray
    cells: Optional[IndexArray] = None

    @property
    def size(self) -> int:
        """Number of DoFs."""
        return int(self.dofs.size)


def _number_agglomerates(ctx: DistributedContext, aggs: list[Agglomerate]) -> list[Agglomerate]:
    """Collective: shift local agglomerate ids by the number owned on lower ranks."""
    start, _ = Layout.from_local_size(ctx, len(aggs)).range(ctx.rank)
    for k, agg in enumerate(aggs):
        agg.index = start + k
    return aggs


class StructuredAgglomerator:
    """Box agglomerates of a `StructuredMesh`."""

    def agglomerate(self, mesh, shape) -> list[Agglomerate]:
        """Collective: tile the owned cells with boxes of `shape` cells."""
        shape = tuple(int(s) for s in shape)
        if len(shape) != mesh.dim:
            raise ConfigurationError(
                f"agglomerate_shape has {len(shape)} entries for a {mesh.dim}D mesh"
            )
        if any(s < 1 for s in shape):
            raise ConfigurationError(f"agglomerate_shape entries must be >= 1, got {shape}")

        lo = [0] * mesh.dim
        hi = [int(n) for n in mesh.n_cells]
        lo[-1], hi[-1] = mesh.cell_layers

        starts = [range(lo[d], hi[d], shape[d]) for d in range(mesh.dim)]
        aggs: list[Agglomerate] = []
        # axis 0 fastest
        for corner in product(*reversed(starts)):
            corner = corner[::-1]
            box_hi = [min(c + s, h) for c, s, h in zip(corner, shape, hi)]
            cells = mesh.cells_in_box(corner, box_hi)
            dofs = np.unique(mesh.cell_dofs(cells))
            aggs.append(Agglomerate(index=len(aggs), dofs=dofs, cells=cells))

        return _number_agglomerates(mesh.ctx, aggs)


def _unpack_arg(v: Any) -> tuple[Any, dict[str, Any]]:
    """Normalize a PyAMG-style method spec into (name, kwargs)."""
    if isinstance(v, tuple):
        return v[0], dict(v[1])
    return v, {}


def _fill_unaggregated_by_neighbors(Adj, AggOp, *, make_singletons: bool = True):
    """Assign unaggregated nodes to the neighbouring aggregate with the largest vote.

    A node is unaggregated if its row in AggOp has no nonzeros. Votes are
    V = |Adj| @ AggOp (diagonal removed); any node without aggregated
    neighbours becomes a singleton aggregate when `make_singletons` is set.
    """
    n_fine, n_aggs = AggOp.shape

    W = csr_array(Adj, copy=True)
    W.setdiag(0)
    W.eliminate_zeros()
    W.data = np.abs(W.data)

    nnz_row = np.diff(AggOp.indptr)
    unassigned = np.flatnonzero(nnz_row == 0)
    if unassigned.size:
        V = csr_array(W @ AggOp)
        new_rows: list[int] = []
        new_cols: list[int] = []
        for i in unassigned:
            s, e = V.indptr[i], V.indptr[i + 1]
            if e <= s:
                continue
            new_rows.append(int(i))
            new_cols.append(int(V.indices[s + int(np.argmax(V.data[s:e]))]))
        if new_rows:
            add = coo_array(
                (np.ones(len(new_rows)), (np.asarray(new_rows), np.asarray(new_cols))),
                shape=AggOp.shape,
            )
            AggOp = csr_array(AggOp + add)

    still_unassigned = np.flatnonzero(np.diff(AggOp.indptr) == 0)
    if make_singletons and still_unassigned.size:
        k = int(still_unassigned.size)
        AggOp = csr_array(hstack([AggOp, csr_array((n_fine, k), dtype=AggOp.dtype)], format="csr"))
        add = coo_array(
            (np.ones(k, dtype=AggOp.dtype), (still_unassigned, np.arange(n_aggs, n_aggs + k))),
            shape=AggOp.shape,
        )
        AggOp = csr_array(AggOp + add)

    AggOp.eliminate_zeros()
    return AggOp


def _build_strength(A, strength_spec: Any):
    """Strength-of-connection matrix C from a PyAMG-style spec."""
    name, kwargs = _unpack_arg(strength_spec)
    # pyamg kernels expect spmatrix input
    A = csr_matrix(A)
    if name == "symmetric":
        C = symmetric_strength_of_connection(A, **kwargs)
    elif name == "classical":
        C = classical_strength_of_connection(A, **kwargs)
    elif name in ("ode", "evolution"):
        C = evolution_strength_of_connection(A, **kwargs)
    elif name == "predefined":
        C = kwargs["C"]
    elif name is None:
        C = abs(A)
    else:
        raise ConfigurationError(f"Unrecognized strength-of-connection method: {name!r}")
    C = csr_array(C)
    C.eliminate_zeros()
    return C


def _build_aggop(A, C, aggregate_spec: Any, agg_levels: int):
    """Aggregation operator (n_fine x n_aggs) from a PyAMG-style spec.

    For agg_levels > 1 the strength graph is coarsened between passes via
    AggOp.T @ C @ AggOp and the passes are multiplied together.
    """
    name, kwargs = _unpack_arg(aggregate_spec)

    passes = []
    for _ in range(int(agg_levels)):
        C = csr_matrix(C)
        if name == "standard":
            AggOp, _ = standard_aggregation(C, **kwargs)
        elif name == "naive":
            AggOp, _ = naive_aggregation(C, **kwargs)
        elif name == "lloyd":
            AggOp, _ = lloyd_aggregation(C, **kwargs)
        elif name == "pairwise":
            AggOp = pairwise_aggregation(csr_matrix(A), **kwargs)[0]
        elif name == "predefined":
            AggOp = kwargs["AggOp"]
        else:
            raise ConfigurationError(f"Unrecognized aggregation method: {name!r}")

        AggOp = csr_array(AggOp)
        passes.append(AggOp)
        if len(passes) < agg_levels:
            C = csr_array(AggOp.T @ C @ AggOp)
            C.eliminate_zeros()

    AggOp = passes[0]
    for P in passes[1:]:
        AggOp = csr_array(AggOp @ P)

    return _fill_unaggregated_by_neighbors(A, AggOp, make_singletons=True)


class AggregationAgglomerator:
    """Algebraic agglomerates from PyAMG aggregation of a serial operator.

    Parameters
    ----------
    A
        Square scipy sparse operator (the whole fine operator).
    ctx
        Distributed context; must describe a single process.
    strength, aggregate
        PyAMG-style method specs, a name or a (name, kwargs) pair. Supported
        strengths: "symmetric", "classical", "evolution", "predefined", None.
        Supported aggregations: "standard", "naive", "lloyd", "pairwise",
        "predefined".
    agg_levels
        Number of aggregation passes.
    overlap
        If True, agglomerates are the one-ring overlaps OMEGA_i; otherwise the
        nonoverlapping aggregates omega_i.
    """

    def __init__(
        self,
        A,
        ctx: DistributedContext | None = None,
        *,
        strength: Any = "symmetric",
        aggregate: Any = "standard",
        agg_levels: int = 1,
        overlap: bool = True,
    ) -> None:
        ctx = DistributedContext() if ctx is None else ctx
        if ctx.size != 1:
            raise ConfigurationError("AggregationAgglomerator works on a serial operator")
        if not issparse(A) or A.shape[0] != A.shape[1]:
            raise TypeError("A must be a square scipy sparse matrix")
        if int(agg_levels) < 1:
            raise ConfigurationError(f"agg_levels must be >= 1, got {agg_levels}")
        self.ctx = ctx
        self.A = csr_array(A)
        self.A.sort_indices()
        self.strength = strength
        self.aggregate = aggregate
        self.agg_levels = int(agg_levels)
        self.overlap = overlap

    def agglomerate(self, mesh: Any = None, shape: Any = None) -> list[Agglomerate]:
        """Aggregate the operator graph; `mesh` and `shape` are unused."""
        A = self.A
        C = _build_strength(A, self.strength)
        AggOpT = csr_array(_build_aggop(A, C, self.aggregate, self.agg_levels).T)

        aggs: list[Agglomerate] = []
        for i in range(AggOpT.shape[0]):
            omega = np.asarray(AggOpT.indices[AggOpT.indptr[i] : AggOpT.indptr[i + 1]], dtype=np.int64)
            if omega.size == 0:
                continue
            if self.overlap:
                neigh = [A.indices[A.indptr[j] : A.indptr[j + 1]] for j in omega]
                dofs = np.union1d(omega, np.concatenate(neigh)).astype(np.int64)
            else:
                dofs = np.unique(omega)
            aggs.append(Agglomerate(index=len(aggs), dofs=dofs))
        return _number_agglomerates(self.ctx, aggs)
