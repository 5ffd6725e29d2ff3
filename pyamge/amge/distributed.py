"""Distributed context and ownership layouts.

Every component of the restriction build receives an explicit
`DistributedContext` instead of consulting a process-wide communicator. The
context wraps an mpi4py communicator and exposes the few collectives the
pipeline needs (`allgather`, `alltoall`, `barrier`). A context without a
communicator describes a single process and turns every collective into a
local no-op.

A `Layout` describes how a global index space (fine DoFs, coarse DoFs,
agglomerate ids) is split into contiguous per-rank ranges:

    rank r owns  offsets[r] <= index < offsets[r + 1]

`reduce_by_owner` is the owner-routed reduction used for partition-of-unity
multiplicities: values attached to global indices are shipped to the owning
rank, summed there, and the totals are shipped back to every rank that
referenced the index.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

import numpy as np

from .types import IndexArray


@dataclass(slots=True, frozen=True)
class DistributedContext:
    """Communicator handle plus rank identity.

    Attributes
    ----------
    comm
        An mpi4py communicator (or any object with the same lowercase
        `allgather`/`alltoall`/`barrier` methods), or None for a single process.
    rank, size
        Rank of this process and number of processes in `comm`.
    """

    comm: Any = None
    rank: int = 0
    size: int = 1

    @classmethod
    def from_comm(cls, comm: Any) -> "DistributedContext":
        """Wrap an mpi4py-style communicator."""
        if comm is None:
            return cls()
        return cls(comm=comm, rank=int(comm.Get_rank()), size=int(comm.Get_size()))

    @classmethod
    def world(cls) -> "DistributedContext":
        """Context over `MPI.COMM_WORLD` (requires mpi4py)."""
        from mpi4py import MPI

        return cls.from_comm(MPI.COMM_WORLD)

    @property
    def is_root(self) -> bool:
        """True on rank 0."""
        return self.rank == 0

    def allgather(self, obj: Any) -> list[Any]:
        """Gather one object from every rank, in rank order."""
        if self.comm is None:
            return [obj]
        return self.comm.allgather(obj)

    def alltoall(self, objs: Sequence[Any]) -> list[Any]:
        """Send `objs[r]` to rank r; return the objects received, in rank order."""
        if len(objs) != self.size:
            raise ValueError(f"alltoall expects {self.size} items, got {len(objs)}")
        if self.comm is None:
            return list(objs)
        return self.comm.alltoall(list(objs))

    def allreduce_sum(self, value: Any) -> Any:
        """Sum a scalar or array over all ranks."""
        parts = self.allgather(value)
        total = parts[0]
        for p in parts[1:]:
            total = total + p
        return total

    def barrier(self) -> None:
        """Block until every rank reaches this point."""
        if self.comm is not None:
            self.comm.barrier()


@dataclass(slots=True, frozen=True, eq=False)
class Layout:
    """Contiguous ownership ranges of a global index space.

    Attributes
    ----------
    offsets
        int64 array of shape (size + 1,), nondecreasing, offsets[0] == 0.
    """

    offsets: IndexArray

    def __post_init__(self) -> None:
        offsets = np.asarray(self.offsets, dtype=np.int64)
        if offsets.ndim != 1 or offsets.size < 2 or offsets[0] != 0 or np.any(np.diff(offsets) < 0):
            raise ValueError(f"Invalid layout offsets: {self.offsets!r}")
        object.__setattr__(self, "offsets", offsets)

    @classmethod
    def from_local_size(cls, ctx: DistributedContext, n_local: int) -> "Layout":
        """Collective: prefix-sum the local sizes of all ranks into a layout."""
        sizes = np.asarray(ctx.allgather(int(n_local)), dtype=np.int64)
        return cls(np.concatenate(([0], np.cumsum(sizes))))

    @classmethod
    def uniform(cls, n_global: int, size: int) -> "Layout":
        """Split `n_global` indices over `size` ranks as evenly as possible."""
        base, extra = divmod(int(n_global), int(size))
        sizes = np.full(size, base, dtype=np.int64)
        sizes[:extra] += 1
        return cls(np.concatenate(([0], np.cumsum(sizes))))

    @property
    def size(self) -> int:
        """Number of ranks."""
        return int(self.offsets.size - 1)

    @property
    def n_global(self) -> int:
        """Total number of indices."""
        return int(self.offsets[-1])

    def range(self, rank: int) -> tuple[int, int]:
        """Half-open range [start, stop) owned by `rank`."""
        return int(self.offsets[rank]), int(self.offsets[rank + 1])

    def n_local(self, rank: int) -> int:
        """Number of indices owned by `rank`."""
        start, stop = self.range(rank)
        return stop - start

    def owner(self, indices) -> IndexArray:
        """Owning rank of each global index."""
        idx = np.asarray(indices, dtype=np.int64)
        return np.searchsorted(self.offsets, idx, side="right").astype(np.int64) - 1

    def contains(self, indices) -> np.ndarray:
        """Boolean mask of indices inside [0, n_global)."""
        idx = np.asarray(indices, dtype=np.int64)
        return (idx >= 0) & (idx < self.n_global)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Layout):
            return NotImplemented
        return bool(np.array_equal(self.offsets, other.offsets))

    def __hash__(self) -> int:
        return hash(self.offsets.tobytes())

    def __repr__(self) -> str:
        return f"Layout(n_global={self.n_global}, offsets={self.offsets.tolist()})"


def reduce_by_owner(
    ctx: DistributedContext,
    layout: Layout,
    indices,
    values,
) -> np.ndarray:
    """Collective: global sum of `values` per index, returned for each input index.

    Parameters
    ----------
    ctx
        Distributed context.
    layout
        Ownership layout of the index space.
    indices
        int array of global indices referenced on this rank (repeats allowed).
    values
        float array of the same length; the contribution of each reference.

    Returns
    -------
    totals
        float array aligned with `indices`; `totals[k]` is the sum, over all
        ranks and all references, of the values attached to `indices[k]`.

    Notes
    -----
    Contributions are pre-summed locally, routed to the owner of each index,
    accumulated there and routed back, so each rank only exchanges the indices
    it touches.
    """
    indices = np.asarray(indices, dtype=np.int64)
    values = np.asarray(values, dtype=float)
    if indices.shape != values.shape:
        raise ValueError(f"indices and values differ in shape: {indices.shape} vs {values.shape}")

    uniq, inverse = np.unique(indices, return_inverse=True)
    local_sums = np.bincount(inverse, weights=values, minlength=uniq.size)

    owners = layout.owner(uniq)
    if uniq.size and (uniq[0] < 0 or uniq[-1] >= layout.n_global):
        raise ValueError(f"Indices outside [0, {layout.n_global}) cannot be reduced")
    bounds = np.searchsorted(owners, np.arange(ctx.size + 1))
    send = [
        (uniq[bounds[r] : bounds[r + 1]], local_sums[bounds[r] : bounds[r + 1]])
        for r in range(ctx.size)
    ]
    recv = ctx.alltoall(send)

    start, stop = layout.range(ctx.rank)
    owned_totals = np.zeros(stop - start, dtype=float)
    for idx, val in recv:
        np.add.at(owned_totals, idx - start, val)

    replies = ctx.alltoall([owned_totals[idx - start] for idx, _ in recv])

    totals_u = np.empty(uniq.size, dtype=float)
    for r in range(ctx.size):
        totals_u[bounds[r] : bounds[r + 1]] = replies[r]
    return totals_u[inverse]
