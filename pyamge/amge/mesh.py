"""Structured tensor-product Q1 mesh distributed in slabs.

The mesh covers the box [lower, upper] with n_cells[d] uniform cells along
axis d (1 <= dim <= 3). DoFs are the mesh vertices (bilinear/trilinear Q1
elements), numbered lexicographically with axis 0 running fastest; cells use
the same convention.

Distribution
------------
Cells are split over ranks in slabs along the last axis: rank r owns the cell
layers of `Layout.uniform(n_cells[-1], size)`. Rank r owns the vertex layers
with the same indices, and the last rank also owns the closing vertex layer,
so both cell and DoF ownership ranges are contiguous. The locally relevant
DoFs of a rank are its owned DoFs plus the ghost vertices touched by its cells.
"""

from __future__ import annotations

from functools import reduce

import numpy as np

from .distributed import DistributedContext, Layout
from .types import IndexArray


def q1_element_matrices(h) -> tuple[np.ndarray, np.ndarray]:
    """Return the Q1 element stiffness and mass matrices of a box cell.

    Parameters
    ----------
    h
        Cell widths, one per axis.

    Returns
    -------
    K, M
        Dense arrays of shape (2**dim, 2**dim) in the local vertex ordering
        (axis 0 fastest).

    Notes
    -----
    Built from the 1D matrices k = [[1, -1], [-1, 1]] / h and
    m = h / 6 [[2, 1], [1, 2]] by Kronecker products, with the factor of the
    last axis outermost.
    """
    h = np.atleast_1d(np.asarray(h, dtype=float))
    k1 = [np.array([[1.0, -1.0], [-1.0, 1.0]]) / hd for hd in h]
    m1 = [hd / 6.0 * np.array([[2.0, 1.0], [1.0, 2.0]]) for hd in h]

    def _tensor(factors):
        return reduce(lambda acc, f: np.kron(f, acc), factors)

    dim = h.size
    K = sum(_tensor([k1[d] if d == a else m1[d] for d in range(dim)]) for a in range(dim))
    M = _tensor(m1)
    return K, M


class StructuredMesh:
    """Uniform box mesh of Q1 cells partitioned in slabs along the last axis.

    Parameters
    ----------
    ctx
        Distributed context.
    n_cells
        Number of cells per axis.
    lower, upper
        Box corners; default to the unit cube.
    """

    def __init__(self, ctx: DistributedContext, n_cells, lower=None, upper=None) -> None:
        n_cells = np.asarray(n_cells, dtype=np.int64).ravel()
        if not 1 <= n_cells.size <= 3 or np.any(n_cells < 1):
            raise ValueError(f"n_cells must hold 1 to 3 positive entries, got {n_cells.tolist()}")
        self.ctx = ctx
        self.dim = int(n_cells.size)
        self.n_cells = n_cells
        self.n_vertices = n_cells + 1

        lower = np.zeros(self.dim) if lower is None else np.asarray(lower, dtype=float)
        upper = np.ones(self.dim) if upper is None else np.asarray(upper, dtype=float)
        if lower.shape != (self.dim,) or upper.shape != (self.dim,) or np.any(upper <= lower):
            raise ValueError("lower/upper must be dim-vectors with upper > lower")
        self.lower = lower
        self.upper = upper
        self.h = (upper - lower) / n_cells

        layers = Layout.uniform(int(n_cells[-1]), ctx.size)
        self.cell_layers = layers.range(ctx.rank)

        plane_c = int(np.prod(n_cells[:-1]))
        plane_v = int(np.prod(self.n_vertices[:-1]))
        v_layers = layers.offsets.copy()
        v_layers[-1] += 1
        self.cell_layout = Layout(layers.offsets * plane_c)
        self.dof_layout = Layout(v_layers * plane_v)

        corners = np.arange(2**self.dim)
        self._corners = np.stack([(corners >> d) & 1 for d in range(self.dim)], axis=1)

    @property
    def n_dofs(self) -> int:
        """Global number of DoFs."""
        return self.dof_layout.n_global

    def locally_owned_cells(self) -> IndexArray:
        """Global ids of the cells owned by this rank."""
        start, stop = self.cell_layout.range(self.ctx.rank)
        return np.arange(start, stop, dtype=np.int64)

    def locally_owned_dofs(self) -> IndexArray:
        """Global ids of the DoFs owned by this rank."""
        start, stop = self.dof_layout.range(self.ctx.rank)
        return np.arange(start, stop, dtype=np.int64)

    def locally_relevant_dofs(self) -> IndexArray:
        """Owned DoFs plus ghost DoFs touched by owned cells, sorted."""
        touched = self.cell_dofs(self.locally_owned_cells()).ravel()
        return np.union1d(self.locally_owned_dofs(), touched)

    def cell_multi_index(self, cells) -> IndexArray:
        """Per-axis cell coordinates, shape (n, dim)."""
        cells = np.asarray(cells, dtype=np.int64)
        return np.stack(np.unravel_index(cells, tuple(self.n_cells), order="F"), axis=1).astype(np.int64)

    def cell_dofs(self, cells) -> IndexArray:
        """Global DoFs of each cell, shape (n, 2**dim), local vertex order axis 0 fastest."""
        mi = self.cell_multi_index(cells)
        verts = mi[:, None, :] + self._corners[None, :, :]
        return np.ravel_multi_index(
            tuple(verts[..., d] for d in range(self.dim)), tuple(self.n_vertices), order="F"
        ).astype(np.int64)

    def cells_in_box(self, lo, hi) -> IndexArray:
        """Global ids of the cells with lo[d] <= coordinate[d] < hi[d], axis 0 fastest."""
        axes = [np.arange(int(a), int(b), dtype=np.int64) for a, b in zip(lo, hi)]
        grids = np.meshgrid(*axes, indexing="ij")
        return np.ravel_multi_index(
            tuple(g.ravel(order="F") for g in grids), tuple(self.n_cells), order="F"
        ).astype(np.int64)

    def vertex_coordinates(self, dofs) -> np.ndarray:
        """Coordinates of the given DoFs, shape (n, dim)."""
        mi = np.stack(np.unravel_index(np.asarray(dofs, dtype=np.int64), tuple(self.n_vertices), order="F"), axis=1)
        return self.lower + mi * self.h

    def __repr__(self) -> str:
        return (
            f"<StructuredMesh {'x'.join(str(n) for n in self.n_cells)} cells, "
            f"{self.n_dofs} dofs, rank {self.ctx.rank}/{self.ctx.size}>"
        )
