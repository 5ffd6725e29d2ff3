"""Mesh/operator evaluators: the capability that produces fine and local operators.

An evaluator implements two operations:

    global_operator(mesh)              -> DistributedSparseMatrix
    local_operator(mesh, agglomerate)  -> (A_local, M_local | None)

The global operator fixes the fine DoF layout the restriction operator must
match. The local operator is the agglomerate's (possibly generalized)
eigenproblem, expressed over the agglomerate's DoFs in the order of
`agglomerate.dofs`. A `None` mass term means the standard problem.

Implementations
---------------
LaplaceEvaluator
    Q1 Laplace stiffness on a `StructuredMesh`. Agglomerate operators are
    assembled from the agglomerate's own cells only (natural Neumann
    conditions on the agglomerate boundary), so their kernel is the constant.
MatrixEvaluator
    Works from an assembled serial scipy matrix; agglomerate operators are
    principal submatrices with the couplings leaving the agglomerate lumped
    into the diagonal (algebraic Neumann approximation).
"""

from __future__ import annotations

from typing import Any, Optional, Protocol

import numpy as np
from scipy.sparse import coo_array, csr_array, diags_array, issparse

from .distributed import DistributedContext
from .errors import ConfigurationError
from .matrix import DistributedSparseMatrix
from .mesh import StructuredMesh, q1_element_matrices

MASS_TERMS = (None, "mass", "diagonal")


class MeshEvaluator(Protocol):
    """Structural type of the evaluator capability consumed by the orchestrator."""

    def global_operator(self, mesh: Any) -> DistributedSparseMatrix:
        """Fine-level operator consistent with the mesh's DoF layout."""
        ...

    def local_operator(self, mesh: Any, agglomerate: Any) -> tuple[Any, Optional[Any]]:
        """Operator and optional mass term of one agglomerate."""
        ...


def _mass_term(kind: str | None, A_loc: csr_array, M_loc: csr_array | None) -> csr_array | None:
    """Return the right-hand side matrix of the local eigenproblem."""
    if kind is None:
        return None
    if kind == "mass":
        return M_loc
    return diags_array(A_loc.diagonal()).tocsr()


class LaplaceEvaluator:
    """Q1 Laplace operator on a `StructuredMesh`.

    Parameters
    ----------
    mass_term
        None (standard eigenproblem), "mass" (Q1 mass matrix) or "diagonal"
        (diagonal of the local stiffness matrix).
    """

    def __init__(self, mass_term: str | None = None) -> None:
        if mass_term not in MASS_TERMS:
            raise ConfigurationError(f"mass_term must be one of {MASS_TERMS}, got {mass_term!r}")
        self.mass_term = mass_term

    def global_operator(self, mesh: StructuredMesh) -> DistributedSparseMatrix:
        """Collective: assemble the Q1 stiffness matrix from the owned cells."""
        K, _ = q1_element_matrices(mesh.h)
        dofs = mesh.cell_dofs(mesh.locally_owned_cells())
        n_cells, n_loc = dofs.shape

        rows = np.broadcast_to(dofs[:, :, None], (n_cells, n_loc, n_loc))
        cols = np.broadcast_to(dofs[:, None, :], (n_cells, n_loc, n_loc))
        vals = np.broadcast_to(K, (n_cells, n_loc, n_loc))

        A = DistributedSparseMatrix(mesh.ctx, mesh.dof_layout, mesh.dof_layout)
        A.add(rows, cols, vals)
        A.finalize()
        return A

    def local_operator(self, mesh: StructuredMesh, agglomerate) -> tuple[csr_array, csr_array | None]:
        """Assemble stiffness (and mass term) over the agglomerate's cells."""
        if agglomerate.cells is None:
            raise ConfigurationError("LaplaceEvaluator needs agglomerates made of mesh cells")
        K, M = q1_element_matrices(mesh.h)
        n = agglomerate.dofs.size
        loc = np.searchsorted(agglomerate.dofs, mesh.cell_dofs(agglomerate.cells))
        n_cells, n_loc = loc.shape

        rows = np.broadcast_to(loc[:, :, None], (n_cells, n_loc, n_loc)).ravel()
        cols = np.broadcast_to(loc[:, None, :], (n_cells, n_loc, n_loc)).ravel()
        A_loc = coo_array((np.tile(K.ravel(), n_cells), (rows, cols)), shape=(n, n)).tocsr()
        M_loc = None
        if self.mass_term == "mass":
            M_loc = coo_array((np.tile(M.ravel(), n_cells), (rows, cols)), shape=(n, n)).tocsr()
        return A_loc, _mass_term(self.mass_term, A_loc, M_loc)


class MatrixEvaluator:
    """Evaluator backed by an assembled serial operator.

    Parameters
    ----------
    A
        Square scipy sparse matrix, the whole fine operator.
    ctx
        Distributed context; must describe a single process.
    neumann
        If True, lump the couplings that leave an agglomerate into its diagonal.
    mass_term
        None or "diagonal".
    """

    def __init__(self, A, ctx: DistributedContext | None = None, *, neumann: bool = True, mass_term: str | None = None) -> None:
        ctx = DistributedContext() if ctx is None else ctx
        if ctx.size != 1:
            raise ConfigurationError("MatrixEvaluator holds a serial operator; use it on one process")
        if not issparse(A) or A.shape[0] != A.shape[1]:
            raise TypeError("A must be a square scipy sparse matrix")
        if mass_term not in (None, "diagonal"):
            raise ConfigurationError(f"mass_term must be None or 'diagonal', got {mass_term!r}")
        self.ctx = ctx
        self.A = csr_array(A)
        self.A.sum_duplicates()
        self.neumann = neumann
        self.mass_term = mass_term

    def global_operator(self, mesh: Any = None) -> DistributedSparseMatrix:
        """Wrap the stored operator; `mesh` is unused."""
        return DistributedSparseMatrix.from_scipy(self.ctx, self.A)

    def local_operator(self, mesh: Any, agglomerate) -> tuple[csr_array, csr_array | None]:
        """Principal submatrix on the agglomerate DoFs, optionally Neumann-corrected."""
        dofs = agglomerate.dofs
        rows = self.A[dofs]
        A_loc = csr_array(rows[:, dofs])
        if self.neumann:
            leaving = rows.sum(axis=1) - A_loc.sum(axis=1)
            A_loc = (A_loc + diags_array(np.asarray(leaving).ravel())).tocsr()
        return A_loc, _mass_term(self.mass_term, A_loc, None)
