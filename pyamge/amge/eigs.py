"""Local eigensolvers for agglomerate eigenproblems.

For each agglomerate the orchestrator hands an eigensolver the local operator
A_i (and an optional mass term M_i) and asks for the `count` smallest
eigenpairs of

    A_i v = lambda M_i v        (M_i = I when no mass term is given)

keeping only those with lambda <= tolerance. The result may hold fewer vectors
than requested; that count is propagated into the coarse-space sizing instead
of padding with zero vectors.

Conventions
-----------
- Eigenvalues are returned in nondecreasing order.
- Eigenvectors are normalized (2-norm, or M-norm for generalized problems)
  and their sign is fixed so that the entry of largest magnitude is positive,
  which makes repeated builds produce identical matrices.
- Failures raise `EigensolverError`; the orchestrator attaches the
  agglomerate id.
"""

from __future__ import annotations

from typing import Any

import numpy as np
from scipy.linalg import LinAlgError, eigh
from scipy.sparse import csc_array, issparse
from scipy.sparse.linalg import ArpackError, ArpackNoConvergence, eigsh

from .errors import EigensolverError
from .types import EigenResult


def _normalize_signs(V: np.ndarray) -> np.ndarray:
    """Flip columns so that their largest-magnitude entry is positive."""
    if V.size == 0:
        return V
    idx = np.argmax(np.abs(V), axis=0)
    signs = np.sign(V[idx, np.arange(V.shape[1])])
    signs[signs == 0] = 1.0
    return V * signs


def _select(E: np.ndarray, V: np.ndarray, tolerance: float, requested: int) -> EigenResult:
    """Keep the eigenpairs with eigenvalue <= tolerance."""
    order = np.argsort(E, kind="stable")
    E, V = E[order], V[:, order]
    keep = E <= tolerance
    return EigenResult(eigenvalues=E[keep], eigenvectors=_normalize_signs(V[:, keep]), requested=requested)


def _empty(n: int, requested: int) -> EigenResult:
    """Result with no eigenpairs."""
    return EigenResult(eigenvalues=np.zeros(0), eigenvectors=np.zeros((n, 0)), requested=requested)


class DenseEigensolver:
    """Dense symmetric eigensolver (`scipy.linalg.eigh`).

    Only the `count` smallest eigenpairs are computed (`subset_by_index`).
    """

    def solve(self, A: Any, M: Any, count: int, tolerance: float) -> EigenResult:
        """Smallest eigenpairs of the local problem, at most `count`."""
        aa = A.toarray() if issparse(A) else np.asarray(A, dtype=float)
        bb = None if M is None else (M.toarray() if issparse(M) else np.asarray(M, dtype=float))
        n = aa.shape[0]
        if aa.shape != (n, n):
            raise EigensolverError(f"local operator must be square, got shape {aa.shape}")
        k = min(int(count), n)
        if k <= 0:
            return _empty(n, count)

        try:
            E, V = eigh(aa, bb, subset_by_index=[0, k - 1])
        except (LinAlgError, ValueError) as e:
            raise EigensolverError(f"dense eigensolve failed: {e}") from e
        return _select(E, V, tolerance, count)


class ArpackEigensolver:
    """Sparse shift-invert Lanczos eigensolver (`scipy.sparse.linalg.eigsh`).

    Parameters
    ----------
    shift
        Relative shift; the solver inverts A - sigma M with
        sigma = -shift * max|diag(A)|, which is nonsingular for the
        semidefinite operators of Neumann agglomerate problems.
    tol
        ARPACK convergence tolerance (0 means machine precision).
    maxiter
        Maximum number of Arnoldi update iterations.
    dense_below
        Problems with fewer DoFs than this (or with count >= n - 1, which
        ARPACK cannot handle) are delegated to `DenseEigensolver`.
    """

    def __init__(self, shift: float = 1e-8, tol: float = 0.0, maxiter: int | None = None, dense_below: int = 32) -> None:
        self.shift = float(shift)
        self.tol = float(tol)
        self.maxiter = maxiter
        self.dense_below = int(dense_below)
        self._dense = DenseEigensolver()

    def solve(self, A: Any, M: Any, count: int, tolerance: float) -> EigenResult:
        """Smallest eigenpairs of the local problem, at most `count`."""
        n = A.shape[0]
        k = min(int(count), n)
        if k <= 0:
            return _empty(n, count)
        if n < self.dense_below or k >= n - 1:
            return self._dense.solve(A, M, count, tolerance)

        A = csc_array(A)
        M = None if M is None else csc_array(M)
        diag_max = float(np.max(np.abs(A.diagonal()))) if n else 0.0
        sigma = -self.shift * (diag_max if diag_max > 0.0 else 1.0)
        try:
            E, V = eigsh(A, k=k, M=M, sigma=sigma, which="LM", tol=self.tol, maxiter=self.maxiter)
        except ArpackNoConvergence as e:
            raise EigensolverError(
                f"ARPACK did not converge ({len(e.eigenvalues)} of {k} eigenpairs)"
            ) from e
        except (ArpackError, RuntimeError, LinAlgError) as e:
            raise EigensolverError(f"ARPACK failed: {e}") from e
        return _select(E, V, tolerance, count)
