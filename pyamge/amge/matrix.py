"""Row-distributed sparse matrix with insert/add assembly and a finalize step.

Each rank owns a contiguous block of rows (given by `row_layout`) and stores
it as a CSR block whose columns live in the global column space described by
`col_layout`. The lifecycle is write -> finalize -> use:

1) Writes
   `set(rows, cols, vals)` or `add(rows, cols, vals)` buffer triplets. Rows
   may belong to any rank; rows owned elsewhere are routed to their owner
   during `finalize`. One matrix uses a single write mode.

   - set : repeated writes to one entry keep the last value
   - add : repeated writes to one entry accumulate

2) Finalize (collective, exactly once)
   Exchanges off-rank triplets, builds the local CSR block, and sets up the
   ghost-exchange plan: the list of off-rank columns referenced by the local
   rows and, for every other rank, which of our owned column entries it needs.

3) Use
   `matvec(x)` multiplies with a vector partitioned like `col_layout` (ghost
   values are fetched with one `alltoall`); `rmatvec(y)` applies the transpose
   and routes contributions to non-owned columns back to their owners.

Storage
-------
The local block is kept with *compressed* columns: `_used` holds the sorted
global columns referenced by the local rows and the CSR `indices` point into
`_used`. Because layouts are contiguous, `_used` is grouped by owning rank,
which lets received ghost values be concatenated directly in `_used` order.
"""

from __future__ import annotations

from warnings import warn

import numpy as np
from scipy.sparse import csr_array, issparse, SparseEfficiencyWarning

from .distributed import DistributedContext, Layout
from .types import IndexArray


class DistributedSparseMatrix:
    """Sparse matrix distributed by contiguous row blocks.

    Parameters
    ----------
    ctx
        Distributed context shared by all ranks holding the matrix.
    row_layout, col_layout
        Ownership of the row and column index spaces. The column layout is the
        partition of the vectors `matvec` accepts.
    dtype
        Value type of the entries.
    """

    def __init__(
        self,
        ctx: DistributedContext,
        row_layout: Layout,
        col_layout: Layout,
        dtype=float,
    ) -> None:
        if row_layout.size != ctx.size or col_layout.size != ctx.size:
            raise ValueError(
                f"Layouts describe {row_layout.size}/{col_layout.size} ranks, context has {ctx.size}"
            )
        self.ctx = ctx
        self.row_layout = row_layout
        self.col_layout = col_layout
        self.dtype = np.dtype(dtype)

        self._mode: str | None = None
        self._buf_r: list[np.ndarray] = []
        self._buf_c: list[np.ndarray] = []
        self._buf_v: list[np.ndarray] = []

        self._finalized = False
        self._local: csr_array | None = None
        self._used: IndexArray | None = None
        self._used_bounds: np.ndarray | None = None
        self._send_idx: list[IndexArray] | None = None

    @classmethod
    def from_scipy(cls, ctx: DistributedContext, A, *, col_layout: Layout | None = None) -> "DistributedSparseMatrix":
        """Collective: wrap this rank's block of rows of a scipy sparse matrix.

        On a single process `A` is the whole matrix. On several ranks each rank
        passes its own contiguous row block; the row layout is the prefix sum of
        the block heights. The column layout defaults to the row layout (square
        operators).
        """
        if not issparse(A):
            raise TypeError(f"Expected a scipy sparse matrix, got {type(A).__name__}")
        if A.format != "coo":
            if A.format != "csr":
                warn("Implicit conversion of A to COO", SparseEfficiencyWarning)
            A = A.tocoo()

        row_layout = Layout.from_local_size(ctx, A.shape[0])
        if col_layout is None:
            col_layout = row_layout
        if A.shape[1] != col_layout.n_global:
            raise ValueError(
                f"Row block has {A.shape[1]} columns, column layout has {col_layout.n_global}"
            )

        M = cls(ctx, row_layout, col_layout, dtype=A.dtype)
        start, _ = row_layout.range(ctx.rank)
        M.add(np.asarray(A.row, dtype=np.int64) + start, A.col, A.data)
        M.finalize()
        return M

    @property
    def shape(self) -> tuple[int, int]:
        """Global shape (n_rows, n_cols)."""
        return self.row_layout.n_global, self.col_layout.n_global

    @property
    def finalized(self) -> bool:
        """True once `finalize` has run."""
        return self._finalized

    def local_range(self) -> tuple[int, int]:
        """Locally owned global row range [start, stop)."""
        return self.row_layout.range(self.ctx.rank)

    def local_domain_range(self) -> tuple[int, int]:
        """Locally owned global column range [start, stop)."""
        return self.col_layout.range(self.ctx.rank)

    # ---- writes ----

    def set(self, rows, cols, vals) -> None:
        """Buffer entries with overwrite semantics."""
        self._insert("set", rows, cols, vals)

    def add(self, rows, cols, vals) -> None:
        """Buffer entries with accumulate semantics."""
        self._insert("add", rows, cols, vals)

    def _insert(self, mode: str, rows, cols, vals) -> None:
        if self._finalized:
            raise RuntimeError("Cannot write to a finalized matrix")
        if self._mode is not None and self._mode != mode:
            raise ValueError(f"Matrix is being assembled with {self._mode!r}, got {mode!r}")
        self._mode = mode

        rows = np.asarray(rows, dtype=np.int64).ravel()
        cols = np.asarray(cols, dtype=np.int64).ravel()
        vals = np.asarray(vals, dtype=self.dtype).ravel()
        if not (rows.size == cols.size == vals.size):
            raise ValueError(f"rows/cols/vals sizes differ: {rows.size}, {cols.size}, {vals.size}")
        if not np.all(self.row_layout.contains(rows)):
            raise IndexError(f"Row index outside [0, {self.row_layout.n_global})")
        if not np.all(self.col_layout.contains(cols)):
            raise IndexError(f"Column index outside [0, {self.col_layout.n_global})")

        self._buf_r.append(rows)
        self._buf_c.append(cols)
        self._buf_v.append(vals)

    # ---- finalize ----

    def finalize(self) -> None:
        """Collective: communicate buffered writes and freeze the matrix."""
        if self._finalized:
            raise RuntimeError("Matrix is already finalized")
        ctx = self.ctx

        rows = np.concatenate(self._buf_r) if self._buf_r else np.zeros(0, dtype=np.int64)
        cols = np.concatenate(self._buf_c) if self._buf_c else np.zeros(0, dtype=np.int64)
        vals = np.concatenate(self._buf_v) if self._buf_v else np.zeros(0, dtype=self.dtype)
        self._buf_r, self._buf_c, self._buf_v = [], [], []

        # stable sort by owner keeps the write order within each destination
        owners = self.row_layout.owner(rows)
        order = np.argsort(owners, kind="stable")
        rows, cols, vals, owners = rows[order], cols[order], vals[order], owners[order]
        bounds = np.searchsorted(owners, np.arange(ctx.size + 1))
        recv = ctx.alltoall(
            [
                (rows[bounds[r] : bounds[r + 1]], cols[bounds[r] : bounds[r + 1]], vals[bounds[r] : bounds[r + 1]])
                for r in range(ctx.size)
            ]
        )
        rows = np.concatenate([t[0] for t in recv])
        cols = np.concatenate([t[1] for t in recv])
        vals = np.concatenate([t[2] for t in recv]).astype(self.dtype, copy=False)

        if self._mode == "set" and rows.size:
            # keep the last write to each (row, col)
            order = np.lexsort((cols, rows))
            rows, cols, vals = rows[order], cols[order], vals[order]
            last = np.ones(rows.size, dtype=bool)
            last[:-1] = (rows[1:] != rows[:-1]) | (cols[1:] != cols[:-1])
            rows, cols, vals = rows[last], cols[last], vals[last]

        start, stop = self.local_range()
        self._used = np.unique(cols)
        local_cols = np.searchsorted(self._used, cols)
        self._local = csr_array(
            (vals, (rows - start, local_cols)),
            shape=(stop - start, self._used.size),
            dtype=self.dtype,
        )
        self._local.sum_duplicates()
        self._local.sort_indices()

        # ghost-exchange plan
        used_owner = self.col_layout.owner(self._used)
        self._used_bounds = np.searchsorted(used_owner, np.arange(ctx.size + 1))
        requests = [self._used[self._used_bounds[r] : self._used_bounds[r + 1]] for r in range(ctx.size)]
        cstart, _ = self.local_domain_range()
        self._send_idx = [np.asarray(req, dtype=np.int64) - cstart for req in ctx.alltoall(requests)]

        self._finalized = True
        self._mode = None

    def _check_finalized(self) -> None:
        if not self._finalized:
            raise RuntimeError("Matrix must be finalized before use")

    # ---- use ----

    def matvec(self, x) -> np.ndarray:
        """Collective: y = A x for the locally owned part `x` of a distributed vector."""
        self._check_finalized()
        x = np.asarray(x)
        n_owned = self.col_layout.n_local(self.ctx.rank)
        if x.shape != (n_owned,):
            raise ValueError(f"Expected local vector of shape ({n_owned},), got {x.shape}")
        recv = self.ctx.alltoall([x[idx] for idx in self._send_idx])
        x_used = np.concatenate(recv) if recv else np.zeros(0, dtype=x.dtype)
        return self._local @ x_used

    def rmatvec(self, y) -> np.ndarray:
        """Collective: z = A^H y, returned as the locally owned part of z."""
        self._check_finalized()
        y = np.asarray(y)
        n_rows = self.row_layout.n_local(self.ctx.rank)
        if y.shape != (n_rows,):
            raise ValueError(f"Expected local vector of shape ({n_rows},), got {y.shape}")
        z_used = self._local.T.conjugate() @ y
        b = self._used_bounds
        recv = self.ctx.alltoall([z_used[b[r] : b[r + 1]] for r in range(self.ctx.size)])

        z = np.zeros(self.col_layout.n_local(self.ctx.rank), dtype=np.result_type(z_used, float))
        for idx, val in zip(self._send_idx, recv):
            np.add.at(z, idx, val)
        return z

    def get(self, row: int, col: int):
        """Entry (row, col) of a locally owned row; zero when not stored."""
        self._check_finalized()
        start, stop = self.local_range()
        if not start <= row < stop:
            raise IndexError(f"Row {row} is not owned by rank {self.ctx.rank} ([{start}, {stop}))")
        k = int(np.searchsorted(self._used, col))
        if k == self._used.size or self._used[k] != col:
            return self.dtype.type(0)
        L = self._local
        s, e = L.indptr[row - start], L.indptr[row - start + 1]
        pos = s + int(np.searchsorted(L.indices[s:e], k))
        if pos == e or L.indices[pos] != k:
            return self.dtype.type(0)
        return L.data[pos]

    def local_matrix(self) -> csr_array:
        """Local row block with global column indices, shape (n_local_rows, n_cols)."""
        self._check_finalized()
        L = self._local
        return csr_array(
            (L.data.copy(), self._used[L.indices], L.indptr.copy()),
            shape=(L.shape[0], self.col_layout.n_global),
        )

    def gather(self) -> csr_array:
        """Collective: assemble the whole matrix on every rank (for testing and diagnostics)."""
        L = self.local_matrix().tocoo()
        start, _ = self.local_range()
        parts = self.ctx.allgather((np.asarray(L.row, dtype=np.int64) + start, np.asarray(L.col, dtype=np.int64), L.data))
        rows = np.concatenate([p[0] for p in parts])
        cols = np.concatenate([p[1] for p in parts])
        vals = np.concatenate([p[2] for p in parts])
        return csr_array((vals, (rows, cols)), shape=self.shape)

    def scale(self, alpha) -> None:
        """Multiply every entry by `alpha` in place."""
        self._check_finalized()
        self._local.data *= alpha

    @property
    def nnz(self) -> int:
        """Collective: global number of stored entries."""
        self._check_finalized()
        return int(self.ctx.allreduce_sum(int(self._local.nnz)))

    def __repr__(self) -> str:
        n, m = self.shape
        state = "finalized" if self._finalized else "assembling"
        return f"<DistributedSparseMatrix {n}x{m} rank {self.ctx.rank}/{self.ctx.size} ({state})>"
