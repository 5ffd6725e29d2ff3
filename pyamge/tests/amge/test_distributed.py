"""Tests for layouts, owner-routed reductions and the distributed sparse matrix."""

from __future__ import annotations

import numpy as np
import pytest
from scipy.sparse import csr_array

from pyamge.amge.distributed import DistributedContext, Layout, reduce_by_owner
from pyamge.amge.matrix import DistributedSparseMatrix

from _threadcomm import run_on_ranks


def test_layout_uniform_and_owner() -> None:
    lay = Layout.uniform(10, 3)
    assert lay.offsets.tolist() == [0, 4, 7, 10]
    assert lay.range(1) == (4, 7)
    assert lay.owner([0, 3, 4, 6, 7, 9]).tolist() == [0, 0, 1, 1, 2, 2]


def test_layout_owner_skips_empty_ranks() -> None:
    lay = Layout(np.array([0, 5, 5, 10]))
    assert lay.n_local(1) == 0
    assert lay.owner([4, 5, 9]).tolist() == [0, 2, 2]


def test_layout_equality_and_validation() -> None:
    assert Layout(np.array([0, 3, 6])) == Layout.uniform(6, 2)
    assert Layout(np.array([0, 3, 6])) != Layout(np.array([0, 2, 6]))
    with pytest.raises(ValueError):
        Layout(np.array([0, 4, 2]))
    with pytest.raises(ValueError):
        Layout(np.array([1, 4]))


def test_layout_from_local_size_prefix_sums() -> None:
    offsets = run_on_ranks(3, lambda ctx: Layout.from_local_size(ctx, [2, 0, 5][ctx.rank]).offsets.tolist())
    assert offsets == [[0, 2, 2, 7]] * 3


def test_reduce_by_owner_serial() -> None:
    ctx = DistributedContext()
    lay = Layout(np.array([0, 6]))
    totals = reduce_by_owner(ctx, lay, [1, 3, 1, 5], [1.0, 2.0, 3.0, 4.0])
    np.testing.assert_allclose(totals, [4.0, 2.0, 4.0, 4.0])


def test_reduce_by_owner_across_ranks() -> None:
    lay = Layout.uniform(9, 3)
    refs = {0: [0, 4, 8, 8], 1: [4, 5], 2: [0, 8]}

    def _run(ctx):
        idx = np.asarray(refs[ctx.rank])
        return reduce_by_owner(ctx, lay, idx, np.ones(idx.size))

    out = run_on_ranks(3, _run)
    np.testing.assert_allclose(out[0], [2, 2, 3, 3])
    np.testing.assert_allclose(out[1], [2, 1])
    np.testing.assert_allclose(out[2], [2, 3])


def test_reduce_by_owner_rejects_out_of_range() -> None:
    with pytest.raises(ValueError):
        reduce_by_owner(DistributedContext(), Layout(np.array([0, 3])), [3], [1.0])


def test_matrix_set_keeps_last_write() -> None:
    ctx = DistributedContext()
    lay = Layout(np.array([0, 3]))
    M = DistributedSparseMatrix(ctx, lay, lay)
    M.set([0, 1, 0], [2, 1, 2], [1.0, 5.0, 7.0])
    M.finalize()
    assert M.get(0, 2) == 7.0
    assert M.get(1, 1) == 5.0
    assert M.get(2, 0) == 0.0


def test_matrix_add_accumulates_and_lifecycle() -> None:
    ctx = DistributedContext()
    lay = Layout(np.array([0, 2]))
    M = DistributedSparseMatrix(ctx, lay, lay)
    M.add([0, 0], [1, 1], [1.5, 2.5])
    with pytest.raises(ValueError):
        M.set([0], [0], [1.0])
    with pytest.raises(RuntimeError):
        M.matvec(np.ones(2))
    M.finalize()
    assert M.get(0, 1) == 4.0
    with pytest.raises(RuntimeError):
        M.add([0], [0], [1.0])
    with pytest.raises(RuntimeError):
        M.finalize()


def test_matrix_rejects_out_of_range_entries() -> None:
    ctx = DistributedContext()
    M = DistributedSparseMatrix(ctx, Layout(np.array([0, 2])), Layout(np.array([0, 3])))
    with pytest.raises(IndexError):
        M.set([2], [0], [1.0])
    with pytest.raises(IndexError):
        M.set([0], [3], [1.0])


def test_from_scipy_serial_matches_scipy() -> None:
    rng = np.random.default_rng(3)
    A = csr_array(rng.random((7, 7)) * (rng.random((7, 7)) < 0.4))
    M = DistributedSparseMatrix.from_scipy(DistributedContext(), A)
    x = np.arange(7, dtype=float)
    np.testing.assert_allclose(M.matvec(x), A @ x)
    np.testing.assert_allclose(M.rmatvec(x), A.T @ x)
    np.testing.assert_allclose(M.gather().toarray(), A.toarray())
    assert M.nnz == A.nnz


def test_matvec_and_rmatvec_across_ranks() -> None:
    rng = np.random.default_rng(0)
    n_rows, n_cols = 8, 11
    A = csr_array(rng.random((n_rows, n_cols)) * (rng.random((n_rows, n_cols)) < 0.4))
    x = rng.random(n_cols)
    y = rng.random(n_rows)
    row_lay = Layout.uniform(n_rows, 3)
    col_lay = Layout.uniform(n_cols, 3)
    coo = A.tocoo()

    def _run(ctx):
        M = DistributedSparseMatrix(ctx, row_lay, col_lay)
        # every rank writes a third of all entries, most of them to rows owned elsewhere
        mine = np.arange(coo.nnz) % ctx.size == ctx.rank
        M.set(coo.row[mine], coo.col[mine], coo.data[mine])
        M.finalize()
        c0, c1 = col_lay.range(ctx.rank)
        r0, r1 = row_lay.range(ctx.rank)
        return M.matvec(x[c0:c1]), M.rmatvec(y[r0:r1]), M.gather().toarray()

    out = run_on_ranks(3, _run)
    np.testing.assert_allclose(np.concatenate([o[0] for o in out]), A @ x)
    np.testing.assert_allclose(np.concatenate([o[1] for o in out]), A.T @ y)
    for o in out:
        np.testing.assert_allclose(o[2], A.toarray())


def test_local_matrix_has_global_columns() -> None:
    lay = Layout(np.array([0, 4]))
    M = DistributedSparseMatrix(DistributedContext(), Layout(np.array([0, 2])), lay)
    M.set([0, 1], [3, 1], [2.0, -1.0])
    M.finalize()
    L = M.local_matrix()
    assert L.shape == (2, 4)
    np.testing.assert_allclose(L.toarray(), [[0, 0, 0, 2.0], [0, -1.0, 0, 0]])
    M.scale(3.0)
    assert M.get(0, 3) == 6.0
