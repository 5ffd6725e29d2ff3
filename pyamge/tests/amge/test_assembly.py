"""Tests for the restriction assembler and the local basis collector."""

from __future__ import annotations

import numpy as np
import pytest
from scipy.sparse import csr_array, identity

from pyamge.amge.agglomeration import Agglomerate
from pyamge.amge.assembly import assemble_restriction, assemble_restriction_from_basis
from pyamge.amge.collector import collect_local_basis
from pyamge.amge.distributed import DistributedContext, Layout
from pyamge.amge.errors import InvariantViolationError, LayoutMismatchError
from pyamge.amge.matrix import DistributedSparseMatrix
from pyamge.amge.types import EigenResult
from pyamge.amge.weights import compute_weights

from _threadcomm import run_on_ranks


def _identity_operator(ctx: DistributedContext, layout: Layout) -> DistributedSparseMatrix:
    start, stop = layout.range(ctx.rank)
    A = DistributedSparseMatrix(ctx, layout, layout)
    A.add(np.arange(start, stop), np.arange(start, stop), np.ones(stop - start))
    A.finalize()
    return A


def test_three_rows_on_identity() -> None:
    ctx = DistributedContext()
    A = identity(10, format="csr")
    maps = [np.array([0, 1, 2]), np.array([3, 4, 5]), np.array([6, 7, 8])]
    vecs = [np.array([1.0, 2.0, 3.0]), np.array([4.0, 5.0, 6.0]), np.array([7.0, 8.0, 9.0])]
    w = compute_weights(ctx, maps, Layout(np.array([0, 10])))
    R = assemble_restriction(ctx, vecs, w, maps, [1, 1, 1], A)

    assert R.shape == (3, 10)
    dense = R.gather().toarray()
    for i in range(3):
        for j in range(3):
            assert dense[i, maps[i][j]] == vecs[i][j]
    assert dense[:, 9].sum() == 0.0
    assert R.nnz == 9


def test_entries_are_weight_times_eigenvector() -> None:
    ctx = DistributedContext()
    A = identity(4, format="csr")
    maps = [np.array([0, 1, 2]), np.array([1, 2, 3])]
    vecs = [np.array([0.5, -1.0, 2.0]), np.array([3.0, 1.5, -0.5])]
    w = compute_weights(ctx, maps, Layout(np.array([0, 4])))
    R = assemble_restriction(ctx, vecs, w, maps, [1, 1], A)
    expected = np.array(
        [
            [0.5, -0.5, 1.0, 0.0],
            [0.0, 1.5, 0.75, -0.5],
        ]
    )
    np.testing.assert_allclose(R.gather().toarray(), expected)
    assert R.get(1, 2) == pytest.approx(0.75)


def test_random_owned_columns_across_ranks() -> None:
    # each rank restricts its owned fine DoFs with random eigenvector entries
    n_local_dofs, n_local_rows, row_width = 15, 6, 4

    def _run(ctx):
        fine = Layout.from_local_size(ctx, n_local_dofs)
        start, stop = fine.range(ctx.rank)
        rng = np.random.default_rng(100 + ctx.rank)
        maps = [np.sort(rng.choice(np.arange(start, stop), row_width, replace=False)) for _ in range(n_local_rows)]
        vecs = [rng.random(row_width) for _ in range(n_local_rows)]
        counts = np.zeros(fine.n_global)
        for m in maps:
            counts[m] += 1
        weights = [1.0 / counts[m] for m in maps]

        R = assemble_restriction(ctx, vecs, weights, maps, np.ones(n_local_rows, dtype=int), _identity_operator(ctx, fine))
        r0, r1 = R.local_range()
        ok = r1 - r0 == n_local_rows
        for i in range(n_local_rows):
            for j in range(row_width):
                ok &= R.get(r0 + i, int(maps[i][j])) == pytest.approx(weights[i][j] * vecs[i][j])
        return R.shape, ok

    out = run_on_ranks(3, _run)
    assert all(shape == (18, 45) for shape, _ in out)
    assert all(ok for _, ok in out)


def test_coarse_numbering_with_empty_rank() -> None:
    def _run(ctx):
        fine = Layout.uniform(6, ctx.size)
        n_rows = [2, 0, 1][ctx.rank]
        maps = [np.array([ctx.rank * 2, ctx.rank * 2 + 1])] * n_rows
        vecs = [np.array([1.0, 2.0])] * n_rows
        w = [np.ones(2)] * n_rows
        R = assemble_restriction(ctx, vecs, w, maps, [n_rows] if n_rows else [], _identity_operator(ctx, fine))
        return R.local_range(), R.gather().toarray()

    out = run_on_ranks(3, _run)
    assert [o[0] for o in out] == [(0, 2), (2, 2), (2, 3)]
    np.testing.assert_allclose(out[0][1][2], [0, 0, 0, 0, 1.0, 2.0])


def test_zero_rows() -> None:
    R = assemble_restriction(DistributedContext(), [], [], [], [], identity(5, format="csr"))
    assert R.shape == (0, 5)
    assert R.nnz == 0


def test_count_mismatch() -> None:
    ctx = DistributedContext()
    maps = [np.array([0, 1])]
    with pytest.raises(InvariantViolationError):
        assemble_restriction(ctx, [np.ones(2)], [np.ones(2)], maps, [2], identity(3, format="csr"))
    with pytest.raises(InvariantViolationError):
        assemble_restriction(ctx, [np.ones(2)], [np.ones(3)], maps, [1], identity(3, format="csr"))
    with pytest.raises(InvariantViolationError):
        assemble_restriction(ctx, [np.ones(2)], [], maps, [1], identity(3, format="csr"))


def test_repeated_column_in_row() -> None:
    with pytest.raises(InvariantViolationError):
        assemble_restriction(
            DistributedContext(), [np.ones(2)], [np.ones(2)], [np.array([1, 1])], [1], identity(3, format="csr")
        )


def test_layout_mismatch() -> None:
    ctx = DistributedContext()
    A = identity(3, format="csr")
    with pytest.raises(LayoutMismatchError):
        assemble_restriction(ctx, [np.ones(2)], [np.ones(2)], [np.array([1, 3])], [1], A)
    with pytest.raises(LayoutMismatchError):
        assemble_restriction(
            ctx, [np.ones(2)], [np.ones(2)], [np.array([0, 1])], [1], A, col_layout=Layout(np.array([0, 4]))
        )
    with pytest.raises(LayoutMismatchError):
        assemble_restriction(ctx, [], [], [], [], csr_array((3, 4)))


def _two_aggs():
    aggs = [
        Agglomerate(index=0, dofs=np.array([0, 1, 2])),
        Agglomerate(index=1, dofs=np.array([2, 3])),
    ]
    results = [
        EigenResult(np.array([0.0, 0.5]), np.array([[1.0, 0.1], [2.0, 0.2], [3.0, 0.3]]), requested=2),
        EigenResult(np.array([0.0]), np.array([[4.0], [5.0]]), requested=2),
    ]
    return aggs, results


def test_collector_rows_per_eigenvector() -> None:
    aggs, results = _two_aggs()
    basis = collect_local_basis(aggs, results)
    assert basis.n_rows == 3
    assert basis.n_eigenvectors.tolist() == [2, 1]
    assert basis.row_agglomerate.tolist() == [0, 0, 1]
    np.testing.assert_array_equal(basis.dof_maps[1], [0, 1, 2])
    np.testing.assert_allclose(basis.eigenvectors[1], [0.1, 0.2, 0.3])
    np.testing.assert_allclose(basis.eigenvectors[2], [4.0, 5.0])
    assert basis.diagonals is None


def test_collector_empty_agglomerate_contributes_no_rows() -> None:
    aggs, results = _two_aggs()
    results[1] = EigenResult(np.zeros(0), np.zeros((2, 0)), requested=2)
    basis = collect_local_basis(aggs, results, [np.ones(3), np.ones(2)])
    assert basis.n_rows == 2
    assert basis.n_eigenvectors.tolist() == [2, 0]
    assert len(basis.diagonals) == 2


def test_collector_rejects_bad_input() -> None:
    aggs, results = _two_aggs()
    with pytest.raises(InvariantViolationError):
        collect_local_basis(aggs, results[:1])
    with pytest.raises(InvariantViolationError):
        collect_local_basis([Agglomerate(0, np.array([1, 1, 2]))], results[:1])
    with pytest.raises(InvariantViolationError):
        collect_local_basis(aggs, results, [np.ones(3), np.ones(3)])
    results[1] = EigenResult(np.array([0.0]), np.ones((3, 1)), requested=1)
    with pytest.raises(InvariantViolationError):
        collect_local_basis(aggs, results)


def test_assemble_from_basis() -> None:
    ctx = DistributedContext()
    aggs, results = _two_aggs()
    basis = collect_local_basis(aggs, results)
    lay = Layout(np.array([0, 4]))
    w = compute_weights(ctx, basis.dof_maps, lay)
    R = assemble_restriction_from_basis(ctx, basis, w, identity(4, format="csr"))
    dense = R.gather().toarray()
    # column 2 is referenced by three rows
    np.testing.assert_allclose(dense[:, 2], [1.0, 0.1, 4.0 / 3.0])
    np.testing.assert_allclose(dense[:, 0], [0.5, 0.05, 0.0])
