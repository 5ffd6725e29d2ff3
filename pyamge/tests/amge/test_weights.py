"""Tests for partition-of-unity weights."""

from __future__ import annotations

import numpy as np
import pytest

from pyamge.amge.distributed import DistributedContext, Layout
from pyamge.amge.errors import ConfigurationError, InvariantViolationError, LayoutMismatchError
from pyamge.amge.weights import compute_weights, partition_of_unity_error

from _threadcomm import run_on_ranks


def _cyclic_windows(n: int, width: int) -> list[np.ndarray]:
    """Rows i = 0..n-1 covering columns i, i+1, ..., i+width-1 (mod n)."""
    return [np.sort((np.arange(width) + i) % n).astype(np.int64) for i in range(n)]


def test_single_row_gets_unit_weights() -> None:
    ctx = DistributedContext()
    w = compute_weights(ctx, [np.array([0, 2, 4])], Layout(np.array([0, 10])))
    np.testing.assert_allclose(w[0], 1.0)


def test_threefold_sharing_gives_one_third() -> None:
    ctx = DistributedContext()
    maps = _cyclic_windows(9, 3)
    w = compute_weights(ctx, maps, Layout(np.array([0, 9])))
    for wi in w:
        np.testing.assert_allclose(wi, 1.0 / 3.0)
    assert partition_of_unity_error(ctx, maps, w, Layout(np.array([0, 9]))) == pytest.approx(0.0, abs=1e-14)


def test_mixed_multiplicities_sum_to_one() -> None:
    ctx = DistributedContext()
    lay = Layout(np.array([0, 6]))
    maps = [np.array([0, 1, 2]), np.array([2, 3]), np.array([2, 3, 4, 5]), np.array([5])]
    w = compute_weights(ctx, maps, lay)
    np.testing.assert_allclose(w[0], [1.0, 1.0, 1.0 / 3.0])
    np.testing.assert_allclose(w[1], [1.0 / 3.0, 0.5])
    np.testing.assert_allclose(w[2], [1.0 / 3.0, 0.5, 1.0, 0.5])
    np.testing.assert_allclose(w[3], [0.5])
    assert partition_of_unity_error(ctx, maps, w, lay) == pytest.approx(0.0, abs=1e-14)


def test_rows_of_one_agglomerate_each_count() -> None:
    # two eigenvectors of the same agglomerate: every (row, slot) pair counts
    ctx = DistributedContext()
    maps = [np.array([0, 1]), np.array([0, 1])]
    w = compute_weights(ctx, maps, Layout(np.array([0, 2])))
    np.testing.assert_allclose(w[0], 0.5)
    np.testing.assert_allclose(w[1], 0.5)


def test_diagonal_weighting() -> None:
    ctx = DistributedContext()
    lay = Layout(np.array([0, 3]))
    maps = [np.array([0, 1]), np.array([1, 2])]
    diags = [np.array([2.0, 1.0]), np.array([3.0, 5.0])]
    w = compute_weights(ctx, maps, lay, diagonals=diags, weighting="diagonal")
    np.testing.assert_allclose(w[0], [1.0, 0.25])
    np.testing.assert_allclose(w[1], [0.75, 1.0])


def test_empty_input() -> None:
    assert compute_weights(DistributedContext(), [], Layout(np.array([0, 4]))) == []


def test_weights_across_ranks() -> None:
    lay = Layout.uniform(9, 3)
    maps = _cyclic_windows(9, 3)

    def _run(ctx):
        mine = maps[3 * ctx.rank : 3 * ctx.rank + 3]
        w = compute_weights(ctx, mine, lay)
        return w, partition_of_unity_error(ctx, mine, w, lay)

    for w, err in run_on_ranks(3, _run):
        for wi in w:
            np.testing.assert_allclose(wi, 1.0 / 3.0)
        assert err == pytest.approx(0.0, abs=1e-14)


def test_bad_weighting_scheme() -> None:
    with pytest.raises(ConfigurationError):
        compute_weights(DistributedContext(), [np.array([0])], Layout(np.array([0, 1])), weighting="mean")


def test_diagonal_weighting_needs_diagonals() -> None:
    ctx = DistributedContext()
    lay = Layout(np.array([0, 2]))
    with pytest.raises(ConfigurationError):
        compute_weights(ctx, [np.array([0, 1])], lay, weighting="diagonal")
    with pytest.raises(InvariantViolationError):
        compute_weights(ctx, [np.array([0, 1])], lay, diagonals=[np.array([1.0])], weighting="diagonal")
    with pytest.raises(InvariantViolationError):
        compute_weights(ctx, [np.array([0, 1])], lay, diagonals=[np.array([1.0, 0.0])], weighting="diagonal")


def test_column_outside_layout() -> None:
    with pytest.raises(LayoutMismatchError):
        compute_weights(DistributedContext(), [np.array([0, 7])], Layout(np.array([0, 5])))
