"""AMGe restriction operator setup.

`setup_restrictor` builds the restriction operator of one element-agglomeration
AMG coarsening step:

  1) obtain the fine operator (from the evaluator unless given),
  2) split the local mesh into agglomerates,
  3) solve one local eigenproblem per agglomerate,
  4) collect the per-row eigenvector/column tables,
  5) compute partition-of-unity weights,
  6) assemble and finalize the distributed restriction matrix.

The build either returns a fully finalized operator or raises one of the
errors of `pyamge.amge.errors`; no partial matrix is ever returned.
"""

from __future__ import annotations

from typing import Any, Mapping
from warnings import warn

import numpy as np
from scipy.sparse import issparse, SparseEfficiencyWarning

from .amge.agglomeration import StructuredAgglomerator
from .amge.assembly import assemble_restriction
from .amge.collector import collect_local_basis
from .amge.distributed import DistributedContext
from .amge.eigs import DenseEigensolver
from .amge.errors import ConfigurationError, EigensolverError, InvariantViolationError, LayoutMismatchError
from .amge.matrix import DistributedSparseMatrix
from .amge.stats import RestrictorStats, _amge_finalize_stats, _amge_print_summary
from .amge.types import RestrictorConfig, RestrictorInfo
from .amge.weights import compute_weights, partition_of_unity_error


def _as_config(config: Any) -> RestrictorConfig:
    """Accept a `RestrictorConfig` or a mapping of configuration keys."""
    if isinstance(config, RestrictorConfig):
        return config
    if isinstance(config, Mapping):
        return RestrictorConfig.from_dict(config)
    raise ConfigurationError(
        f"config must be a RestrictorConfig or a mapping, got {type(config).__name__}"
    )


def _as_fine_operator(global_operator: Any, mesh: Any) -> DistributedSparseMatrix:
    """Wrap a serial scipy operator; pass distributed ones through."""
    if isinstance(global_operator, DistributedSparseMatrix):
        if not global_operator.finalized:
            raise ValueError("The fine operator must be finalized")
        return global_operator
    if issparse(global_operator):
        ctx = getattr(mesh, "ctx", None) or DistributedContext()
        if global_operator.format != "csr":
            warn("Implicit conversion of A to CSR", SparseEfficiencyWarning)
            global_operator = global_operator.tocsr()
        return DistributedSparseMatrix.from_scipy(ctx, global_operator)
    raise TypeError(
        "Argument global_operator must be a DistributedSparseMatrix or a scipy sparse matrix"
    )


def _first_failure(ctx: DistributedContext, failure):
    """Collective: the failure recorded on the lowest failing rank, or None.

    Data-dependent failures happen on some ranks only; after this exchange
    every rank raises, so none is left waiting in a later collective.
    """
    return next((f for f in ctx.allgather(failure) if f is not None), None)


def setup_restrictor(
    config,
    evaluator,
    mesh=None,
    global_operator=None,
    *,
    agglomerator=None,
    eigensolver=None,
    return_info: bool = False,
):
    """Build the AMGe restriction operator.

    Parameters
    ----------
    config
        `RestrictorConfig`, or a mapping accepted by `RestrictorConfig.from_dict`
        (agglomerate_shape, num_eigenvectors, eigen_tolerance, weighting,
        print_info).
    evaluator
        Mesh/operator evaluator providing `global_operator(mesh)` and
        `local_operator(mesh, agglomerate)`.
    mesh
        The fine mesh handed to the evaluator and the agglomerator. When it
        has a `dof_layout`, the fine operator must match it.
    global_operator
        Fine-level operator; obtained from `evaluator.global_operator(mesh)`
        when None.
    agglomerator
        Agglomeration provider; defaults to `StructuredAgglomerator()`.
    eigensolver
        Local eigensolver; defaults to `DenseEigensolver()`.
    return_info
        If True, also return a `RestrictorInfo` with the eigenvectors obtained
        per agglomerate (needed to size the next-level operator).

    Returns
    -------
    R
        Finalized `DistributedSparseMatrix`, shape (n_coarse, n_fine), whose
        column layout is the fine operator's.
    info
        Only when `return_info` is True.

    Raises
    ------
    ConfigurationError
        Malformed configuration.
    EigensolverError
        A local eigensolve failed on some rank; raised on every rank, with
        `.agglomerate` naming the agglomerate of the lowest failing rank.
    InvariantViolationError
        Internal inconsistency in collaborator output (raised on every rank
        when detected in the local basis).
    LayoutMismatchError
        Fine operator layout incompatible with the mesh DoF layout.

    Examples
    --------
    >>> from pyamge.amge.distributed import DistributedContext
    >>> from pyamge.amge.mesh import StructuredMesh
    >>> from pyamge.amge.evaluators import LaplaceEvaluator
    >>> mesh = StructuredMesh(DistributedContext(), (4, 4))
    >>> config = {"agglomerate_shape": (2, 2), "eigen_tolerance": 1e-8}
    >>> R = setup_restrictor(config, LaplaceEvaluator(), mesh)
    >>> R.shape
    (4, 25)
    """
    config = _as_config(config)
    agglomerator = StructuredAgglomerator() if agglomerator is None else agglomerator
    eigensolver = DenseEigensolver() if eigensolver is None else eigensolver

    # ---- fine operator and layout checks ----
    if global_operator is None:
        global_operator = evaluator.global_operator(mesh)
    A = _as_fine_operator(global_operator, mesh)
    ctx = A.ctx
    if A.row_layout != A.col_layout:
        raise LayoutMismatchError("fine operator row and column layouts differ")
    fine_layout = A.col_layout
    mesh_layout = getattr(mesh, "dof_layout", None)
    if mesh_layout is not None and mesh_layout != fine_layout:
        raise LayoutMismatchError(
            f"fine operator layout {fine_layout!r} does not match mesh DoF layout {mesh_layout!r}"
        )

    stats = RestrictorStats(rank=ctx.rank, n_fine=fine_layout.n_global)

    # ---- agglomeration ----
    with stats.timeit("agglomerate"):
        aggs = agglomerator.agglomerate(mesh, config.agglomerate_shape)

    # ---- per-agglomerate eigenproblems ----
    results = []
    diagonals = [] if config.weighting == "diagonal" else None
    failure, cause = None, None
    for agg in aggs:
        with stats.timeit("local_ops"):
            A_loc, M_loc = evaluator.local_operator(mesh, agg)
        with stats.timeit("eigs"):
            try:
                res = eigensolver.solve(A_loc, M_loc, config.num_eigenvectors, config.eigen_tolerance)
            except EigensolverError as e:
                failure = (agg.index if e.agglomerate is None else e.agglomerate, e.reason)
                cause = e
                break
        results.append(res)
        if diagonals is not None:
            diagonals.append(np.asarray(A_loc.diagonal(), dtype=float))

    first = _first_failure(ctx, failure)
    if first is not None:
        raise EigensolverError(first[1], agglomerate=first[0]) from cause

    # ---- local basis ----
    with stats.timeit("collect"):
        failure, cause = None, None
        try:
            basis = collect_local_basis(aggs, results, diagonals)
        except InvariantViolationError as e:
            failure, cause = f"rank {ctx.rank}: {e}", e
        first = _first_failure(ctx, failure)
        if first is not None:
            raise InvariantViolationError(first) from cause

    # ---- partition of unity ----
    with stats.timeit("weights"):
        weights = compute_weights(
            ctx,
            basis.dof_maps,
            fine_layout,
            diagonals=basis.diagonals,
            weighting=config.weighting,
        )

    # ---- assembly ----
    with stats.timeit("assemble"):
        R = assemble_restriction(
            ctx,
            basis.eigenvectors,
            weights,
            basis.dof_maps,
            basis.n_eigenvectors,
            A,
        )

    pou_error = None
    if config.print_info:
        pou_error = partition_of_unity_error(ctx, basis.dof_maps, weights, fine_layout)

    eigenvalues = [r.eigenvalues for r in results]
    _amge_finalize_stats(
        stats=stats,
        ctx=ctx,
        agg_sizes=[agg.size for agg in aggs],
        n_eigenvectors=basis.n_eigenvectors,
        eigenvalues=np.concatenate(eigenvalues) if eigenvalues else np.zeros(0),
        n_coarse=R.shape[0],
        pou_error=pou_error,
    )
    _amge_print_summary(stats, print_info=config.print_info, is_root=ctx.is_root)

    if return_info:
        info = RestrictorInfo(
            n_eigenvectors=basis.n_eigenvectors,
            agglomerates=np.asarray([agg.index for agg in aggs], dtype=np.int64),
            eigenvalues=eigenvalues,
            stats=stats,
        )
        return R, info
    return R
