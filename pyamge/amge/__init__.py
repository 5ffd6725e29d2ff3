"""AMGe restriction-operator internals.

This package contains the building blocks of the restriction build driven by
`pyamge.restrictor.setup_restrictor`.

Modules
-------
distributed
    Distributed context (communicator + rank), ownership layouts, owner-routed reductions.
matrix
    Row-distributed sparse matrix with set/add assembly and a collective finalize.
mesh
    Structured Q1 tensor-product mesh partitioned in slabs.
evaluators
    Fine and agglomerate operators (Laplace on the structured mesh, or from a matrix).
agglomeration
    Structured box agglomerates and algebraic (PyAMG aggregation) agglomerates.
eigs
    Local eigensolvers returning up to the requested number of eigenpairs.
collector
    Per-row eigenvector coefficient and DoF-index tables.
weights
    Partition-of-unity weights for DoFs shared by several agglomerates.
assembly
    Assembly of the distributed restriction matrix.
stats
    Timing and diagnostic reporting.
types, errors
    Data containers, configuration record and exception types.
"""

from __future__ import annotations

from . import (
    agglomeration,
    assembly,
    collector,
    distributed,
    eigs,
    errors,
    evaluators,
    matrix,
    mesh,
    stats,
    types,
    weights,
)

__all__ = [
    "distributed",
    "matrix",
    "mesh",
    "evaluators",
    "agglomeration",
    "eigs",
    "collector",
    "weights",
    "assembly",
    "stats",
    "types",
    "errors",
]
