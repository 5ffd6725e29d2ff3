"""Typed data containers used throughout the AMGe restriction build.

This module groups the transient state of one restrictor build into small
dataclasses, so that the pipeline passes coherent parcels rather than many
parallel lists.

Containers
----------
RestrictorConfig
    The in-memory configuration record (agglomerate shape, eigenvector count,
    eigen tolerance, weighting scheme, diagnostics switch).
EigenResult
    Output of one local eigensolve: eigenvalues (ascending) and eigenvectors
    stored column-wise over the agglomerate's local DoF ordering. May hold
    fewer vectors than requested.
LocalBasis
    Per-row tables produced by the local basis collector:
      - eigenvectors[i] : coefficients of local row i, one per slot
      - dof_maps[i]     : global fine column of each slot (no repeats)
      - diagonals[i]    : local operator diagonal at each slot (optional)
      - n_eigenvectors  : rows contributed by each local agglomerate
      - row_agglomerate : global agglomerate id owning each row
RestrictorInfo
    What the orchestrator hands back next to the matrix when asked.

Invariants
----------
- All index arrays are stored as int64 numpy arrays.
- len(eigenvectors[i]) == len(dof_maps[i]) for every row i.
- sum(n_eigenvectors) == len(eigenvectors).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, TypeAlias

import numpy as np
from numpy.typing import NDArray

from .errors import ConfigurationError

IndexArray: TypeAlias = NDArray[np.int64]

WEIGHTING_SCHEMES = ("multiplicity", "diagonal")

# keys of the hierarchy parameter files
_INFO_AXIS_KEYS = ("agglomeration: nx", "agglomeration: ny", "agglomeration: nz")
_INFO_NEV_KEY = "eigensolver: number of eigenvectors"
_INFO_TOL_KEY = "eigensolver: tolerance"


@dataclass(slots=True, frozen=True)
class RestrictorConfig:
    """Configuration parameters for building one restriction operator.

    Attributes
    ----------
    agglomerate_shape : tuple[int, ...]
        Number of fine cells grouped into one agglomerate along each mesh axis.
    num_eigenvectors : int
        Target number of local eigenvectors kept per agglomerate.
    eigen_tolerance : float
        Eigenvalue threshold; only eigenpairs with eigenvalue <= tolerance are kept.
    weighting : str
        Partition-of-unity scheme, "multiplicity" (1 / number of references) or
        "diagonal" (local diagonal / global sum of local diagonals).
    print_info : bool
        Whether to print a diagnostic summary on rank 0.
    """

    agglomerate_shape: tuple[int, ...]
    num_eigenvectors: int = 1
    eigen_tolerance: float = 1e-14
    weighting: str = "multiplicity"
    print_info: bool = False

    def __post_init__(self) -> None:
        try:
            shape = tuple(int(n) for n in self.agglomerate_shape)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(
                f"agglomerate_shape must be a sequence of ints, got {self.agglomerate_shape!r}"
            ) from e
        if len(shape) == 0 or any(n < 1 for n in shape):
            raise ConfigurationError(
                f"agglomerate_shape entries must be >= 1, got {self.agglomerate_shape!r}"
            )
        object.__setattr__(self, "agglomerate_shape", shape)

        if isinstance(self.num_eigenvectors, str):
            # parameter files deliver every value as text
            try:
                object.__setattr__(self, "num_eigenvectors", int(self.num_eigenvectors))
            except ValueError as e:
                raise ConfigurationError(
                    f"num_eigenvectors must be an int, got {self.num_eigenvectors!r}"
                ) from e
        if isinstance(self.num_eigenvectors, bool) or not isinstance(self.num_eigenvectors, (int, np.integer)):
            raise ConfigurationError(f"num_eigenvectors must be an int, got {self.num_eigenvectors!r}")
        if self.num_eigenvectors < 1:
            raise ConfigurationError(f"num_eigenvectors must be >= 1, got {self.num_eigenvectors}")
        object.__setattr__(self, "num_eigenvectors", int(self.num_eigenvectors))

        try:
            tol = float(self.eigen_tolerance)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"eigen_tolerance must be a float, got {self.eigen_tolerance!r}") from e
        if not tol > 0.0:
            raise ConfigurationError(f"eigen_tolerance must be > 0, got {self.eigen_tolerance!r}")
        object.__setattr__(self, "eigen_tolerance", tol)

        if self.weighting not in WEIGHTING_SCHEMES:
            raise ConfigurationError(
                f"weighting must be one of {WEIGHTING_SCHEMES}, got {self.weighting!r}"
            )

    @classmethod
    def from_dict(cls, params: Mapping[str, Any]) -> "RestrictorConfig":
        """Build a config from a flat mapping.

        Accepts the field names of this class as keys, as well as the keys of
        the hierarchy parameter files ("agglomeration: nx", "agglomeration: ny",
        "agglomeration: nz", "eigensolver: number of eigenvectors",
        "eigensolver: tolerance").
        """
        params = dict(params)
        kwargs: dict[str, Any] = {}

        axes = [params.pop(k) for k in _INFO_AXIS_KEYS if k in params]
        if axes:
            if "agglomerate_shape" in params:
                raise ConfigurationError("agglomerate_shape given twice")
            kwargs["agglomerate_shape"] = tuple(axes)
        if _INFO_NEV_KEY in params:
            kwargs["num_eigenvectors"] = params.pop(_INFO_NEV_KEY)
        if _INFO_TOL_KEY in params:
            kwargs["eigen_tolerance"] = params.pop(_INFO_TOL_KEY)

        for name in ("agglomerate_shape", "num_eigenvectors", "eigen_tolerance", "weighting", "print_info"):
            if name in params:
                if name in kwargs:
                    raise ConfigurationError(f"{name} given twice")
                kwargs[name] = params.pop(name)

        if params:
            raise ConfigurationError(f"Unrecognized configuration keys: {sorted(params)}")
        if "agglomerate_shape" not in kwargs:
            raise ConfigurationError("Missing agglomerate_shape")
        return cls(**kwargs)


@dataclass(slots=True)
class EigenResult:
    """Eigenpairs of one local eigenproblem.

    Attributes
    ----------
    eigenvalues
        Array of shape (k,), nondecreasing.
    eigenvectors
        Array of shape (n_local, k); column m pairs with eigenvalues[m].
    requested
        Number of eigenpairs that were asked for (k <= requested).
    """

    eigenvalues: np.ndarray
    eigenvectors: np.ndarray
    requested: int

    @property
    def count(self) -> int:
        """Number of eigenpairs actually obtained."""
        return int(self.eigenvalues.size)


@dataclass(slots=True)
class LocalBasis:
    """Per-row eigenvector/column tables for the agglomerates of one rank."""

    eigenvectors: list[np.ndarray]
    dof_maps: list[IndexArray]
    n_eigenvectors: IndexArray
    row_agglomerate: IndexArray
    diagonals: Optional[list[np.ndarray]] = None

    @property
    def n_rows(self) -> int:
        """Number of local rows (coarse DoFs owned by this rank)."""
        return len(self.eigenvectors)


@dataclass(slots=True)
class RestrictorInfo:
    """Side information returned by `setup_restrictor(..., return_info=True)`.

    Attributes
    ----------
    n_eigenvectors
        Eigenvectors actually obtained for each local agglomerate.
    agglomerates
        Global ids of the local agglomerates, aligned with `n_eigenvectors`.
    eigenvalues
        Kept eigenvalues per local agglomerate.
    stats
        The `RestrictorStats` of this build.
    """

    n_eigenvectors: IndexArray
    agglomerates: IndexArray
    eigenvalues: list[np.ndarray] = field(default_factory=list)
    stats: Any = None
