"""Exception types raised while building an AMGe restriction operator.

All errors propagate to the caller of `pyamge.restrictor.setup_restrictor`;
none of them is retried, since none is transient.

Taxonomy
--------
ConfigurationError
    Malformed or missing agglomeration/eigensolver configuration.
EigensolverError
    A local eigenproblem failed; carries the offending agglomerate id.
InvariantViolationError
    An internal-consistency failure (duplicate column in a row map, zero
    multiplicity, coarse-row gap or collision). Indicates a broken contract of
    a collaborator and is never masked.
LayoutMismatchError
    The restriction column layout disagrees with the fine operator layout.
"""

from __future__ import annotations


class AMGeError(Exception):
    """Base class for all restriction-build failures."""


class ConfigurationError(AMGeError, ValueError):
    """Invalid agglomeration or eigenvector configuration."""


class EigensolverError(AMGeError, RuntimeError):
    """Failure of a local eigensolve.

    Parameters
    ----------
    msg
        Human-readable reason.
    agglomerate
        Global id of the agglomerate whose eigenproblem failed, or None when the
        failure is raised by the eigensolver itself (the orchestrator re-raises
        with the id filled in).
    """

    def __init__(self, msg: str, *, agglomerate: int | None = None) -> None:
        self.agglomerate = agglomerate
        self.reason = msg
        if agglomerate is not None:
            msg = f"agglomerate {agglomerate}: {msg}"
        super().__init__(msg)


class InvariantViolationError(AMGeError, RuntimeError):
    """Internal-consistency failure."""


class LayoutMismatchError(AMGeError, ValueError):
    """Distributed layout incompatible with the fine-level operator."""
