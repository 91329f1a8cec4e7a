"""Exception hierarchy shared by every stage of the mmgsem pipeline."""

from __future__ import annotations

from typing import Any, Optional

__all__ = [
    "MMGSEMError",
    "InvalidModelSyntax",
    "InvalidK",
    "DimensionMismatch",
    "DegenerateCluster",
    "SingularInformationMatrix",
    "NonConvergence",
    "NonConvergenceWarning",
]


class MMGSEMError(Exception):
    """Base class for errors raised by mmgsem."""


class InvalidModelSyntax(MMGSEMError, ValueError):
    """Raised when S1/S2 formulas are malformed or inconsistent."""


class InvalidK(MMGSEMError, ValueError):
    """Raised for a non-positive cluster count or one outside a searched range."""


class DimensionMismatch(MMGSEMError, ValueError):
    """Raised when group data does not match the measurement model."""


class DegenerateCluster(MMGSEMError):
    """Raised when a cluster loses all posterior mass and recovery is disabled.

    ``n_failed`` is set when every one of several starts ended this way.
    """

    def __init__(
        self, nclus: int, cluster: int, iteration: int, start: int = 0, n_failed: Optional[int] = None
    ) -> None:
        self.nclus = nclus
        self.cluster = cluster
        self.iteration = iteration
        self.start = start
        self.n_failed = n_failed
        message = (
            f"Cluster {cluster + 1} of the {nclus}-cluster model is empty "
            f"(start {start + 1}, iteration {iteration})"
        )
        if n_failed is not None:
            message = f"All {n_failed} start(s) of the {nclus}-cluster model degenerated; last: {message}"
        super().__init__(message)


class SingularInformationMatrix(MMGSEMError):
    """Raised when the information matrix cannot be inverted."""


class NonConvergence(MMGSEMError):
    """Raised when EM hits its iteration cap and strict convergence was requested.

    The (flagged) model is attached as ``model`` so callers can still inspect it.
    """

    def __init__(self, message: str, model: Optional[Any] = None) -> None:
        super().__init__(message)
        self.model = model


class NonConvergenceWarning(UserWarning):
    """Issued when a model is returned without having reached the tolerance."""
