from __future__ import annotations

import numbers
from typing import Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import InvalidK

__all__ = ["EstimationConfig", "SelectionConfig", "InferenceConfig", "normalize_nclus"]


class EstimationConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    seed: Optional[int] = Field(None, description="Seed for every random draw of a fit.")
    init_strategy: Literal["random", "hierarchical", "user"] = Field(
        "random", description="How the initial partition of groups is built."
    )
    nstarts: int = Field(20, ge=1, description="Number of random starts; the best log-likelihood is kept.")
    max_iterations: int = Field(1000, ge=1, description="EM iteration cap per start.")
    tolerance: float = Field(1e-6, gt=0, description="Absolute log-likelihood change that stops EM.")
    assignment: Literal["soft", "hard"] = Field(
        "soft", description="Soft posteriors (EM) or modal one-hot assignment (classification EM)."
    )
    on_empty_cluster: Literal["reinitialize", "raise"] = Field(
        "reinitialize", description="Policy when a cluster's posterior mass collapses."
    )
    min_cluster_weight: float = Field(1e-8, gt=0, description="Posterior mass below which a cluster is empty.")
    max_reinitializations: int = Field(10, ge=0, description="Reinitialisations allowed per start.")
    inner_max_iterations: int = Field(50, ge=1, description="GLS/variance alternations inside an M-step.")
    inner_tolerance: float = Field(1e-8, gt=0, description="Stopping rule for the M-step alternations.")
    monotonicity_slack: float = Field(1e-6, ge=0, description="Allowed numerical decrease of the EM objective.")
    raise_on_nonconvergence: bool = Field(False, description="Raise NonConvergence instead of warning.")


class SelectionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    nclus: Tuple[int, int] = Field((1, 6), description="Inclusive range of cluster counts to fit.")
    n_jobs: int = Field(1, ge=1, description="Worker threads used across cluster counts.")
    chull_tiebreak: Literal["simplest", "complex"] = Field(
        "simplest", description="Which model wins when Convex Hull scree ratios tie."
    )

    @field_validator("nclus", mode="before")
    @classmethod
    def _check_range(cls, value):
        return normalize_nclus(value)


class InferenceConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    naive: bool = Field(False, description="Skip the correction for step-1 uncertainty.")
    min_posterior: float = Field(
        1e-3, gt=0, lt=1, description="Group-cluster pairs below this posterior keep their residual variances fixed."
    )
    step: float = Field(1e-5, gt=0, description="Relative step for numerical differentiation.")


def normalize_nclus(nclus: Union[int, Tuple[int, int], list]) -> Tuple[int, int]:
    """Turn ``4`` or ``(1, 6)`` into an inclusive ``(low, high)`` range."""
    if isinstance(nclus, numbers.Integral) and not isinstance(nclus, bool):
        low = high = int(nclus)
    else:
        values = list(nclus)
        if len(values) == 1:
            values = values * 2
        if len(values) != 2:
            raise InvalidK(f"nclus must be an integer or a (low, high) pair, got {nclus!r}")
        low, high = int(values[0]), int(values[1])
    if low < 1 or high < 1:
        raise InvalidK(f"Number of clusters must be positive, got {nclus!r}")
    if low > high:
        raise InvalidK(f"Lower cluster bound {low} exceeds upper bound {high}")
    return low, high
