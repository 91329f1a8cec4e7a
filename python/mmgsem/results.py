"""Fitted mixture multigroup SEM objects and their printed summaries."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy.special import logsumexp
from scipy.stats import norm

from ._linalg import gaussian_loglik
from .measurement import MeasurementFit
from .structural import StructuralEstimator, StructuralParams
from .syntax import StructuralSpec

if TYPE_CHECKING:
    from .inference import StandardErrorSet

__all__ = ["MixtureModel", "MixtureSummary"]


@dataclass
class MixtureModel:
    """Result of clustering groups on their structural relations.

    ``posteriors`` is groups x clusters with rows summing to one;
    ``loglik`` is the mixture log-likelihood of the factor covariances that
    EM maximises, ``history`` its value after every iteration of the kept start.
    """

    spec: StructuralSpec
    measurement: MeasurementFit
    clusters: List[StructuralParams]
    proportions: np.ndarray
    posteriors: np.ndarray
    group_logliks: np.ndarray
    loglik: float
    objective: float
    converged: bool
    iterations: int
    history: List[float] = field(default_factory=list)
    assignment: str = "soft"
    seed: Optional[int] = None
    nstarts: int = 1
    best_start: int = 0
    reinitializations: int = 0
    monotone: bool = True
    start_logliks: List[float] = field(default_factory=list)

    @property
    def nclus(self) -> int:
        return len(self.clusters)

    @property
    def n_groups(self) -> int:
        return self.posteriors.shape[0]

    @property
    def group_names(self) -> List[Any]:
        return self.measurement.group_names

    @property
    def n_obs(self) -> np.ndarray:
        return np.array([g.n_obs for g in self.measurement.groups], dtype=float)

    @property
    def n_parameters(self) -> int:
        """Free step-2 parameters: mixing weights, cluster regressions, group covariances."""
        n_exo = len(self.spec.exogenous)
        per_group = n_exo * (n_exo + 1) // 2 + len(self.spec.endogenous)
        return (self.nclus - 1) + self.nclus * self.spec.n_regressions + self.n_groups * per_group

    @property
    def modal_assignment(self) -> np.ndarray:
        return np.argmax(self.posteriors, axis=1)

    @property
    def entropy(self) -> float:
        z = self.posteriors
        with np.errstate(divide="ignore", invalid="ignore"):
            terms = np.where(z > 0, z * np.log(z), 0.0)
        return float(-terms.sum())

    @property
    def r2_entropy(self) -> float:
        """Relative entropy in [0, 1]; 1 means perfectly separated clusters."""
        if self.nclus == 1:
            return np.nan
        return 1.0 - self.entropy / (self.n_groups * np.log(self.nclus))

    @property
    def regressions(self) -> pd.DataFrame:
        """Regression coefficients, one column per cluster."""
        data = {f"Cluster {k + 1}": c.coefficients(self.spec) for k, c in enumerate(self.clusters)}
        return pd.DataFrame(data, index=self.spec.parameter_labels())

    @property
    def posterior_table(self) -> pd.DataFrame:
        return pd.DataFrame(
            self.posteriors,
            index=pd.Index(self.group_names, name="Group"),
            columns=[f"Cluster {k + 1}" for k in range(self.nclus)],
        )

    def residual_variances(self, cluster: int) -> pd.DataFrame:
        return pd.DataFrame(
            self.clusters[cluster].psi,
            index=pd.Index(self.group_names, name="Group"),
            columns=list(self.spec.endogenous),
        )

    def estimator(self) -> StructuralEstimator:
        return StructuralEstimator(self.spec, self.measurement.factor_covariances(), self.n_obs)

    def observed_loglik(self) -> float:
        """Mixture log-likelihood of the indicator covariances (measurement held fixed)."""
        est = self.estimator()
        log_pi = np.log(self.proportions)
        joint = np.zeros((self.n_groups, self.nclus))
        for k, params in enumerate(self.clusters):
            factor_covs = [est.implied_covariance(params, g) for g in range(self.n_groups)]
            implied = self.measurement.implied_covariances(factor_covs)
            for g, group in enumerate(self.measurement.groups):
                joint[g, k] = log_pi[k] + gaussian_loglik(group.n_obs, group.covariance, implied[g])
        return float(logsumexp(joint, axis=1).sum())

    def permuted(self, order: Sequence[int]) -> "MixtureModel":
        """Copy with clusters reordered so that new cluster i is old cluster ``order[i]``."""
        order = list(order)
        if sorted(order) != list(range(self.nclus)):
            raise ValueError(f"{order} is not a permutation of {self.nclus} clusters")
        new = copy.copy(self)
        new.clusters = [self.clusters[k] for k in order]
        new.proportions = self.proportions[order]
        new.posteriors = self.posteriors[:, order]
        new.group_logliks = self.group_logliks[:, order]
        return new

    def summary(self, se: Optional["StandardErrorSet"] = None) -> "MixtureSummary":
        """Return a summary object; pass standard errors to add z-tests against zero."""
        return MixtureSummary(self, se)

    def __repr__(self) -> str:
        state = "converged" if self.converged else "NOT converged"
        return (
            f"MixtureModel(nclus={self.nclus}, groups={self.n_groups}, "
            f"loglik={self.loglik:.3f}, {state} after {self.iterations} iterations)"
        )


class MixtureSummary:
    """Summary of a mixture multigroup SEM fit."""

    def __init__(self, model: MixtureModel, se: Optional["StandardErrorSet"] = None) -> None:
        self.model = model
        self.se = se
        self.parameters = self._build_parameter_table()

    def _build_parameter_table(self) -> pd.DataFrame:
        rows = []
        labels = self.model.spec.parameter_labels()
        for k, params in enumerate(self.model.clusters):
            for label, estimate in zip(labels, params.coefficients(self.model.spec)):
                se = self.se.get(k, label) if self.se is not None else np.nan
                z = estimate / se if se > 0 else np.nan
                p = 2 * (1 - norm.cdf(abs(z))) if not np.isnan(z) else np.nan
                rows.append(
                    {
                        "Cluster": k + 1,
                        "Parameter": label,
                        "Estimate": estimate,
                        "Std.Error": se,
                        "z-value": z,
                        "P(>|z|)": p,
                    }
                )
        return pd.DataFrame(rows).set_index(["Cluster", "Parameter"])

    def __repr__(self) -> str:
        model = self.model
        lines = []
        lines.append(f"Mixture multigroup SEM with {model.nclus} cluster(s) and {model.n_groups} groups")
        lines.append(f"EM converged: {model.converged}")
        lines.append(f"Iterations: {model.iterations} (best of {model.nstarts} start(s))")
        if model.reinitializations:
            lines.append(f"Empty-cluster reinitialisations: {model.reinitializations}")
        lines.append(f"Log-likelihood: {model.loglik:.3f}")
        lines.append(f"Free parameters: {model.n_parameters}")
        if model.nclus > 1:
            lines.append(f"R2 entropy: {model.r2_entropy:.3f}")
        lines.append("")

        sizes = np.bincount(model.modal_assignment, minlength=model.nclus)
        lines.append("Cluster proportions:")
        for k in range(model.nclus):
            lines.append(f"  Cluster {k + 1}: {model.proportions[k]:.3f} ({sizes[k]} group(s) by modal assignment)")
        lines.append("")

        lines.append("Clustering of groups (modal assignment):")
        for k in range(model.nclus):
            members = [str(model.group_names[g]) for g in np.flatnonzero(model.modal_assignment == k)]
            lines.append(f"  Cluster {k + 1}: {', '.join(members) if members else '-'}")
        lines.append("")

        lines.append("Regression parameters:")
        if self.se is None:
            lines.append(model.regressions.to_string(float_format=lambda v: f"{v:.3f}"))
        else:
            header = "naive" if self.se.naive else "corrected for step 1"
            lines.append(f"(standard errors {header})")
            lines.append(self.parameters.to_string(float_format=lambda v: f"{v:.3f}"))
        return "\n".join(lines)
