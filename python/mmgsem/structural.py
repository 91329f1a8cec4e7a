"""Step 2 structural model: weighted estimation of cluster regressions.

For a recursive model with uncorrelated endogenous residuals the Gaussian
likelihood of a group's factor covariance ``C_g`` factorises into one term
for the exogenous block (saturated, ``Psi_xx = C_xx``) and one regression
per endogenous factor. Within a cluster the regression coefficients are
shared and the residual variances are group-specific, so the M-step
alternates a weighted GLS update of the coefficients with the closed-form
residual variances until the weighted objective settles.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from ._linalg import LOG_2PI
from .syntax import StructuralSpec

logger = logging.getLogger(__name__)

__all__ = ["StructuralParams", "StructuralEstimator"]

_PSI_FLOOR = 1e-8


@dataclass
class StructuralParams:
    """Estimates of one cluster.

    ``beta[i, j]`` is the effect of factor j on factor i; ``psi`` holds the
    group-specific residual variances of the endogenous factors (groups x
    endogenous) and ``discrepancy`` the matching residual moments.
    """

    beta: np.ndarray
    psi: np.ndarray
    discrepancy: np.ndarray
    objective: float = np.nan
    iterations: int = 0

    def coefficients(self, spec: StructuralSpec) -> np.ndarray:
        """Free regression coefficients in ``spec.parameter_labels()`` order."""
        idx = {f: i for i, f in enumerate(spec.factors)}
        return np.array(
            [self.beta[idx[outcome], idx[pred]] for outcome, preds in spec.regressions for pred in preds]
        )


class StructuralEstimator:
    """Weighted ML/GLS estimation of the structural model for fixed factor covariances."""

    def __init__(
        self,
        spec: StructuralSpec,
        factor_covs: Sequence[np.ndarray],
        n_obs: Sequence[float],
        *,
        max_iterations: int = 50,
        tolerance: float = 1e-8,
    ) -> None:
        self.spec = spec
        self.covs = np.stack([np.asarray(c, dtype=float) for c in factor_covs])
        self.n_obs = np.asarray(n_obs, dtype=float)
        if self.covs.shape[1:] != (spec.n_factors, spec.n_factors):
            raise ValueError(f"Factor covariances must be {spec.n_factors} x {spec.n_factors}")
        self.max_iterations = max_iterations
        self.tolerance = tolerance
        idx = {f: i for i, f in enumerate(spec.factors)}
        self.endo_idx = [idx[f] for f in spec.endogenous]
        self.exo_idx = [idx[f] for f in spec.exogenous]
        self.pred_idx = [[idx[p] for p in spec.predictors_of(f)] for f in spec.endogenous]
        exo = self.covs[:, self.exo_idx][:, :, self.exo_idx]
        logdets = np.linalg.slogdet(exo)[1] if self.exo_idx else np.zeros(len(self.covs))
        # exogenous contribution is identical for every cluster
        self.exogenous_loglik = -0.5 * self.n_obs * (len(self.exo_idx) * LOG_2PI + logdets + len(self.exo_idx))

    @property
    def n_groups(self) -> int:
        return self.covs.shape[0]

    def residual_moments(self, j: int, coef: np.ndarray) -> np.ndarray:
        """``c_jj - 2 b'c_Pj + b'C_PP b`` for endogenous factor number j in every group."""
        out_i, preds = self.endo_idx[j], self.pred_idx[j]
        c_jj = self.covs[:, out_i, out_i]
        c_pj = self.covs[:, preds, out_i]
        c_pp = self.covs[:, preds][:, :, preds]
        return c_jj - 2.0 * c_pj @ coef + np.einsum("i,gij,j->g", coef, c_pp, coef)

    def estimate(
        self,
        weights: np.ndarray,
        start: Optional[np.ndarray] = None,
    ) -> StructuralParams:
        """Estimate one cluster with group weights in [0, 1].

        ``start`` is a previous ``beta`` matrix; without it the coefficients
        start from the weighted pooled regression.
        """
        w = np.asarray(weights, dtype=float) * self.n_obs
        m = self.spec.n_factors
        beta = np.zeros((m, m))
        psi = np.zeros((self.n_groups, len(self.endo_idx)))
        disc = np.zeros_like(psi)
        total_obj = 0.0
        total_iter = 0
        for j, (out_i, preds) in enumerate(zip(self.endo_idx, self.pred_idx)):
            c_pp = self.covs[:, preds][:, :, preds]
            c_pj = self.covs[:, preds, out_i]
            if start is not None:
                coef = np.asarray(start, dtype=float)[out_i, preds]
            else:
                coef = np.linalg.solve(np.einsum("g,gij->ij", w, c_pp), w @ c_pj)
            r = np.clip(self.residual_moments(j, coef), _PSI_FLOOR, None)
            obj = float(w @ (np.log(r) + 1.0))
            for it in range(1, self.max_iterations + 1):
                scaled = w / r
                coef = np.linalg.solve(np.einsum("g,gij->ij", scaled, c_pp), scaled @ c_pj)
                r = np.clip(self.residual_moments(j, coef), _PSI_FLOOR, None)
                new_obj = float(w @ (np.log(r) + 1.0))
                converged = abs(obj - new_obj) <= self.tolerance * (1.0 + abs(new_obj))
                obj = new_obj
                if converged:
                    break
            total_iter = max(total_iter, it)
            total_obj += obj
            beta[out_i, preds] = coef
            psi[:, j] = r
            disc[:, j] = r
        return StructuralParams(beta=beta, psi=psi, discrepancy=disc, objective=total_obj, iterations=total_iter)

    def group_logliks(self, params: StructuralParams) -> np.ndarray:
        """Log-likelihood of every group's factor covariance under one cluster."""
        ll = self.exogenous_loglik.copy()
        for j in range(len(self.endo_idx)):
            r = self.residual_moments(j, params.beta[self.endo_idx[j], self.pred_idx[j]])
            psi = params.psi[:, j]
            ll -= 0.5 * self.n_obs * (LOG_2PI + np.log(psi) + r / psi)
        return ll

    def implied_covariance(self, params: StructuralParams, group: int) -> np.ndarray:
        """Model-implied factor covariance ``(I-B)^-1 Psi (I-B)^-T`` of one group."""
        m = self.spec.n_factors
        psi = np.zeros((m, m))
        if self.exo_idx:
            psi[np.ix_(self.exo_idx, self.exo_idx)] = self.covs[group][np.ix_(self.exo_idx, self.exo_idx)]
        psi[self.endo_idx, self.endo_idx] = params.psi[group]
        inv = np.linalg.inv(np.eye(m) - params.beta)
        return inv @ psi @ inv.T

    def single_group_estimates(self) -> List[StructuralParams]:
        """Unclustered estimates of every group, used for hierarchical starts."""
        out = []
        for g in range(self.n_groups):
            weights = np.zeros(self.n_groups)
            weights[g] = 1.0
            out.append(self.estimate(weights))
        return out
