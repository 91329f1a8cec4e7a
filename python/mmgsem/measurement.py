"""Step 1: multi-group CFA under (partial) metric invariance.

The measurement fit is estimated once and then held fixed while groups are
clustered on their structural relations. Loadings are shared across groups
unless listed as group-specific; residual variances, intercepts and factor
covariances are group-specific. The first indicator of every factor is the
marker (loading fixed to 1).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Tuple, Union

import numpy as np
from scipy.optimize import minimize

from ._linalg import LOG_2PI, central_jacobian, gaussian_loglik, invert_information, nearest_positive_definite
from .data import GroupData
from .errors import DimensionMismatch
from .syntax import MeasurementSpec

logger = logging.getLogger(__name__)

__all__ = ["MeasurementModel", "MeasurementFit", "fit_measurement"]


class MeasurementModel:
    """Maps the step-1 parameter vector to per-group model matrices.

    Parameter layout: shared free loadings, group-specific loadings (one per
    group), log residual variances (groups x indicators), then the lower
    Cholesky factor of each group's factor covariance with a log diagonal.
    """

    def __init__(self, spec: MeasurementSpec, n_groups: int) -> None:
        if n_groups < 1:
            raise DimensionMismatch("at least one group is required")
        self.spec = spec
        self.n_groups = n_groups
        self.pattern = spec.pattern()
        markers = spec.markers()
        self._marker_cells = [
            (spec.indicators.index(markers[f]), spec.factors.index(f)) for f in spec.factors
        ]
        shared, specific = [], []
        for factor, items in spec.loadings:
            col = spec.factors.index(factor)
            for item in items[1:]:
                cell = (spec.indicators.index(item), col)
                if (factor, item) in spec.group_specific:
                    specific.append(cell)
                else:
                    shared.append(cell)
        self.shared_cells: List[Tuple[int, int]] = shared
        self.specific_cells: List[Tuple[int, int]] = specific
        p, m = spec.n_indicators, spec.n_factors
        self._tril = np.tril_indices(m)
        self.n_shared = len(shared)
        self.n_specific = len(specific) * n_groups
        self.n_theta = p * n_groups
        self.n_phi = len(self._tril[0]) * n_groups
        self.n_parameters = self.n_shared + self.n_specific + self.n_theta + self.n_phi

    def labels(self, group_names: Optional[Sequence[Any]] = None) -> List[str]:
        names = list(group_names) if group_names is not None else list(range(1, self.n_groups + 1))
        ind, fac = self.spec.indicators, self.spec.factors
        out = [f"{fac[c]}=~{ind[r]}" for r, c in self.shared_cells]
        for g in names:
            out.extend(f"{fac[c]}=~{ind[r]}.g{g}" for r, c in self.specific_cells)
        for g in names:
            out.extend(f"log({item}~~{item}).g{g}" for item in ind)
        for g in names:
            out.extend(f"chol({fac[i]},{fac[j]}).g{g}" for i, j in zip(*self._tril))
        return out

    def unpack(self, theta: np.ndarray) -> Tuple[List[np.ndarray], np.ndarray, List[np.ndarray]]:
        """Return per-group loadings, residual variances (groups x p) and factor covariances."""
        p, m, G = self.spec.n_indicators, self.spec.n_factors, self.n_groups
        pos = 0
        base = np.zeros((p, m))
        for r, c in self._marker_cells:
            base[r, c] = 1.0
        for r, c in self.shared_cells:
            base[r, c] = theta[pos]
            pos += 1
        lambdas = []
        for _ in range(G):
            lam = base.copy()
            for r, c in self.specific_cells:
                lam[r, c] = theta[pos]
                pos += 1
            lambdas.append(lam)
        thetas = np.exp(theta[pos:pos + self.n_theta]).reshape(G, p)
        pos += self.n_theta
        phis = []
        k = len(self._tril[0])
        for _ in range(G):
            chol = np.zeros((m, m))
            chol[self._tril] = theta[pos:pos + k]
            chol[np.diag_indices(m)] = np.exp(np.diag(chol))
            phis.append(chol @ chol.T)
            pos += k
        return lambdas, thetas, phis

    def pack(self, lambdas: Sequence[np.ndarray], thetas: np.ndarray, phis: Sequence[np.ndarray]) -> np.ndarray:
        """Inverse of :meth:`unpack`; shared loadings are averaged over groups."""
        values: List[float] = []
        stacked = np.stack([np.asarray(lam, dtype=float) for lam in lambdas])
        values.extend(stacked[:, r, c].mean() for r, c in self.shared_cells)
        for g in range(self.n_groups):
            values.extend(stacked[g, r, c] for r, c in self.specific_cells)
        values.extend(np.log(np.asarray(thetas, dtype=float)).ravel())
        for phi in phis:
            chol = np.linalg.cholesky(nearest_positive_definite(np.asarray(phi, dtype=float)))
            chol[np.diag_indices_from(chol)] = np.log(np.diag(chol))
            values.extend(chol[self._tril])
        return np.asarray(values, dtype=float)

    def implied_covariances(self, theta: np.ndarray) -> List[np.ndarray]:
        lambdas, thetas, phis = self.unpack(theta)
        return [lam @ phi @ lam.T + np.diag(th) for lam, th, phi in zip(lambdas, thetas, phis)]

    def discrepancy(self, theta: np.ndarray, groups: Sequence[GroupData]) -> Tuple[float, np.ndarray]:
        """ML discrepancy ``0.5 * sum_g N_g (log|Sigma| + tr(S Sigma^-1))`` and its gradient."""
        lambdas, thetas, phis = self.unpack(theta)
        m = self.spec.n_factors
        k = len(self._tril[0])
        grad = np.zeros_like(theta)
        value = 0.0
        theta_offset = self.n_shared + self.n_specific
        phi_offset = theta_offset + self.n_theta
        for g, group in enumerate(groups):
            lam, th, phi = lambdas[g], thetas[g], phis[g]
            sigma = lam @ phi @ lam.T + np.diag(th)
            sign, logdet = np.linalg.slogdet(sigma)
            if sign <= 0:
                return np.inf, grad
            inv = np.linalg.inv(sigma)
            inv_s = inv @ group.covariance
            value += 0.5 * group.n_obs * (logdet + np.trace(inv_s))
            gmat = 0.5 * group.n_obs * (inv - inv_s @ inv)

            d_lam = 2.0 * gmat @ lam @ phi
            for i, (r, c) in enumerate(self.shared_cells):
                grad[i] += d_lam[r, c]
            start = self.n_shared + g * len(self.specific_cells)
            for i, (r, c) in enumerate(self.specific_cells):
                grad[start + i] += d_lam[r, c]

            start = theta_offset + g * th.shape[0]
            grad[start:start + th.shape[0]] = np.diag(gmat) * th

            chol = np.linalg.cholesky(phi)
            d_chol = 2.0 * (lam.T @ gmat @ lam) @ chol
            d_chol[np.diag_indices(m)] *= np.diag(chol)
            start = phi_offset + g * k
            grad[start:start + k] = d_chol[self._tril]
        return value, grad

    def start_values(self, groups: Sequence[GroupData]) -> np.ndarray:
        pooled = sum(g.n_obs * g.covariance for g in groups) / sum(g.n_obs for g in groups)
        p, m = self.spec.n_indicators, self.spec.n_factors
        lam = np.zeros((p, m))
        phi_start = np.zeros(m)
        for r, c in self._marker_cells:
            phi_start[c] = max(0.5 * pooled[r, r], 1e-3)
            lam[r, c] = 1.0
        for r, c in self.shared_cells + self.specific_cells:
            marker_row = self._marker_cells[c][0]
            lam[r, c] = pooled[r, marker_row] / phi_start[c]
        thetas = np.array([np.clip(0.5 * np.diag(g.covariance), 1e-4, None) for g in groups])
        phis = []
        for g in groups:
            scale = np.array([g.covariance[r, r] / max(pooled[r, r], 1e-12) for r, _ in self._marker_cells])
            phis.append(np.diag(phi_start * scale))
        return self.pack([lam] * self.n_groups, thetas, phis)


@dataclass
class MeasurementFit:
    """Fitted (or supplied) step-1 measurement model for every group."""

    spec: MeasurementSpec
    groups: List[GroupData]
    theta: np.ndarray
    loglik: float
    converged: bool = True
    iterations: int = 0
    message: str = ""
    vcov: Optional[np.ndarray] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        for group in self.groups:
            if group.n_indicators != self.spec.n_indicators:
                raise DimensionMismatch(
                    f"Group {group.name!r} has {group.n_indicators} indicators, "
                    f"the measurement model has {self.spec.n_indicators}"
                )
        self.model = MeasurementModel(self.spec, len(self.groups))
        self.lambdas, self.thetas, self.phis = self.model.unpack(self.theta)

    @property
    def group_names(self) -> List[Any]:
        return [g.name for g in self.groups]

    @property
    def intercepts(self) -> np.ndarray:
        """Group intercepts; the mean structure is saturated so they equal the sample means."""
        return np.array([g.mean for g in self.groups])

    @property
    def n_parameters(self) -> int:
        return self.model.n_parameters + len(self.groups) * self.spec.n_indicators

    @property
    def n_obs(self) -> int:
        return int(sum(g.n_obs for g in self.groups))

    def factor_covariances(self, theta: Optional[np.ndarray] = None) -> List[np.ndarray]:
        """Per-group factor covariance ``M (S - Theta) M'`` with Bartlett mapping matrices."""
        if theta is None:
            lambdas, thetas = self.lambdas, self.thetas
        else:
            lambdas, thetas, _ = self.model.unpack(theta)
        out = []
        for group, lam, th in zip(self.groups, lambdas, thetas):
            weighted = lam.T / th
            mapping = np.linalg.solve(weighted @ lam, weighted)
            cov = mapping @ (group.covariance - np.diag(th)) @ mapping.T
            fixed = nearest_positive_definite(cov)
            if theta is None and not np.allclose(fixed, 0.5 * (cov + cov.T)):
                logger.warning("Factor covariance of group %r was not positive definite; eigenvalues clipped", group.name)
            out.append(fixed)
        return out

    def implied_covariances(self, factor_covs: Sequence[np.ndarray]) -> List[np.ndarray]:
        """Indicator covariances implied by the given factor covariances per group."""
        return [lam @ cov @ lam.T + np.diag(th) for lam, th, cov in zip(self.lambdas, self.thetas, factor_covs)]

    def information(self, step: float = 1e-5) -> np.ndarray:
        """Observed information (Hessian of minus the log-likelihood) of the step-1 parameters."""

        def gradient(theta: np.ndarray) -> np.ndarray:
            return self.model.discrepancy(theta, self.groups)[1]

        hess = central_jacobian(gradient, self.theta, step)
        return 0.5 * (hess + hess.T)

    def covariance_matrix(self, step: float = 1e-5) -> np.ndarray:
        if self.vcov is None:
            self.vcov = invert_information(self.information(step), "measurement model")
        return self.vcov

    @classmethod
    def from_matrices(
        cls,
        spec: MeasurementSpec,
        groups: Sequence[GroupData],
        loadings: Union[np.ndarray, Sequence[np.ndarray]],
        residual_variances: Union[np.ndarray, Sequence[np.ndarray]],
        factor_covariances: Optional[Sequence[np.ndarray]] = None,
        vcov: Optional[np.ndarray] = None,
    ) -> "MeasurementFit":
        """Wrap estimates produced by an external CFA routine.

        Loadings are rescaled so every marker loading equals 1. Loadings that
        differ across groups are treated as group-specific. Residual variances
        may be given as vectors or (diagonal) matrices.
        """
        groups = list(groups)
        G, p, m = len(groups), spec.n_indicators, spec.n_factors
        lam_list = [np.asarray(loadings, dtype=float)] * G if np.ndim(loadings) == 2 else [
            np.asarray(lam, dtype=float) for lam in loadings
        ]
        if len(lam_list) != G:
            raise DimensionMismatch(f"Expected loadings for {G} groups, got {len(lam_list)}")
        pattern = spec.pattern()
        for lam in lam_list:
            if lam.shape != (p, m):
                raise DimensionMismatch(f"Loadings must be {p} x {m}, got {lam.shape}")
            if np.any(np.abs(lam[~pattern]) > 1e-10):
                raise DimensionMismatch("Loadings have non-zero entries outside the measurement pattern")

        res = [np.asarray(r, dtype=float) for r in residual_variances]
        if len(res) != G:
            raise DimensionMismatch(f"Expected residual variances for {G} groups, got {len(res)}")
        thetas = np.array([np.diag(r) if r.ndim == 2 else r for r in res])
        if thetas.shape != (G, p):
            raise DimensionMismatch(f"Residual variances must be {G} x {p}, got {thetas.shape}")

        scale = np.ones((G, m))
        markers = spec.markers()
        for g, lam in enumerate(lam_list):
            for c, factor in enumerate(spec.factors):
                scale[g, c] = lam[spec.indicators.index(markers[factor]), c]
        if np.any(np.abs(scale) < 1e-10):
            raise DimensionMismatch("Marker loadings cannot be zero")
        lam_list = [lam / scale[g] for g, lam in enumerate(lam_list)]

        stacked = np.stack(lam_list)
        spread = stacked.max(axis=0) - stacked.min(axis=0)
        specific = {
            (factor, item)
            for factor, items in spec.loadings
            for item in items[1:]
            if spread[spec.indicators.index(item), spec.factors.index(factor)] > 1e-8
        }
        spec = spec.with_group_specific(specific | set(spec.group_specific))
        model = MeasurementModel(spec, G)

        if factor_covariances is None:
            provisional = cls(spec, groups, model.pack(lam_list, thetas, [np.eye(m)] * G), np.nan)
            phis = provisional.factor_covariances()
        else:
            phis = [np.asarray(phi, dtype=float) * np.outer(scale[g], scale[g]) for g, phi in enumerate(factor_covariances)]
        theta = model.pack(lam_list, thetas, phis)
        loglik = sum(gaussian_loglik(g.n_obs, g.covariance, s) for g, s in zip(groups, model.implied_covariances(theta)))
        return cls(spec, groups, theta, loglik, message="supplied", vcov=vcov)


def fit_measurement(
    spec: MeasurementSpec,
    groups: Sequence[GroupData],
    *,
    max_iterations: int = 5000,
    tolerance: float = 1e-6,
    start: Optional[np.ndarray] = None,
) -> MeasurementFit:
    """Fit the step-1 multi-group CFA by maximum likelihood (L-BFGS-B)."""
    groups = list(groups)
    for group in groups:
        if group.n_indicators != spec.n_indicators:
            raise DimensionMismatch(
                f"Group {group.name!r} has {group.n_indicators} indicators, "
                f"the measurement model has {spec.n_indicators}"
            )
    model = MeasurementModel(spec, len(groups))
    x0 = model.start_values(groups) if start is None else np.asarray(start, dtype=float)
    logger.info(
        "Fitting measurement model: %d groups, %d indicators, %d parameters",
        len(groups), spec.n_indicators, model.n_parameters,
    )
    result = minimize(
        model.discrepancy,
        x0,
        args=(groups,),
        jac=True,
        method="L-BFGS-B",
        options={"maxiter": max_iterations, "ftol": 1e-12, "gtol": tolerance},
    )
    if not result.success:
        logger.warning("Measurement model optimisation stopped early: %s", result.message)
    p = spec.n_indicators
    n_total = sum(g.n_obs for g in groups)
    loglik = -float(result.fun) - 0.5 * n_total * p * LOG_2PI
    return MeasurementFit(
        spec=spec,
        groups=groups,
        theta=np.asarray(result.x, dtype=float),
        loglik=loglik,
        converged=bool(result.success),
        iterations=int(result.nit),
        message=str(result.message),
    )
