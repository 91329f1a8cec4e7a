"""Standard errors and Wald tests for fitted mixture multigroup SEMs.

Standard errors come from the observed information of the step-2 mixture
log-likelihood, obtained by differentiating its analytic score numerically.
The corrected version adds the uncertainty of the step-1 measurement
estimates with the two-step sandwich

    V = I22^-1 + I22^-1 I21 V1 I21' I22^-1

where ``I21`` is the derivative of the step-2 score with respect to the
step-1 parameters and ``V1`` the step-1 covariance matrix.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd
from scipy.special import logsumexp, softmax
from scipy.stats import chi2, norm

from ._linalg import LOG_2PI, central_jacobian, invert_information
from .config import InferenceConfig
from .errors import InvalidK, SingularInformationMatrix
from .results import MixtureModel

logger = logging.getLogger(__name__)

__all__ = ["MixtureLikelihood", "StandardErrorSet", "TestResult", "compute_se", "wald_test"]


class MixtureLikelihood:
    """Step-2 mixture log-likelihood as a function of a flat parameter vector.

    Layout: mixing logits (last cluster is the reference), regression
    coefficients cluster by cluster, then log residual variances of the
    endogenous factors for every group-cluster pair whose posterior reaches
    ``min_posterior``. Residual variances of the other pairs stay fixed.
    """

    def __init__(self, model: MixtureModel, min_posterior: float = 1e-3) -> None:
        self.model = model
        spec = model.spec
        self.K = model.nclus
        self.q = spec.n_regressions
        self.n_obs = model.n_obs
        idx = {f: i for i, f in enumerate(spec.factors)}
        self.equations = []
        offset = 0
        for outcome, preds in spec.regressions:
            self.equations.append(
                (idx[outcome], [idx[p] for p in preds], slice(offset, offset + len(preds)), spec.endogenous.index(outcome))
            )
            offset += len(preds)
        self.fixed_log_psi = np.log(np.stack([c.psi for c in model.clusters], axis=1))
        self.active = model.posteriors >= min_posterior
        self.active_cells = [
            (g, k, j)
            for g in range(model.n_groups)
            for k in range(self.K)
            if self.active[g, k]
            for j in range(len(spec.endogenous))
        ]
        self.theta = self.pack()

    @property
    def n_regression_parameters(self) -> int:
        return self.K * self.q

    def labels(self) -> List[str]:
        spec = self.model.spec
        names = self.model.group_names
        out = [f"logit(pi{k + 1})" for k in range(self.K - 1)]
        for k in range(self.K):
            out.extend(f"{label}[{k + 1}]" for label in spec.parameter_labels())
        out.extend(f"log({spec.endogenous[j]}~~{spec.endogenous[j]})[{k + 1}].g{names[g]}" for g, k, j in self.active_cells)
        return out

    def regression_slice(self) -> slice:
        return slice(self.K - 1, self.K - 1 + self.K * self.q)

    def pack(self) -> np.ndarray:
        log_pi = np.log(self.model.proportions)
        alpha = log_pi[:-1] - log_pi[-1]
        coefs = np.concatenate([c.coefficients(self.model.spec) for c in self.model.clusters])
        log_psi = np.array([self.fixed_log_psi[g, k, j] for g, k, j in self.active_cells])
        return np.concatenate([alpha, coefs, log_psi])

    def unpack(self, theta: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        K, q = self.K, self.q
        log_pi = np.log(softmax(np.append(theta[:K - 1], 0.0)))
        coefs = theta[K - 1:K - 1 + K * q].reshape(K, q)
        log_psi = self.fixed_log_psi.copy()
        for value, (g, k, j) in zip(theta[K - 1 + K * q:], self.active_cells):
            log_psi[g, k, j] = value
        return log_pi, coefs, log_psi

    def _pieces(self, theta: np.ndarray, covs: np.ndarray):
        log_pi, coefs, log_psi = self.unpack(theta)
        G = covs.shape[0]
        ell = np.zeros((G, self.K))
        resid = np.zeros((G, self.K, len(self.equations)))
        for e, (out_i, preds, sl, j) in enumerate(self.equations):
            c_oo = covs[:, out_i, out_i]
            c_po = covs[:, preds, out_i]
            c_pp = covs[:, preds][:, :, preds]
            for k in range(self.K):
                b = coefs[k, sl]
                r = c_oo - 2.0 * c_po @ b + np.einsum("i,gij,j->g", b, c_pp, b)
                resid[:, k, e] = r
                ell[:, k] -= 0.5 * self.n_obs * (LOG_2PI + log_psi[:, k, j] + r / np.exp(log_psi[:, k, j]))
        return log_pi, coefs, log_psi, ell, resid

    def loglik(self, theta: np.ndarray, covs: np.ndarray) -> float:
        """Mixture log-likelihood up to the exogenous part, which no parameter here touches."""
        log_pi, _, _, ell, _ = self._pieces(theta, covs)
        return float(logsumexp(log_pi + ell, axis=1).sum())

    def score(self, theta: np.ndarray, covs: np.ndarray) -> np.ndarray:
        log_pi, coefs, log_psi, ell, resid = self._pieces(theta, covs)
        joint = log_pi + ell
        z = np.exp(joint - logsumexp(joint, axis=1, keepdims=True))
        K, q = self.K, self.q
        grad_alpha = (z - np.exp(log_pi)).sum(axis=0)[:K - 1]
        grad_b = np.zeros((K, q))
        grad_psi = np.zeros_like(log_psi)
        for e, (out_i, preds, sl, j) in enumerate(self.equations):
            c_po = covs[:, preds, out_i]
            c_pp = covs[:, preds][:, :, preds]
            for k in range(K):
                psi = np.exp(log_psi[:, k, j])
                weight = z[:, k] * self.n_obs / psi
                grad_b[k, sl] = weight @ (c_po - c_pp @ coefs[k, sl])
                grad_psi[:, k, j] = -0.5 * z[:, k] * self.n_obs * (1.0 - resid[:, k, e] / psi)
        grad_log_psi = np.array([grad_psi[g, k, j] for g, k, j in self.active_cells])
        return np.concatenate([grad_alpha, grad_b.ravel(), grad_log_psi])


@dataclass
class StandardErrorSet:
    """Standard errors of a fitted model; clusters are indexed from 0."""

    labels: List[str]
    estimates: np.ndarray
    vcov: np.ndarray
    naive: bool
    nclus: int
    regression_labels: List[str]
    regression_offset: int = 0
    n_measurement_parameters: int = 0
    info: dict = field(default_factory=dict)

    @property
    def se(self) -> np.ndarray:
        return np.sqrt(np.clip(np.diag(self.vcov), 0.0, None))

    def regression_index(self, cluster: int, parameter: str) -> int:
        if not 0 <= cluster < self.nclus:
            raise KeyError(f"Cluster index {cluster} outside 0..{self.nclus - 1}")
        return self.regression_offset + cluster * len(self.regression_labels) + self.regression_labels.index(parameter)

    def get(self, cluster: int, parameter: str) -> float:
        return float(self.se[self.regression_index(cluster, parameter)])

    def __getitem__(self, key: Tuple[int, str]) -> float:
        cluster, parameter = key
        return self.get(cluster, parameter)

    @property
    def regressions(self) -> pd.DataFrame:
        """Standard errors of the regression coefficients, one column per cluster."""
        data = {
            f"Cluster {k + 1}": [self.get(k, label) for label in self.regression_labels] for k in range(self.nclus)
        }
        return pd.DataFrame(data, index=self.regression_labels)

    def table(self) -> pd.DataFrame:
        z = np.where(self.se > 0, self.estimates / np.where(self.se > 0, self.se, 1.0), np.nan)
        return pd.DataFrame(
            {
                "Estimate": self.estimates,
                "Std.Error": self.se,
                "z-value": z,
                "P(>|z|)": 2 * norm.sf(np.abs(z)),
            },
            index=self.labels,
        )

    def regression_block(self) -> Tuple[np.ndarray, np.ndarray]:
        """Estimates (clusters x parameters) and covariance of the flattened regression vector."""
        n = self.nclus * len(self.regression_labels)
        sl = slice(self.regression_offset, self.regression_offset + n)
        return self.estimates[sl].reshape(self.nclus, -1), self.vcov[sl, sl]

    def __repr__(self) -> str:
        kind = "naive" if self.naive else "two-step corrected"
        return f"StandardErrorSet({kind}, nclus={self.nclus}, parameters={len(self.labels)})"


def compute_se(
    model: MixtureModel,
    naive: Optional[bool] = None,
    config: Optional[InferenceConfig] = None,
    **kwargs,
) -> StandardErrorSet:
    """Standard errors of the step-2 parameters of ``model``.

    With ``naive=True`` the measurement parameters are treated as known;
    otherwise their sampling variability is propagated (much slower, as it
    needs the step-1 information matrix and the cross derivatives).
    """
    options = dict(kwargs)
    if naive is not None:
        options["naive"] = naive
    cfg = InferenceConfig(**{**(config or InferenceConfig()).model_dump(), **options})
    lik = MixtureLikelihood(model, cfg.min_posterior)
    covs = np.stack(model.measurement.factor_covariances())
    logger.info(
        "Computing %s standard errors for %d step-2 parameters",
        "naive" if cfg.naive else "corrected", lik.theta.size,
    )

    def step2_score(theta: np.ndarray) -> np.ndarray:
        return lik.score(theta, covs)

    i22 = -central_jacobian(step2_score, lik.theta, cfg.step)
    v22 = invert_information(i22, f"{model.nclus}-cluster structural model")
    vcov = v22
    n_meas = 0
    if not cfg.naive:
        measurement = model.measurement
        theta1 = measurement.theta
        n_meas = theta1.size

        def cross_score(t1: np.ndarray) -> np.ndarray:
            return lik.score(lik.theta, np.stack(measurement.factor_covariances(t1)))

        i21 = -central_jacobian(cross_score, theta1, cfg.step)
        v1 = measurement.covariance_matrix(cfg.step)
        correction = v22 @ i21 @ v1 @ i21.T @ v22
        vcov = v22 + 0.5 * (correction + correction.T)

    if np.any(np.diag(vcov) <= 0):
        raise SingularInformationMatrix(
            f"Non-positive variances in the covariance matrix of the {model.nclus}-cluster model"
        )
    return StandardErrorSet(
        labels=lik.labels(),
        estimates=lik.theta.copy(),
        vcov=vcov,
        naive=cfg.naive,
        nclus=model.nclus,
        regression_labels=model.spec.parameter_labels(),
        regression_offset=lik.regression_slice().start,
        n_measurement_parameters=n_meas,
        info={"min_posterior": cfg.min_posterior, "step": cfg.step},
    )


@dataclass
class TestResult:
    """Wald tests of regression differences across clusters."""

    overall: pd.DataFrame
    per_parameter: pd.DataFrame
    pairwise: Optional[pd.DataFrame] = None
    pairwise_parameters: Optional[pd.DataFrame] = None
    correction: str = "bonferroni"

    __test__ = False

    def __repr__(self) -> str:
        fmt = lambda v: f"{v:.4f}"
        lines = ["Wald test: all regression parameters equal across clusters"]
        lines.append(self.overall.to_string(float_format=fmt))
        lines.append("")
        lines.append("Wald tests per regression parameter")
        lines.append(self.per_parameter.to_string(float_format=fmt))
        if self.pairwise is not None:
            lines.append("")
            lines.append(f"Pairwise cluster comparisons ({self.correction} adjusted)")
            lines.append(self.pairwise.to_string(float_format=fmt))
            lines.append("")
            lines.append(self.pairwise_parameters.to_string(float_format=fmt))
        return "\n".join(lines)


def _wald(contrast: np.ndarray, estimates: np.ndarray, vcov: np.ndarray) -> Tuple[float, int, float]:
    diff = contrast @ estimates
    middle = contrast @ vcov @ contrast.T
    try:
        stat = float(diff @ np.linalg.solve(middle, diff))
    except np.linalg.LinAlgError as exc:
        raise SingularInformationMatrix("Covariance of the tested contrasts is singular") from exc
    df = contrast.shape[0]
    return stat, df, float(chi2.sf(stat, df))


def adjust_pvalues(pvalues: np.ndarray, method: str) -> np.ndarray:
    p = np.asarray(pvalues, dtype=float)
    m = p.size
    if method == "none" or m == 0:
        return p.copy()
    if method == "bonferroni":
        return np.minimum(1.0, p * m)
    if method == "holm":
        order = np.argsort(p)
        stepped = np.maximum.accumulate((m - np.arange(m)) * p[order])
        out = np.empty(m)
        out[order] = np.minimum(1.0, stepped)
        return out
    raise ValueError(f"Unknown multiplicity correction: {method}")


def wald_test(
    model: MixtureModel,
    se: StandardErrorSet,
    multiple_comparison: bool = False,
    correction: str = "bonferroni",
) -> TestResult:
    """Test whether regression parameters differ across clusters."""
    K = model.nclus
    if K < 2:
        raise InvalidK("Cluster differences need at least two clusters")
    if se.nclus != K or se.regression_labels != model.spec.parameter_labels():
        raise ValueError("Standard errors were computed for a different model")
    labels = se.regression_labels
    q = len(labels)
    coefs, vcov = se.regression_block()
    flat = coefs.ravel()
    to_last = np.hstack([np.eye(K - 1), -np.ones((K - 1, 1))])

    stat, df, p = _wald(np.kron(to_last, np.eye(q)), flat, vcov)
    overall = pd.DataFrame([{"statistic": stat, "df": df, "p_value": p}], index=["all"])

    rows = []
    for i, label in enumerate(labels):
        stat, df, p = _wald(np.kron(to_last, np.eye(q)[i:i + 1]), flat, vcov)
        rows.append({"parameter": label, "statistic": stat, "df": df, "p_value": p})
    per_parameter = pd.DataFrame(rows).set_index("parameter")

    result = TestResult(overall=overall, per_parameter=per_parameter, correction=correction)
    if multiple_comparison:
        pair_rows, param_rows = [], []
        for k, l in itertools.combinations(range(K), 2):
            pick = np.zeros((1, K))
            pick[0, k], pick[0, l] = 1.0, -1.0
            stat, df, p = _wald(np.kron(pick, np.eye(q)), flat, vcov)
            pair_rows.append({"cluster_a": k + 1, "cluster_b": l + 1, "statistic": stat, "df": df, "p_value": p})
            for i, label in enumerate(labels):
                contrast = np.kron(pick, np.eye(q)[i:i + 1])
                stat, df, p = _wald(contrast, flat, vcov)
                param_rows.append(
                    {
                        "cluster_a": k + 1,
                        "cluster_b": l + 1,
                        "parameter": label,
                        "difference": float(contrast @ flat),
                        "statistic": stat,
                        "p_value": p,
                    }
                )
        pairwise = pd.DataFrame(pair_rows)
        pairwise["p_adjusted"] = adjust_pvalues(pairwise["p_value"].to_numpy(), correction)
        pairwise = pairwise.set_index(["cluster_a", "cluster_b"])

        params = pd.DataFrame(param_rows)
        params["p_adjusted"] = np.nan
        for label in labels:
            mask = params["parameter"] == label
            params.loc[mask, "p_adjusted"] = adjust_pvalues(params.loc[mask, "p_value"].to_numpy(), correction)
        result.pairwise = pairwise
        result.pairwise_parameters = params.set_index(["cluster_a", "cluster_b", "parameter"])
    logger.info("Overall Wald test: W=%.3f, df=%d, p=%.4g", overall["statistic"].iloc[0], overall["df"].iloc[0], overall["p_value"].iloc[0])
    return result
