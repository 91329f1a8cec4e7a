"""EM clustering of groups on cluster-specific structural models."""

from __future__ import annotations

import logging
import threading
import warnings
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
from scipy.cluster.hierarchy import fcluster, linkage
from scipy.special import logsumexp

from .config import EstimationConfig
from .errors import DegenerateCluster, InvalidK, NonConvergence, NonConvergenceWarning
from .measurement import MeasurementFit
from .results import MixtureModel
from .structural import StructuralEstimator, StructuralParams
from .syntax import StructuralSpec

logger = logging.getLogger(__name__)

__all__ = ["ClusterAssignmentEngine"]


class ClusterAssignmentEngine:
    """Fit mixture multigroup SEMs for a fixed measurement model.

    Parameters
    ----------
    measurement:
        Step-1 fit shared by every cluster count.
    spec:
        Structural model (S2).
    config:
        Estimation options; keyword arguments override individual fields.
    """

    def __init__(
        self,
        measurement: MeasurementFit,
        spec: StructuralSpec,
        config: Optional[EstimationConfig] = None,
        **kwargs,
    ) -> None:
        if tuple(spec.factors) != tuple(measurement.spec.factors):
            raise ValueError("Structural model factors must match the measurement model factors")
        base = config or EstimationConfig()
        self.config = EstimationConfig(**{**base.model_dump(), **kwargs}) if kwargs else base
        self.measurement = measurement
        self.spec = spec
        self.estimator = StructuralEstimator(
            spec,
            measurement.factor_covariances(),
            [g.n_obs for g in measurement.groups],
            max_iterations=self.config.inner_max_iterations,
            tolerance=self.config.inner_tolerance,
        )
        self._single_group: Optional[List[StructuralParams]] = None
        self._single_group_lock = threading.Lock()

    @property
    def n_groups(self) -> int:
        return self.estimator.n_groups

    def single_group_estimates(self) -> List[StructuralParams]:
        """Per-group structural estimates, computed once and shared across threads."""
        with self._single_group_lock:
            if self._single_group is None:
                self._single_group = self.estimator.single_group_estimates()
            return self._single_group

    def fit(
        self,
        nclus: int,
        seed: Optional[int] = None,
        init_strategy: Optional[str] = None,
        init: Optional[Union[Sequence[int], np.ndarray]] = None,
    ) -> MixtureModel:
        """Run (multi-start) EM for ``nclus`` clusters and return the best solution."""
        cfg = self.config
        seed = cfg.seed if seed is None else seed
        strategy = init_strategy or ("user" if init is not None else cfg.init_strategy)
        if nclus < 1:
            raise InvalidK(f"Number of clusters must be positive, got {nclus}")
        if nclus > self.n_groups:
            raise InvalidK(f"Cannot form {nclus} clusters from {self.n_groups} groups")
        if strategy == "user" and init is None:
            raise ValueError("init_strategy='user' requires an initial partition or posterior matrix")

        if strategy == "random" and nclus > 1:
            n_starts = cfg.nstarts
        else:
            n_starts = 1
        streams = np.random.SeedSequence(seed).spawn(n_starts)

        best = None
        failure: Optional[DegenerateCluster] = None
        start_logliks = []
        for start, stream in enumerate(streams):
            rng = np.random.default_rng(stream)
            if strategy == "random":
                z0 = self._random_start(nclus, rng)
            elif strategy == "hierarchical":
                z0 = self._hierarchical_start(nclus)
            else:
                z0 = self._user_start(nclus, init)
            try:
                run = self._run(z0, nclus, rng, start)
            except DegenerateCluster as exc:
                if cfg.on_empty_cluster == "raise":
                    raise
                logger.warning("K=%d start %d skipped: %s", nclus, start + 1, exc)
                failure = exc
                start_logliks.append(-np.inf)
                continue
            start_logliks.append(run["objective"])
            logger.debug(
                "K=%d start %d: objective %.4f after %d iterations (converged=%s)",
                nclus, start + 1, run["objective"], run["iterations"], run["converged"],
            )
            if best is None or run["objective"] > best["objective"]:
                best = dict(run, start=start)

        if best is None:
            raise DegenerateCluster(nclus, failure.cluster, failure.iteration, failure.start, n_failed=n_starts)
        model = MixtureModel(
            spec=self.spec,
            measurement=self.measurement,
            clusters=best["clusters"],
            proportions=best["proportions"],
            posteriors=best["posteriors"],
            group_logliks=best["group_logliks"],
            loglik=best["loglik"],
            objective=best["objective"],
            converged=best["converged"],
            iterations=best["iterations"],
            history=best["history"],
            assignment=cfg.assignment,
            seed=seed,
            nstarts=n_starts,
            best_start=best["start"],
            reinitializations=best["reinitializations"],
            monotone=best["monotone"],
            start_logliks=start_logliks,
        )
        logger.info("K=%d: log-likelihood %.4f (start %d of %d)", nclus, model.loglik, best["start"] + 1, n_starts)
        if not model.converged:
            message = (
                f"EM for {nclus} cluster(s) did not reach tolerance {cfg.tolerance} "
                f"within {cfg.max_iterations} iterations"
            )
            if cfg.raise_on_nonconvergence:
                raise NonConvergence(message, model)
            warnings.warn(message, NonConvergenceWarning, stacklevel=2)
        return model

    # ------------------------------------------------------------------
    # Starts
    # ------------------------------------------------------------------
    def _random_start(self, nclus: int, rng: np.random.Generator) -> np.ndarray:
        order = rng.permutation(self.n_groups)
        labels = np.empty(self.n_groups, dtype=int)
        labels[order[:nclus]] = np.arange(nclus)
        labels[order[nclus:]] = rng.integers(0, nclus, size=self.n_groups - nclus)
        return np.eye(nclus)[labels]

    def _hierarchical_start(self, nclus: int) -> np.ndarray:
        if nclus == 1:
            return np.ones((self.n_groups, 1))
        coefs = np.array([p.coefficients(self.spec) for p in self.single_group_estimates()])
        tree = linkage(coefs, method="ward")
        labels = fcluster(tree, t=nclus, criterion="maxclust") - 1
        if len(np.unique(labels)) < nclus:
            logger.warning("Hierarchical start produced fewer than %d clusters", nclus)
        return np.eye(nclus)[labels]

    def _user_start(self, nclus: int, init: Union[Sequence[int], np.ndarray]) -> np.ndarray:
        arr = np.asarray(init)
        if arr.ndim == 2:
            if arr.shape != (self.n_groups, nclus):
                raise ValueError(f"Initial posterior matrix must be {self.n_groups} x {nclus}, got {arr.shape}")
            if np.any(arr < 0) or not np.allclose(arr.sum(axis=1), 1.0):
                raise ValueError("Rows of the initial posterior matrix must be probability distributions")
            return arr.astype(float)
        if arr.shape != (self.n_groups,):
            raise ValueError(f"Initial partition must have one label per group ({self.n_groups})")
        values, labels = np.unique(arr, return_inverse=True)
        if len(values) > nclus:
            raise ValueError(f"Initial partition has {len(values)} labels for {nclus} clusters")
        if np.issubdtype(arr.dtype, np.integer) and arr.min() >= 0 and arr.max() < nclus:
            labels = arr
        return np.eye(nclus)[labels.astype(int)]

    # ------------------------------------------------------------------
    # EM
    # ------------------------------------------------------------------
    def _e_step(self, clusters: List[StructuralParams], proportions: np.ndarray) -> Tuple[np.ndarray, np.ndarray, float, float]:
        lls = np.column_stack([self.estimator.group_logliks(c) for c in clusters])
        with np.errstate(divide="ignore"):
            joint = np.log(proportions) + lls
        norm = logsumexp(joint, axis=1, keepdims=True)
        posteriors = np.exp(joint - norm)
        loglik = float(norm.sum())
        if self.config.assignment == "hard":
            labels = np.argmax(joint, axis=1)
            objective = float(joint[np.arange(len(labels)), labels].sum())
            posteriors = np.eye(len(clusters))[labels]
        else:
            objective = loglik
        return posteriors, lls, loglik, objective

    def _m_step(self, posteriors: np.ndarray, previous: Optional[List[StructuralParams]]) -> Tuple[List[StructuralParams], np.ndarray]:
        proportions = posteriors.mean(axis=0)
        clusters = []
        for k in range(posteriors.shape[1]):
            start = previous[k].beta if previous is not None else None
            clusters.append(self.estimator.estimate(posteriors[:, k], start=start))
        return clusters, proportions

    def _reinitialize(self, posteriors: np.ndarray, empty: np.ndarray, rng: np.random.Generator) -> np.ndarray:
        z = posteriors.copy()
        for k in empty:
            donors = np.flatnonzero(z.sum(axis=1) > 0)
            sizes = z.sum(axis=0)
            # take the group from a cluster that can spare it
            candidates = [g for g in donors if sizes[np.argmax(z[g])] > 1.0 + 1e-12] or list(donors)
            g = int(rng.choice(candidates))
            z[g] = 0.0
            z[g, k] = 1.0
        return z

    def _run(self, z: np.ndarray, nclus: int, rng: np.random.Generator, start: int) -> dict:
        cfg = self.config
        clusters: Optional[List[StructuralParams]] = None
        history: List[float] = []
        previous = -np.inf
        converged = False
        monotone = True
        reinitializations = 0
        iteration = 0
        lls = np.zeros((self.n_groups, nclus))
        loglik = objective = -np.inf
        proportions = z.mean(axis=0)

        for iteration in range(1, cfg.max_iterations + 1):
            empty = np.flatnonzero(z.sum(axis=0) < cfg.min_cluster_weight)
            if empty.size:
                if cfg.on_empty_cluster == "raise" or reinitializations >= cfg.max_reinitializations:
                    raise DegenerateCluster(nclus, int(empty[0]), iteration, start)
                logger.warning(
                    "K=%d start %d iteration %d: reinitialising empty cluster(s) %s",
                    nclus, start + 1, iteration, ", ".join(str(k + 1) for k in empty),
                )
                z = self._reinitialize(z, empty, rng)
                reinitializations += 1
                previous = -np.inf
                clusters = None

            clusters, proportions = self._m_step(z, clusters)
            z, lls, loglik, objective = self._e_step(clusters, proportions)
            history.append(objective)

            change = objective - previous
            if change < -cfg.monotonicity_slack * (1.0 + abs(previous)):
                monotone = False
                logger.warning(
                    "K=%d start %d iteration %d: objective decreased by %.3g",
                    nclus, start + 1, iteration, -change,
                )
            if abs(change) < cfg.tolerance:
                converged = True
                break
            previous = objective

        return {
            "clusters": clusters,
            "proportions": proportions,
            "posteriors": z,
            "group_logliks": lls,
            "loglik": loglik,
            "objective": objective,
            "converged": converged,
            "iterations": iteration,
            "history": history,
            "reinitializations": reinitializations,
            "monotone": monotone,
        }
