"""Model selection across numbers of clusters."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .config import EstimationConfig, SelectionConfig, normalize_nclus
from .engine import ClusterAssignmentEngine
from .errors import InvalidK
from .measurement import MeasurementFit
from .results import MixtureModel
from .syntax import StructuralSpec

logger = logging.getLogger(__name__)

__all__ = ["ModelSelector", "ModelSelectionResult", "fit_criteria", "convex_hull"]

_LOWER_IS_BETTER = ("BIC_G", "BIC_N", "AIC", "AIC3", "ICL_G", "ICL_N")
_HIGHER_IS_BETTER = ("LL", "Chull")


def fit_criteria(model: MixtureModel) -> Dict[str, float]:
    """Information criteria of one fitted model.

    ``BIC_G`` uses the number of groups as sample size, ``BIC_N`` the total
    number of observations; ICL adds twice the classification entropy.
    """
    ll = model.loglik
    npar = model.n_parameters
    n_groups = model.n_groups
    n_obs = float(model.n_obs.sum())
    bic_g = -2.0 * ll + npar * np.log(n_groups)
    bic_n = -2.0 * ll + npar * np.log(n_obs)
    entropy = model.entropy
    return {
        "LL": ll,
        "nrpar": npar,
        "BIC_G": bic_g,
        "BIC_N": bic_n,
        "AIC": -2.0 * ll + 2.0 * npar,
        "AIC3": -2.0 * ll + 3.0 * npar,
        "ICL_G": bic_g + 2.0 * entropy,
        "ICL_N": bic_n + 2.0 * entropy,
        "R2_entropy": model.r2_entropy,
        "converged": model.converged,
    }


def convex_hull(
    complexity: Sequence[float],
    fit: Sequence[float],
    tiebreak: str = "simplest",
) -> Tuple[np.ndarray, Optional[int]]:
    """Convex Hull scree ratios and the selected index.

    Models are sorted by complexity; a model that does not fit better than a
    simpler one, or that lies on or below the line joining its hull
    neighbours, is dropped. Interior hull points get the scree ratio
    ``((f_i - f_{i-1}) / (p_i - p_{i-1})) / ((f_{i+1} - f_i) / (p_{i+1} - p_i))``;
    every other model gets NaN. Returns ``(ratios, index)`` with ``index``
    ``None`` when fewer than three models are on the hull.
    """
    if tiebreak not in ("simplest", "complex"):
        raise ValueError(f"Unknown Convex Hull tie-break: {tiebreak}")
    p = np.asarray(complexity, dtype=float)
    f = np.asarray(fit, dtype=float)
    ratios = np.full(p.shape, np.nan)

    candidates: List[int] = []
    for i in np.argsort(p, kind="stable"):
        if not np.isfinite(f[i]):
            continue
        if candidates and p[i] == p[candidates[-1]]:
            if f[i] > f[candidates[-1]]:
                candidates[-1] = int(i)
            continue
        candidates.append(int(i))

    hull: List[int] = []
    for i in candidates:
        if hull and f[i] <= f[hull[-1]]:
            continue
        hull.append(i)

    removed = True
    while removed and len(hull) > 2:
        removed = False
        for pos in range(1, len(hull) - 1):
            a, b, c = hull[pos - 1], hull[pos], hull[pos + 1]
            line = f[a] + (f[c] - f[a]) * (p[b] - p[a]) / (p[c] - p[a])
            if f[b] <= line:
                del hull[pos]
                removed = True
                break

    for pos in range(1, len(hull) - 1):
        a, b, c = hull[pos - 1], hull[pos], hull[pos + 1]
        before = (f[b] - f[a]) / (p[b] - p[a])
        after = (f[c] - f[b]) / (p[c] - p[b])
        ratios[b] = before / after

    if len(hull) < 3:
        return ratios, None
    interior = hull[1:-1]
    best = max(ratios[i] for i in interior)
    tied = [i for i in interior if np.isclose(ratios[i], best, rtol=1e-10, atol=0.0)]
    pick = min(tied, key=lambda i: p[i]) if tiebreak == "simplest" else max(tied, key=lambda i: p[i])
    return ratios, int(pick)


class ModelSelectionResult:
    """One fitted model per number of clusters and their fit criteria."""

    def __init__(self, models: Dict[int, MixtureModel], chull_tiebreak: str = "simplest") -> None:
        if not models:
            raise InvalidK("No models were fitted")
        self.models = dict(sorted(models.items()))
        self.chull_tiebreak = chull_tiebreak
        self.table = self._build_table()

    @property
    def nclus(self) -> List[int]:
        return list(self.models)

    def _build_table(self) -> pd.DataFrame:
        rows = []
        for k, model in self.models.items():
            row = {"Clusters": k}
            row.update(fit_criteria(model))
            rows.append(row)
        table = pd.DataFrame(rows).set_index("Clusters")
        ratios, self._chull_pick = convex_hull(table["nrpar"], table["LL"], self.chull_tiebreak)
        table.insert(2, "Chull", ratios)
        return table

    def extract(self, nclus: int) -> MixtureModel:
        """Return the stored model with ``nclus`` clusters."""
        if nclus not in self.models:
            low, high = min(self.models), max(self.models)
            raise InvalidK(f"No model with {nclus} clusters; the search covered {low} to {high}")
        return self.models[nclus]

    def best(self, criterion: str = "BIC_G") -> int:
        """Number of clusters preferred by ``criterion``."""
        if criterion == "Chull":
            if self._chull_pick is None:
                raise ValueError("Convex Hull needs at least three models on the hull")
            return int(self.table.index[self._chull_pick])
        if criterion in _LOWER_IS_BETTER:
            return int(self.table[criterion].idxmin())
        if criterion in _HIGHER_IS_BETTER:
            return int(self.table[criterion].idxmax())
        raise ValueError(f"Unknown selection criterion: {criterion}")

    def __iter__(self) -> Iterator[MixtureModel]:
        return iter(self.models.values())

    def __len__(self) -> int:
        return len(self.models)

    def __repr__(self) -> str:
        lines = ["Model selection"]
        lines.append(self.table.to_string(float_format=lambda v: f"{v:.3f}"))
        picks = []
        for criterion in ("Chull", "BIC_G", "BIC_N", "AIC", "AIC3", "ICL_G"):
            try:
                picks.append(f"{criterion}: {self.best(criterion)}")
            except ValueError:
                continue
        lines.append("")
        lines.append("Selected number of clusters -> " + ", ".join(picks))
        return "\n".join(lines)


class ModelSelector:
    """Fit the same mixture model for a range of cluster counts."""

    def __init__(
        self,
        measurement: MeasurementFit,
        spec: StructuralSpec,
        estimation: Optional[EstimationConfig] = None,
        selection: Optional[SelectionConfig] = None,
    ) -> None:
        self.engine = ClusterAssignmentEngine(measurement, spec, estimation)
        self.selection = selection or SelectionConfig()

    def search(self, nclus_range=None, seed: Optional[int] = None) -> ModelSelectionResult:
        low, high = normalize_nclus(nclus_range if nclus_range is not None else self.selection.nclus)
        if high > self.engine.n_groups:
            raise InvalidK(f"Cannot form {high} clusters from {self.engine.n_groups} groups")
        ks = list(range(low, high + 1))
        seed = self.engine.config.seed if seed is None else seed
        logger.info("Model selection over %d to %d clusters (seed=%s)", low, high, seed)

        if self.selection.n_jobs > 1 and len(ks) > 1:
            if self.engine.config.init_strategy == "hierarchical":
                self.engine.single_group_estimates()
            with ThreadPoolExecutor(max_workers=self.selection.n_jobs) as executor:
                futures = {k: executor.submit(self.engine.fit, k, seed) for k in ks}
                models = {k: futures[k].result() for k in ks}
        else:
            models = {k: self.engine.fit(k, seed) for k in ks}
        return ModelSelectionResult(models, chull_tiebreak=self.selection.chull_tiebreak)
