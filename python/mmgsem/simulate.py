"""Simulated data with a known cluster structure on the regressions.

The default design matches the tutorial model: four factors with five
indicators each, ``F3 ~ F1 + F2`` and ``F4 ~ F1 + F3``, metric invariance
except for the second indicator of every factor.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd

__all__ = ["SimulatedData", "simulate_data", "TUTORIAL_S1", "TUTORIAL_S2", "TUTORIAL_PARTIAL"]

TUTORIAL_S1 = """
    # factor loadings
    F1 =~ V1 + V2 + V3 + V4 + V5
    F2 =~ V6 + V7 + V8 + V9 + V10
    F3 =~ V11 + V12 + V13 + V14 + V15
    F4 =~ V16 + V17 + V18 + V19 + V20
"""

TUTORIAL_S2 = """
    # Regression parameters
    F4 ~ F1 + F3
    F3 ~ F1 + F2
"""

TUTORIAL_PARTIAL = ["F1 =~ V2", "F2 =~ V7", "F3 =~ V12", "F4 =~ V17"]

# F4~F1, F4~F3, F3~F1, F3~F2
_DEFAULT_REGRESSIONS = np.array(
    [
        [0.0, 0.6, 0.6, 0.0],
        [0.6, 0.0, 0.0, 0.6],
        [0.6, 0.6, 0.0, 0.0],
        [0.0, 0.0, 0.6, 0.6],
    ]
)


@dataclass
class SimulatedData:
    data: pd.DataFrame
    clusters: np.ndarray
    regressions: np.ndarray
    S1: str = TUTORIAL_S1
    S2: str = TUTORIAL_S2


def simulate_data(
    n_groups: int = 24,
    n_clusters: int = 4,
    n_per_group: int = 100,
    regressions: Optional[np.ndarray] = None,
    noninvariant: bool = True,
    seed: Optional[int] = None,
) -> SimulatedData:
    """Draw raw data for ``n_groups`` groups assigned round-robin to clusters.

    ``regressions`` is clusters x 4 in the order F4~F1, F4~F3, F3~F1, F3~F2.
    """
    rng = np.random.default_rng(seed)
    if regressions is None:
        if n_clusters > len(_DEFAULT_REGRESSIONS):
            raise ValueError(f"Give regressions explicitly for more than {len(_DEFAULT_REGRESSIONS)} clusters")
        regressions = _DEFAULT_REGRESSIONS[:n_clusters]
    regressions = np.asarray(regressions, dtype=float)
    if regressions.shape != (n_clusters, 4):
        raise ValueError(f"regressions must be {n_clusters} x 4, got {regressions.shape}")
    if n_groups < n_clusters:
        raise ValueError("Need at least one group per cluster")

    n_factors, per_factor = 4, 5
    n_items = n_factors * per_factor
    clusters = np.arange(n_groups) % n_clusters
    frames = []
    for g in range(n_groups):
        f41, f43, f31, f32 = regressions[clusters[g]]
        beta = np.zeros((n_factors, n_factors))
        beta[3, 0], beta[3, 2], beta[2, 0], beta[2, 1] = f41, f43, f31, f32

        psi = np.zeros((n_factors, n_factors))
        var = rng.uniform(0.8, 1.2, size=2)
        corr = rng.uniform(0.0, 0.3)
        psi[:2, :2] = [[var[0], corr * np.sqrt(var[0] * var[1])], [corr * np.sqrt(var[0] * var[1]), var[1]]]
        psi[2, 2], psi[3, 3] = rng.uniform(0.4, 0.6, size=2)
        inv = np.linalg.inv(np.eye(n_factors) - beta)
        factor_cov = inv @ psi @ inv.T

        loadings = np.zeros((n_items, n_factors))
        for f in range(n_factors):
            rows = slice(f * per_factor, (f + 1) * per_factor)
            loadings[rows, f] = [1.0, 0.8, 0.8, 0.8, 0.8]
            if noninvariant:
                loadings[f * per_factor + 1, f] = rng.uniform(0.5, 1.1)
        residual = rng.uniform(0.3, 0.5, size=n_items)
        intercepts = rng.normal(0.0, 0.5, size=n_items)

        eta = rng.multivariate_normal(np.zeros(n_factors), factor_cov, size=n_per_group)
        noise = rng.normal(size=(n_per_group, n_items)) * np.sqrt(residual)
        values = intercepts + eta @ loadings.T + noise
        frame = pd.DataFrame(values, columns=[f"V{i + 1}" for i in range(n_items)])
        frame["group"] = g + 1
        frames.append(frame)

    return SimulatedData(
        data=pd.concat(frames, ignore_index=True),
        clusters=clusters,
        regressions=regressions,
    )
