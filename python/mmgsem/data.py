from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Hashable, List, Optional, Sequence

import numpy as np
import pandas as pd

from .errors import DimensionMismatch

__all__ = ["GroupData", "split_groups", "total_observations"]


@dataclass(frozen=True)
class GroupData:
    """Sample moments of one group over the model indicators.

    ``covariance`` uses the ML divisor ``n_obs``.
    """

    name: Hashable
    n_obs: int
    mean: np.ndarray
    covariance: np.ndarray

    def __post_init__(self) -> None:
        mean = np.asarray(self.mean, dtype=float).ravel()
        cov = np.asarray(self.covariance, dtype=float)
        if cov.ndim != 2 or cov.shape[0] != cov.shape[1]:
            raise DimensionMismatch(f"Covariance of group {self.name!r} must be square, got {cov.shape}")
        if cov.shape[0] != mean.shape[0]:
            raise DimensionMismatch(
                f"Group {self.name!r}: mean has {mean.shape[0]} entries but covariance is {cov.shape}"
            )
        if not np.allclose(cov, cov.T, atol=1e-10):
            raise DimensionMismatch(f"Covariance of group {self.name!r} is not symmetric")
        if self.n_obs < 2:
            raise DimensionMismatch(f"Group {self.name!r} needs at least 2 observations, got {self.n_obs}")
        object.__setattr__(self, "mean", mean)
        object.__setattr__(self, "covariance", cov)

    @property
    def n_indicators(self) -> int:
        return self.mean.shape[0]

    @classmethod
    def from_rows(cls, name: Hashable, rows: Any) -> "GroupData":
        values = np.asarray(rows, dtype=float)
        if values.ndim != 2:
            raise DimensionMismatch(f"Rows of group {name!r} must be two-dimensional")
        n_obs = values.shape[0]
        if n_obs < 2:
            raise DimensionMismatch(f"Group {name!r} needs at least 2 observations, got {n_obs}")
        mean = values.mean(axis=0)
        centered = values - mean
        return cls(name, n_obs, mean, centered.T @ centered / n_obs)

    @classmethod
    def from_moments(
        cls, name: Hashable, n_obs: int, mean: Sequence[float], covariance: Any, *, unbiased: bool = False
    ) -> "GroupData":
        """Build from summary statistics; ``unbiased`` rescales an N-1 covariance."""
        cov = np.asarray(covariance, dtype=float)
        if unbiased:
            cov = cov * (n_obs - 1) / n_obs
        return cls(name, int(n_obs), np.asarray(mean, dtype=float), cov)


def split_groups(
    data: pd.DataFrame,
    indicators: Sequence[str],
    group: str,
    *,
    dropna: bool = True,
) -> List[GroupData]:
    """Split a long data frame into per-group moments ordered by group label."""
    if group not in data.columns:
        raise DimensionMismatch(f"Grouping variable '{group}' not found in data")
    missing = [name for name in indicators if name not in data.columns]
    if missing:
        raise DimensionMismatch(f"Indicators not found in data: {', '.join(missing)}")

    frame = data[list(indicators) + [group]]
    if dropna:
        frame = frame.dropna()
    labels = frame[group].unique()
    labels = sorted(labels, key=lambda x: (str(type(x)), x))

    groups = []
    for label in labels:
        rows = frame.loc[frame[group] == label, list(indicators)].to_numpy(dtype=float)
        groups.append(GroupData.from_rows(label, rows))
    return groups


def total_observations(groups: Sequence[GroupData], weights: Optional[np.ndarray] = None) -> float:
    n = np.array([g.n_obs for g in groups], dtype=float)
    if weights is None:
        return float(n.sum())
    return float(n @ weights)
