"""Cluster matching across fits (label switching)."""

from __future__ import annotations

from typing import List

import numpy as np
from scipy.optimize import linear_sum_assignment

from .results import MixtureModel

__all__ = ["cluster_distances", "match_clusters", "align_clusters"]


def cluster_distances(model: MixtureModel, reference: MixtureModel) -> np.ndarray:
    """Squared distances between regression vectors, model clusters x reference clusters."""
    if model.spec.parameter_labels() != reference.spec.parameter_labels():
        raise ValueError("Models with different structural models cannot be aligned")
    a = np.array([c.coefficients(model.spec) for c in model.clusters])
    b = np.array([c.coefficients(reference.spec) for c in reference.clusters])
    return ((a[:, None, :] - b[None, :, :]) ** 2).sum(axis=2)


def match_clusters(model: MixtureModel, reference: MixtureModel) -> List[int]:
    """Order of ``model``'s clusters that best matches ``reference`` (minimum total cost).

    Entry i is the cluster of ``model`` placed at position i. When the models
    have different numbers of clusters, unmatched clusters keep their relative
    order after the matched ones.
    """
    cost = cluster_distances(model, reference)
    rows, cols = linear_sum_assignment(cost)
    order = [int(r) for _, r in sorted(zip(cols, rows))]
    order.extend(k for k in range(model.nclus) if k not in order)
    return order


def align_clusters(model: MixtureModel, reference: MixtureModel) -> MixtureModel:
    """Relabel ``model`` so its clusters line up with ``reference``."""
    return model.permuted(match_clusters(model, reference))
