"""High-level front-end mirroring the mmgsem workflow.

Typical use::

    fit = mmgsem(data, S1, S2, group="group", nclus=4, seed=1)
    sel = model_selection(data, S1, S2, group="group", nclus=(1, 6), seed=1)
    chosen = extract(sel, 4)
    se = compute_se(chosen, naive=True)
    print(test_mmgsem(chosen, se, multiple_comparison=True))
"""

from __future__ import annotations

import logging
import numbers
from typing import Any, Optional, Sequence, Tuple, Union

import pandas as pd

from .config import EstimationConfig, SelectionConfig, normalize_nclus
from .data import split_groups
from .engine import ClusterAssignmentEngine
from .errors import DimensionMismatch, InvalidK
from .inference import compute_se, wald_test
from .measurement import MeasurementFit, fit_measurement
from .results import MixtureModel
from .selection import ModelSelectionResult, ModelSelector
from .syntax import Syntax, parse_measurement, parse_structural

logger = logging.getLogger(__name__)

__all__ = ["mmgsem", "model_selection", "extract", "compute_se", "test_mmgsem", "prepare_measurement"]

_SELECTION_KEYS = ("n_jobs", "chull_tiebreak")


def prepare_measurement(
    data: Optional[pd.DataFrame],
    S1: Syntax,
    group: Optional[str],
    s1_fit: Optional[MeasurementFit] = None,
    group_partial: Optional[Sequence[str]] = None,
) -> MeasurementFit:
    """Return the step-1 fit, estimating it from ``data`` when none is supplied."""
    spec = parse_measurement(S1, group_partial)
    if s1_fit is not None:
        if tuple(s1_fit.spec.factors) != spec.factors or tuple(s1_fit.spec.indicators) != spec.indicators:
            raise DimensionMismatch("The supplied step-1 fit does not match the S1 model")
        return s1_fit
    if data is None or group is None:
        raise ValueError("data and group are required when no step-1 fit is supplied")
    groups = split_groups(data, spec.indicators, group)
    return fit_measurement(spec, groups)


def _split_options(kwargs: dict) -> Tuple[dict, dict]:
    selection = {k: kwargs.pop(k) for k in _SELECTION_KEYS if k in kwargs}
    return kwargs, selection


def mmgsem(
    data: Optional[pd.DataFrame],
    S1: Syntax,
    S2: Syntax,
    group: Optional[str] = None,
    nclus: int = 2,
    seed: Optional[int] = None,
    s1_fit: Optional[MeasurementFit] = None,
    group_partial: Optional[Sequence[str]] = None,
    init: Optional[Any] = None,
    config: Optional[EstimationConfig] = None,
    **kwargs,
) -> MixtureModel:
    """Fit a mixture multigroup SEM with ``nclus`` clusters.

    Parameters
    ----------
    data : DataFrame
        Raw data with the indicators of S1 and the grouping column. May be
        ``None`` when ``s1_fit`` is given.
    S1, S2 : str or list of str
        Measurement (``=~``) and structural (``~``) model syntax.
    group : str
        Name of the grouping column.
    nclus : int
        Number of clusters.
    seed : int, optional
        Seed for the random starts.
    s1_fit : MeasurementFit, optional
        Step-1 fit to reuse (see :meth:`MeasurementFit.from_matrices`).
    group_partial : list of str, optional
        Group-specific loadings, e.g. ``["F1 =~ V2"]``.
    init : sequence or array, optional
        Initial partition (one label per group) or posterior matrix; implies
        ``init_strategy="user"``.
    **kwargs
        Fields of :class:`EstimationConfig` (``nstarts``, ``max_iterations``,
        ``tolerance``, ``init_strategy``, ``assignment``, ...).
    """
    if isinstance(nclus, bool) or not isinstance(nclus, numbers.Integral):
        raise InvalidK(f"nclus must be a single integer here, got {nclus!r}; use model_selection() for ranges")
    measurement = prepare_measurement(data, S1, group, s1_fit, group_partial)
    spec = parse_structural(S2, measurement.spec.factors)
    engine = ClusterAssignmentEngine(measurement, spec, config, **kwargs)
    return engine.fit(int(nclus), seed=seed, init=init)


def model_selection(
    data: Optional[pd.DataFrame],
    S1: Syntax,
    S2: Syntax,
    group: Optional[str] = None,
    nclus: Union[int, Tuple[int, int]] = (1, 6),
    seed: Optional[int] = None,
    s1_fit: Optional[MeasurementFit] = None,
    group_partial: Optional[Sequence[str]] = None,
    config: Optional[EstimationConfig] = None,
    **kwargs,
) -> ModelSelectionResult:
    """Fit every cluster count in the inclusive ``nclus`` range on one shared step-1 fit.

    ``n_jobs`` and ``chull_tiebreak`` configure the search; other keyword
    arguments are estimation options.
    """
    low, high = normalize_nclus(nclus)
    estimation, selection = _split_options(dict(kwargs))
    measurement = prepare_measurement(data, S1, group, s1_fit, group_partial)
    spec = parse_structural(S2, measurement.spec.factors)
    base = config or EstimationConfig()
    est_config = EstimationConfig(**{**base.model_dump(), **estimation})
    sel_config = SelectionConfig(nclus=(low, high), **selection)
    selector = ModelSelector(measurement, spec, est_config, sel_config)
    return selector.search(seed=seed)


def extract(selection: ModelSelectionResult, nclus: int) -> MixtureModel:
    """Pull the ``nclus``-cluster model out of a model selection result."""
    return selection.extract(nclus)


def test_mmgsem(model: MixtureModel, se, multiple_comparison: bool = False, correction: str = "bonferroni"):
    """Wald tests of regression differences across clusters (see :func:`wald_test`)."""
    return wald_test(model, se, multiple_comparison=multiple_comparison, correction=correction)


test_mmgsem.__test__ = False
