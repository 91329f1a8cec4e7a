"""Parse lavaan-style S1/S2 formulas into typed model structures.

Only two operators are understood: ``=~`` for loadings (step 1) and ``~``
for regressions among latent factors (step 2). The core never sees the
strings; it works with :class:`MeasurementSpec` and :class:`StructuralSpec`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np

from .errors import InvalidModelSyntax

__all__ = [
    "MeasurementSpec",
    "StructuralSpec",
    "parse_measurement",
    "parse_structural",
    "parse_partial",
]

Syntax = Union[str, Iterable[str]]


@dataclass(frozen=True)
class MeasurementSpec:
    """Simple-structure factor model; the first indicator of a factor is its marker."""

    factors: Tuple[str, ...]
    indicators: Tuple[str, ...]
    loadings: Tuple[Tuple[str, Tuple[str, ...]], ...]
    group_specific: FrozenSet[Tuple[str, str]] = field(default_factory=frozenset)

    @property
    def n_factors(self) -> int:
        return len(self.factors)

    @property
    def n_indicators(self) -> int:
        return len(self.indicators)

    def factor_of(self, indicator: str) -> str:
        for factor, items in self.loadings:
            if indicator in items:
                return factor
        raise KeyError(indicator)

    def pattern(self) -> np.ndarray:
        """Boolean indicators x factors matrix of non-zero loadings."""
        mask = np.zeros((self.n_indicators, self.n_factors), dtype=bool)
        for factor, items in self.loadings:
            col = self.factors.index(factor)
            for item in items:
                mask[self.indicators.index(item), col] = True
        return mask

    def markers(self) -> Dict[str, str]:
        return {factor: items[0] for factor, items in self.loadings}

    def with_group_specific(self, pairs: Iterable[Tuple[str, str]]) -> "MeasurementSpec":
        checked = set()
        for factor, item in pairs:
            if factor not in self.factors:
                raise InvalidModelSyntax(f"Unknown factor '{factor}' in partial invariance constraint")
            items = dict(self.loadings)[factor]
            if item not in items:
                raise InvalidModelSyntax(f"'{item}' does not load on '{factor}'")
            if item == items[0]:
                raise InvalidModelSyntax(
                    f"Marker loading {factor} =~ {item} is fixed to 1 and cannot be group-specific"
                )
            checked.add((factor, item))
        return MeasurementSpec(self.factors, self.indicators, self.loadings, frozenset(checked))


@dataclass(frozen=True)
class StructuralSpec:
    """Recursive regressions among latent factors."""

    factors: Tuple[str, ...]
    regressions: Tuple[Tuple[str, Tuple[str, ...]], ...]

    @property
    def n_factors(self) -> int:
        return len(self.factors)

    @property
    def endogenous(self) -> Tuple[str, ...]:
        outcomes = {outcome for outcome, _ in self.regressions}
        return tuple(f for f in self.factors if f in outcomes)

    @property
    def exogenous(self) -> Tuple[str, ...]:
        outcomes = {outcome for outcome, _ in self.regressions}
        return tuple(f for f in self.factors if f not in outcomes)

    def predictors_of(self, outcome: str) -> Tuple[str, ...]:
        return dict(self.regressions).get(outcome, ())

    def free_mask(self) -> np.ndarray:
        """``B[i, j]`` is free when factor j predicts factor i."""
        mask = np.zeros((self.n_factors, self.n_factors), dtype=bool)
        for outcome, predictors in self.regressions:
            row = self.factors.index(outcome)
            for predictor in predictors:
                mask[row, self.factors.index(predictor)] = True
        return mask

    def parameter_labels(self) -> List[str]:
        """Regression labels in the fixed order used for parameter vectors."""
        return [f"{outcome}~{predictor}" for outcome, predictors in self.regressions for predictor in predictors]

    @property
    def n_regressions(self) -> int:
        return sum(len(predictors) for _, predictors in self.regressions)


def _statements(syntax: Syntax) -> List[str]:
    if isinstance(syntax, str):
        raw = syntax.replace(";", "\n").splitlines()
    else:
        raw = [line for item in syntax for line in str(item).replace(";", "\n").splitlines()]
    cleaned = []
    for line in raw:
        line = line.split("#", 1)[0].strip()
        if line:
            cleaned.append(line)
    if not cleaned:
        raise InvalidModelSyntax("at least one equation is required")
    return cleaned


def _split_terms(rhs: str) -> List[str]:
    terms = [t.strip() for t in rhs.split("+")]
    if any(not t for t in terms):
        raise InvalidModelSyntax(f"Empty term in '{rhs.strip()}'")
    for term in terms:
        if not term.replace("_", "").replace(".", "").isalnum():
            raise InvalidModelSyntax(f"Invalid variable name '{term}'")
    return terms


def _check_name(name: str, statement: str) -> str:
    name = name.strip()
    if not name:
        raise InvalidModelSyntax(f"Missing left-hand side in '{statement}'")
    if not name.replace("_", "").replace(".", "").isalnum():
        raise InvalidModelSyntax(f"Invalid variable name '{name}' in '{statement}'")
    return name


def parse_measurement(syntax: Syntax, group_partial: Optional[Sequence[str]] = None) -> MeasurementSpec:
    """Parse S1 (``F =~ V1 + V2 + ...``) into a :class:`MeasurementSpec`."""
    factors: List[str] = []
    loadings: Dict[str, List[str]] = {}
    owner: Dict[str, str] = {}
    for stmt in _statements(syntax):
        if "=~" not in stmt:
            raise InvalidModelSyntax(f"Step 1 model only accepts '=~' statements, got: {stmt}")
        lhs, rhs = stmt.split("=~", 1)
        factor = _check_name(lhs, stmt)
        if not rhs.strip():
            raise InvalidModelSyntax(f"Loading equation for {factor} is empty")
        if factor not in loadings:
            factors.append(factor)
            loadings[factor] = []
        for indicator in _split_terms(rhs):
            if indicator in owner:
                raise InvalidModelSyntax(
                    f"Indicator '{indicator}' already loads on '{owner[indicator]}'; "
                    "only simple structure is supported"
                )
            owner[indicator] = factor
            loadings[factor].append(indicator)

    for factor in factors:
        if factor in owner:
            raise InvalidModelSyntax(f"'{factor}' is used both as a factor and as an indicator")

    indicators = tuple(item for factor in factors for item in loadings[factor])
    spec = MeasurementSpec(
        factors=tuple(factors),
        indicators=indicators,
        loadings=tuple((factor, tuple(loadings[factor])) for factor in factors),
    )
    if group_partial:
        spec = spec.with_group_specific(parse_partial(group_partial))
    return spec


def parse_partial(constraints: Sequence[str]) -> List[Tuple[str, str]]:
    """Parse ``["F1 =~ V2", ...]`` non-invariance labels into (factor, indicator) pairs."""
    pairs = []
    for constraint in constraints:
        if "=~" not in constraint:
            raise InvalidModelSyntax(f"Partial invariance constraint must use '=~': {constraint}")
        lhs, rhs = constraint.split("=~", 1)
        terms = _split_terms(rhs)
        factor = _check_name(lhs, constraint)
        pairs.extend((factor, term) for term in terms)
    return pairs


def parse_structural(syntax: Syntax, factors: Sequence[str]) -> StructuralSpec:
    """Parse S2 (``F4 ~ F1 + F3``) against the factors defined in S1."""
    known = tuple(factors)
    regressions: Dict[str, List[str]] = {}
    order: List[str] = []
    for stmt in _statements(syntax):
        if "=~" in stmt or "~~" in stmt or "~" not in stmt:
            raise InvalidModelSyntax(f"Step 2 model only accepts '~' statements, got: {stmt}")
        lhs, rhs = stmt.split("~", 1)
        outcome = _check_name(lhs, stmt)
        if not rhs.strip():
            raise InvalidModelSyntax(f"Regression equation for {outcome} is empty")
        if outcome not in known:
            raise InvalidModelSyntax(f"Unknown factor '{outcome}' in structural model")
        if outcome not in regressions:
            order.append(outcome)
            regressions[outcome] = []
        for predictor in _split_terms(rhs):
            if predictor not in known:
                raise InvalidModelSyntax(f"Unknown factor '{predictor}' in structural model")
            if predictor == outcome:
                raise InvalidModelSyntax(f"Factor '{outcome}' cannot be regressed on itself")
            if predictor not in regressions[outcome]:
                regressions[outcome].append(predictor)

    spec = StructuralSpec(
        factors=known,
        regressions=tuple((outcome, tuple(regressions[outcome])) for outcome in order),
    )
    _check_recursive(spec)
    return spec


def _check_recursive(spec: StructuralSpec) -> None:
    graph = {outcome: set(predictors) for outcome, predictors in spec.regressions}
    state: Dict[str, int] = {}

    def visit(node: str, path: List[str]) -> None:
        if state.get(node) == 1:
            cycle = " -> ".join(path[path.index(node):] + [node])
            raise InvalidModelSyntax(f"Structural model must be recursive; found cycle {cycle}")
        if state.get(node) == 2:
            return
        state[node] = 1
        for parent in graph.get(node, ()):
            visit(parent, path + [node])
        state[node] = 2

    for outcome in graph:
        visit(outcome, [])
