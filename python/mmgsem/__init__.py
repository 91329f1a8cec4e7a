"""Mixture multigroup structural equation modeling."""

from __future__ import annotations

from .errors import (
    MMGSEMError,
    InvalidModelSyntax,
    InvalidK,
    DimensionMismatch,
    DegenerateCluster,
    SingularInformationMatrix,
    NonConvergence,
    NonConvergenceWarning,
)
from .config import EstimationConfig, SelectionConfig, InferenceConfig
from .syntax import MeasurementSpec, StructuralSpec, parse_measurement, parse_structural
from .data import GroupData, split_groups
from .measurement import MeasurementFit, MeasurementModel, fit_measurement
from .structural import StructuralEstimator, StructuralParams
from .results import MixtureModel, MixtureSummary
from .engine import ClusterAssignmentEngine
from .labels import align_clusters, match_clusters
from .selection import ModelSelectionResult, ModelSelector, convex_hull, fit_criteria
from .inference import StandardErrorSet, TestResult, compute_se, wald_test
from .api import extract, mmgsem, model_selection, prepare_measurement, test_mmgsem
from .simulate import SimulatedData, simulate_data

__all__ = [
    "__version__",
    "mmgsem",
    "model_selection",
    "extract",
    "compute_se",
    "test_mmgsem",
    "wald_test",
    "prepare_measurement",
    "MMGSEMError",
    "InvalidModelSyntax",
    "InvalidK",
    "DimensionMismatch",
    "DegenerateCluster",
    "SingularInformationMatrix",
    "NonConvergence",
    "NonConvergenceWarning",
    "EstimationConfig",
    "SelectionConfig",
    "InferenceConfig",
    "MeasurementSpec",
    "StructuralSpec",
    "parse_measurement",
    "parse_structural",
    "GroupData",
    "split_groups",
    "MeasurementFit",
    "MeasurementModel",
    "fit_measurement",
    "StructuralEstimator",
    "StructuralParams",
    "MixtureModel",
    "MixtureSummary",
    "ClusterAssignmentEngine",
    "align_clusters",
    "match_clusters",
    "ModelSelectionResult",
    "ModelSelector",
    "convex_hull",
    "fit_criteria",
    "StandardErrorSet",
    "TestResult",
    "SimulatedData",
    "simulate_data",
]

__version__ = "0.1.0"
