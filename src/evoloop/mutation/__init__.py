"""Mutation layer: detection, analysis, and corrective handling."""

from evoloop.mutation.analyzer import AnalysisMetrics, MutationAnalyzer
from evoloop.mutation.detector import DetectionMetrics, MutationDetector
from evoloop.mutation.handler import HandlingMetrics, MutationHandler
from evoloop.mutation.models import (
    Correlation,
    Mutation,
    MutationAnalysis,
    MutationBaseline,
    MutationPattern,
    MutationPrediction,
    MutationSource,
    MutationStatus,
    MutationType,
    PropertyChange,
    RiskAssessment,
    RiskLevel,
)
from evoloop.mutation.responses import (
    ActionExecutor,
    ActionTemplate,
    MutationResponse,
    NullExecutor,
    ResponseAction,
    ResponseCondition,
    ResponseStatus,
    ResponseStrategy,
)

__all__ = [
    # Detection
    "MutationDetector",
    "DetectionMetrics",
    "Mutation",
    "MutationBaseline",
    "MutationSource",
    "MutationStatus",
    "MutationType",
    "PropertyChange",
    # Analysis
    "MutationAnalyzer",
    "AnalysisMetrics",
    "Correlation",
    "MutationAnalysis",
    "MutationPattern",
    "MutationPrediction",
    "RiskAssessment",
    "RiskLevel",
    # Handling
    "MutationHandler",
    "HandlingMetrics",
    "ActionExecutor",
    "ActionTemplate",
    "MutationResponse",
    "NullExecutor",
    "ResponseAction",
    "ResponseCondition",
    "ResponseStatus",
    "ResponseStrategy",
]
