"""Adaptation layer: strategies, learning, and optimization."""

from evoloop.adaptation.models import (
    Objective,
    ObjectiveType,
    OptimizationParameter,
    RuleAction,
    RuleCondition,
    RuleFunction,
    Strategy,
    StrategyAction,
    StrategyActionType,
    StrategyCondition,
    StrategyEvent,
    StrategyRule,
)
from evoloop.adaptation.strategy import StrategyManager, StrategyMetrics
from evoloop.adaptation.learning import AdaptiveLearning, KnowledgeStore, LearningStatistics
from evoloop.adaptation.optimization import (
    AdaptiveOptimizer,
    Optimization,
    OptimizationMetrics,
    OptimizationStatus,
)

__all__ = [
    # Strategies
    "StrategyManager",
    "StrategyMetrics",
    "Strategy",
    "StrategyAction",
    "StrategyActionType",
    "StrategyCondition",
    "StrategyEvent",
    "StrategyRule",
    "RuleAction",
    "RuleCondition",
    "RuleFunction",
    # Learning
    "AdaptiveLearning",
    "KnowledgeStore",
    "LearningStatistics",
    # Optimization
    "AdaptiveOptimizer",
    "Objective",
    "ObjectiveType",
    "Optimization",
    "OptimizationMetrics",
    "OptimizationParameter",
    "OptimizationStatus",
]
