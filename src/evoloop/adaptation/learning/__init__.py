"""Adaptive learning: experiences, mined patterns, knowledge, and outcome models."""

from evoloop.adaptation.learning.engine import AdaptiveLearning, experience_from_event
from evoloop.adaptation.learning.knowledge import KnowledgeStore, pattern_holds
from evoloop.adaptation.learning.models import (
    ExperiencePattern,
    ExperienceStatus,
    KnowledgeLink,
    KnowledgeUnit,
    LearningAction,
    LearningExperience,
    LearningModel,
    LearningResult,
    LearningStatistics,
    PatternCondition,
    PatternKind,
    PatternOutcome,
    TrainingItem,
)

__all__ = [
    "AdaptiveLearning",
    "ExperiencePattern",
    "ExperienceStatus",
    "KnowledgeLink",
    "KnowledgeStore",
    "KnowledgeUnit",
    "LearningAction",
    "LearningExperience",
    "LearningModel",
    "LearningResult",
    "LearningStatistics",
    "PatternCondition",
    "PatternKind",
    "PatternOutcome",
    "TrainingItem",
    "experience_from_event",
    "pattern_holds",
]
