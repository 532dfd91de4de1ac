"""Conversation analysis: roles, boundaries and question/answer pairing."""

from knowledge_pipeline.analysis.analyzer import ConversationAnalyzer
from knowledge_pipeline.analysis.classifier import LLMRoleClassifier
from knowledge_pipeline.analysis.heuristics import HeuristicRoleStrategy, RoleStrategy
from knowledge_pipeline.analysis.models import (
    ConversationAnalysis,
    ConversationBoundary,
    ConversationMessage,
    MessageRole,
    QAPair,
    RoleAssignment,
)

__all__ = [
    "ConversationAnalyzer",
    "LLMRoleClassifier",
    "HeuristicRoleStrategy",
    "RoleStrategy",
    "ConversationAnalysis",
    "ConversationBoundary",
    "ConversationMessage",
    "MessageRole",
    "QAPair",
    "RoleAssignment",
]
