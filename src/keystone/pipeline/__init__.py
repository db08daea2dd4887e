"""Requirement analysis: scoring, decisions, and breakdown cascades."""

from keystone.pipeline.analysis import RequirementPipeline, confidence_label
from keystone.pipeline.analyzer import Analyzer, Breakdown, KeywordAnalyzer
from keystone.pipeline.cascade import CascadeResult, cascade_breakdown

__all__ = [
    "Analyzer",
    "Breakdown",
    "CascadeResult",
    "KeywordAnalyzer",
    "RequirementPipeline",
    "cascade_breakdown",
    "confidence_label",
]
