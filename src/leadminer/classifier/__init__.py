"""Relevance classification for candidate event pages."""

from .classifier import ClassificationBatch, Classifier, consistency_score
from .date_filter import EventDateFilter, parse_event_date
from .lexical import LexicalAnalyzer
from .llm_client import OpenAIClassifier, OpenAIEmbedder, parse_judgment, strip_markdown_fences

__all__ = [
    "ClassificationBatch",
    "Classifier",
    "EventDateFilter",
    "LexicalAnalyzer",
    "OpenAIClassifier",
    "OpenAIEmbedder",
    "consistency_score",
    "parse_event_date",
    "parse_judgment",
    "strip_markdown_fences",
]
