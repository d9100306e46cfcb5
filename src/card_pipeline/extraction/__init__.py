"""Local heuristic extraction of card fields."""

from .confidence import CANONICAL_FIELDS, score_confidence
from .local_parser import FieldRule, LocalHeuristicExtractor
from .patterns import PatternTables, default_pattern_tables

__all__ = [
    "CANONICAL_FIELDS",
    "FieldRule",
    "LocalHeuristicExtractor",
    "PatternTables",
    "default_pattern_tables",
    "score_confidence",
]
