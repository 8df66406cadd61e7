"""Correlation engine: extraction, name resolution, joins and projection."""

from .extractor import RuleExtractor, scan_document
from .resolver import IdentifierResolver
from .correlation import CorrelationGraphBuilder
from .projector import project, project_all, summarize_markers

__all__ = [
    "RuleExtractor",
    "scan_document",
    "IdentifierResolver",
    "CorrelationGraphBuilder",
    "project",
    "project_all",
    "summarize_markers",
]
