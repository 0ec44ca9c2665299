"""Schemas and data types for CodeLink."""

from codelink.schemas.base import (
    AnatomicalTag,
    LinkStatus,
    RelationshipType,
    RuleCategory,
    SourceKind,
    Vocabulary,
)
from codelink.schemas.codes import (
    AppliedRule,
    Candidate,
    CodeEntry,
    LinkageResult,
    LinkCandidate,
    SearchResult,
    VectorMatchResult,
)

__all__ = [
    # Enums
    "AnatomicalTag",
    "LinkStatus",
    "RelationshipType",
    "RuleCategory",
    "SourceKind",
    "Vocabulary",
    # Engine types
    "AppliedRule",
    "Candidate",
    "CodeEntry",
    "LinkageResult",
    "LinkCandidate",
    "SearchResult",
    "VectorMatchResult",
]
