"""Engine data types: catalog entries, candidates and linkage results.

CodeEntry is read-only to the engine. Everything else is created per
request and discarded after the response is built.
"""

from dataclasses import dataclass, field

from codelink.schemas.base import (
    LinkStatus,
    RelationshipType,
    RuleCategory,
    SourceKind,
    Vocabulary,
)


@dataclass(frozen=True)
class CodeEntry:
    """A diagnosis or procedure code from one of the catalogs.

    For procedures, ``title`` holds the short description and
    ``long_title`` the full display text.
    """

    code: str
    title: str
    vocabulary: Vocabulary
    normalized_title: str = ""
    synonyms: tuple[str, ...] = ()
    chapter: str | None = None
    subchapter: str | None = None
    long_title: str | None = None
    has_specifiers: bool = False
    active: bool = True
    embedding: tuple[float, ...] | None = field(default=None, repr=False, compare=False)

    @property
    def has_embedding(self) -> bool:
        """Check if a precomputed embedding is available."""
        return bool(self.embedding)

    @property
    def description(self) -> str:
        """Title and long title joined, used for keyword inference."""
        if self.long_title and self.long_title != self.title:
            return f"{self.title} {self.long_title}"
        return self.title


@dataclass
class Candidate:
    """A ranked search candidate wrapping a catalog entry."""

    entry: CodeEntry
    lexical_score: float = 0.0
    vector_similarity: float | None = None
    combined_score: float = 0.0
    source_kind: SourceKind = SourceKind.LEXICAL

    @property
    def code(self) -> str:
        return self.entry.code

    @property
    def title(self) -> str:
        return self.entry.title


@dataclass(frozen=True)
class AppliedRule:
    """One fired validation rule, in evaluation order."""

    rule_id: str
    category: RuleCategory
    delta: float
    rationale: str


@dataclass
class LinkCandidate:
    """A scored pairing of a diagnosis with a candidate procedure."""

    diagnosis: CodeEntry
    procedure: CodeEntry
    raw_similarity: float | None
    validation_score: float
    applied_rules: tuple[AppliedRule, ...] = ()
    status: LinkStatus = LinkStatus.REJECTED
    relationship_type: RelationshipType = RelationshipType.RELATED
    rationale: str = ""

    @property
    def is_approved(self) -> bool:
        return self.status == LinkStatus.APPROVED

    @property
    def triggered_rule_ids(self) -> list[str]:
        return [rule.rule_id for rule in self.applied_rules]


@dataclass
class VectorMatchResult:
    """Output of the vector path with an explicit availability flag."""

    candidates: list[Candidate] = field(default_factory=list)
    available: bool = True
    reason: str | None = None

    @classmethod
    def unavailable(cls, reason: str) -> "VectorMatchResult":
        return cls(candidates=[], available=False, reason=reason)


@dataclass
class SearchResult:
    """Result of a diagnosis or procedure search.

    ``degraded`` is set when the vector path was unavailable and only
    lexical matching contributed.
    """

    query: str
    normalized_query: str
    vocabulary: Vocabulary
    candidates: list[Candidate] = field(default_factory=list)
    degraded: bool = False
    degradation_reason: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.candidates


@dataclass
class LinkageResult:
    """Approved procedures for a confirmed diagnosis."""

    diagnosis: CodeEntry
    links: list[LinkCandidate] = field(default_factory=list)
    candidates_considered: int = 0
    candidate_source: SourceKind = SourceKind.VECTOR
    degraded: bool = False
    degradation_reason: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.links
