"""Pydantic request/response models for the HTTP API."""

from pydantic import BaseModel, Field

from codelink.schemas.base import LinkStatus, RelationshipType, RuleCategory, SourceKind
from codelink.schemas.codes import Candidate, LinkCandidate


class CandidateResponse(BaseModel):
    """One ranked code suggestion."""

    code: str
    title: str
    long_title: str | None = None
    chapter: str | None = None
    score: float = Field(..., ge=0, le=1, description="Combined hybrid score")
    lexical_score: float = Field(0.0, description="Raw weighted lexical score (may exceed 1)")
    vector_similarity: float | None = None
    source_kind: SourceKind
    has_specifiers: bool = False

    @classmethod
    def from_candidate(cls, candidate: Candidate) -> "CandidateResponse":
        entry = candidate.entry
        return cls(
            code=entry.code,
            title=entry.title,
            long_title=entry.long_title,
            chapter=entry.chapter,
            score=round(candidate.combined_score, 4),
            lexical_score=round(candidate.lexical_score, 4),
            vector_similarity=(
                round(candidate.vector_similarity, 4)
                if candidate.vector_similarity is not None
                else None
            ),
            source_kind=candidate.source_kind,
            has_specifiers=entry.has_specifiers,
        )


class SuggestResponse(BaseModel):
    """Response from diagnosis or procedure suggestion."""

    query: str
    normalized_query: str
    results: list[CandidateResponse]
    count: int
    degraded: bool = Field(False, description="True when only lexical matching contributed")
    degradation_reason: str | None = None
    latency_ms: float


class NormalizeRequest(BaseModel):
    """Request body for clinical text normalization."""

    text: str = Field(..., min_length=1, max_length=1000, description="Free-text clinical phrase")
    limit: int = Field(5, ge=1, le=50, description="Maximum diagnosis matches")


class NormalizedMatch(BaseModel):
    """A diagnosis the normalized text maps to."""

    code: str
    title: str
    confidence: float = Field(..., ge=0, le=1)
    match_type: str = Field(
        ...,
        description="code_match, exact_prefix, partial_match, fuzzy_match or semantic",
    )


class NormalizeResponse(BaseModel):
    """Response from clinical text normalization."""

    original: str
    normalized: str
    matches: list[NormalizedMatch]
    count: int
    degraded: bool = False
    latency_ms: float


class AppliedRuleResponse(BaseModel):
    rule_id: str
    category: RuleCategory
    delta: float
    rationale: str


class LinkedProcedureResponse(BaseModel):
    """An approved procedure for a diagnosis."""

    code: str
    title: str
    description: str | None = None
    chapter: str | None = None
    confidence: float = Field(
        ..., ge=0, le=1, description="Validated link confidence, capped by the configured ceiling"
    )
    raw_similarity: float | None = None
    status: LinkStatus
    relationship_type: RelationshipType
    rationale: str
    applied_rules: list[AppliedRuleResponse]

    @classmethod
    def from_link(cls, link: LinkCandidate) -> "LinkedProcedureResponse":
        procedure = link.procedure
        return cls(
            code=procedure.code,
            title=procedure.title,
            description=procedure.long_title,
            chapter=procedure.chapter,
            confidence=round(link.validation_score, 4),
            raw_similarity=round(link.raw_similarity, 4) if link.raw_similarity is not None else None,
            status=link.status,
            relationship_type=link.relationship_type,
            rationale=link.rationale,
            applied_rules=[
                AppliedRuleResponse(
                    rule_id=rule.rule_id,
                    category=rule.category,
                    delta=rule.delta,
                    rationale=rule.rationale,
                )
                for rule in link.applied_rules
            ],
        )


class DiagnosisSummary(BaseModel):
    code: str
    title: str
    chapter: str | None = None


class LinkageResponse(BaseModel):
    """Response from diagnosis to procedure linkage."""

    diagnosis: DiagnosisSummary
    procedures: list[LinkedProcedureResponse]
    count: int
    candidates_considered: int
    candidate_source: SourceKind
    degraded: bool = False
    degradation_reason: str | None = None
    latency_ms: float
