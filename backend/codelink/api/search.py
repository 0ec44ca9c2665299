"""Code search API endpoints.

Provides:
- Diagnosis suggestions for free-text queries
- Procedure suggestions over active procedure codes
- Clinical text normalization with abbreviation expansion
"""

import logging
import time
from typing import Annotated

from fastapi import APIRouter, Query

from codelink.api.deps import Engine, elapsed_ms, storage_unavailable
from codelink.core.errors import StorageUnavailable
from codelink.schemas.api import (
    CandidateResponse,
    NormalizedMatch,
    NormalizeRequest,
    NormalizeResponse,
    SuggestResponse,
)
from codelink.schemas.base import SourceKind
from codelink.schemas.codes import SearchResult
from codelink.services.lexical import match_type

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Search"])


def _suggest_response(result: SearchResult, latency_ms: float) -> SuggestResponse:
    return SuggestResponse(
        query=result.query,
        normalized_query=result.normalized_query,
        results=[CandidateResponse.from_candidate(c) for c in result.candidates],
        count=len(result.candidates),
        degraded=result.degraded,
        degradation_reason=result.degradation_reason,
        latency_ms=latency_ms,
    )


@router.get("/suggest", response_model=SuggestResponse)
async def suggest_diagnoses(
    engine: Engine,
    q: Annotated[str, Query(min_length=1, max_length=200, description="Free-text diagnosis query")],
    limit: Annotated[int, Query(ge=1, le=50, description="Maximum number of suggestions")] = 8,
) -> SuggestResponse:
    """Suggest diagnosis codes for a free-text query.

    Combines prefix, code and trigram matching with semantic similarity.
    When the embedding provider is unavailable the response is marked
    ``degraded`` and contains lexical matches only.
    """
    start = time.perf_counter()
    try:
        result = await engine.search_diagnoses(q, limit)
    except StorageUnavailable as e:
        raise storage_unavailable(e) from e
    return _suggest_response(result, elapsed_ms(start, "suggest"))


@router.get("/procedures/suggest", response_model=SuggestResponse)
async def suggest_procedures(
    engine: Engine,
    q: Annotated[str, Query(min_length=1, max_length=200, description="Free-text procedure query")],
    limit: Annotated[int, Query(ge=1, le=50, description="Maximum number of suggestions")] = 8,
) -> SuggestResponse:
    """Suggest active procedure codes for a free-text query."""
    start = time.perf_counter()
    try:
        result = await engine.search_procedures(q, limit)
    except StorageUnavailable as e:
        raise storage_unavailable(e) from e
    return _suggest_response(result, elapsed_ms(start, "procedures/suggest"))


@router.post("/normalize", response_model=NormalizeResponse)
async def normalize_text(request: NormalizeRequest, engine: Engine) -> NormalizeResponse:
    """Normalize clinical shorthand and map it to diagnosis codes.

    Example: "DM type 2 w/o comp" is expanded to "type 2 diabetes
    mellitus without complications" before searching.
    """
    start = time.perf_counter()
    try:
        result = await engine.normalize(request.text, request.limit)
    except StorageUnavailable as e:
        raise storage_unavailable(e) from e

    matches = [
        NormalizedMatch(
            code=c.code,
            title=c.title,
            confidence=round(c.combined_score, 4),
            match_type=(
                "semantic"
                if c.source_kind == SourceKind.VECTOR
                else match_type(c.entry, result.normalized_query)
            ),
        )
        for c in result.candidates
    ]

    return NormalizeResponse(
        original=request.text,
        normalized=result.normalized_query,
        matches=matches,
        count=len(matches),
        degraded=result.degraded,
        latency_ms=elapsed_ms(start, "normalize"),
    )
