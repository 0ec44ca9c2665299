"""Diagnosis to procedure linkage API endpoints."""

import logging
import time
from typing import Annotated

from fastapi import APIRouter, HTTPException, Path, Query, status

from codelink.api.deps import Engine, elapsed_ms, storage_unavailable
from codelink.core.errors import StorageUnavailable, UnknownCode
from codelink.schemas.api import DiagnosisSummary, LinkageResponse, LinkedProcedureResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/icd", tags=["Linkage"])


@router.get("/{code}/cpt", response_model=LinkageResponse)
async def link_procedures(
    engine: Engine,
    code: Annotated[str, Path(min_length=1, max_length=16, description="ICD-10-CM diagnosis code")],
    limit: Annotated[int, Query(ge=1, le=50, description="Maximum number of procedures")] = 5,
) -> LinkageResponse:
    """Get validated procedure codes for a confirmed diagnosis.

    Candidates are scored by a clinical rule table; only approved links
    are returned, each with a relationship type and a rationale.

    Raises:
        HTTPException: 404 if the diagnosis code is unknown, 503 if the
            catalog store is unavailable.
    """
    start = time.perf_counter()
    try:
        result = await engine.link_procedures(code, limit)
    except UnknownCode as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Diagnosis code {e.code} not found",
        ) from e
    except StorageUnavailable as e:
        raise storage_unavailable(e) from e

    diagnosis = result.diagnosis
    return LinkageResponse(
        diagnosis=DiagnosisSummary(code=diagnosis.code, title=diagnosis.title, chapter=diagnosis.chapter),
        procedures=[LinkedProcedureResponse.from_link(link) for link in result.links],
        count=len(result.links),
        candidates_considered=result.candidates_considered,
        candidate_source=result.candidate_source,
        degraded=result.degraded,
        degradation_reason=result.degradation_reason,
        latency_ms=elapsed_ms(start, "linkage"),
    )
