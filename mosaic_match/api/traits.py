"""
MosaicMatch — Traits API

Runs the aggregation + embedding pipeline for the signed-in user over the
conversation ids they submit.
"""

from __future__ import annotations

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, status

from mosaic_match.api.deps import get_user_context
from mosaic_match.schemas.traits import PipelineResult, TraitProcessRequest
from mosaic_match.services.session_registry import UserContext

logger = structlog.get_logger("mosaic_match.api.traits")

router = APIRouter()


@router.post(
    "/process",
    response_model=PipelineResult,
    summary="Aggregate conversation traits and submit them for embedding",
)
async def process_traits(
    body: TraitProcessRequest,
    context: Optional[UserContext] = Depends(get_user_context),
) -> PipelineResult:
    """Extract traits from every submitted conversation, merge them, and
    store the embedding.  Failures come back as ``success: false`` with the
    name of the failed step; the HTTP status stays 200."""
    if context is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User ID not available",
        )
    if context.pipeline is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Conversation store or embedding service is not configured.",
        )

    result = await context.pipeline.run(body.source_ids)
    if result.success:
        # New traits may change eligibility; resynchronize right away.
        await context.synchronizer.refresh()
    logger.info(
        "process_traits_handled",
        success=result.success,
        step=result.step,
        source_count=len(body.source_ids),
    )
    return result
