"""
MosaicMatch — Matching API

Endpoints exposing the per-user status synchronizer: read the current
snapshot, force a refresh, opt in / opt out, and (outside production) drive
the journey simulator.
"""

from __future__ import annotations

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from mosaic_match.api.deps import get_user_context
from mosaic_match.config import get_settings
from mosaic_match.schemas.matching import (
    MatchActionResponse,
    MatchingStatusResponse,
    SimulatorStateRequest,
    UIMatchingStatus,
)
from mosaic_match.schemas.traits import SimilarUsersResponse
from mosaic_match.services.errors import classify_error
from mosaic_match.services.session_registry import UserContext
from mosaic_match.services.synchronizer import StatusSynchronizer, SyncSnapshot

logger = structlog.get_logger("mosaic_match.api.matching")

router = APIRouter()


def _status_response(
    snapshot: SyncSnapshot,
    last_error: Optional[str] = None,
) -> MatchingStatusResponse:
    return MatchingStatusResponse(
        status=snapshot.status,
        is_loading=snapshot.is_loading,
        is_eligible=snapshot.is_eligible,
        is_processing=snapshot.is_processing,
        is_waiting=snapshot.is_waiting,
        is_matched=snapshot.is_matched,
        wait_time_minutes=snapshot.wait_time_minutes,
        wait_time_text=snapshot.wait_time_text,
        match_score=snapshot.match_score,
        matching_status=snapshot.matching_status,
        current_match=snapshot.current_match,
        user_traits=snapshot.user_traits,
        last_refresh_time=snapshot.last_refresh_time,
        last_error=last_error,
    )


_NOT_ELIGIBLE = SyncSnapshot(status=UIMatchingStatus.NOT_ELIGIBLE)


async def _synchronized(sync: StatusSynchronizer) -> SyncSnapshot:
    if sync.current_state().is_loading:
        await sync.refresh()
    return sync.current_state()


# ──────────────────────────────────────────────────────────────────────────────
# GET /status — Current matching snapshot
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "/status",
    response_model=MatchingStatusResponse,
    summary="Current matching status for the signed-in user",
)
async def get_matching_status(
    context: Optional[UserContext] = Depends(get_user_context),
) -> MatchingStatusResponse:
    if context is None:
        return _status_response(_NOT_ELIGIBLE)
    sync = context.synchronizer
    snapshot = await _synchronized(sync)
    return _status_response(snapshot, sync.last_error)


@router.post(
    "/refresh",
    response_model=MatchingStatusResponse,
    summary="Force a synchronization pass",
)
async def refresh_matching_status(
    context: Optional[UserContext] = Depends(get_user_context),
) -> MatchingStatusResponse:
    if context is None:
        return _status_response(_NOT_ELIGIBLE)
    sync = context.synchronizer
    await sync.refresh()
    return _status_response(sync.current_state(), sync.last_error)


# ──────────────────────────────────────────────────────────────────────────────
# POST /opt-in, /opt-out
# ──────────────────────────────────────────────────────────────────────────────

@router.post("/opt-in", response_model=MatchActionResponse, summary="Join the matching queue")
async def opt_in(
    context: Optional[UserContext] = Depends(get_user_context),
) -> MatchActionResponse:
    if context is None:
        return MatchActionResponse(success=False, status=UIMatchingStatus.NOT_ELIGIBLE)
    sync = context.synchronizer
    await _synchronized(sync)
    success = await sync.opt_in()
    return MatchActionResponse(
        success=success,
        status=sync.status,
        message=None if success else sync.last_error,
    )


@router.post("/opt-out", response_model=MatchActionResponse, summary="Leave the matching queue")
async def opt_out(
    context: Optional[UserContext] = Depends(get_user_context),
) -> MatchActionResponse:
    if context is None:
        return MatchActionResponse(success=False, status=UIMatchingStatus.NOT_ELIGIBLE)
    sync = context.synchronizer
    success = await sync.opt_out()
    return MatchActionResponse(
        success=success,
        status=sync.status,
        message=None if success else sync.last_error,
    )


# ──────────────────────────────────────────────────────────────────────────────
# GET /similar — Nearest users by trait embedding
# ──────────────────────────────────────────────────────────────────────────────

@router.get("/similar", response_model=SimilarUsersResponse, summary="Find similar users")
async def find_similar_users(
    top_k: int = Query(default=5, ge=1, le=50),
    include_vectors: bool = Query(default=False),
    context: Optional[UserContext] = Depends(get_user_context),
) -> SimilarUsersResponse:
    if context is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User ID not available",
        )
    if context.pipeline is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Embedding service is not configured.",
        )
    try:
        users = await context.pipeline.find_similar_users(top_k, include_vectors)
    except Exception as exc:
        classification = classify_error(exc)
        logger.error("find_similar_users_failed", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=classification.user_message,
        ) from exc
    return SimilarUsersResponse(similar_users=users, count=len(users))


# ──────────────────────────────────────────────────────────────────────────────
# POST /simulator/state — Development-only journey control
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/simulator/state",
    response_model=MatchingStatusResponse,
    summary="Force the simulated journey into a state (non-production)",
)
async def force_simulator_state(
    body: SimulatorStateRequest,
    context: Optional[UserContext] = Depends(get_user_context),
) -> MatchingStatusResponse:
    settings = get_settings()
    if settings.is_production or not settings.use_simulator:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Simulator controls are not available.",
        )
    if context is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User ID not available",
        )
    context.simulator.force_state(
        body.state,
        time_in_state=body.time_in_state,
        match_score=body.match_score,
    )
    sync = context.synchronizer
    await sync.refresh()
    return _status_response(sync.current_state(), sync.last_error)
