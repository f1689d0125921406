"""
Mission endpoints - catalog, lifecycle, step submission, rewards and events.

Engine errors propagate to the handlers in src.main, which map them to
ErrorResponse bodies (422 validation, 409 conflicts, 403 not eligible,
404 not found).
"""

import uuid
from typing import List, Optional

from fastapi import APIRouter, status

from src.api.deps import Catalog, MissionServiceDep
from src.engines.missions.stats import MissionStats
from src.engines.missions.types import MissionDefinition
from src.schemas.mission import (
    AbandonRequest,
    EventResponse,
    ExpireOverdueResponse,
    MissionProgressResponse,
    MissionSummaryResponse,
    OperationResponse,
    RewardEntryResponse,
    RewardsResponse,
    StartMissionRequest,
    StepSubmissionResponse,
    SubmitStepRequest,
    VersionedRequest,
)


router = APIRouter()


@router.get("/catalog", response_model=List[MissionSummaryResponse])
async def list_missions(catalog: Catalog, category: Optional[str] = None):
    """List registered missions."""
    return [MissionSummaryResponse.from_definition(m) for m in catalog.list(category=category)]


@router.get("/catalog/{mission_id}", response_model=MissionDefinition)
async def get_mission(mission_id: str, catalog: Catalog):
    """Full mission definition including steps and rewards."""
    return catalog.get(mission_id)


@router.get("/catalog/{mission_id}/stats", response_model=MissionStats)
async def get_mission_stats(mission_id: str, service: MissionServiceDep):
    """Start, completion and abandon counts with average completion time and rating."""
    return await service.mission_stats(mission_id)


@router.post(
    "/{mission_id}/start",
    response_model=OperationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def start_mission(mission_id: str, body: StartMissionRequest, service: MissionServiceDep):
    """
    Start a mission for a user; step 0 becomes active.

    403 NOT_ELIGIBLE when the user lacks the level, prerequisite missions or
    badges, or the mission is inactive or expired.
    """
    result = await service.start_mission(mission_id, body.user_id, profile=body.profile())
    return OperationResponse.from_result(result)


# Registered before /progress/{progress_id} routes so the literal path wins
@router.post("/progress/expire-overdue", response_model=ExpireOverdueResponse)
async def expire_overdue(service: MissionServiceDep):
    """Expire every active or paused instance past its deadline."""
    results = await service.expire_overdue()
    return ExpireOverdueResponse(expired=[r.progress.id for r in results], count=len(results))


@router.get("/progress/{progress_id}", response_model=MissionProgressResponse)
async def get_progress(progress_id: uuid.UUID, service: MissionServiceDep):
    progress = await service.get_progress(progress_id)
    return MissionProgressResponse.from_progress(progress)


@router.post(
    "/progress/{progress_id}/steps/{step_id}/submit",
    response_model=StepSubmissionResponse,
)
async def submit_step(
    progress_id: uuid.UUID,
    step_id: str,
    body: SubmitStepRequest,
    service: MissionServiceDep,
):
    """
    Submit evidence for the active step.

    A failed verification is a normal 200 response with outcome
    "verification_failed"; only malformed or out-of-order submissions error.
    """
    result = await service.submit_step(
        progress_id,
        step_id,
        body.evidence,
        time_spent_seconds=body.time_spent_seconds,
        rating=body.rating,
        expected_version=body.expected_version,
    )
    return StepSubmissionResponse.from_result(result)


@router.post("/progress/{progress_id}/pause", response_model=OperationResponse)
async def pause_mission(progress_id: uuid.UUID, service: MissionServiceDep, body: Optional[VersionedRequest] = None):
    result = await service.pause(progress_id, expected_version=body.expected_version if body else None)
    return OperationResponse.from_result(result)


@router.post("/progress/{progress_id}/resume", response_model=OperationResponse)
async def resume_mission(progress_id: uuid.UUID, service: MissionServiceDep, body: Optional[VersionedRequest] = None):
    result = await service.resume(progress_id, expected_version=body.expected_version if body else None)
    return OperationResponse.from_result(result)


@router.post("/progress/{progress_id}/abandon", response_model=OperationResponse)
async def abandon_mission(progress_id: uuid.UUID, service: MissionServiceDep, body: Optional[AbandonRequest] = None):
    body = body or AbandonRequest()
    result = await service.abandon(
        progress_id,
        reason=body.reason,
        note=body.note,
        expected_version=body.expected_version,
    )
    return OperationResponse.from_result(result)


@router.post("/progress/{progress_id}/expire", response_model=OperationResponse)
async def expire_mission(progress_id: uuid.UUID, service: MissionServiceDep):
    """Expire one instance; already-terminal instances are returned unchanged."""
    result = await service.expire(progress_id)
    return OperationResponse.from_result(result)


@router.get("/progress/{progress_id}/rewards", response_model=RewardsResponse)
async def list_rewards(progress_id: uuid.UUID, service: MissionServiceDep):
    entries = await service.list_rewards(progress_id)
    return RewardsResponse(
        items=[RewardEntryResponse.model_validate(e) for e in entries],
        total_xp=sum(e.xp for e in entries),
    )


@router.get("/progress/{progress_id}/events", response_model=List[EventResponse])
async def list_events(progress_id: uuid.UUID, service: MissionServiceDep):
    events = await service.list_events(progress_id)
    return [EventResponse.model_validate(e) for e in events]
