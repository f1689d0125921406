"""
Pydantic schemas for API request/response validation.
"""

from src.schemas.common import ErrorResponse, HealthResponse
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

__all__ = [
    # Common
    "ErrorResponse",
    "HealthResponse",
    # Missions
    "AbandonRequest",
    "EventResponse",
    "ExpireOverdueResponse",
    "MissionProgressResponse",
    "MissionSummaryResponse",
    "OperationResponse",
    "RewardEntryResponse",
    "RewardsResponse",
    "StartMissionRequest",
    "StepSubmissionResponse",
    "SubmitStepRequest",
    "VersionedRequest",
]
