"""
Pydantic schemas for the missions API.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from src.engines.missions.eligibility import UserProfile
from src.engines.missions.errors import ErrorCode
from src.engines.missions.progress_tracker import OperationResult, StepSubmissionResult, SubmissionOutcome
from src.engines.missions.types import (
    AbandonReason,
    MissionDefinition,
    MissionProgress,
    RewardEvent,
    Tier,
    TransitionEvent,
)
from src.engines.missions.verifier import VerificationResult


class MissionSummaryResponse(BaseModel):
    """Catalog entry without step details."""

    id: str
    title: str
    description: str
    category: str
    total_steps: int
    default_tier: Tier
    dda_enabled: bool
    time_limit_minutes: Optional[int] = None
    is_active: bool = True
    expires_at: Optional[datetime] = None
    min_level: int = 1
    prerequisites: List[str] = []
    required_badges: List[str] = []

    @classmethod
    def from_definition(cls, mission: MissionDefinition) -> "MissionSummaryResponse":
        return cls(
            id=mission.id,
            title=mission.title,
            description=mission.description,
            category=mission.category,
            total_steps=mission.total_steps,
            default_tier=mission.default_tier,
            dda_enabled=mission.dda_enabled,
            time_limit_minutes=mission.time_limit_minutes,
            is_active=mission.is_active,
            expires_at=mission.expires_at,
            min_level=mission.min_level,
            prerequisites=mission.prerequisites,
            required_badges=mission.required_badges,
        )


class StartMissionRequest(BaseModel):
    """Level and badges are what the caller knows; ledger badges are added server-side."""

    user_id: uuid.UUID
    level: int = Field(1, ge=1)
    badges: List[str] = []

    def profile(self) -> UserProfile:
        return UserProfile(level=self.level, badges=self.badges)


class VersionedRequest(BaseModel):
    """Optional optimistic-concurrency guard."""

    expected_version: Optional[int] = Field(None, ge=0)


class AbandonRequest(VersionedRequest):
    reason: AbandonReason = AbandonReason.USER_QUIT
    note: Optional[str] = Field(None, max_length=500)


class SubmitStepRequest(VersionedRequest):
    """Evidence payloads, each an object with a "type" key."""

    evidence: List[Dict[str, Any]] = []
    time_spent_seconds: int = Field(0, ge=0)
    rating: Optional[int] = Field(None, ge=1, le=5)


class MissionProgressResponse(BaseModel):
    progress: MissionProgress
    progress_percentage: float
    active_step_id: Optional[str] = None

    @classmethod
    def from_progress(cls, progress: MissionProgress) -> "MissionProgressResponse":
        active = progress.active_step()
        return cls(
            progress=progress,
            progress_percentage=progress.progress_percentage,
            active_step_id=active.step_id if active else None,
        )


class OperationResponse(BaseModel):
    progress: MissionProgressResponse
    transition_events: List[TransitionEvent] = []
    reward_events: List[RewardEvent] = []

    @classmethod
    def from_result(cls, result: OperationResult) -> "OperationResponse":
        return cls(
            progress=MissionProgressResponse.from_progress(result.progress),
            transition_events=result.transition_events,
            reward_events=result.reward_events,
        )


class StepSubmissionResponse(OperationResponse):
    outcome: SubmissionOutcome
    step_id: str
    quality_score: float
    verification: List[VerificationResult] = []
    error_code: Optional[ErrorCode] = None

    @classmethod
    def from_result(cls, result: StepSubmissionResult) -> "StepSubmissionResponse":
        return cls(
            progress=MissionProgressResponse.from_progress(result.progress),
            transition_events=result.transition_events,
            reward_events=result.reward_events,
            outcome=result.outcome,
            step_id=result.step_id,
            quality_score=result.quality_score,
            verification=result.verification,
            error_code=result.error_code,
        )


class ExpireOverdueResponse(BaseModel):
    expired: List[uuid.UUID]
    count: int


class RewardEntryResponse(BaseModel):
    """Row of the reward ledger."""

    model_config = ConfigDict(from_attributes=True)

    idempotency_key: str
    step_id: Optional[str] = None
    reward_type: str
    tier: Optional[str] = None
    xp: int
    payload: Dict[str, Any]
    created_at: datetime


class RewardsResponse(BaseModel):
    items: List[RewardEntryResponse]
    total_xp: int


class EventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    event_type: str
    payload: Dict[str, Any]
    created_at: datetime
