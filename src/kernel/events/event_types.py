"""
Event type definitions using Pydantic for validation.

These are the payload schemas for mission events logged to the event log.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from src.kernel.models.base import utcnow


class BaseEvent(BaseModel):
    """Base event payload structure."""

    model_config = ConfigDict(extra="allow")

    timestamp: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class MissionEvent(BaseEvent):
    """Mission transition payload."""

    mission_id: str
    progress_id: uuid.UUID
    tier: str
    step_id: Optional[str] = None


class StepCompletedEvent(MissionEvent):
    quality_score: float
    efficiency: float


class StepFailedEvent(MissionEvent):
    quality_score: float
    retry_count: int
    error_code: str
    reasons: List[str] = Field(default_factory=list)


class DifficultyAdjustedEvent(MissionEvent):
    from_tier: str
    to_tier: str
    reason: str


class MissionEndedEvent(MissionEvent):
    """Abandoned or expired; too_difficult abandons also carry difficulty feedback."""

    reason: Optional[str] = None
    note: Optional[str] = None
    difficulty_feedback: Optional[str] = None
    completion_percentage: Optional[float] = None
    time_spent: Optional[int] = None


class RewardGrantedEvent(BaseEvent):
    """Reward accepted by the ledger."""

    idempotency_key: str
    mission_id: str
    step_id: Optional[str] = None
    xp: int = 0
    items: List[Dict[str, Any]] = Field(default_factory=list)
