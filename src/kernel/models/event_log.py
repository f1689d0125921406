"""
Immutable event log for mission transitions.

Every transition a mission instance goes through is appended here in the same
transaction as the snapshot it produced.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import Index, String, func
from sqlalchemy.orm import Mapped, mapped_column

from src.kernel.models.base import Base, generate_uuid, utcnow


class EventType(str, Enum):
    """All event types for the transition log."""

    # Mission lifecycle
    MISSION_STARTED = "mission.started"
    MISSION_PAUSED = "mission.paused"
    MISSION_RESUMED = "mission.resumed"
    MISSION_COMPLETED = "mission.completed"
    MISSION_ABANDONED = "mission.abandoned"
    MISSION_EXPIRED = "mission.expired"

    # Steps
    STEP_COMPLETED = "mission.step_completed"
    STEP_FAILED = "mission.step_failed"

    # Difficulty
    DIFFICULTY_ADJUSTED = "mission.difficulty_adjusted"

    # Rewards
    REWARD_GRANTED = "reward.granted"


class EventLog(Base):
    """
    Immutable transition event log.

    This table is append-only - no updates or deletes allowed.
    """

    __tablename__ = "event_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=generate_uuid,
    )

    # Event identification
    event_type: Mapped[EventType] = mapped_column(
        String(100),
        nullable=False,
        index=True,
    )

    # Entity reference
    entity_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )
    entity_id: Mapped[uuid.UUID] = mapped_column(
        nullable=False,
        index=True,
    )

    # Actor
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        nullable=True,  # Expiry sweeps run without a user
        index=True,
    )

    # Event data
    payload: Mapped[Dict[str, Any]] = mapped_column(
        nullable=False,
        default=dict,
    )

    # Timestamp (immutable); set client-side so events of one transaction keep their order
    created_at: Mapped[datetime] = mapped_column(
        default=utcnow,
        server_default=func.now(),
        nullable=False,
        index=True,
    )

    __table_args__ = (
        Index("ix_event_logs_entity", "entity_type", "entity_id"),
        Index("ix_event_logs_type_time", "event_type", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<EventLog {self.event_type} {self.entity_type}:{self.entity_id}>"
