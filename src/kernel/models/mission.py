"""
Mission models - progress snapshots and the reward ledger.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import DateTime, Index, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from src.kernel.models.base import Base, TimestampMixin, generate_uuid, utcnow


class MissionProgressRecord(Base, TimestampMixin):
    """
    One mission instance per (user, mission).

    The full MissionProgress lives in `snapshot`; status, deadline and version
    are mirrored into columns for querying and optimistic locking.
    """

    __tablename__ = "mission_progress"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=generate_uuid,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(nullable=False, index=True)
    mission_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    current_difficulty: Mapped[str] = mapped_column(String(10), nullable=False)
    deadline_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    snapshot: Mapped[Dict[str, Any]] = mapped_column(nullable=False, default=dict)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("user_id", "mission_id", name="uq_mission_progress_user_mission"),
        Index("ix_mission_progress_status_deadline", "status", "deadline_at"),
    )

    def __repr__(self) -> str:
        return f"<MissionProgressRecord {self.mission_id} {self.status} v{self.version}>"


class RewardLedgerEntry(Base):
    """
    Append-only reward ledger.

    `idempotency_key` is "{progress_id}:step:{step_id}" or "{progress_id}:mission"; the unique
    constraint guarantees a reward is granted at most once.
    """

    __tablename__ = "reward_ledger"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=generate_uuid,
    )
    idempotency_key: Mapped[str] = mapped_column(String(200), nullable=False)
    progress_id: Mapped[uuid.UUID] = mapped_column(nullable=False, index=True)
    user_id: Mapped[uuid.UUID] = mapped_column(nullable=False, index=True)
    mission_id: Mapped[str] = mapped_column(String(100), nullable=False)
    step_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    reward_type: Mapped[str] = mapped_column(String(20), nullable=False)  # step, mission
    tier: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    xp: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payload: Mapped[Dict[str, Any]] = mapped_column(nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_reward_ledger_idempotency_key"),
    )
