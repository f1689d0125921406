"""
Progress Store - Persists MissionProgress snapshots with optimistic locking.

Writes compare the stored version in the UPDATE itself; a row count of zero
means another writer got there first.
"""

import uuid
from datetime import datetime
from typing import List, Optional, Set

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.engines.missions.errors import ConcurrencyConflictError, ProgressNotFoundError, StateConflictError
from src.engines.missions.types import TERMINAL_STATUSES, MissionProgress, MissionStatus
from src.kernel.models.mission import MissionProgressRecord
from src.logging_config import get_logger

logger = get_logger(__name__)


class ProgressStore:
    """DB-backed snapshot store for mission instances."""

    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def _to_progress(row: MissionProgressRecord) -> MissionProgress:
        return MissionProgress.model_validate(row.snapshot)

    async def create(self, progress: MissionProgress) -> MissionProgress:
        """Insert a new instance. Raises StateConflictError if the user already has one for this mission."""
        existing = await self.find(progress.user_id, progress.mission_id)
        if existing is not None:
            raise StateConflictError(
                f"Mission {progress.mission_id} already started for this user",
                details={"progress_id": str(existing.id), "status": existing.status.value},
            )
        row = MissionProgressRecord(
            id=progress.id,
            user_id=progress.user_id,
            mission_id=progress.mission_id,
            status=progress.status.value,
            current_difficulty=progress.current_difficulty.value,
            deadline_at=progress.deadline_at,
            snapshot=progress.model_dump(mode="json"),
            version=progress.version,
        )
        self.session.add(row)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            raise ConcurrencyConflictError(
                f"Mission {progress.mission_id} was started concurrently",
                details={"mission_id": progress.mission_id},
            ) from exc
        return progress

    async def get(self, progress_id: uuid.UUID) -> MissionProgress:
        row = await self.session.get(MissionProgressRecord, progress_id, populate_existing=True)
        if row is None:
            raise ProgressNotFoundError(
                f"Mission progress {progress_id} not found", details={"progress_id": str(progress_id)}
            )
        return self._to_progress(row)

    async def find(self, user_id: uuid.UUID, mission_id: str) -> Optional[MissionProgress]:
        q = select(MissionProgressRecord).where(
            MissionProgressRecord.user_id == user_id,
            MissionProgressRecord.mission_id == mission_id,
        )
        result = await self.session.execute(q)
        row = result.scalar_one_or_none()
        return self._to_progress(row) if row else None

    async def list_for_mission(self, mission_id: str) -> List[MissionProgress]:
        q = select(MissionProgressRecord).where(MissionProgressRecord.mission_id == mission_id)
        result = await self.session.execute(q)
        return [self._to_progress(row) for row in result.scalars().all()]

    async def completed_mission_ids(self, user_id: uuid.UUID) -> Set[str]:
        q = select(MissionProgressRecord.mission_id).where(
            MissionProgressRecord.user_id == user_id,
            MissionProgressRecord.status == MissionStatus.COMPLETED.value,
        )
        result = await self.session.execute(q)
        return set(result.scalars().all())

    async def latest_ended(self, user_id: uuid.UUID) -> Optional[MissionProgress]:
        """The user's most recently finished instance of any mission."""
        q = select(MissionProgressRecord).where(
            MissionProgressRecord.user_id == user_id,
            MissionProgressRecord.status.in_([s.value for s in TERMINAL_STATUSES]),
        )
        ended = [self._to_progress(row) for row in (await self.session.execute(q)).scalars().all()]
        # ended_at lives in the snapshot, so order in Python
        return max(ended, key=lambda p: p.ended_at or p.updated_at, default=None)

    async def list_overdue(self, now: datetime) -> List[uuid.UUID]:
        """Ids of active or paused instances whose deadline has passed."""
        q = select(MissionProgressRecord.id).where(
            MissionProgressRecord.status.in_([MissionStatus.ACTIVE.value, MissionStatus.PAUSED.value]),
            MissionProgressRecord.deadline_at.is_not(None),
            MissionProgressRecord.deadline_at <= now,
        )
        result = await self.session.execute(q)
        return list(result.scalars().all())

    async def save(self, progress: MissionProgress, expected_version: int) -> MissionProgress:
        """
        Write back a snapshot if the stored version still equals expected_version.

        Raises ConcurrencyConflictError otherwise.
        """
        stmt = (
            update(MissionProgressRecord)
            .where(
                MissionProgressRecord.id == progress.id,
                MissionProgressRecord.version == expected_version,
            )
            .values(
                status=progress.status.value,
                current_difficulty=progress.current_difficulty.value,
                deadline_at=progress.deadline_at,
                snapshot=progress.model_dump(mode="json"),
                version=progress.version,
                updated_at=progress.updated_at,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount == 0:
            logger.warning(
                "Stale mission progress write rejected",
                extra={"progress_id": str(progress.id), "expected_version": expected_version},
            )
            raise ConcurrencyConflictError(
                f"Mission progress {progress.id} was modified concurrently",
                details={"progress_id": str(progress.id), "expected_version": expected_version},
            )
        return progress
