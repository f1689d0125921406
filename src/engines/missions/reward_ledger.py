"""
DB-backed reward ledger. One row per idempotency key.
"""

import uuid
from typing import List, Set

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.engines.missions.types import RewardEvent, RewardType
from src.kernel.models.mission import RewardLedgerEntry
from src.logging_config import get_logger

logger = get_logger(__name__)


class DbRewardLedger:
    """
    Persists RewardEvents; a key that is already present is ignored.

    The unique constraint on idempotency_key backs the lookup, so a racing
    writer fails its transaction instead of granting twice.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def has_key(self, key: str) -> bool:
        q = select(RewardLedgerEntry.id).where(RewardLedgerEntry.idempotency_key == key)
        result = await self.session.execute(q)
        return result.scalar_one_or_none() is not None

    async def record(self, event: RewardEvent) -> bool:
        """Record an event; returns False if its key was already recorded."""
        if await self.has_key(event.key):
            logger.info("Ignoring duplicate reward emission", extra={"reward_key": event.key})
            return False
        self.session.add(
            RewardLedgerEntry(
                idempotency_key=event.key,
                progress_id=event.progress_id,
                user_id=event.user_id,
                mission_id=event.mission_id,
                step_id=event.step_id,
                reward_type=event.type.value,
                tier=event.tier.value if event.tier else None,
                xp=event.payload.xp,
                payload=event.payload.model_dump(mode="json"),
            )
        )
        await self.session.flush()
        return True

    async def list_for_progress(self, progress_id: uuid.UUID) -> List[RewardLedgerEntry]:
        q = (
            select(RewardLedgerEntry)
            .where(RewardLedgerEntry.progress_id == progress_id)
            .order_by(RewardLedgerEntry.created_at)
        )
        result = await self.session.execute(q)
        return list(result.scalars().all())

    async def keys_for_progress(self, progress_id: uuid.UUID) -> Set[str]:
        return {entry.idempotency_key for entry in await self.list_for_progress(progress_id)}

    async def total_xp(self, user_id: uuid.UUID) -> int:
        q = select(func.coalesce(func.sum(RewardLedgerEntry.xp), 0)).where(RewardLedgerEntry.user_id == user_id)
        result = await self.session.execute(q)
        return int(result.scalar() or 0)

    async def badges_for_user(self, user_id: uuid.UUID) -> Set[str]:
        """Badge refs the user was granted by any mission or step."""
        q = select(RewardLedgerEntry.payload).where(RewardLedgerEntry.user_id == user_id)
        result = await self.session.execute(q)
        return {
            item["ref"]
            for payload in result.scalars().all()
            for item in payload.get("items", [])
            if item.get("type") == RewardType.BADGE.value and item.get("ref")
        }
