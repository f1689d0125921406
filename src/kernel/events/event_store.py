"""
Append-only store for mission transition and reward events.

Events are added to the caller's session and commit together with the
snapshot they describe; nothing here flushes or commits.
"""

import uuid
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.kernel.models.event_log import EventLog, EventType


def _history_order(event: EventLog) -> tuple:
    # Events written by one operation share created_at
    return (event.created_at, event.payload.get("sequence", 0))


class EventStore:
    """
    Writes and reads the event log for one session.

        store = EventStore(session)
        await store.log_from_model(
            EventType.MISSION_STARTED, "mission_progress", progress.id, progress.user_id, payload,
        )
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def log(
        self,
        event_type: EventType,
        entity_type: str,
        entity_id: uuid.UUID,
        user_id: Optional[uuid.UUID] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> EventLog:
        """Stage one event; payload must already be JSON-compatible."""
        event = EventLog(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            user_id=user_id,
            payload=payload or {},
        )
        self.session.add(event)
        return event

    async def log_from_model(
        self,
        event_type: EventType,
        entity_type: str,
        entity_id: uuid.UUID,
        user_id: Optional[uuid.UUID],
        payload_model: BaseModel,
    ) -> EventLog:
        return await self.log(
            event_type,
            entity_type,
            entity_id,
            user_id=user_id,
            payload=payload_model.model_dump(mode="json"),
        )

    async def get_entity_history(
        self,
        entity_type: str,
        entity_id: uuid.UUID,
        event_types: Optional[Sequence[EventType]] = None,
        limit: int = 100,
    ) -> List[EventLog]:
        """Events for one entity in the order they were produced."""
        query = select(EventLog).where(
            EventLog.entity_type == entity_type,
            EventLog.entity_id == entity_id,
        )
        if event_types:
            query = query.where(EventLog.event_type.in_(list(event_types)))
        query = query.order_by(EventLog.created_at).limit(limit)

        rows = (await self.session.execute(query)).scalars().all()
        return sorted(rows, key=_history_order)
