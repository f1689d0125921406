"""
Kernel Data Models

Core SQLAlchemy models: mission progress snapshots, the reward ledger and the
append-only event log.
"""

from src.kernel.models.base import Base, TimestampMixin, generate_uuid
from src.kernel.models.event_log import EventLog, EventType
from src.kernel.models.mission import MissionProgressRecord, RewardLedgerEntry

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    "generate_uuid",
    # Event Log
    "EventLog",
    "EventType",
    # Missions
    "MissionProgressRecord",
    "RewardLedgerEntry",
]
