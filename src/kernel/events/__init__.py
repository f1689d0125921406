"""
Event sourcing infrastructure.

Provides append-only transition logging with immutable events.
"""

from src.kernel.events.event_store import EventStore
from src.kernel.events.event_types import (
    BaseEvent,
    DifficultyAdjustedEvent,
    MissionEndedEvent,
    MissionEvent,
    RewardGrantedEvent,
    StepCompletedEvent,
    StepFailedEvent,
)

__all__ = [
    "EventStore",
    "BaseEvent",
    "MissionEvent",
    "StepCompletedEvent",
    "StepFailedEvent",
    "DifficultyAdjustedEvent",
    "MissionEndedEvent",
    "RewardGrantedEvent",
]
