"""
Kernel Layer

Foundational persistence components:
- Mission progress snapshots (optimistic locking on a version column)
- Reward ledger (unique idempotency key per reward)
- Immutable Event Log (every transition logged in the same transaction)
"""

from src.kernel.models import (
    EventLog,
    EventType,
    MissionProgressRecord,
    RewardLedgerEntry,
)

__all__ = [
    "EventLog",
    "EventType",
    "MissionProgressRecord",
    "RewardLedgerEntry",
]
