"""
Start eligibility - decides whether a user may start a mission.

Checks run in a fixed order and the first failing one wins:
level, prerequisite missions, required badges, mission expiry, mission active flag.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import FrozenSet, Iterable, List, Optional

from pydantic import BaseModel, Field

from src.engines.missions.errors import MissionNotEligibleError
from src.engines.missions.types import MissionDefinition


class IneligibleReason(str, Enum):
    LEVEL_TOO_LOW = "level_too_low"
    MISSING_PREREQUISITES = "missing_prerequisites"
    MISSING_BADGES = "missing_badges"
    MISSION_EXPIRED = "mission_expired"
    MISSION_INACTIVE = "mission_inactive"


class UserProfile(BaseModel):
    """What the caller knows about the user; badges are merged with ledger-earned ones."""

    level: int = Field(1, ge=1)
    badges: List[str] = []


@dataclass(frozen=True)
class EligibilityContext:
    level: int = 1
    badges: FrozenSet[str] = field(default_factory=frozenset)
    completed_missions: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def build(
        cls,
        profile: Optional[UserProfile],
        earned_badges: Iterable[str] = (),
        completed_missions: Iterable[str] = (),
    ) -> "EligibilityContext":
        profile = profile or UserProfile()
        return cls(
            level=profile.level,
            badges=frozenset(profile.badges) | frozenset(earned_badges),
            completed_missions=frozenset(completed_missions),
        )


@dataclass(frozen=True)
class EligibilityDecision:
    reason: Optional[IneligibleReason] = None
    missing: tuple = ()

    @property
    def allowed(self) -> bool:
        return self.reason is None


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def evaluate(mission: MissionDefinition, context: EligibilityContext, now: datetime) -> EligibilityDecision:
    if context.level < mission.min_level:
        return EligibilityDecision(IneligibleReason.LEVEL_TOO_LOW)

    missing = tuple(m for m in mission.prerequisites if m not in context.completed_missions)
    if missing:
        return EligibilityDecision(IneligibleReason.MISSING_PREREQUISITES, missing)

    missing = tuple(b for b in mission.required_badges if b not in context.badges)
    if missing:
        return EligibilityDecision(IneligibleReason.MISSING_BADGES, missing)

    if mission.expires_at is not None and _aware(mission.expires_at) < now:
        return EligibilityDecision(IneligibleReason.MISSION_EXPIRED)

    if not mission.is_active:
        return EligibilityDecision(IneligibleReason.MISSION_INACTIVE)

    return EligibilityDecision()


def ensure_eligible(mission: MissionDefinition, context: EligibilityContext, now: datetime) -> None:
    """Raise MissionNotEligibleError when the user may not start the mission."""
    decision = evaluate(mission, context, now)
    if decision.allowed:
        return
    details = {"mission_id": mission.id, "reason": decision.reason.value}
    if decision.reason == IneligibleReason.LEVEL_TOO_LOW:
        details.update(required_level=mission.min_level, level=context.level)
    if decision.missing:
        details["missing"] = list(decision.missing)
    raise MissionNotEligibleError(f"Cannot start mission {mission.id}: {decision.reason.value}", details=details)
