"""
Reward Calculator - Converts verified progress into XP and items.

Step rewards use the tier that was in effect when the step became active.
The mission reward is computed once, when the mission reaches completed.
Every emitted item carries the idempotency key "{progress_id}:step:{step_id}"
or "{progress_id}:mission".
"""

import uuid
from typing import Dict, List, Optional, Set

from src.engines.missions.types import (
    TIER_ORDER,
    BonusCondition,
    BonusConditionType,
    BonusReward,
    ItemReward,
    MissionDefinition,
    MissionProgress,
    MissionReward,
    MissionStep,
    RewardEvent,
    RewardEventType,
    RewardItem,
    RewardPayload,
    RewardType,
    Tier,
)
from src.logging_config import get_logger

logger = get_logger(__name__)

MISSION_KEY_SUFFIX = "mission"
STEP_KEY_PREFIX = "step:"


def reward_key(progress_id: uuid.UUID, step_id: Optional[str] = None) -> str:
    """Idempotency key for a step reward, or the mission reward when step_id is None."""
    if step_id is None:
        return f"{progress_id}:{MISSION_KEY_SUFFIX}"
    # Namespaced so a step may be called "mission"
    return f"{progress_id}:{STEP_KEY_PREFIX}{step_id}"


def _to_reward_items(xp: int, badges: List[str], items: List[ItemReward], key: str) -> List[RewardItem]:
    lines: List[RewardItem] = []
    if xp:
        lines.append(RewardItem(type=RewardType.XP, value=xp, quantity=1, key=key))
    for badge in badges:
        lines.append(RewardItem(type=RewardType.BADGE, value=0, quantity=1, ref=badge, key=key))
    for item in items:
        lines.append(
            RewardItem(type=item.type, value=item.value, quantity=item.quantity, ref=item.ref, key=key)
        )
    return lines


class RewardCalculator:
    """Pure reward computation for steps and missions."""

    @staticmethod
    def step_reward(step: MissionStep, tier_at_activation: Optional[Tier], key: str) -> RewardPayload:
        """Base step rewards with the tier's partial overrides applied field by field."""
        xp = step.xp_reward
        items = list(step.item_rewards)
        modifier = step.difficulty_modifiers.get(Tier(tier_at_activation)) if tier_at_activation else None
        if modifier is not None:
            if modifier.xp_reward is not None:
                xp = modifier.xp_reward
            if modifier.item_rewards is not None:
                items = list(modifier.item_rewards)
        return RewardPayload(xp=xp, items=_to_reward_items(xp, [], items, key))

    @staticmethod
    def bonus_condition_met(condition: BonusCondition, progress: MissionProgress) -> bool:
        ctype = condition.type
        if ctype == BonusConditionType.FINAL_TIER_AT_LEAST:
            return TIER_ORDER.index(progress.current_difficulty) >= TIER_ORDER.index(Tier(condition.threshold))

        threshold = float(condition.threshold)
        if ctype == BonusConditionType.COMPLETED_WITHIN_MINUTES:
            if progress.started_at is None or progress.completed_at is None:
                return False
            elapsed = (progress.completed_at - progress.started_at).total_seconds() / 60
            return elapsed <= threshold
        if ctype == BonusConditionType.MIN_QUALITY_SCORE:
            return progress.quality_score >= threshold
        if ctype == BonusConditionType.MIN_EFFICIENCY:
            return progress.efficiency >= threshold
        if ctype == BonusConditionType.MAX_TOTAL_RETRIES:
            return sum(sp.retry_count for sp in progress.step_progress) <= threshold
        return False

    @classmethod
    def qualifying_bonuses(cls, mission: MissionDefinition, progress: MissionProgress) -> List[BonusReward]:
        return [
            bonus
            for bonus in mission.bonus_rewards
            if all(cls.bonus_condition_met(c, progress) for c in bonus.conditions)
        ]

    @classmethod
    def mission_reward(cls, mission: MissionDefinition, progress: MissionProgress, key: str) -> RewardPayload:
        """Fixed mission rewards plus every bonus whose conditions hold on the final progress."""
        rewards: List[MissionReward] = [mission.rewards]
        rewards.extend(b.reward for b in cls.qualifying_bonuses(mission, progress))

        xp = sum(r.xp for r in rewards)
        badges = [badge for r in rewards for badge in r.badges]
        items = [item for r in rewards for item in r.items]
        return RewardPayload(xp=xp, items=_to_reward_items(xp, badges, items, key))

    @classmethod
    def step_event(
        cls,
        mission: MissionDefinition,
        progress: MissionProgress,
        step: MissionStep,
        tier_at_activation: Optional[Tier],
    ) -> RewardEvent:
        key = reward_key(progress.id, step.id)
        return RewardEvent(
            type=RewardEventType.STEP,
            key=key,
            progress_id=progress.id,
            user_id=progress.user_id,
            mission_id=mission.id,
            step_id=step.id,
            tier=tier_at_activation,
            payload=cls.step_reward(step, tier_at_activation, key),
        )

    @classmethod
    def mission_event(cls, mission: MissionDefinition, progress: MissionProgress) -> RewardEvent:
        key = reward_key(progress.id)
        return RewardEvent(
            type=RewardEventType.MISSION,
            key=key,
            progress_id=progress.id,
            user_id=progress.user_id,
            mission_id=mission.id,
            tier=progress.current_difficulty,
            payload=cls.mission_reward(mission, progress, key),
        )


class RewardLedger:
    """
    In-memory reward ledger that accepts each idempotency key once.

    The database-backed ledger in reward_ledger.py enforces the same rule with a
    unique constraint.
    """

    def __init__(self):
        self._events: Dict[str, RewardEvent] = {}

    def record(self, event: RewardEvent) -> bool:
        """Record an event; returns False if its key was already recorded."""
        if event.key in self._events:
            logger.info("Ignoring duplicate reward emission", extra={"reward_key": event.key})
            return False
        self._events[event.key] = event
        return True

    def keys(self) -> Set[str]:
        return set(self._events)

    def total_xp(self, user_id: Optional[uuid.UUID] = None) -> int:
        return sum(
            e.payload.xp for e in self._events.values() if user_id is None or e.user_id == user_id
        )

    def events(self) -> List[RewardEvent]:
        return list(self._events.values())
