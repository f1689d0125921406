"""
Difficulty Adjuster - Rule-based dynamic difficulty adjustment (DDA).

Rules, evaluated in order:
1. De-escalate one tier (floor: easy) when the most recent step scored below
   0.5 quality or two consecutive step failures occurred.
2. Escalate one tier (cap: hard) when the last two completed steps both had
   efficiency > 1.3 and quality > 0.85.
3. Otherwise keep the tier and record nothing.

A mission started right after the user abandoned one as too difficult opens
one tier below its default.

A tier change only applies to steps activated afterwards.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Tuple

from src.engines.missions.types import TIER_ORDER, AbandonReason, DifficultyAdjustment, Tier


@dataclass(frozen=True)
class StepPerformance:
    """Efficiency and quality of one completed step."""
    efficiency: float
    quality_score: float


@dataclass(frozen=True)
class PerformanceSignal:
    """Performance observed by the tracker, newest entries last."""
    completed_steps: Tuple[StepPerformance, ...] = field(default_factory=tuple)
    last_quality_score: Optional[float] = None
    consecutive_failures: int = 0


@dataclass(frozen=True)
class AdjustmentDecision:
    tier: Tier
    adjustment: Optional[DifficultyAdjustment] = None

    @property
    def changed(self) -> bool:
        return self.adjustment is not None


class DifficultyAdjuster:
    """Pure tier policy: (signal, current tier) -> next tier + audit record."""

    ESCALATE_MIN_EFFICIENCY = 1.3
    ESCALATE_MIN_QUALITY = 0.85
    ESCALATE_WINDOW = 2
    DEESCALATE_MAX_QUALITY = 0.5
    DEESCALATE_FAILURE_STREAK = 2

    @staticmethod
    def step_up(tier: Tier) -> Tier:
        index = TIER_ORDER.index(Tier(tier))
        return TIER_ORDER[min(index + 1, len(TIER_ORDER) - 1)]

    @staticmethod
    def step_down(tier: Tier) -> Tier:
        index = TIER_ORDER.index(Tier(tier))
        return TIER_ORDER[max(index - 1, 0)]

    @classmethod
    def _deescalation_reason(cls, signal: PerformanceSignal) -> Optional[str]:
        if signal.consecutive_failures >= cls.DEESCALATE_FAILURE_STREAK:
            return f"{signal.consecutive_failures} consecutive step failures"
        if signal.last_quality_score is not None and signal.last_quality_score < cls.DEESCALATE_MAX_QUALITY:
            return f"quality score {signal.last_quality_score:.2f} below {cls.DEESCALATE_MAX_QUALITY}"
        return None

    @classmethod
    def _escalation_reason(cls, signal: PerformanceSignal) -> Optional[str]:
        recent: List[StepPerformance] = list(signal.completed_steps[-cls.ESCALATE_WINDOW:])
        if len(recent) < cls.ESCALATE_WINDOW:
            return None
        if all(
            s.efficiency > cls.ESCALATE_MIN_EFFICIENCY and s.quality_score > cls.ESCALATE_MIN_QUALITY
            for s in recent
        ):
            return (
                f"last {cls.ESCALATE_WINDOW} steps above efficiency "
                f"{cls.ESCALATE_MIN_EFFICIENCY} and quality {cls.ESCALATE_MIN_QUALITY}"
            )
        return None

    @classmethod
    def adjust(cls, signal: PerformanceSignal, current_tier: Tier, now: datetime) -> AdjustmentDecision:
        current_tier = Tier(current_tier)

        reason = cls._deescalation_reason(signal)
        target = cls.step_down(current_tier) if reason else current_tier
        if reason is None:
            reason = cls._escalation_reason(signal)
            if reason:
                target = cls.step_up(current_tier)

        # Already at the floor or cap
        if reason is None or target == current_tier:
            return AdjustmentDecision(tier=current_tier)

        return AdjustmentDecision(
            tier=target,
            adjustment=DifficultyAdjustment(
                timestamp=now,
                from_tier=current_tier,
                to_tier=target,
                reason=reason,
            ),
        )

    @classmethod
    def starting_tier(
        cls,
        default_tier: Tier,
        previous_abandon_reason: Optional[AbandonReason],
        now: datetime,
    ) -> AdjustmentDecision:
        default_tier = Tier(default_tier)
        if previous_abandon_reason != AbandonReason.TOO_DIFFICULT:
            return AdjustmentDecision(tier=default_tier)
        target = cls.step_down(default_tier)
        if target == default_tier:
            return AdjustmentDecision(tier=default_tier)
        return AdjustmentDecision(
            tier=target,
            adjustment=DifficultyAdjustment(
                timestamp=now,
                from_tier=default_tier,
                to_tier=target,
                reason="previous mission abandoned as too difficult",
            ),
        )
