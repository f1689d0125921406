"""
Progress Tracker - State machine owning one mission instance.

Every mutating operation works on a copy of the snapshot and only swaps it in
once the whole transition succeeded, so a raised error never leaves a partial
update behind. Operations on one tracker are serialized by an asyncio.Lock.
"""

import asyncio
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ValidationError

from src.engines.missions.difficulty import AdjustmentDecision, DifficultyAdjuster, PerformanceSignal, StepPerformance
from src.engines.missions.errors import ErrorCode, EvidenceValidationError, StateConflictError
from src.engines.missions.rewards import RewardCalculator
from src.engines.missions.state_machine import MissionAction, check_invariants, next_status
from src.engines.missions.types import (
    AbandonReason,
    MissionDefinition,
    MissionProgress,
    MissionStatus,
    MissionStep,
    RequirementType,
    RewardEvent,
    StepProgress,
    StepStatus,
    Tier,
    TransitionEvent,
    TransitionType,
    utcnow,
)
from src.engines.missions.verifier import StepVerifier, VerificationResult
from src.logging_config import get_logger

logger = get_logger(__name__)

Clock = Callable[[], datetime]
EvidenceInput = Union[Mapping[str, Any], Sequence[Mapping[str, Any]], None]


class SubmissionOutcome(str, Enum):
    COMPLETED = "completed"
    VERIFICATION_FAILED = "verification_failed"


class OperationResult(BaseModel):
    """Snapshot after an operation plus everything it emitted."""

    progress: MissionProgress
    reward_events: List[RewardEvent] = []
    transition_events: List[TransitionEvent] = []


class StepSubmissionResult(OperationResult):
    outcome: SubmissionOutcome
    step_id: str
    quality_score: float = 0.0
    verification: List[VerificationResult] = []
    error_code: Optional[ErrorCode] = None


class ProgressTracker:
    """
    Drives one MissionProgress through its lifecycle.

    Rules:
    - Steps complete strictly in order; only the active step accepts evidence.
    - All non-optional requirements of a step must pass.
    - Two consecutive verification failures invoke the difficulty adjuster.
    - Tier changes apply only to steps activated afterwards.
    - Reward keys are emitted at most once per instance.
    """

    EFFICIENCY_CAP = 2.0
    FAILURES_BEFORE_ADJUSTMENT = 2

    def __init__(
        self,
        mission: MissionDefinition,
        progress: MissionProgress,
        verifier: Optional[StepVerifier] = None,
        clock: Optional[Clock] = None,
        efficiency_cap: float = EFFICIENCY_CAP,
        validate: bool = True,
    ):
        if progress.mission_id != mission.id:
            raise ValueError(f"Progress {progress.id} belongs to mission {progress.mission_id}, not {mission.id}")
        self.mission = mission
        self.progress = progress
        self.verifier = verifier or StepVerifier()
        self.efficiency_cap = efficiency_cap
        self.validate = validate
        self._clock = clock or utcnow
        self._lock = asyncio.Lock()

    # -- construction ----------------------------------------------------

    @classmethod
    def new_progress(
        cls,
        mission: MissionDefinition,
        user_id: uuid.UUID,
        progress_id: Optional[uuid.UUID] = None,
        now: Optional[datetime] = None,
    ) -> MissionProgress:
        """Build a not_started snapshot for the mission."""
        now = now or utcnow()
        return MissionProgress(
            id=progress_id or uuid.uuid4(),
            user_id=user_id,
            mission_id=mission.id,
            total_steps=mission.total_steps,
            step_progress=[StepProgress(step_id=s.id) for s in mission.steps],
            current_difficulty=mission.default_tier,
            created_at=now,
            updated_at=now,
        )

    @classmethod
    def start(
        cls,
        mission: MissionDefinition,
        user_id: uuid.UUID,
        verifier: Optional[StepVerifier] = None,
        clock: Optional[Clock] = None,
        progress_id: Optional[uuid.UUID] = None,
        efficiency_cap: float = EFFICIENCY_CAP,
        previous_abandon_reason: Optional[AbandonReason] = None,
    ) -> Tuple["ProgressTracker", OperationResult]:
        """
        Create an instance and move it to active with step 0 open.

        previous_abandon_reason is why the user's last mission ended, if it was
        abandoned; too_difficult opens a DDA mission one tier lower.
        """
        clock = clock or utcnow
        now = clock()
        progress = cls.new_progress(mission, user_id, progress_id=progress_id, now=now)
        tracker = cls(mission, progress, verifier=verifier, clock=clock, efficiency_cap=efficiency_cap)

        draft = progress.model_copy(deep=True)
        draft.status = next_status(draft.status, MissionAction.START)
        draft.started_at = now
        draft.current_difficulty = mission.default_tier
        if mission.time_limit_minutes:
            draft.deadline_at = now + timedelta(minutes=mission.time_limit_minutes)

        events = [tracker._event(draft, TransitionType.MISSION_STARTED, now, step_id=mission.steps[0].id)]
        if mission.dda_enabled:
            decision = DifficultyAdjuster.starting_tier(mission.default_tier, previous_abandon_reason, now)
            if decision.changed:
                events.append(tracker._apply_adjustment(draft, decision, now))
        tracker._activate_step(draft, 0, now)
        result = tracker._commit(draft, now, transition_events=events)
        logger.info(
            "Mission started",
            extra={"progress_id": str(draft.id), "mission_id": mission.id, "tier": draft.current_difficulty.value},
        )
        return tracker, result

    # -- operations ------------------------------------------------------

    async def submit_step(
        self,
        step_id: str,
        evidence: EvidenceInput,
        time_spent_seconds: int = 0,
        rating: Optional[int] = None,
    ) -> StepSubmissionResult:
        """
        Verify evidence for the active step and advance on success.

        Raises StateConflictError when the mission is not active or step_id is
        not the open step, EvidenceValidationError for malformed payloads.
        Verification failures are returned as an outcome, not raised.
        """
        async with self._lock:
            now = self._clock()
            current = self.progress
            next_status(current.status, MissionAction.SUBMIT)

            active = current.active_step()
            if active is None or active.step_id != step_id:
                raise StateConflictError(
                    f"Step {step_id} is not the active step",
                    details={"step_id": step_id, "active_step_id": active.step_id if active else None},
                )
            if time_spent_seconds < 0:
                raise EvidenceValidationError("time_spent_seconds must be >= 0")
            if rating is not None and not 1 <= rating <= 5:
                raise EvidenceValidationError("rating must be between 1 and 5", details={"rating": rating})

            step = self.mission.step_by_id(step_id)
            pairs = self._pair_evidence(step, evidence)

            results: List[Tuple[Any, VerificationResult]] = []
            for requirement, payload in pairs:
                result = await self.verifier.verify_with_extraction(requirement, payload)
                if result.malformed:
                    raise EvidenceValidationError(result.message, details={"type": requirement.type})
                results.append((requirement, result))

            required = [r for req, r in results if not req.optional]
            passed = all(r.passed for r in required)
            quality = (
                round(sum(r.quality_score for r in required) / len(required), 4) if required else 1.0
            )
            # A timeout only excuses the attempt when nothing else genuinely failed
            timed_out = any(r.timed_out for r in required) and all(r.passed or r.timed_out for r in required)

            draft = current.model_copy(deep=True)
            index = self._step_index(step_id)
            sp = draft.step_progress[index]
            sp.time_spent += time_spent_seconds
            sp.verification = [p.model_dump(mode="json") for _, p in pairs if p is not None]
            draft.time_spent += time_spent_seconds
            verification = [r for _, r in results]

            if passed:
                return self._complete_step(draft, step, index, quality, rating, verification, now)
            return self._fail_step(draft, step, quality, timed_out, verification, now)

    async def pause(self) -> OperationResult:
        async with self._lock:
            return self._simple_transition(MissionAction.PAUSE, TransitionType.MISSION_PAUSED)

    async def resume(self) -> OperationResult:
        async with self._lock:
            return self._simple_transition(MissionAction.RESUME, TransitionType.MISSION_RESUMED)

    async def abandon(
        self, reason: AbandonReason = AbandonReason.USER_QUIT, note: Optional[str] = None
    ) -> OperationResult:
        """
        Give up on a mission that has not ended yet.

        A too_difficult reason is kept on the snapshot and reported as
        difficulty feedback along with how far the user got.
        """
        reason = AbandonReason(reason)
        async with self._lock:
            details: Dict[str, Any] = {"reason": reason.value}
            if note:
                details["note"] = note
            if reason == AbandonReason.TOO_DIFFICULT:
                details.update(
                    difficulty_feedback="too_hard",
                    completion_percentage=round(self.progress.progress_percentage, 4),
                    time_spent=self.progress.time_spent,
                )
            return self._end(MissionAction.ABANDON, TransitionType.MISSION_ABANDONED, details, abandon_reason=reason)

    async def expire(self) -> OperationResult:
        """Expire an active or paused mission; a terminal mission is left untouched."""
        async with self._lock:
            if self.progress.status.is_terminal:
                return OperationResult(progress=self.progress)
            return self._end(MissionAction.EXPIRE, TransitionType.MISSION_EXPIRED, {"reason": "deadline reached"})

    async def acknowledge_rewards(self, keys: Iterable[str]) -> OperationResult:
        """Move pending reward lines whose key the ledger confirmed to earned."""
        async with self._lock:
            confirmed = set(keys)
            draft = self.progress.model_copy(deep=True)
            moving = [r for r in draft.pending_rewards if r.key in confirmed]
            if not moving:
                return OperationResult(progress=self.progress)
            draft.pending_rewards = [r for r in draft.pending_rewards if r.key not in confirmed]
            draft.earned_rewards.extend(moving)
            return self._commit(draft, self._clock())

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        now = now or self._clock()
        return (
            not self.progress.status.is_terminal
            and self.progress.status != MissionStatus.NOT_STARTED
            and self.progress.deadline_at is not None
            and self.progress.deadline_at <= now
        )

    # -- submission paths ------------------------------------------------

    def _complete_step(
        self,
        draft: MissionProgress,
        step: MissionStep,
        index: int,
        quality: float,
        rating: Optional[int],
        verification: List[VerificationResult],
        now: datetime,
    ) -> StepSubmissionResult:
        sp = draft.step_progress[index]
        sp.status = StepStatus.COMPLETED
        sp.completed_at = now
        sp.rating = rating
        sp.quality_score = quality
        sp.efficiency = self._efficiency(step, sp)

        draft.completed_steps += 1
        draft.consecutive_failures = 0
        done = [s for s in draft.step_progress if s.status == StepStatus.COMPLETED]
        draft.efficiency = round(sum(s.efficiency for s in done) / len(done), 4)
        draft.quality_score = round(sum(s.quality_score for s in done) / len(done), 4)

        events = [
            self._event(
                draft,
                TransitionType.STEP_COMPLETED,
                now,
                step_id=step.id,
                tier=sp.tier_at_activation,
                details={"quality_score": quality, "efficiency": sp.efficiency},
            )
        ]
        reward_events: List[RewardEvent] = []
        self._emit(draft, RewardCalculator.step_event(self.mission, draft, step, sp.tier_at_activation), reward_events)

        events.extend(self._run_adjuster(draft, quality, now))

        if index + 1 < draft.total_steps:
            self._activate_step(draft, index + 1, now)
        else:
            draft.status = next_status(draft.status, MissionAction.COMPLETE)
            draft.completed_at = now
            draft.ended_at = now
            self._emit(draft, RewardCalculator.mission_event(self.mission, draft), reward_events)
            events.append(
                self._event(
                    draft,
                    TransitionType.MISSION_COMPLETED,
                    now,
                    details={"efficiency": draft.efficiency, "quality_score": draft.quality_score},
                )
            )

        committed = self._commit(draft, now, reward_events=reward_events, transition_events=events)
        logger.info(
            "Step completed",
            extra={
                "progress_id": str(draft.id),
                "step_id": step.id,
                "quality_score": quality,
                "mission_status": draft.status.value,
            },
        )
        return StepSubmissionResult(
            progress=committed.progress,
            reward_events=committed.reward_events,
            transition_events=committed.transition_events,
            outcome=SubmissionOutcome.COMPLETED,
            step_id=step.id,
            quality_score=quality,
            verification=verification,
        )

    def _fail_step(
        self,
        draft: MissionProgress,
        step: MissionStep,
        quality: float,
        timed_out: bool,
        verification: List[VerificationResult],
        now: datetime,
    ) -> StepSubmissionResult:
        sp = draft.step_progress[self._step_index(step.id)]
        sp.retry_count += 1
        error_code = ErrorCode.DEADLINE_EXCEEDED if timed_out else ErrorCode.VERIFICATION_FAILED

        events = [
            self._event(
                draft,
                TransitionType.STEP_FAILED,
                now,
                step_id=step.id,
                tier=sp.tier_at_activation,
                details={
                    "quality_score": quality,
                    "retry_count": sp.retry_count,
                    "error_code": error_code.value,
                    "reasons": sorted({reason.value for r in verification for reason in r.reasons}),
                },
            )
        ]

        # Timeouts are the extractor's fault, not the user's
        if not timed_out:
            draft.consecutive_failures += 1
            if draft.consecutive_failures >= self.FAILURES_BEFORE_ADJUSTMENT:
                events.extend(self._run_adjuster(draft, quality, now))
                draft.consecutive_failures = 0

        committed = self._commit(draft, now, transition_events=events)
        logger.info(
            "Step verification failed",
            extra={
                "progress_id": str(draft.id),
                "step_id": step.id,
                "retry_count": sp.retry_count,
                "error_code": error_code.value,
            },
        )
        return StepSubmissionResult(
            progress=committed.progress,
            reward_events=committed.reward_events,
            transition_events=committed.transition_events,
            outcome=SubmissionOutcome.VERIFICATION_FAILED,
            step_id=step.id,
            quality_score=quality,
            verification=verification,
            error_code=error_code,
        )

    # -- helpers ---------------------------------------------------------

    def _simple_transition(self, action: MissionAction, event_type: TransitionType) -> OperationResult:
        now = self._clock()
        draft = self.progress.model_copy(deep=True)
        draft.status = next_status(draft.status, action)
        active = draft.active_step()
        event = self._event(draft, event_type, now, step_id=active.step_id if active else None)
        return self._commit(draft, now, transition_events=[event])

    def _end(
        self,
        action: MissionAction,
        event_type: TransitionType,
        details: Dict[str, Any],
        abandon_reason: Optional[AbandonReason] = None,
    ) -> OperationResult:
        now = self._clock()
        draft = self.progress.model_copy(deep=True)
        draft.status = next_status(draft.status, action)
        draft.ended_at = now
        draft.abandon_reason = abandon_reason
        open_step = draft.active_step()
        if open_step is not None:
            open_step.status = StepStatus.FAILED
        event = self._event(
            draft,
            event_type,
            now,
            step_id=open_step.step_id if open_step else None,
            details=details,
        )
        logger.info(
            "Mission ended",
            extra={"progress_id": str(draft.id), "mission_status": draft.status.value, "reason": details.get("reason")},
        )
        return self._commit(draft, now, transition_events=[event])

    def _activate_step(self, draft: MissionProgress, index: int, now: datetime) -> None:
        sp = draft.step_progress[index]
        sp.status = StepStatus.ACTIVE
        sp.tier_at_activation = draft.current_difficulty
        sp.activated_at = now
        draft.current_step_index = index

    def _run_adjuster(self, draft: MissionProgress, last_quality: float, now: datetime) -> List[TransitionEvent]:
        if not self.mission.dda_enabled:
            return []
        signal = PerformanceSignal(
            completed_steps=tuple(
                StepPerformance(efficiency=s.efficiency, quality_score=s.quality_score)
                for s in draft.step_progress
                if s.status == StepStatus.COMPLETED
            ),
            last_quality_score=last_quality,
            consecutive_failures=draft.consecutive_failures,
        )
        decision = DifficultyAdjuster.adjust(signal, draft.current_difficulty, now)
        if not decision.changed:
            return []
        return [self._apply_adjustment(draft, decision, now)]

    def _apply_adjustment(self, draft: MissionProgress, decision: AdjustmentDecision, now: datetime) -> TransitionEvent:
        draft.current_difficulty = decision.tier
        draft.dda_adjustments.append(decision.adjustment)
        logger.info(
            "Difficulty adjusted",
            extra={
                "progress_id": str(draft.id),
                "from_tier": decision.adjustment.from_tier.value,
                "to_tier": decision.adjustment.to_tier.value,
            },
        )
        return self._event(
            draft,
            TransitionType.DIFFICULTY_ADJUSTED,
            now,
            details={
                "from_tier": decision.adjustment.from_tier.value,
                "to_tier": decision.adjustment.to_tier.value,
                "reason": decision.adjustment.reason,
            },
        )

    def _efficiency(self, step: MissionStep, sp: StepProgress) -> float:
        estimated = step.estimated_minutes_for(sp.tier_at_activation)
        actual_minutes = sp.time_spent / 60
        if actual_minutes <= 0:
            return self.efficiency_cap
        return round(min(self.efficiency_cap, estimated / actual_minutes), 4)

    @staticmethod
    def _emit(draft: MissionProgress, event: RewardEvent, sink: List[RewardEvent]) -> None:
        if event.key in draft.reward_keys():
            logger.warning("Reward key already emitted", extra={"reward_key": event.key})
            return
        draft.pending_rewards.extend(event.payload.items)
        sink.append(event)

    def _pair_evidence(self, step: MissionStep, evidence: EvidenceInput) -> List[Tuple[Any, Optional[BaseModel]]]:
        """Pair payloads with the step's requirements by type, in order."""
        if evidence is None:
            payloads: List[Mapping[str, Any]] = []
        elif isinstance(evidence, Mapping):
            payloads = [evidence]
        else:
            payloads = list(evidence)

        by_type: Dict[RequirementType, List[BaseModel]] = {}
        for payload in payloads:
            if not isinstance(payload, Mapping):
                raise EvidenceValidationError("Each evidence payload must be an object")
            raw_type = payload.get("type")
            try:
                req_type = RequirementType(raw_type)
            except ValueError:
                raise EvidenceValidationError(
                    f"Unknown evidence type: {raw_type!r}", details={"type": raw_type}
                ) from None
            try:
                parsed = StepVerifier.parse_evidence(req_type, payload)
            except (ValidationError, TypeError) as exc:
                raise EvidenceValidationError(
                    f"Malformed {req_type.value} evidence", details={"type": req_type.value, "error": str(exc)}
                ) from exc
            by_type.setdefault(req_type, []).append(parsed)

        pairs: List[Tuple[Any, Optional[BaseModel]]] = []
        for requirement in step.requirements:
            queue = by_type.get(RequirementType(requirement.type), [])
            pairs.append((requirement, queue.pop(0) if queue else None))

        leftover = sorted(t.value for t, queue in by_type.items() if queue)
        if leftover:
            raise EvidenceValidationError(
                f"Step {step.id} has no requirement for evidence of type {', '.join(leftover)}",
                details={"types": leftover},
            )
        return pairs

    def _step_index(self, step_id: str) -> int:
        for index, sp in enumerate(self.progress.step_progress):
            if sp.step_id == step_id:
                return index
        raise StateConflictError(f"Unknown step {step_id}", details={"step_id": step_id})

    def _event(
        self,
        draft: MissionProgress,
        event_type: TransitionType,
        now: datetime,
        step_id: Optional[str] = None,
        tier: Optional[Tier] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> TransitionEvent:
        return TransitionEvent(
            type=event_type,
            progress_id=draft.id,
            mission_id=draft.mission_id,
            user_id=draft.user_id,
            step_id=step_id,
            tier=tier or draft.current_difficulty,
            timestamp=now,
            details=details or {},
        )

    def _commit(
        self,
        draft: MissionProgress,
        now: datetime,
        reward_events: Optional[List[RewardEvent]] = None,
        transition_events: Optional[List[TransitionEvent]] = None,
    ) -> OperationResult:
        draft.updated_at = now
        draft.last_active_at = now
        draft.version += 1
        if self.validate:
            check_invariants(draft)
        self.progress = draft
        return OperationResult(
            progress=draft,
            reward_events=reward_events or [],
            transition_events=transition_events or [],
        )
