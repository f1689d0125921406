"""
Mission Service - DB-backed orchestration of mission instances.

Each operation: take the instance lock, load the snapshot, run the tracker
operation, record rewards in the ledger, write the snapshot back with an
optimistic version check, append transition events and commit. Snapshot,
ledger rows and events land in one transaction or not at all.
"""

import asyncio
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Type

from sqlalchemy.ext.asyncio import AsyncSession

from src.config import get_settings
from src.engines.missions.catalog import MissionCatalog
from src.engines.missions.eligibility import EligibilityContext, UserProfile, ensure_eligible
from src.engines.missions.errors import ConcurrencyConflictError
from src.engines.missions.progress_store import ProgressStore
from src.engines.missions.progress_tracker import (
    EvidenceInput,
    OperationResult,
    ProgressTracker,
    StepSubmissionResult,
)
from src.engines.missions.reward_ledger import DbRewardLedger
from src.engines.missions.stats import MissionStats
from src.engines.missions.types import (
    AbandonReason,
    MissionProgress,
    RewardEvent,
    TransitionEvent,
    TransitionType,
    utcnow,
)
from src.engines.missions.verifier import StepVerifier, TagExtractor
from src.kernel.events.event_store import EventStore
from src.kernel.events.event_types import (
    DifficultyAdjustedEvent,
    MissionEndedEvent,
    MissionEvent,
    RewardGrantedEvent,
    StepCompletedEvent,
    StepFailedEvent,
)
from src.kernel.models.event_log import EventLog, EventType
from src.kernel.models.mission import RewardLedgerEntry
from src.logging_config import get_logger, progress_id_var

logger = get_logger(__name__)

ENTITY_TYPE = "mission_progress"

_EVENT_TYPES: Dict[TransitionType, EventType] = {
    TransitionType.MISSION_STARTED: EventType.MISSION_STARTED,
    TransitionType.STEP_COMPLETED: EventType.STEP_COMPLETED,
    TransitionType.STEP_FAILED: EventType.STEP_FAILED,
    TransitionType.MISSION_COMPLETED: EventType.MISSION_COMPLETED,
    TransitionType.DIFFICULTY_ADJUSTED: EventType.DIFFICULTY_ADJUSTED,
    TransitionType.MISSION_PAUSED: EventType.MISSION_PAUSED,
    TransitionType.MISSION_RESUMED: EventType.MISSION_RESUMED,
    TransitionType.MISSION_ABANDONED: EventType.MISSION_ABANDONED,
    TransitionType.MISSION_EXPIRED: EventType.MISSION_EXPIRED,
}

_PAYLOAD_MODELS: Dict[TransitionType, Type[MissionEvent]] = {
    TransitionType.STEP_COMPLETED: StepCompletedEvent,
    TransitionType.STEP_FAILED: StepFailedEvent,
    TransitionType.DIFFICULTY_ADJUSTED: DifficultyAdjustedEvent,
    TransitionType.MISSION_ABANDONED: MissionEndedEvent,
    TransitionType.MISSION_EXPIRED: MissionEndedEvent,
}


class InstanceLocks:
    """
    Process-wide registry of one asyncio.Lock per mission instance.

    An entry lives only while some caller holds or waits on it, so the
    registry stays as small as the number of instances currently in use.
    """

    def __init__(self):
        self._locks: Dict[uuid.UUID, asyncio.Lock] = {}
        self._holders: Dict[uuid.UUID, int] = {}

    @asynccontextmanager
    async def hold(self, progress_id: uuid.UUID) -> AsyncIterator[None]:
        lock = self._locks.setdefault(progress_id, asyncio.Lock())
        self._holders[progress_id] = self._holders.get(progress_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[progress_id] -= 1
            if not self._holders[progress_id]:
                del self._holders[progress_id]
                del self._locks[progress_id]

    def __contains__(self, progress_id: uuid.UUID) -> bool:
        return progress_id in self._locks

    def __len__(self) -> int:
        return len(self._locks)


instance_locks = InstanceLocks()


class MissionService:
    """
    Runs ProgressTracker operations against persisted instances.

    Usage:
        service = MissionService(db, catalog)
        result = await service.start_mission("health-check", user_id)
        await service.submit_step(result.progress.id, "step_1", evidence, time_spent_seconds=300)
    """

    def __init__(
        self,
        session: AsyncSession,
        catalog: MissionCatalog,
        tag_extractor: Optional[TagExtractor] = None,
        clock: Optional[Callable[[], datetime]] = None,
        locks: Optional[InstanceLocks] = None,
    ):
        settings = get_settings()
        self.session = session
        self.catalog = catalog
        self.store = ProgressStore(session)
        self.ledger = DbRewardLedger(session)
        self.event_store = EventStore(session)
        self.verifier = StepVerifier(tag_extractor=tag_extractor, timeout_seconds=settings.evidence_timeout_seconds)
        self.efficiency_cap = settings.efficiency_cap
        self.validate = settings.check_invariants
        self.locks = locks if locks is not None else instance_locks
        self._clock = clock or utcnow

    # -- operations ------------------------------------------------------

    async def start_mission(
        self,
        mission_id: str,
        user_id: uuid.UUID,
        profile: Optional[UserProfile] = None,
    ) -> OperationResult:
        """
        Start a new instance after checking the user may take the mission.

        Completed missions come from stored progress and earned badges from the
        reward ledger; the profile adds the caller's level and any badges the
        engine did not grant itself. Raises MissionNotEligibleError.
        """
        mission = self.catalog.get(mission_id)
        context = EligibilityContext.build(
            profile,
            earned_badges=await self.ledger.badges_for_user(user_id),
            completed_missions=await self.store.completed_mission_ids(user_id),
        )
        ensure_eligible(mission, context, self._clock())

        previous = await self.store.latest_ended(user_id)
        tracker, result = ProgressTracker.start(
            mission,
            user_id,
            verifier=self.verifier,
            clock=self._clock,
            efficiency_cap=self.efficiency_cap,
            previous_abandon_reason=previous.abandon_reason if previous else None,
        )
        token = progress_id_var.set(str(result.progress.id))
        try:
            await self.store.create(result.progress)
            await self._log_events(result.transition_events, [])
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        finally:
            progress_id_var.reset(token)
        return result

    async def get_progress(self, progress_id: uuid.UUID) -> MissionProgress:
        return await self.store.get(progress_id)

    async def submit_step(
        self,
        progress_id: uuid.UUID,
        step_id: str,
        evidence: EvidenceInput,
        time_spent_seconds: int = 0,
        rating: Optional[int] = None,
        expected_version: Optional[int] = None,
    ) -> StepSubmissionResult:
        return await self._run(
            progress_id,
            lambda tracker: tracker.submit_step(step_id, evidence, time_spent_seconds, rating),
            expected_version,
        )

    async def pause(self, progress_id: uuid.UUID, expected_version: Optional[int] = None) -> OperationResult:
        return await self._run(progress_id, lambda tracker: tracker.pause(), expected_version)

    async def resume(self, progress_id: uuid.UUID, expected_version: Optional[int] = None) -> OperationResult:
        return await self._run(progress_id, lambda tracker: tracker.resume(), expected_version)

    async def abandon(
        self,
        progress_id: uuid.UUID,
        reason: AbandonReason = AbandonReason.USER_QUIT,
        note: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> OperationResult:
        return await self._run(progress_id, lambda tracker: tracker.abandon(reason, note), expected_version)

    async def expire(self, progress_id: uuid.UUID) -> OperationResult:
        return await self._run(progress_id, lambda tracker: tracker.expire(), None)

    async def expire_overdue(self, now: Optional[datetime] = None) -> List[OperationResult]:
        """Expire every active or paused instance whose deadline is at or before now."""
        now = now or self._clock()
        expired = []
        for progress_id in await self.store.list_overdue(now):
            try:
                result = await self.expire(progress_id)
            except ConcurrencyConflictError:
                # Another writer touched it; the next sweep picks it up again
                logger.warning("Skipping expiry after concurrent update", extra={"progress_id": str(progress_id)})
                continue
            expired.append(result)
        logger.info("Expiry sweep finished", extra={"expired": len(expired)})
        return expired

    async def mission_stats(self, mission_id: str) -> MissionStats:
        self.catalog.get(mission_id)
        return MissionStats.from_progress(mission_id, await self.store.list_for_mission(mission_id))

    async def list_rewards(self, progress_id: uuid.UUID) -> List[RewardLedgerEntry]:
        await self.store.get(progress_id)
        return await self.ledger.list_for_progress(progress_id)

    async def list_events(self, progress_id: uuid.UUID) -> List[EventLog]:
        await self.store.get(progress_id)
        return await self.event_store.get_entity_history(ENTITY_TYPE, progress_id, limit=1000)

    # -- internals -------------------------------------------------------

    async def _run(
        self,
        progress_id: uuid.UUID,
        operation: Callable[[ProgressTracker], Awaitable[Any]],
        expected_version: Optional[int],
    ):
        token = progress_id_var.set(str(progress_id))
        try:
            async with self.locks.hold(progress_id):
                progress = await self.store.get(progress_id)
                if expected_version is not None and progress.version != expected_version:
                    raise ConcurrencyConflictError(
                        f"Mission progress {progress_id} is at version {progress.version}",
                        details={"expected_version": expected_version, "current_version": progress.version},
                    )
                tracker = ProgressTracker(
                    self.catalog.get(progress.mission_id),
                    progress,
                    verifier=self.verifier,
                    clock=self._clock,
                    efficiency_cap=self.efficiency_cap,
                    validate=self.validate,
                )
                base_version = progress.version
                result = await operation(tracker)
                if result.progress.version == base_version:
                    return result
                try:
                    await self._persist(tracker, result, base_version)
                except Exception:
                    await self.session.rollback()
                    raise
                return result
        finally:
            progress_id_var.reset(token)

    async def _persist(self, tracker: ProgressTracker, result: OperationResult, base_version: int) -> None:
        granted: List[RewardEvent] = []
        for event in result.reward_events:
            if await self.ledger.record(event):
                granted.append(event)
        if granted:
            await tracker.acknowledge_rewards(e.key for e in granted)
        result.progress = tracker.progress

        await self.store.save(tracker.progress, base_version)
        await self._log_events(result.transition_events, granted)
        await self.session.commit()

    async def _log_events(self, transitions: List[TransitionEvent], granted: List[RewardEvent]) -> None:
        sequence = 0
        for transition in transitions:
            model = _PAYLOAD_MODELS.get(transition.type, MissionEvent)
            payload = model(
                timestamp=transition.timestamp,
                mission_id=transition.mission_id,
                progress_id=transition.progress_id,
                tier=transition.tier.value,
                step_id=transition.step_id,
                sequence=sequence,
                **transition.details,
            )
            await self.event_store.log_from_model(
                event_type=_EVENT_TYPES[transition.type],
                entity_type=ENTITY_TYPE,
                entity_id=transition.progress_id,
                user_id=transition.user_id,
                payload_model=payload,
            )
            sequence += 1

        for reward in granted:
            await self.event_store.log_from_model(
                event_type=EventType.REWARD_GRANTED,
                entity_type=ENTITY_TYPE,
                entity_id=reward.progress_id,
                user_id=reward.user_id,
                payload_model=RewardGrantedEvent(
                    timestamp=reward.emitted_at,
                    idempotency_key=reward.key,
                    mission_id=reward.mission_id,
                    step_id=reward.step_id,
                    xp=reward.payload.xp,
                    items=[item.model_dump(mode="json") for item in reward.payload.items],
                    sequence=sequence,
                ),
            )
            sequence += 1

