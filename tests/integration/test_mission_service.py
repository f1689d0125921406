"""
Integration tests for MissionService against SQLite: persistence, reward ledger,
optimistic locking, expiry sweeps and the event log.
"""

import asyncio
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from src.engines.missions.catalog import MissionCatalog
from src.engines.missions.errors import (
    ConcurrencyConflictError,
    MissionNotEligibleError,
    MissionNotFoundError,
    ProgressNotFoundError,
    StateConflictError,
)
from src.engines.missions.mission_service import InstanceLocks, MissionService
from src.engines.missions.progress_store import ProgressStore
from src.engines.missions.progress_tracker import ProgressTracker, SubmissionOutcome
from src.engines.missions.reward_ledger import DbRewardLedger
from src.engines.missions.rewards import RewardCalculator
from src.engines.missions.eligibility import UserProfile
from src.engines.missions.types import AbandonReason, MissionDefinition, MissionStatus, Tier
from src.kernel.models.event_log import EventLog, EventType
from src.kernel.models.mission import MissionProgressRecord, RewardLedgerEntry


@pytest.fixture
def service(db_session, catalog, clock):
    return MissionService(db_session, catalog, clock=clock, locks=InstanceLocks())


async def run_mission(service, progress_id, passing_evidence, on_time, steps):
    result = None
    for step_id in steps:
        result = await service.submit_step(progress_id, step_id, passing_evidence[step_id], on_time(step_id))
    return result


ALL_STEPS = ["step_1", "step_2", "step_3", "step_4", "step_5"]


class TestStartMission:
    """start_mission persists the snapshot and logs mission.started."""

    @pytest.mark.asyncio
    async def test_start_persists_snapshot(self, service, db_session, user_id):
        result = await service.start_mission("health-check", user_id)
        progress = result.progress

        row = await db_session.get(MissionProgressRecord, progress.id)
        assert row.status == "active"
        assert row.current_difficulty == "medium"
        assert row.version == 1
        assert row.snapshot["step_progress"][0]["status"] == "active"

        loaded = await service.get_progress(progress.id)
        assert loaded == progress

    @pytest.mark.asyncio
    async def test_second_start_for_same_user_conflicts(self, service, user_id):
        await service.start_mission("health-check", user_id)
        with pytest.raises(StateConflictError):
            await service.start_mission("health-check", user_id)

        other = await service.start_mission("health-check", uuid.uuid4())
        assert other.progress.user_id != user_id

    @pytest.mark.asyncio
    async def test_unknown_mission(self, service, user_id):
        with pytest.raises(MissionNotFoundError):
            await service.start_mission("grooming-101", user_id)

    @pytest.mark.asyncio
    async def test_unknown_progress(self, service):
        with pytest.raises(ProgressNotFoundError):
            await service.get_progress(uuid.uuid4())


class TestStartEligibility:
    """Prerequisites come from stored progress, badges from the ledger."""

    @pytest.fixture
    def follow_up(self, health_check_dict):
        health_check_dict.update(
            id="dental-care",
            min_level=2,
            prerequisites=["health-check"],
            required_badges=["health_monitor"],
        )
        return MissionDefinition.model_validate(health_check_dict)

    @pytest.fixture
    def gated_service(self, db_session, health_check, follow_up, clock):
        catalog = MissionCatalog([health_check, follow_up])
        return MissionService(db_session, catalog, clock=clock, locks=InstanceLocks())

    @pytest.mark.asyncio
    async def test_prerequisite_must_be_completed(self, gated_service, user_id):
        with pytest.raises(MissionNotEligibleError) as exc_info:
            await gated_service.start_mission("dental-care", user_id, profile=UserProfile(level=2))
        assert exc_info.value.details["reason"] == "missing_prerequisites"
        assert exc_info.value.details["missing"] == ["health-check"]

    @pytest.mark.asyncio
    async def test_completed_mission_unlocks_follow_up(self, gated_service, user_id, passing_evidence, on_time):
        started = await gated_service.start_mission("health-check", user_id)
        await run_mission(gated_service, started.progress.id, passing_evidence, on_time, ALL_STEPS)

        # health_monitor was granted by the ledger, not passed in by the caller
        assert await gated_service.ledger.badges_for_user(user_id) == {"health_monitor"}
        result = await gated_service.start_mission("dental-care", user_id, profile=UserProfile(level=2))
        assert result.progress.status == MissionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_level_checked_from_profile(self, gated_service, user_id, passing_evidence, on_time):
        started = await gated_service.start_mission("health-check", user_id)
        await run_mission(gated_service, started.progress.id, passing_evidence, on_time, ALL_STEPS)

        with pytest.raises(MissionNotEligibleError) as exc_info:
            await gated_service.start_mission("dental-care", user_id)
        assert exc_info.value.details["reason"] == "level_too_low"

    @pytest.mark.asyncio
    async def test_rejected_start_persists_nothing(self, gated_service, db_session, user_id):
        with pytest.raises(MissionNotEligibleError):
            await gated_service.start_mission("dental-care", user_id)
        count = await db_session.execute(select(func.count(MissionProgressRecord.id)))
        assert count.scalar() == 0

    @pytest.mark.asyncio
    async def test_inactive_mission_cannot_start(self, db_session, health_check_dict, clock, user_id):
        health_check_dict["is_active"] = False
        service = MissionService(
            db_session, MissionCatalog([MissionDefinition.model_validate(health_check_dict)]), clock=clock
        )
        with pytest.raises(MissionNotEligibleError) as exc_info:
            await service.start_mission("health-check", user_id)
        assert exc_info.value.details["reason"] == "mission_inactive"


class TestAbandonFeedback:
    """A too_difficult abandon lowers the tier the user's next mission opens at."""

    @pytest.fixture
    def two_missions(self, db_session, health_check, health_check_dict, clock):
        health_check_dict["id"] = "dental-care"
        catalog = MissionCatalog([health_check, MissionDefinition.model_validate(health_check_dict)])
        return MissionService(db_session, catalog, clock=clock, locks=InstanceLocks())

    @pytest.mark.asyncio
    async def test_next_mission_starts_one_tier_lower(self, two_missions, user_id, clock):
        first = await two_missions.start_mission("health-check", user_id)
        clock.advance(minutes=5)
        abandoned = await two_missions.abandon(first.progress.id, reason=AbandonReason.TOO_DIFFICULT)
        assert abandoned.progress.abandon_reason == AbandonReason.TOO_DIFFICULT

        clock.advance(minutes=5)
        second = await two_missions.start_mission("dental-care", user_id)
        assert second.progress.current_difficulty == Tier.EASY
        assert second.progress.step_progress[0].tier_at_activation == Tier.EASY

        events = await two_missions.list_events(second.progress.id)
        assert [e.event_type for e in events] == [EventType.MISSION_STARTED, EventType.DIFFICULTY_ADJUSTED]
        assert events[1].payload["to_tier"] == "easy"

    @pytest.mark.asyncio
    async def test_feedback_is_logged(self, two_missions, user_id):
        started = await two_missions.start_mission("health-check", user_id)
        await two_missions.abandon(started.progress.id, reason=AbandonReason.TOO_DIFFICULT, note="quiz too long")

        events = await two_missions.list_events(started.progress.id)
        payload = events[-1].payload
        assert payload["reason"] == "too_difficult"
        assert payload["difficulty_feedback"] == "too_hard"
        assert payload["completion_percentage"] == 0.0
        assert payload["note"] == "quiz too long"

    @pytest.mark.asyncio
    async def test_other_reasons_keep_default_tier(self, two_missions, user_id):
        first = await two_missions.start_mission("health-check", user_id)
        await two_missions.abandon(first.progress.id, reason=AbandonReason.TECHNICAL_ISSUE)

        second = await two_missions.start_mission("dental-care", user_id)
        assert second.progress.current_difficulty == Tier.MEDIUM


class TestMissionStats:

    @pytest.mark.asyncio
    async def test_stats_over_stored_instances(self, service, passing_evidence, clock):
        for rating in (5, 3):
            started = await service.start_mission("health-check", uuid.uuid4())
            for step_id in ALL_STEPS:
                await service.submit_step(started.progress.id, step_id, passing_evidence[step_id], 600, rating=rating)
        quitter = await service.start_mission("health-check", uuid.uuid4())
        await service.abandon(quitter.progress.id)

        stats = await service.mission_stats("health-check")
        assert stats.times_started == 3
        assert stats.times_completed == 2
        assert stats.times_abandoned == 1
        assert stats.completion_rate == 0.6667
        assert stats.average_completion_time == 3000.0
        assert stats.average_rating == 4.0

    @pytest.mark.asyncio
    async def test_unknown_mission(self, service):
        with pytest.raises(MissionNotFoundError):
            await service.mission_stats("grooming-101")

class TestSubmitStep:
    """Submissions write snapshot, ledger rows and events in one commit."""

    @pytest.mark.asyncio
    async def test_completed_step_is_granted_and_acknowledged(self, service, user_id, passing_evidence, on_time):
        started = await service.start_mission("health-check", user_id)
        progress_id = started.progress.id

        result = await service.submit_step(progress_id, "step_1", passing_evidence["step_1"], on_time("step_1"))
        assert result.outcome == SubmissionOutcome.COMPLETED
        # Tracker commit plus reward acknowledgement
        assert result.progress.version == 3
        assert [r.key for r in result.progress.earned_rewards] == [f"{progress_id}:step:step_1"]
        assert result.progress.pending_rewards == []

        stored = await service.get_progress(progress_id)
        assert stored == result.progress

        rewards = await service.list_rewards(progress_id)
        assert [(r.idempotency_key, r.xp, r.tier) for r in rewards] == [(f"{progress_id}:step:step_1", 50, "medium")]

    @pytest.mark.asyncio
    async def test_full_run_grants_each_reward_once(self, service, db_session, user_id, passing_evidence, on_time):
        started = await service.start_mission("health-check", user_id)
        progress_id = started.progress.id

        final = await run_mission(service, progress_id, passing_evidence, on_time, ALL_STEPS)
        assert final.progress.status == MissionStatus.COMPLETED
        assert len(final.progress.earned_rewards) == 7

        rewards = await service.list_rewards(progress_id)
        assert len(rewards) == 6
        assert sum(r.xp for r in rewards if r.reward_type == "step") == 365
        mission_row = [r for r in rewards if r.reward_type == "mission"][0]
        assert mission_row.idempotency_key == f"{progress_id}:mission"
        assert await DbRewardLedger(db_session).total_xp(user_id) == 365

        with pytest.raises(StateConflictError):
            await service.submit_step(progress_id, "step_5", passing_evidence["step_5"])
        assert len(await service.list_rewards(progress_id)) == 6

    @pytest.mark.asyncio
    async def test_failed_step_writes_no_reward(self, service, user_id, failing_photo):
        started = await service.start_mission("health-check", user_id)
        result = await service.submit_step(started.progress.id, "step_1", failing_photo)

        assert result.outcome == SubmissionOutcome.VERIFICATION_FAILED
        assert result.progress.version == 2
        assert await service.list_rewards(started.progress.id) == []

    @pytest.mark.asyncio
    async def test_difficulty_change_is_persisted(self, service, user_id, failing_photo):
        started = await service.start_mission("health-check", user_id)
        await service.submit_step(started.progress.id, "step_1", failing_photo)
        await service.submit_step(started.progress.id, "step_1", failing_photo)

        stored = await service.get_progress(started.progress.id)
        assert stored.current_difficulty == Tier.EASY
        assert len(stored.dda_adjustments) == 1


class TestOptimisticLocking:
    """Stale writers are rejected with CONCURRENCY_CONFLICT."""

    @pytest.mark.asyncio
    async def test_expected_version_mismatch(self, service, user_id):
        started = await service.start_mission("health-check", user_id)
        await service.pause(started.progress.id, expected_version=1)

        with pytest.raises(ConcurrencyConflictError) as exc_info:
            await service.resume(started.progress.id, expected_version=1)
        assert exc_info.value.details == {"expected_version": 1, "current_version": 2}

        resumed = await service.resume(started.progress.id, expected_version=2)
        assert resumed.progress.status == MissionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_stale_save_is_rejected(self, db_session, service, user_id):
        started = await service.start_mission("health-check", user_id)
        stale = started.progress
        await service.pause(stale.id)

        store = ProgressStore(db_session)
        with pytest.raises(ConcurrencyConflictError):
            await store.save(stale.model_copy(update={"version": 2}), expected_version=1)

    @pytest.mark.asyncio
    async def test_conflict_rolls_back_ledger_rows(
        self, db_session, session_maker, catalog, clock, user_id, passing_evidence, on_time, monkeypatch
    ):
        service = MissionService(db_session, catalog, clock=clock, locks=InstanceLocks())
        started = await service.start_mission("health-check", user_id)
        stale = started.progress
        await service.pause(stale.id)
        await service.resume(stale.id)

        async def stale_get(progress_id):
            return stale.model_copy(deep=True)

        # Simulate a writer that loaded the snapshot before pause/resume
        monkeypatch.setattr(service.store, "get", stale_get)
        with pytest.raises(ConcurrencyConflictError):
            await service.submit_step(stale.id, "step_1", passing_evidence["step_1"], on_time("step_1"))

        async with session_maker() as fresh:
            count = await fresh.execute(select(func.count(RewardLedgerEntry.id)))
            assert count.scalar() == 0
            row = await fresh.get(MissionProgressRecord, stale.id)
            assert row.version == 3
            assert row.status == "active"


class TestInstanceLocks:
    """Requests for one instance run one at a time; idle entries are dropped."""

    @pytest.mark.asyncio
    async def test_concurrent_submissions_through_service(
        self, service, session_maker, catalog, clock, user_id, passing_evidence, on_time
    ):
        started = await service.start_mission("health-check", user_id)
        progress_id = started.progress.id
        locks = InstanceLocks()

        async def submit():
            async with session_maker() as session:
                worker = MissionService(session, catalog, clock=clock, locks=locks)
                return await worker.submit_step(
                    progress_id, "step_1", passing_evidence["step_1"], on_time("step_1")
                )

        outcomes = await asyncio.gather(submit(), submit(), return_exceptions=True)

        completed = [o for o in outcomes if not isinstance(o, Exception)]
        errors = [o for o in outcomes if isinstance(o, Exception)]
        assert len(completed) == 1
        assert completed[0].outcome == SubmissionOutcome.COMPLETED
        assert len(errors) == 1
        assert isinstance(errors[0], StateConflictError)
        assert len(locks) == 0

        async with session_maker() as fresh:
            rows = await fresh.execute(select(RewardLedgerEntry).where(RewardLedgerEntry.progress_id == progress_id))
            assert [r.step_id for r in rows.scalars().all()] == ["step_1"]
            row = await fresh.get(MissionProgressRecord, progress_id)
            assert row.snapshot["completed_steps"] == 1

    @pytest.mark.asyncio
    async def test_entry_released_after_each_operation(self, service, user_id):
        started = await service.start_mission("health-check", user_id)
        await service.pause(started.progress.id)
        await service.abandon(started.progress.id)
        assert started.progress.id not in service.locks
        assert len(service.locks) == 0

    @pytest.mark.asyncio
    async def test_entry_released_when_operation_fails(self, service, user_id):
        started = await service.start_mission("health-check", user_id)
        with pytest.raises(StateConflictError):
            await service.resume(started.progress.id)
        assert len(service.locks) == 0

    @pytest.mark.asyncio
    async def test_waiters_share_one_entry(self):
        locks = InstanceLocks()
        progress_id = uuid.uuid4()
        order = []

        async def hold(name, delay):
            async with locks.hold(progress_id):
                order.append(f"{name}:in")
                assert len(locks) == 1
                await asyncio.sleep(delay)
                order.append(f"{name}:out")

        await asyncio.gather(hold("a", 0.02), hold("b", 0))
        assert order == ["a:in", "a:out", "b:in", "b:out"]
        assert len(locks) == 0


class TestExpiry:
    """expire and expire_overdue."""

    @pytest.fixture
    def timed_catalog(self, health_check_dict):
        health_check_dict["time_limit_minutes"] = 60
        return MissionCatalog([MissionDefinition.model_validate(health_check_dict)])

    @pytest.mark.asyncio
    async def test_sweep_expires_only_overdue_instances(self, db_session, timed_catalog, clock):
        service = MissionService(db_session, timed_catalog, clock=clock, locks=InstanceLocks())
        early = await service.start_mission("health-check", uuid.uuid4())
        clock.advance(minutes=30)
        late = await service.start_mission("health-check", uuid.uuid4())
        await service.pause(early.progress.id)

        expired = await service.expire_overdue(clock.now + timedelta(minutes=31))
        assert [r.progress.id for r in expired] == [early.progress.id]
        assert expired[0].progress.status == MissionStatus.EXPIRED

        assert (await service.get_progress(late.progress.id)).status == MissionStatus.ACTIVE
        assert await service.expire_overdue(clock.now + timedelta(minutes=31)) == []

    @pytest.mark.asyncio
    async def test_expire_is_idempotent(self, service, user_id):
        started = await service.start_mission("health-check", user_id)
        first = await service.expire(started.progress.id)
        second = await service.expire(started.progress.id)

        assert first.progress.status == MissionStatus.EXPIRED
        assert second.progress.version == first.progress.version
        events = await service.list_events(started.progress.id)
        assert [e.event_type for e in events] == [EventType.MISSION_STARTED, EventType.MISSION_EXPIRED]


class TestEventLog:
    """Every transition lands in event_logs in order."""

    @pytest.mark.asyncio
    async def test_events_follow_transitions(self, service, user_id, passing_evidence, on_time, failing_photo):
        started = await service.start_mission("health-check", user_id)
        progress_id = started.progress.id
        await service.submit_step(progress_id, "step_1", failing_photo)
        await service.submit_step(progress_id, "step_1", passing_evidence["step_1"], on_time("step_1"))
        await service.abandon(progress_id, reason=AbandonReason.USER_QUIT, note="dog is fine")

        events = await service.list_events(progress_id)
        assert [e.event_type for e in events] == [
            EventType.MISSION_STARTED,
            EventType.STEP_FAILED,
            EventType.STEP_COMPLETED,
            EventType.REWARD_GRANTED,
            EventType.MISSION_ABANDONED,
        ]
        assert all(e.entity_id == progress_id and e.user_id == user_id for e in events)
        assert events[1].payload["retry_count"] == 1
        assert events[1].payload["error_code"] == "VERIFICATION_FAILED"
        assert events[3].payload["idempotency_key"] == f"{progress_id}:step:step_1"
        assert events[4].payload["reason"] == "user_quit"
        assert events[4].payload["note"] == "dog is fine"
        assert events[4].payload["step_id"] == "step_2"

    @pytest.mark.asyncio
    async def test_rejected_operation_logs_nothing(self, service, db_session, user_id):
        started = await service.start_mission("health-check", user_id)
        with pytest.raises(StateConflictError):
            await service.resume(started.progress.id)

        count = await db_session.execute(select(func.count(EventLog.id)))
        assert count.scalar() == 1


class TestDbRewardLedger:

    @pytest.mark.asyncio
    async def test_duplicate_key_recorded_once(self, db_session, health_check, clock):
        progress = ProgressTracker.new_progress(health_check, uuid.uuid4(), now=clock())
        event = RewardCalculator.step_event(health_check, progress, health_check.steps[0], Tier.MEDIUM)
        ledger = DbRewardLedger(db_session)

        assert await ledger.record(event) is True
        assert await ledger.record(event) is False
        assert await ledger.keys_for_progress(progress.id) == {event.key}
        assert await ledger.has_key(event.key) is True
