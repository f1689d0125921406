"""
State machine for the MissionProgress lifecycle.

Valid transitions are defined here; anything not listed is a STATE_CONFLICT.
Terminal states: completed, abandoned, expired.
"""

from enum import Enum
from typing import Dict, List, Tuple

from src.engines.missions.errors import InvariantViolation, StateConflictError
from src.engines.missions.rewards import MISSION_KEY_SUFFIX, STEP_KEY_PREFIX
from src.engines.missions.types import (
    TERMINAL_STATUSES,
    MissionProgress,
    MissionStatus,
    StepStatus,
)


class MissionAction(str, Enum):
    START = "start"
    SUBMIT = "submit"
    COMPLETE = "complete"
    PAUSE = "pause"
    RESUME = "resume"
    ABANDON = "abandon"
    EXPIRE = "expire"


# (from_state, action) -> to_state
_TRANSITIONS: Dict[Tuple[MissionStatus, MissionAction], MissionStatus] = {
    (MissionStatus.NOT_STARTED, MissionAction.START): MissionStatus.ACTIVE,
    (MissionStatus.NOT_STARTED, MissionAction.ABANDON): MissionStatus.ABANDONED,
    # Submitting keeps the mission active until the last step completes
    (MissionStatus.ACTIVE, MissionAction.SUBMIT): MissionStatus.ACTIVE,
    (MissionStatus.ACTIVE, MissionAction.COMPLETE): MissionStatus.COMPLETED,
    (MissionStatus.ACTIVE, MissionAction.PAUSE): MissionStatus.PAUSED,
    (MissionStatus.PAUSED, MissionAction.RESUME): MissionStatus.ACTIVE,
    (MissionStatus.ACTIVE, MissionAction.ABANDON): MissionStatus.ABANDONED,
    (MissionStatus.PAUSED, MissionAction.ABANDON): MissionStatus.ABANDONED,
    (MissionStatus.ACTIVE, MissionAction.EXPIRE): MissionStatus.EXPIRED,
    (MissionStatus.PAUSED, MissionAction.EXPIRE): MissionStatus.EXPIRED,
}


def valid_actions(from_state: MissionStatus) -> List[MissionAction]:
    """Return actions allowed from the given state."""
    return [action for (state, action) in _TRANSITIONS if state == MissionStatus(from_state)]


def can_transition(from_state: MissionStatus, action: MissionAction) -> bool:
    return (MissionStatus(from_state), MissionAction(action)) in _TRANSITIONS


def next_status(from_state: MissionStatus, action: MissionAction) -> MissionStatus:
    """Resolve the target state or raise StateConflictError."""
    key = (MissionStatus(from_state), MissionAction(action))
    if key not in _TRANSITIONS:
        raise StateConflictError(
            f"Cannot {key[1].value} a mission that is {key[0].value}",
            details={"status": key[0].value, "action": key[1].value},
        )
    return _TRANSITIONS[key]


def check_invariants(progress: MissionProgress) -> None:
    """Raise InvariantViolation if the snapshot breaks a structural invariant."""
    if not 0 <= progress.completed_steps <= progress.total_steps:
        raise InvariantViolation(
            f"completed_steps {progress.completed_steps} outside [0, {progress.total_steps}]"
        )
    if len(progress.step_progress) != progress.total_steps:
        raise InvariantViolation("step_progress length differs from total_steps")

    completed = sum(1 for sp in progress.step_progress if sp.status == StepStatus.COMPLETED)
    if completed != progress.completed_steps:
        raise InvariantViolation(
            f"{completed} steps marked completed but completed_steps={progress.completed_steps}"
        )

    active = sum(1 for sp in progress.step_progress if sp.status == StepStatus.ACTIVE)
    if progress.status == MissionStatus.ACTIVE and active != 1:
        raise InvariantViolation(f"active mission has {active} active steps")
    if progress.status == MissionStatus.PAUSED and active > 1:
        raise InvariantViolation(f"paused mission has {active} active steps")
    if progress.status in TERMINAL_STATUSES and active != 0:
        raise InvariantViolation(f"{progress.status.value} mission still has an active step")

    # Steps complete strictly in order: completed prefix, then at most one open step
    seen_open = False
    for sp in progress.step_progress:
        if sp.status == StepStatus.COMPLETED and seen_open:
            raise InvariantViolation(f"step {sp.step_id} completed after an unfinished step")
        if sp.status != StepStatus.COMPLETED:
            seen_open = True

    # Lines of one emission share a key; a key lives in exactly one of the two lists
    earned_keys = {r.key for r in progress.earned_rewards}
    pending_keys = {r.key for r in progress.pending_rewards}
    if earned_keys & pending_keys:
        raise InvariantViolation(f"reward keys both earned and pending: {sorted(earned_keys & pending_keys)}")
    completed_ids = {sp.step_id for sp in progress.step_progress if sp.status == StepStatus.COMPLETED}
    for key in earned_keys | pending_keys:
        suffix = key.split(":", 1)[-1]
        if suffix == MISSION_KEY_SUFFIX:
            continue
        if suffix.removeprefix(STEP_KEY_PREFIX) not in completed_ids:
            raise InvariantViolation(f"reward {key} emitted for a step that is not completed")
    if progress.status == MissionStatus.COMPLETED and progress.completed_steps != progress.total_steps:
        raise InvariantViolation("completed mission with unfinished steps")
