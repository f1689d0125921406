"""
Mission domain types - definitions, evidence, progress and emitted events.

Definitions are immutable templates supplied by the catalog. MissionProgress is
the single mutable object per (user, mission) pair and is only changed through
ProgressTracker operations.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Tier(str, Enum):
    """Difficulty tier governing which step overrides apply."""
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"


TIER_ORDER: List[Tier] = [Tier.EASY, Tier.MEDIUM, Tier.HARD]


class MissionStatus(str, Enum):
    """Lifecycle state of a mission instance."""
    NOT_STARTED = "not_started"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {MissionStatus.COMPLETED, MissionStatus.ABANDONED, MissionStatus.EXPIRED}
)


class StepStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class AbandonReason(str, Enum):
    """Why a user gave up; too_difficult feeds the next mission's starting tier."""
    USER_QUIT = "user_quit"
    EXPIRED = "expired"
    TOO_DIFFICULT = "too_difficult"
    TECHNICAL_ISSUE = "technical_issue"


class RequirementType(str, Enum):
    PHOTO = "photo"
    CHECKLIST = "checklist"
    QUIZ = "quiz"
    TRAINING = "training"


class RewardType(str, Enum):
    XP = "xp"
    BADGE = "badge"
    DISCOUNT = "discount"
    FREE_ITEM = "free_item"
    EXCLUSIVE_CONTENT = "exclusive_content"


# ---------------------------------------------------------------------------
# Verification requirements (closed tagged union on "type")
# ---------------------------------------------------------------------------

class PhotoRequirementData(BaseModel):
    required_elements: List[str] = []


class ChecklistItem(BaseModel):
    id: str
    text: str = ""
    required: bool = True


class ChecklistRequirementData(BaseModel):
    items: List[ChecklistItem] = Field(..., min_length=1)


class QuizQuestion(BaseModel):
    question: str
    answers: List[str] = []
    correct_answer: int


class QuizRequirementData(BaseModel):
    questions: List[QuizQuestion] = Field(..., min_length=1)
    passing_score: float = Field(0.7, ge=0.0, le=1.0)


class TrainingRequirementData(BaseModel):
    target_sessions: Optional[int] = Field(None, gt=0)
    target_minutes: Optional[float] = Field(None, gt=0)

    @model_validator(mode="after")
    def _has_target(self) -> "TrainingRequirementData":
        if self.target_sessions is None and self.target_minutes is None:
            raise ValueError("training requirement needs target_sessions or target_minutes")
        return self


class _RequirementBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    description: str = ""
    optional: bool = False


class PhotoRequirement(_RequirementBase):
    type: Literal["photo"] = "photo"
    data: PhotoRequirementData = PhotoRequirementData()


class ChecklistRequirement(_RequirementBase):
    type: Literal["checklist"] = "checklist"
    data: ChecklistRequirementData


class QuizRequirement(_RequirementBase):
    type: Literal["quiz"] = "quiz"
    data: QuizRequirementData


class TrainingRequirement(_RequirementBase):
    type: Literal["training"] = "training"
    data: TrainingRequirementData


VerificationRequirement = Annotated[
    Union[PhotoRequirement, ChecklistRequirement, QuizRequirement, TrainingRequirement],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Evidence payloads, one shape per requirement type
# ---------------------------------------------------------------------------

class PhotoEvidence(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["photo"] = "photo"
    reference: str = ""
    tags: List[str] = []


class ChecklistEvidence(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["checklist"] = "checklist"
    checked_items: List[str] = []


class QuizEvidence(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["quiz"] = "quiz"
    answers: List[int] = []


class TrainingSessionLog(BaseModel):
    duration_minutes: float = Field(..., ge=0)
    completed_at: Optional[datetime] = None


class TrainingEvidence(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["training"] = "training"
    sessions: List[TrainingSessionLog] = []


Evidence = Union[PhotoEvidence, ChecklistEvidence, QuizEvidence, TrainingEvidence]

EVIDENCE_MODELS: Dict[RequirementType, type] = {
    RequirementType.PHOTO: PhotoEvidence,
    RequirementType.CHECKLIST: ChecklistEvidence,
    RequirementType.QUIZ: QuizEvidence,
    RequirementType.TRAINING: TrainingEvidence,
}


# ---------------------------------------------------------------------------
# Rewards
# ---------------------------------------------------------------------------

class ItemReward(BaseModel):
    """Item granted by a step or mission definition."""
    model_config = ConfigDict(frozen=True)

    type: RewardType
    value: float = 0
    quantity: int = Field(1, ge=1)
    ref: Optional[str] = None
    title: str = ""


class MissionReward(BaseModel):
    model_config = ConfigDict(frozen=True)

    xp: int = Field(0, ge=0)
    badges: List[str] = []
    items: List[ItemReward] = []


class BonusConditionType(str, Enum):
    COMPLETED_WITHIN_MINUTES = "completed_within_minutes"
    MIN_QUALITY_SCORE = "min_quality_score"
    MIN_EFFICIENCY = "min_efficiency"
    MAX_TOTAL_RETRIES = "max_total_retries"
    FINAL_TIER_AT_LEAST = "final_tier_at_least"


class BonusCondition(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: BonusConditionType
    threshold: Union[float, Tier]


class BonusReward(BaseModel):
    """Conditional reward; granted only if every condition holds at completion."""
    model_config = ConfigDict(frozen=True)

    id: str
    description: str = ""
    conditions: List[BonusCondition] = Field(..., min_length=1)
    reward: MissionReward


class RewardItem(BaseModel):
    """A single emitted reward line, carrying its idempotency key."""

    type: RewardType
    value: float
    quantity: int = 1
    ref: Optional[str] = None
    key: str


class RewardPayload(BaseModel):
    xp: int = 0
    items: List[RewardItem] = []


class RewardEventType(str, Enum):
    STEP = "step"
    MISSION = "mission"


class RewardEvent(BaseModel):
    type: RewardEventType
    key: str
    progress_id: uuid.UUID
    user_id: uuid.UUID
    mission_id: str
    step_id: Optional[str] = None
    tier: Optional[Tier] = None
    payload: RewardPayload
    emitted_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Mission definition
# ---------------------------------------------------------------------------

class StepModifier(BaseModel):
    """Partial override of a step for one tier; unset fields keep the base value."""
    model_config = ConfigDict(frozen=True)

    estimated_minutes: Optional[float] = Field(None, gt=0)
    xp_reward: Optional[int] = Field(None, ge=0)
    item_rewards: Optional[List[ItemReward]] = None


class MissionStep(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    order: int
    title: str = ""
    requirements: List[VerificationRequirement] = []
    estimated_minutes: float = Field(..., gt=0)
    xp_reward: int = Field(0, ge=0)
    item_rewards: List[ItemReward] = []
    difficulty_modifiers: Dict[Tier, StepModifier] = {}

    def estimated_minutes_for(self, tier: Optional[Tier]) -> float:
        modifier = self.difficulty_modifiers.get(tier) if tier else None
        if modifier and modifier.estimated_minutes is not None:
            return modifier.estimated_minutes
        return self.estimated_minutes


class MissionDefinition(BaseModel):
    """Immutable mission template supplied by the catalog."""
    model_config = ConfigDict(frozen=True)

    id: str
    title: str = ""
    description: str = ""
    category: str = ""
    steps: List[MissionStep] = Field(..., min_length=1)
    total_steps: int
    rewards: MissionReward = MissionReward()
    bonus_rewards: List[BonusReward] = []
    dda_enabled: bool = True
    default_tier: Tier = Tier.MEDIUM
    time_limit_minutes: Optional[int] = Field(None, gt=0)

    # Start eligibility
    is_active: bool = True
    expires_at: Optional[datetime] = None
    min_level: int = Field(1, ge=1)
    prerequisites: List[str] = []
    required_badges: List[str] = []

    @model_validator(mode="after")
    def _check_structure(self) -> "MissionDefinition":
        if self.total_steps != len(self.steps):
            raise ValueError("total_steps must match the number of steps")
        for index, step in enumerate(self.steps):
            if step.order != index:
                raise ValueError(f"step order mismatch at index {index}")
        ids = [s.id for s in self.steps]
        if len(set(ids)) != len(ids):
            raise ValueError("step ids must be unique")
        if self.id in self.prerequisites:
            raise ValueError("a mission cannot be its own prerequisite")
        return self

    def step_by_id(self, step_id: str) -> Optional[MissionStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None


# ---------------------------------------------------------------------------
# Mutable progress
# ---------------------------------------------------------------------------

class StepProgress(BaseModel):
    step_id: str
    status: StepStatus = StepStatus.PENDING
    tier_at_activation: Optional[Tier] = None
    activated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    time_spent: int = 0
    verification: Optional[List[Dict[str, Any]]] = None
    rating: Optional[int] = None
    retry_count: int = 0
    efficiency: Optional[float] = None
    quality_score: Optional[float] = None


class DifficultyAdjustment(BaseModel):
    """Audit record of a tier change. Append-only."""
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    from_tier: Tier
    to_tier: Tier
    reason: str


class MissionProgress(BaseModel):
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    user_id: uuid.UUID
    mission_id: str
    status: MissionStatus = MissionStatus.NOT_STARTED
    current_step_index: int = 0
    completed_steps: int = 0
    total_steps: int
    step_progress: List[StepProgress] = []
    efficiency: float = 0.0
    quality_score: float = 0.0
    consecutive_failures: int = 0
    current_difficulty: Tier = Tier.MEDIUM
    dda_adjustments: List[DifficultyAdjustment] = []
    earned_rewards: List[RewardItem] = []
    pending_rewards: List[RewardItem] = []
    time_spent: int = 0
    started_at: Optional[datetime] = None
    last_active_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    deadline_at: Optional[datetime] = None
    abandon_reason: Optional[AbandonReason] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    @property
    def progress_percentage(self) -> float:
        if self.total_steps == 0:
            return 0.0
        return self.completed_steps / self.total_steps

    def active_step(self) -> Optional[StepProgress]:
        for sp in self.step_progress:
            if sp.status == StepStatus.ACTIVE:
                return sp
        return None

    def reward_keys(self) -> set:
        return {r.key for r in self.earned_rewards} | {r.key for r in self.pending_rewards}


# ---------------------------------------------------------------------------
# Transition events (analytics stream)
# ---------------------------------------------------------------------------

class TransitionType(str, Enum):
    MISSION_STARTED = "mission_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    MISSION_COMPLETED = "mission_completed"
    DIFFICULTY_ADJUSTED = "difficulty_adjusted"
    MISSION_PAUSED = "mission_paused"
    MISSION_RESUMED = "mission_resumed"
    MISSION_ABANDONED = "mission_abandoned"
    MISSION_EXPIRED = "mission_expired"


class TransitionEvent(BaseModel):
    type: TransitionType
    progress_id: uuid.UUID
    mission_id: str
    user_id: uuid.UUID
    step_id: Optional[str] = None
    tier: Tier
    timestamp: datetime
    details: Dict[str, Any] = {}
