"""
Mission Engine - Step progression, evidence verification, adaptive difficulty
and rewards for multi-step pet-care missions.

Mission states:
- not_started -> active -> completed
- active <-> paused
- active/paused -> abandoned | expired

Difficulty tiers:
- easy, medium, hard (one step at a time; changes apply to later steps only)
"""

from src.engines.missions.catalog import MissionCatalog
from src.engines.missions.difficulty import AdjustmentDecision, DifficultyAdjuster, PerformanceSignal
from src.engines.missions.eligibility import IneligibleReason, UserProfile
from src.engines.missions.errors import (
    ConcurrencyConflictError,
    ErrorCode,
    EvidenceValidationError,
    InvalidMissionDefinitionError,
    InvariantViolation,
    MissionEngineError,
    MissionNotEligibleError,
    MissionNotFoundError,
    ProgressNotFoundError,
    StateConflictError,
)
from src.engines.missions.mission_service import InstanceLocks, MissionService
from src.engines.missions.progress_tracker import (
    OperationResult,
    ProgressTracker,
    StepSubmissionResult,
    SubmissionOutcome,
)
from src.engines.missions.rewards import RewardCalculator, RewardLedger
from src.engines.missions.stats import MissionStats
from src.engines.missions.state_machine import MissionAction, check_invariants
from src.engines.missions.types import (
    AbandonReason,
    MissionDefinition,
    MissionProgress,
    MissionStatus,
    StepStatus,
    Tier,
)
from src.engines.missions.verifier import StepVerifier, VerificationReason, VerificationResult

__all__ = [
    "MissionCatalog",
    "AdjustmentDecision",
    "DifficultyAdjuster",
    "PerformanceSignal",
    "IneligibleReason",
    "UserProfile",
    "ConcurrencyConflictError",
    "ErrorCode",
    "EvidenceValidationError",
    "InvalidMissionDefinitionError",
    "InvariantViolation",
    "MissionEngineError",
    "MissionNotEligibleError",
    "MissionNotFoundError",
    "ProgressNotFoundError",
    "StateConflictError",
    "InstanceLocks",
    "MissionService",
    "OperationResult",
    "ProgressTracker",
    "StepSubmissionResult",
    "SubmissionOutcome",
    "RewardCalculator",
    "RewardLedger",
    "MissionStats",
    "MissionAction",
    "check_invariants",
    "AbandonReason",
    "MissionDefinition",
    "MissionProgress",
    "MissionStatus",
    "StepStatus",
    "Tier",
    "StepVerifier",
    "VerificationReason",
    "VerificationResult",
]
