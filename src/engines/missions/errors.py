"""
Mission engine error taxonomy.

VALIDATION_ERROR and VERIFICATION_FAILED are recoverable outcomes for the caller.
STATE_CONFLICT and CONCURRENCY_CONFLICT indicate programming or race errors and
are never retried automatically.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"
    STATE_CONFLICT = "STATE_CONFLICT"
    CONCURRENCY_CONFLICT = "CONCURRENCY_CONFLICT"
    DEADLINE_EXCEEDED = "DEADLINE_EXCEEDED"
    NOT_FOUND = "NOT_FOUND"
    NOT_ELIGIBLE = "NOT_ELIGIBLE"


class MissionEngineError(Exception):
    """Base class for errors raised by the mission engine."""

    code: ErrorCode = ErrorCode.VALIDATION_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class EvidenceValidationError(MissionEngineError):
    """Evidence shape does not match the requirement type (caller's fault)."""

    code = ErrorCode.VALIDATION_ERROR


class InvalidMissionDefinitionError(MissionEngineError):
    code = ErrorCode.VALIDATION_ERROR


class StateConflictError(MissionEngineError):
    """Operation is not valid for the current mission or step state."""

    code = ErrorCode.STATE_CONFLICT


class ConcurrencyConflictError(MissionEngineError):
    """Stored version changed between load and write-back."""

    code = ErrorCode.CONCURRENCY_CONFLICT


class MissionNotFoundError(MissionEngineError):
    code = ErrorCode.NOT_FOUND


class MissionNotEligibleError(MissionEngineError):
    """User does not meet the mission's level, prerequisite, badge or availability rules."""

    code = ErrorCode.NOT_ELIGIBLE


class ProgressNotFoundError(MissionEngineError):
    code = ErrorCode.NOT_FOUND


class InvariantViolation(AssertionError):
    """A MissionProgress snapshot broke one of its structural invariants."""
