"""
Step Verifier - Decides whether submitted evidence satisfies a requirement.

Policies per requirement type:
- photo: reference present and >= 50% of required elements among the tags
- checklist: every required item checked; optional items add a capped bonus
- quiz: correct/total >= passing_score
- training: logged sessions/minutes reach the declared target

Verification never mutates state. The only non-pure step is the optional
external tag extraction for photos, which is bounded by a timeout.
"""

import asyncio
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Union

from pydantic import BaseModel, ValidationError

from src.engines.missions.errors import ErrorCode
from src.engines.missions.types import (
    EVIDENCE_MODELS,
    ChecklistEvidence,
    ChecklistRequirement,
    Evidence,
    PhotoEvidence,
    PhotoRequirement,
    QuizEvidence,
    QuizRequirement,
    RequirementType,
    TrainingEvidence,
    TrainingRequirement,
)
from src.logging_config import get_logger

logger = get_logger(__name__)


class VerificationReason(str, Enum):
    INSUFFICIENT_EVIDENCE = "INSUFFICIENT_EVIDENCE"
    BELOW_THRESHOLD = "BELOW_THRESHOLD"
    MALFORMED_SUBMISSION = "MALFORMED_SUBMISSION"
    EVIDENCE_TIMEOUT = "EVIDENCE_TIMEOUT"


class VerificationResult(BaseModel):
    """Outcome of checking one requirement."""

    requirement_type: RequirementType
    passed: bool
    quality_score: float
    reasons: List[VerificationReason] = []
    message: str = ""
    error_code: Optional[ErrorCode] = None

    @property
    def malformed(self) -> bool:
        return VerificationReason.MALFORMED_SUBMISSION in self.reasons

    @property
    def timed_out(self) -> bool:
        return VerificationReason.EVIDENCE_TIMEOUT in self.reasons


class TagExtractor(Protocol):
    """External image tagging service (possibly slow)."""

    async def extract_tags(self, reference: str) -> List[str]: ...


RawEvidence = Union[Evidence, Mapping[str, Any], None]


def _normalize_tags(tags: Iterable[str]) -> set:
    return {t.strip().lower() for t in tags if t and t.strip()}


class StepVerifier:
    """
    Verifies evidence against typed requirements.

    Each requirement type has exactly one handler; the dispatch table is checked
    against RequirementType when the module is imported.
    """

    PHOTO_MIN_OVERLAP = 0.5
    CHECKLIST_OPTIONAL_WEIGHT = 0.25
    DEFAULT_TIMEOUT_SECONDS = 5.0

    def __init__(
        self,
        tag_extractor: Optional[TagExtractor] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.tag_extractor = tag_extractor
        self.timeout_seconds = timeout_seconds

    # -- parsing ---------------------------------------------------------

    @staticmethod
    def parse_evidence(requirement_type: RequirementType, evidence: RawEvidence):
        """
        Coerce a raw payload into the evidence model for the requirement type.

        Returns None for a missing payload. Raises ValidationError (or
        TypeError) when the payload has the wrong shape.
        """
        if evidence is None:
            return None
        model = EVIDENCE_MODELS[RequirementType(requirement_type)]
        if isinstance(evidence, model):
            return evidence
        if isinstance(evidence, BaseModel):
            raise TypeError(f"expected {model.__name__}, got {type(evidence).__name__}")
        if not isinstance(evidence, Mapping):
            raise TypeError(f"evidence must be a mapping, got {type(evidence).__name__}")
        return model.model_validate(dict(evidence))

    # -- public API ------------------------------------------------------

    def verify(self, requirement, evidence: RawEvidence, detected_tags: Optional[List[str]] = None) -> VerificationResult:
        """Pure verification of one requirement against one evidence payload."""
        req_type = RequirementType(requirement.type)
        try:
            parsed = self.parse_evidence(req_type, evidence)
        except (ValidationError, TypeError, ValueError) as exc:
            return VerificationResult(
                requirement_type=req_type,
                passed=False,
                quality_score=0.0,
                reasons=[VerificationReason.MALFORMED_SUBMISSION],
                message=str(exc),
                error_code=ErrorCode.VALIDATION_ERROR,
            )
        if parsed is None:
            return self._insufficient(req_type, "No evidence submitted")

        handler = _HANDLERS[req_type]
        if req_type == RequirementType.PHOTO:
            return handler(self, requirement, parsed, detected_tags or [])
        return handler(self, requirement, parsed)

    async def verify_with_extraction(self, requirement, evidence: RawEvidence) -> VerificationResult:
        """
        Verify, calling the external tag extractor for photo evidence.

        Extraction is bounded by timeout_seconds; a timeout resolves to a failed
        result with EVIDENCE_TIMEOUT instead of blocking the caller.
        """
        req_type = RequirementType(requirement.type)
        if req_type != RequirementType.PHOTO or self.tag_extractor is None:
            return self.verify(requirement, evidence)

        try:
            parsed = self.parse_evidence(req_type, evidence)
        except (ValidationError, TypeError, ValueError):
            return self.verify(requirement, evidence)
        if parsed is None or not parsed.reference.strip():
            return self.verify(requirement, evidence)

        try:
            detected = await asyncio.wait_for(
                self.tag_extractor.extract_tags(parsed.reference),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Tag extraction timed out",
                extra={"reference": parsed.reference, "timeout_seconds": self.timeout_seconds},
            )
            return VerificationResult(
                requirement_type=req_type,
                passed=False,
                quality_score=0.0,
                reasons=[VerificationReason.EVIDENCE_TIMEOUT],
                message=f"Tag extraction exceeded {self.timeout_seconds}s",
                error_code=ErrorCode.DEADLINE_EXCEEDED,
            )
        return self.verify(requirement, parsed, detected_tags=list(detected or []))

    # -- handlers --------------------------------------------------------

    @staticmethod
    def _insufficient(req_type: RequirementType, message: str) -> VerificationResult:
        return VerificationResult(
            requirement_type=req_type,
            passed=False,
            quality_score=0.0,
            reasons=[VerificationReason.INSUFFICIENT_EVIDENCE],
            message=message,
            error_code=ErrorCode.VERIFICATION_FAILED,
        )

    @staticmethod
    def _scored(req_type: RequirementType, passed: bool, quality: float, message: str) -> VerificationResult:
        return VerificationResult(
            requirement_type=req_type,
            passed=passed,
            quality_score=round(max(0.0, min(1.0, quality)), 4),
            reasons=[] if passed else [VerificationReason.BELOW_THRESHOLD],
            message=message,
            error_code=None if passed else ErrorCode.VERIFICATION_FAILED,
        )

    def _verify_photo(
        self,
        requirement: PhotoRequirement,
        evidence: PhotoEvidence,
        detected_tags: List[str],
    ) -> VerificationResult:
        if not evidence.reference.strip():
            return self._insufficient(RequirementType.PHOTO, "Photo reference is empty")

        required = _normalize_tags(requirement.data.required_elements)
        tags = _normalize_tags(evidence.tags) | _normalize_tags(detected_tags)
        overlap = len(required & tags) / len(required) if required else 1.0
        passed = overlap >= self.PHOTO_MIN_OVERLAP
        return self._scored(
            RequirementType.PHOTO,
            passed,
            overlap,
            f"Matched {len(required & tags)}/{len(required)} required elements",
        )

    def _verify_checklist(self, requirement: ChecklistRequirement, evidence: ChecklistEvidence) -> VerificationResult:
        if not evidence.checked_items:
            return self._insufficient(RequirementType.CHECKLIST, "No checklist items checked")

        checked = set(evidence.checked_items)
        required = [i for i in requirement.data.items if i.required]
        optional = [i for i in requirement.data.items if not i.required]
        checked_required = sum(1 for i in required if i.id in checked)
        checked_optional = sum(1 for i in optional if i.id in checked)

        base = checked_required / len(required) if required else 1.0
        bonus = (
            self.CHECKLIST_OPTIONAL_WEIGHT * checked_optional / len(optional)
            if optional
            else 0.0
        )
        passed = checked_required == len(required)
        return self._scored(
            RequirementType.CHECKLIST,
            passed,
            min(1.0, base + bonus),
            f"Checked {checked_required}/{len(required)} required items",
        )

    def _verify_quiz(self, requirement: QuizRequirement, evidence: QuizEvidence) -> VerificationResult:
        if not evidence.answers:
            return self._insufficient(RequirementType.QUIZ, "No quiz answers submitted")

        questions = requirement.data.questions
        correct = sum(
            1
            for index, question in enumerate(questions)
            if index < len(evidence.answers) and evidence.answers[index] == question.correct_answer
        )
        score = correct / len(questions)
        passed = score >= requirement.data.passing_score
        return self._scored(
            RequirementType.QUIZ,
            passed,
            score,
            f"{correct}/{len(questions)} correct (passing score {requirement.data.passing_score:.0%})",
        )

    def _verify_training(self, requirement: TrainingRequirement, evidence: TrainingEvidence) -> VerificationResult:
        if not evidence.sessions:
            return self._insufficient(RequirementType.TRAINING, "No training sessions logged")

        ratios = []
        target = requirement.data
        if target.target_sessions is not None:
            ratios.append(len(evidence.sessions) / target.target_sessions)
        if target.target_minutes is not None:
            minutes = sum(s.duration_minutes for s in evidence.sessions)
            ratios.append(minutes / target.target_minutes)
        ratio = min(ratios)
        return self._scored(
            RequirementType.TRAINING,
            ratio >= 1.0,
            min(1.0, ratio),
            f"Reached {ratio:.0%} of training target",
        )


_HANDLERS: Dict[RequirementType, Callable[..., VerificationResult]] = {
    RequirementType.PHOTO: StepVerifier._verify_photo,
    RequirementType.CHECKLIST: StepVerifier._verify_checklist,
    RequirementType.QUIZ: StepVerifier._verify_quiz,
    RequirementType.TRAINING: StepVerifier._verify_training,
}

if set(_HANDLERS) != set(RequirementType):
    raise RuntimeError(
        f"StepVerifier has no handler for {sorted(set(RequirementType) - set(_HANDLERS))}"
    )
