"""Unit tests for StepVerifier: photo, checklist, quiz, training policies and tag extraction."""

import asyncio
from typing import List

import pytest

from src.engines.missions.errors import ErrorCode
from src.engines.missions.types import (
    ChecklistRequirement,
    PhotoRequirement,
    QuizRequirement,
    RequirementType,
    TrainingRequirement,
)
from src.engines.missions.verifier import StepVerifier, VerificationReason


def photo_requirement(*elements: str) -> PhotoRequirement:
    return PhotoRequirement.model_validate({"type": "photo", "data": {"required_elements": list(elements)}})


def checklist_requirement() -> ChecklistRequirement:
    return ChecklistRequirement.model_validate({
        "type": "checklist",
        "data": {
            "items": [
                {"id": "food", "text": "Food bowl filled"},
                {"id": "water", "text": "Fresh water"},
                {"id": "toy", "text": "Toy rotated", "required": False},
                {"id": "brush", "text": "Brushed", "required": False},
            ]
        },
    })


def quiz_requirement(passing_score: float = 0.7) -> QuizRequirement:
    return QuizRequirement.model_validate({
        "type": "quiz",
        "data": {
            "questions": [
                {"question": "q1", "correct_answer": 0},
                {"question": "q2", "correct_answer": 1},
                {"question": "q3", "correct_answer": 2},
                {"question": "q4", "correct_answer": 3},
            ],
            "passing_score": passing_score,
        },
    })


def training_requirement(**target) -> TrainingRequirement:
    return TrainingRequirement.model_validate({"type": "training", "data": target})


class StaticTagger:
    def __init__(self, tags: List[str]):
        self.tags = tags
        self.calls: List[str] = []

    async def extract_tags(self, reference: str) -> List[str]:
        self.calls.append(reference)
        return self.tags


class SlowTagger:
    async def extract_tags(self, reference: str) -> List[str]:
        await asyncio.sleep(5)
        return ["bilancia", "peso_visibile"]


class TestPhotoVerification:
    """Photo passes when at least half the required elements are tagged."""

    def test_half_the_elements_passes(self):
        """Weigh-in photo showing only the scale: overlap 0.5 is enough."""
        verifier = StepVerifier()
        result = verifier.verify(
            photo_requirement("bilancia", "peso_visibile"),
            {"type": "photo", "reference": "uploads/scale.jpg", "tags": ["bilancia"]},
        )
        assert result.passed is True
        assert result.quality_score == 0.5
        assert result.reasons == []
        assert result.error_code is None

    def test_no_matching_tags_fails_below_threshold(self):
        verifier = StepVerifier()
        result = verifier.verify(
            photo_requirement("bilancia", "peso_visibile", "cane"),
            {"type": "photo", "reference": "uploads/scale.jpg", "tags": ["cane"]},
        )
        assert result.passed is False
        assert result.quality_score == pytest.approx(0.3333, abs=1e-4)
        assert result.reasons == [VerificationReason.BELOW_THRESHOLD]
        assert result.error_code == ErrorCode.VERIFICATION_FAILED

    def test_tags_compared_case_insensitively(self):
        verifier = StepVerifier()
        result = verifier.verify(
            photo_requirement("Bilancia"),
            {"type": "photo", "reference": "x.jpg", "tags": [" BILANCIA "]},
        )
        assert result.passed is True
        assert result.quality_score == 1.0

    def test_empty_reference_is_insufficient(self):
        verifier = StepVerifier()
        result = verifier.verify(
            photo_requirement("bilancia"),
            {"type": "photo", "reference": "  ", "tags": ["bilancia"]},
        )
        assert result.passed is False
        assert result.reasons == [VerificationReason.INSUFFICIENT_EVIDENCE]

    def test_no_required_elements_passes_with_reference(self):
        verifier = StepVerifier()
        result = verifier.verify(photo_requirement(), {"type": "photo", "reference": "x.jpg"})
        assert result.passed is True
        assert result.quality_score == 1.0

    def test_detected_tags_count_towards_overlap(self):
        verifier = StepVerifier()
        result = verifier.verify(
            photo_requirement("bilancia", "peso_visibile"),
            {"type": "photo", "reference": "x.jpg", "tags": []},
            detected_tags=["peso_visibile", "bilancia"],
        )
        assert result.passed is True
        assert result.quality_score == 1.0


class TestChecklistVerification:
    """All required items must be checked; optional items add a capped bonus."""

    def test_all_required_checked(self):
        result = StepVerifier().verify(
            checklist_requirement(), {"type": "checklist", "checked_items": ["food", "water"]}
        )
        assert result.passed is True
        assert result.quality_score == 1.0

    def test_missing_required_item_fails(self):
        result = StepVerifier().verify(
            checklist_requirement(), {"type": "checklist", "checked_items": ["food", "toy", "brush"]}
        )
        assert result.passed is False
        # 1/2 required + 0.25 optional bonus
        assert result.quality_score == 0.75
        assert result.reasons == [VerificationReason.BELOW_THRESHOLD]

    def test_optional_bonus_scales_with_checked_fraction(self):
        result = StepVerifier().verify(
            checklist_requirement(), {"type": "checklist", "checked_items": ["food", "toy"]}
        )
        assert result.passed is False
        assert result.quality_score == 0.625

    def test_nothing_checked_is_insufficient(self):
        result = StepVerifier().verify(checklist_requirement(), {"type": "checklist", "checked_items": []})
        assert result.passed is False
        assert result.reasons == [VerificationReason.INSUFFICIENT_EVIDENCE]


class TestQuizVerification:
    def test_score_at_passing_threshold_passes(self):
        result = StepVerifier().verify(quiz_requirement(0.75), {"type": "quiz", "answers": [0, 1, 2, 0]})
        assert result.passed is True
        assert result.quality_score == 0.75

    def test_score_below_threshold_fails(self):
        result = StepVerifier().verify(quiz_requirement(), {"type": "quiz", "answers": [0, 1, 0, 0]})
        assert result.passed is False
        assert result.quality_score == 0.5

    def test_short_answer_list_counts_missing_as_wrong(self):
        result = StepVerifier().verify(quiz_requirement(0.25), {"type": "quiz", "answers": [0]})
        assert result.passed is True
        assert result.quality_score == 0.25


class TestTrainingVerification:
    def test_sessions_target_reached(self):
        result = StepVerifier().verify(
            training_requirement(target_sessions=2),
            {"type": "training", "sessions": [{"duration_minutes": 5}, {"duration_minutes": 5}]},
        )
        assert result.passed is True
        assert result.quality_score == 1.0

    def test_minutes_target_partially_reached(self):
        result = StepVerifier().verify(
            training_requirement(target_minutes=40),
            {"type": "training", "sessions": [{"duration_minutes": 10}, {"duration_minutes": 20}]},
        )
        assert result.passed is False
        assert result.quality_score == 0.75

    def test_smallest_ratio_across_targets_wins(self):
        """Three sessions but only half the minutes."""
        result = StepVerifier().verify(
            training_requirement(target_sessions=3, target_minutes=60),
            {"type": "training", "sessions": [{"duration_minutes": 10}] * 3},
        )
        assert result.passed is False
        assert result.quality_score == 0.5

    def test_requirement_without_target_is_rejected(self):
        with pytest.raises(ValueError):
            training_requirement()


class TestMalformedEvidence:
    """Evidence shapes that do not match the requirement type."""

    def test_wrong_shape_is_malformed(self):
        result = StepVerifier().verify(quiz_requirement(), {"type": "quiz", "answers": "all of them"})
        assert result.passed is False
        assert result.malformed is True
        assert result.error_code == ErrorCode.VALIDATION_ERROR

    def test_unexpected_field_is_malformed(self):
        result = StepVerifier().verify(
            photo_requirement("bilancia"),
            {"type": "photo", "reference": "x.jpg", "checked_items": ["food"]},
        )
        assert result.malformed is True

    def test_non_mapping_is_malformed(self):
        result = StepVerifier().verify(photo_requirement("bilancia"), ["x.jpg"])
        assert result.malformed is True

    def test_missing_evidence_is_insufficient(self):
        result = StepVerifier().verify(checklist_requirement(), None)
        assert result.passed is False
        assert result.malformed is False
        assert result.reasons == [VerificationReason.INSUFFICIENT_EVIDENCE]

    def test_every_requirement_type_has_a_handler(self):
        from src.engines.missions import verifier as verifier_module

        assert set(verifier_module._HANDLERS) == set(RequirementType)


class TestTagExtraction:
    """verify_with_extraction calls the external tagger under a timeout."""

    @pytest.mark.asyncio
    async def test_detected_tags_are_merged(self):
        tagger = StaticTagger(["bilancia", "peso_visibile"])
        verifier = StepVerifier(tag_extractor=tagger)
        result = await verifier.verify_with_extraction(
            photo_requirement("bilancia", "peso_visibile"),
            {"type": "photo", "reference": "uploads/scale.jpg"},
        )
        assert tagger.calls == ["uploads/scale.jpg"]
        assert result.passed is True
        assert result.quality_score == 1.0

    @pytest.mark.asyncio
    async def test_slow_extractor_times_out(self):
        verifier = StepVerifier(tag_extractor=SlowTagger(), timeout_seconds=0.01)
        result = await verifier.verify_with_extraction(
            photo_requirement("bilancia"),
            {"type": "photo", "reference": "uploads/scale.jpg"},
        )
        assert result.passed is False
        assert result.timed_out is True
        assert result.reasons == [VerificationReason.EVIDENCE_TIMEOUT]
        assert result.error_code == ErrorCode.DEADLINE_EXCEEDED

    @pytest.mark.asyncio
    async def test_extractor_skipped_for_other_types(self):
        tagger = StaticTagger(["x"])
        verifier = StepVerifier(tag_extractor=tagger)
        result = await verifier.verify_with_extraction(
            checklist_requirement(), {"type": "checklist", "checked_items": ["food", "water"]}
        )
        assert result.passed is True
        assert tagger.calls == []

    @pytest.mark.asyncio
    async def test_extractor_skipped_without_reference(self):
        tagger = StaticTagger(["bilancia"])
        verifier = StepVerifier(tag_extractor=tagger)
        result = await verifier.verify_with_extraction(
            photo_requirement("bilancia"), {"type": "photo", "reference": ""}
        )
        assert tagger.calls == []
        assert result.reasons == [VerificationReason.INSUFFICIENT_EVIDENCE]
