"""
Pytest fixtures for mission engine tests.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, Dict, List

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

from src.database import build_engine, build_session_maker
from src.engines.missions.catalog import MissionCatalog
from src.engines.missions.types import MissionDefinition
from src.kernel.models import Base


START_TIME = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)


class FixedClock:
    """Deterministic clock; call advance() to move time forward."""

    def __init__(self, now: datetime = START_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def health_check_definition() -> Dict[str, Any]:
    """Weekly health check: weigh, groom, quiz, walk, book the vet."""
    return {
        "id": "health-check",
        "title": "Weekly health check",
        "description": "Keep track of your dog's weight and general condition",
        "category": "health",
        "total_steps": 5,
        "default_tier": "medium",
        "dda_enabled": True,
        "steps": [
            {
                "id": "step_1",
                "order": 0,
                "title": "Weigh your dog",
                "estimated_minutes": 10,
                "xp_reward": 50,
                "requirements": [
                    {"type": "photo", "data": {"required_elements": ["bilancia", "peso_visibile"]}},
                ],
                "difficulty_modifiers": {
                    "easy": {"estimated_minutes": 5, "xp_reward": 40},
                    "hard": {"estimated_minutes": 15, "xp_reward": 60},
                },
            },
            {
                "id": "step_2",
                "order": 1,
                "title": "Check coat, ears and teeth",
                "estimated_minutes": 15,
                "xp_reward": 75,
                "requirements": [
                    {
                        "type": "checklist",
                        "data": {
                            "items": [
                                {"id": "coat", "text": "Coat is shiny"},
                                {"id": "ears", "text": "Ears are clean"},
                                {"id": "teeth", "text": "Teeth checked"},
                                {"id": "nails", "text": "Nails trimmed", "required": False},
                            ]
                        },
                    },
                ],
                "difficulty_modifiers": {
                    "easy": {"estimated_minutes": 10, "xp_reward": 60},
                    "hard": {"estimated_minutes": 20, "xp_reward": 90},
                },
            },
            {
                "id": "step_3",
                "order": 2,
                "title": "Warning signs quiz",
                "estimated_minutes": 10,
                "xp_reward": 60,
                "requirements": [
                    {
                        "type": "quiz",
                        "data": {
                            "questions": [
                                {"question": "Normal resting heart rate?", "answers": ["20-40", "60-140"], "correct_answer": 1},
                                {"question": "Dry warm nose means fever?", "answers": ["No", "Yes"], "correct_answer": 0},
                            ],
                            "passing_score": 0.7,
                        },
                    },
                ],
                "difficulty_modifiers": {
                    "easy": {"estimated_minutes": 5, "xp_reward": 50},
                    "hard": {"estimated_minutes": 15, "xp_reward": 75},
                },
            },
            {
                "id": "step_4",
                "order": 3,
                "title": "Two exercise sessions",
                "estimated_minutes": 20,
                "xp_reward": 80,
                "requirements": [
                    {"type": "training", "data": {"target_sessions": 2}},
                ],
                "difficulty_modifiers": {
                    "easy": {"estimated_minutes": 15, "xp_reward": 65},
                    "hard": {"estimated_minutes": 25, "xp_reward": 95},
                },
            },
            {
                "id": "step_5",
                "order": 4,
                "title": "Book the vet visit",
                "estimated_minutes": 5,
                "xp_reward": 100,
                "requirements": [
                    {"type": "checklist", "data": {"items": [{"id": "vet_booked", "text": "Appointment booked"}]}},
                ],
                "difficulty_modifiers": {
                    "easy": {"xp_reward": 80},
                    "hard": {"xp_reward": 120},
                },
            },
        ],
        "rewards": {
            "xp": 0,
            "badges": ["health_monitor"],
            "items": [{"type": "discount", "value": 10, "ref": "vet-visit", "title": "10% off the next vet visit"}],
        },
    }


PASSING_EVIDENCE: Dict[str, List[Dict[str, Any]]] = {
    "step_1": [{"type": "photo", "reference": "uploads/scale.jpg", "tags": ["bilancia", "peso_visibile"]}],
    "step_2": [{"type": "checklist", "checked_items": ["coat", "ears", "teeth"]}],
    "step_3": [{"type": "quiz", "answers": [1, 0]}],
    "step_4": [{"type": "training", "sessions": [{"duration_minutes": 10}, {"duration_minutes": 12}]}],
    "step_5": [{"type": "checklist", "checked_items": ["vet_booked"]}],
}

# Photo with a reference but none of the required elements -> quality 0.0
FAILING_PHOTO = [{"type": "photo", "reference": "uploads/blurry.jpg", "tags": []}]


@pytest.fixture
def health_check() -> MissionDefinition:
    return MissionDefinition.model_validate(health_check_definition())


@pytest.fixture
def catalog(health_check: MissionDefinition) -> MissionCatalog:
    return MissionCatalog([health_check])


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def user_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def passing_evidence() -> Dict[str, List[Dict[str, Any]]]:
    return PASSING_EVIDENCE


def on_time_seconds(mission: MissionDefinition, step_id: str, tier: str = "medium") -> int:
    """Seconds that give an efficiency of exactly 1.0 for the step at the tier."""
    step = mission.step_by_id(step_id)
    return int(step.estimated_minutes_for(tier) * 60)


@pytest.fixture
def on_time(health_check: MissionDefinition):
    """Callable: on_time(step_id, tier="medium") -> seconds for efficiency 1.0."""
    return lambda step_id, tier="medium": on_time_seconds(health_check, step_id, tier)


@pytest.fixture
def failing_photo() -> List[Dict[str, Any]]:
    return FAILING_PHOTO


@pytest.fixture
def health_check_dict() -> Dict[str, Any]:
    """Fresh, mutable copy of the health check definition."""
    return health_check_definition()


# Database fixtures (file-based SQLite so every connection sees the same tables)

@pytest_asyncio.fixture(scope="function")
async def db_engine(tmp_path):
    """Create a test database engine with all tables."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'missions.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_maker(db_engine):
    return build_session_maker(db_engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_maker() as session:
        yield session
        await session.rollback()
