"""
Mission statistics aggregated from persisted instances.
"""

from typing import Iterable, List, Optional

from pydantic import BaseModel

from src.engines.missions.types import MissionProgress, MissionStatus


class MissionStats(BaseModel):
    """
    Aggregate figures for one mission across all users.

    average_completion_time is in seconds of reported step time over completed
    instances; average_rating is the mean of each completed instance's mean
    step rating, counting only instances with at least one rated step.
    """

    mission_id: str
    times_started: int = 0
    times_completed: int = 0
    times_abandoned: int = 0
    times_expired: int = 0
    completion_rate: float = 0.0
    average_completion_time: float = 0.0
    average_rating: Optional[float] = None

    @classmethod
    def from_progress(cls, mission_id: str, instances: Iterable[MissionProgress]) -> "MissionStats":
        started = [p for p in instances if p.started_at is not None]
        completed = [p for p in started if p.status == MissionStatus.COMPLETED]

        ratings: List[float] = []
        for progress in completed:
            rated = [sp.rating for sp in progress.step_progress if sp.rating is not None]
            if rated:
                ratings.append(sum(rated) / len(rated))

        return cls(
            mission_id=mission_id,
            times_started=len(started),
            times_completed=len(completed),
            times_abandoned=sum(1 for p in started if p.status == MissionStatus.ABANDONED),
            times_expired=sum(1 for p in started if p.status == MissionStatus.EXPIRED),
            completion_rate=round(len(completed) / len(started), 4) if started else 0.0,
            average_completion_time=(
                round(sum(p.time_spent for p in completed) / len(completed), 2) if completed else 0.0
            ),
            average_rating=round(sum(ratings) / len(ratings), 2) if ratings else None,
        )
