"""
FastAPI dependencies for database sessions, the mission catalog and services.
"""

from functools import lru_cache
from typing import Annotated, Optional

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import get_settings
from src.database import get_db
from src.engines.missions.catalog import MissionCatalog
from src.engines.missions.mission_service import MissionService
from src.engines.missions.tag_client import HttpTagExtractor


DbSession = Annotated[AsyncSession, Depends(get_db)]


@lru_cache
def get_mission_catalog() -> MissionCatalog:
    """Catalog loaded once from MISSION_CATALOG_PATH (empty when unset)."""
    path = get_settings().mission_catalog_path
    return MissionCatalog.from_file(path) if path else MissionCatalog()


Catalog = Annotated[MissionCatalog, Depends(get_mission_catalog)]


def get_tag_extractor() -> Optional[HttpTagExtractor]:
    settings = get_settings()
    if not settings.tag_extractor_url:
        return None
    return HttpTagExtractor(settings.tag_extractor_url, timeout_seconds=settings.evidence_timeout_seconds)


def get_mission_service(
    db: DbSession,
    catalog: Catalog,
    tag_extractor: Annotated[Optional[HttpTagExtractor], Depends(get_tag_extractor)],
) -> MissionService:
    return MissionService(db, catalog, tag_extractor=tag_extractor)


MissionServiceDep = Annotated[MissionService, Depends(get_mission_service)]
