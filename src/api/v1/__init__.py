"""
API v1 routes.
"""

from fastapi import APIRouter

from src.api.v1 import missions

router = APIRouter()

router.include_router(missions.router, prefix="/missions", tags=["Missions"])
