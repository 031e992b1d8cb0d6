"""
API route for the engine status query.
"""
from fastapi import APIRouter, Depends

from railtraffic.core.dependencies import get_engine
from railtraffic.schemas.status import EngineStatus
from railtraffic.services.engine import RailTrafficEngine

router = APIRouter()


@router.get("", response_model=EngineStatus)
def get_status(engine: RailTrafficEngine = Depends(get_engine)):
    """Active schedules, last update, horizon, constraint parameters and data quality."""
    return engine.status()
