"""
API routes for conflict detection.
"""
from fastapi import APIRouter, Depends, HTTPException, status, Query
import logging

from railtraffic.core.dependencies import get_engine
from railtraffic.schemas.conflict import DetectionReport, DetectionToggle
from railtraffic.services.engine import RailTrafficEngine

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("", response_model=DetectionReport)
def detect_conflicts(engine: RailTrafficEngine = Depends(get_engine)):
    """
    Run one detection cycle on demand.

    Detected conflicts are also published to the alert channel. Returns an
    empty list when the periodic cycle is running at the same moment.
    """
    conflicts = engine.detection_loop.run_cycle()
    if conflicts is None:
        logger.warning("On-demand detection skipped, a cycle is already running")
        conflicts = []
    return {
        "conflicts": [c.to_dict() for c in conflicts],
        "count": len(conflicts),
        "detected_at": engine.clock(),
    }


@router.post("/detection", response_model=DetectionToggle)
def toggle_detection(
    enabled: bool = Query(..., description="Switch periodic detection on or off"),
    engine: RailTrafficEngine = Depends(get_engine)
):
    try:
        engine.detection_loop.toggle(enabled)
    except Exception as e:
        logger.error(f"Failed to toggle detection: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to toggle detection: {str(e)}"
        )
    return {
        "enabled": engine.detection_loop.enabled,
        "interval_seconds": engine.detection_loop.interval_seconds,
    }
