"""
Pydantic schemas for the engine status query.
"""
from pydantic import BaseModel, Field
from typing import Any, Dict, Optional


class DetectionStatus(BaseModel):
    enabled: bool
    interval_seconds: float
    cycles: int
    skipped: int
    last_cycle_at: Optional[str] = None


class EngineStatus(BaseModel):
    """Current engine state and active constraint parameters."""
    active_schedules: int
    last_update: Optional[str] = Field(None, description="Time of the last schedule change")
    rolling_horizon_minutes: int
    update_interval_minutes: int
    constraints: Dict[str, Any]
    tracked_trains: int
    detection: DetectionStatus
    data_quality: Dict[str, Dict[str, float]]
    channels: Dict[str, Dict[str, int]]
