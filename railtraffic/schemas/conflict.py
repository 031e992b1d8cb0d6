"""
Pydantic schemas for conflict detection.
"""
from pydantic import BaseModel, Field
from datetime import datetime
from typing import Any, Dict, List, Optional


class ConflictOut(BaseModel):
    """One detected conflict."""
    conflict_id: str
    type: str = Field(..., description="converging_paths, resource_overallocation, delay_bubble_up or safety_distance_violation")
    severity: str
    trains: List[str]
    location: Dict[str, Any] = Field(default_factory=dict, description="station_code and/or lat, lon")
    description: str
    recommended_action: str
    detected_at: datetime
    estimated_conflict_time: Optional[datetime] = None
    resolution_order: List[str] = Field(default_factory=list)
    details: Dict[str, Any] = Field(default_factory=dict)


class DetectionReport(BaseModel):
    conflicts: List[ConflictOut]
    count: int
    detected_at: datetime


class DetectionToggle(BaseModel):
    enabled: bool
    interval_seconds: float
