"""
Pydantic schemas for telemetry ingestion responses.

Raw payloads are accepted as plain JSON objects: malformed fields lower the
reading's quality score instead of failing validation.
"""
from pydantic import BaseModel, Field
from datetime import datetime
from typing import Any, Dict, Optional


class ReadingOut(BaseModel):
    source: str
    timestamp: datetime
    quality: float = Field(..., ge=0, le=1, description="Quality score in [0.1, 1]")
    train_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict, description="Kind-specific normalized fields")


class PositionOut(BaseModel):
    lat: float
    lon: float


class TrainStateOut(BaseModel):
    """Fused state of one train."""
    train_id: str
    position: PositionOut
    speed: float = Field(..., description="Speed in km/h")
    heading: float = Field(..., description="Heading in degrees")
    confidence: float = Field(..., ge=0, le=1)
    timestamp: datetime
    delay_minutes: float = 0.0
    current_station: Optional[str] = None
    data_quality: float = 0.0
    readings_fused: int = 0


class IngestResponse(BaseModel):
    reading: ReadingOut
    state: Optional[TrainStateOut] = Field(
        None, description="Updated fused state; absent until the train has been placed on the network"
    )
