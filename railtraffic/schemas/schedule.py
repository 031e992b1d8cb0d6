"""
Pydantic schemas for schedule-related API operations.
"""
from pydantic import BaseModel, Field, ConfigDict, field_validator
from datetime import datetime
from typing import List, Literal, Optional


class OptimizationRequest(BaseModel):
    """Schema for optimization requests."""
    train_ids: Optional[List[str]] = Field(None, description="Trains to schedule; every active train in the horizon when omitted")
    horizon_start: Optional[datetime] = Field(None, description="Start of the planning horizon, defaults to now")
    horizon_minutes: Optional[int] = Field(None, gt=0, description="Horizon length, defaults to the rolling horizon")

    @field_validator("train_ids", mode="before")
    @classmethod
    def coerce_train_ids(cls, v):
        if v is None:
            return v
        return [str(x) for x in v]


class RealTimeUpdateRequest(BaseModel):
    """A live delay report for one train."""
    train_id: str = Field(..., description="Train reporting the delay")
    delay_minutes: float = Field(..., ge=0, description="Additional delay in minutes")
    current_position: Optional[str] = Field(None, description="Station code the train is at")
    affected_trains: Optional[List[str]] = Field(None, description="Trains to check; every scheduled train when omitted")

    @field_validator("train_id", mode="before")
    @classmethod
    def ensure_train_id_str(cls, v):
        return str(v) if v is not None else v


class DisruptionEventIn(BaseModel):
    """Hypothetical disruption applied to the current schedules."""
    event_type: Literal["delay", "cancellation", "emergency"] = Field(..., description="Type of disruption")
    affected_trains: List[str] = Field(..., min_length=1, description="Trains hit by the disruption")
    delay_minutes: float = Field(0.0, ge=0, description="Delay applied to each affected train")
    start_time: Optional[datetime] = Field(None, description="When the disruption starts, defaults to now")
    duration_minutes: float = Field(0.0, ge=0, description="Duration of an emergency stop")
    description: str = ""

    @field_validator("affected_trains", mode="before")
    @classmethod
    def coerce_affected_trains(cls, v):
        if isinstance(v, list):
            return [str(x) for x in v]
        return v


class ScenarioIn(BaseModel):
    scenario_id: Optional[str] = Field(None, description="Identifier; generated when omitted")
    name: str = Field(..., min_length=1)
    description: str = ""
    disruption: DisruptionEventIn


class WhatIfRequest(BaseModel):
    """Schema for what-if analysis requests."""
    scenarios: List[ScenarioIn] = Field(..., min_length=1, description="Scenarios to evaluate")
    timeout_seconds: Optional[float] = Field(None, gt=0, description="Time box for the whole analysis")


class OptimizationRunOut(BaseModel):
    """Recorded optimization, reconciliation or what-if run."""
    run_id: str
    kind: str
    status: str
    feasible: bool
    train_count: int
    average_delay: float
    on_time_percentage: float
    conflict_count: int
    computation_time: float
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
