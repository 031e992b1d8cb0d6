"""
Pydantic schemas for network reference data.
"""
from pydantic import BaseModel, Field, ConfigDict, field_validator
from datetime import datetime
from typing import List, Optional
from enum import Enum

from railtraffic.services.optimization.models import (
    MaintenanceWindow, Route, RouteStop, Station, TrackSection, Train, TrainType as TrainTypeModel
)


class TrainType(str, Enum):
    """Train categories, in descending order of precedence."""
    FLAGSHIP = "FLAGSHIP"
    SUPERFAST_EXPRESS = "SUPERFAST_EXPRESS"
    EXPRESS = "EXPRESS"
    PASSENGER = "PASSENGER"
    FREIGHT = "FREIGHT"


class StationIn(BaseModel):
    """Station with its coordinates and platform count."""
    code: str = Field(..., min_length=1, description="Station code")
    name: str = Field("", description="Station name")
    latitude: float = Field(..., ge=-90, le=90, description="Latitude in degrees")
    longitude: float = Field(..., ge=-180, le=180, description="Longitude in degrees")
    platform_count: int = Field(2, ge=1, description="Number of platforms")

    def to_domain(self) -> Station:
        return Station(
            code=self.code,
            name=self.name,
            latitude=self.latitude,
            longitude=self.longitude,
            platform_count=self.platform_count,
        )


class RouteStopIn(BaseModel):
    station_code: str = Field(..., description="Station code")
    distance_km: float = Field(..., ge=0, description="Cumulative distance from route start")
    allowed_types: List[TrainType] = Field(default_factory=list, description="Train types allowed to halt; empty means all")


class MaintenanceWindowIn(BaseModel):
    start: datetime = Field(..., description="Window start")
    end: datetime = Field(..., description="Window end")
    description: str = ""

    @field_validator("end")
    @classmethod
    def end_after_start(cls, v, info):
        start = info.data.get("start")
        if start is not None and v <= start:
            raise ValueError("Maintenance window must end after it starts")
        return v


class RouteIn(BaseModel):
    """Ordered station list with cumulative distances."""
    route_id: str = Field(..., min_length=1, description="Route identifier")
    stops: List[RouteStopIn] = Field(..., min_length=2, description="Stops with cumulative distances")
    max_speed_kmh: float = Field(110.0, gt=0, description="Line speed limit")
    electrified: bool = True
    gauge: str = "BROAD_GAUGE"
    maintenance_windows: List[MaintenanceWindowIn] = Field(default_factory=list)

    def to_domain(self) -> Route:
        return Route(
            route_id=self.route_id,
            stops=[
                RouteStop(
                    station_code=s.station_code,
                    distance_km=s.distance_km,
                    allowed_types=[TrainTypeModel(t.value) for t in s.allowed_types],
                )
                for s in self.stops
            ],
            max_speed_kmh=self.max_speed_kmh,
            electrified=self.electrified,
            gauge=self.gauge,
            maintenance_windows=[
                MaintenanceWindow(w.start, w.end, w.description) for w in self.maintenance_windows
            ],
        )


class TrainIn(BaseModel):
    """Train reference record; unset limits come from the train type."""
    train_id: str = Field(..., min_length=1, description="Unique train identifier")
    train_type: TrainType = Field(..., description="Train category")
    route_id: str = Field(..., description="Route the train runs on")
    priority: Optional[int] = Field(None, ge=1, description="Precedence, 1 is highest")
    max_speed: Optional[float] = Field(None, gt=0, description="Maximum speed in km/h")
    allowed_halts: Optional[int] = Field(None, ge=0, description="Intermediate halt budget")
    max_delay_minutes: Optional[float] = Field(None, ge=0)
    origin: Optional[str] = Field(None, description="Origin station code")
    destination: Optional[str] = Field(None, description="Destination station code")
    driver_id: Optional[str] = None
    scheduled_departure: Optional[datetime] = Field(None, description="Earliest departure from origin")

    @field_validator("train_id", mode="before")
    @classmethod
    def ensure_train_id_str(cls, v):
        return str(v) if v is not None else v

    def to_domain(self) -> Train:
        return Train(
            train_id=self.train_id,
            train_type=TrainTypeModel(self.train_type.value),
            route_id=self.route_id,
            priority=self.priority,
            max_speed=self.max_speed,
            allowed_halts=self.allowed_halts,
            max_delay_minutes=self.max_delay_minutes,
            origin=self.origin,
            destination=self.destination,
            driver_id=self.driver_id,
            scheduled_departure=self.scheduled_departure,
        )


class TrackSectionIn(BaseModel):
    section_id: str = Field(..., min_length=1, description="Track circuit identifier")
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    route_id: Optional[str] = None

    def to_domain(self) -> TrackSection:
        return TrackSection(self.section_id, self.latitude, self.longitude, self.route_id)


class NetworkLoadRequest(BaseModel):
    """Reference data to load; records replace existing ones with the same key."""
    stations: List[StationIn] = Field(default_factory=list)
    routes: List[RouteIn] = Field(default_factory=list)
    trains: List[TrainIn] = Field(default_factory=list)
    sections: List[TrackSectionIn] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class NetworkSummary(BaseModel):
    trains: int
    routes: int
    stations: int
    sections: int


class TrainRetiredOut(BaseModel):
    train_id: str
    status: str
