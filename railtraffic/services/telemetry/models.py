"""
Runtime telemetry records: normalized readings and fused train states.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Dict, Optional


class SourceKind(Enum):
    POSITIONAL = "positional"
    OCCUPANCY = "occupancy"
    STATION_EVENT = "station_event"


class StationEventKind(Enum):
    ARRIVAL = "ARRIVAL"
    DEPARTURE = "DEPARTURE"
    HALT_START = "HALT_START"
    HALT_END = "HALT_END"


@dataclass(frozen=True)
class Reading:
    """One normalized telemetry sample. Payload fields are set per source kind."""
    source: SourceKind
    timestamp: datetime
    quality: float
    train_id: Optional[str] = None

    # positional
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    speed: Optional[float] = None
    heading: Optional[float] = None
    accuracy: Optional[float] = None

    # occupancy
    section_id: Optional[str] = None
    occupied: Optional[bool] = None
    detected_train_id: Optional[str] = None
    signal_state: Optional[str] = None

    # station event
    station_code: Optional[str] = None
    event: Optional[StationEventKind] = None
    platform: Optional[int] = None
    delay_minutes: Optional[float] = None
    passenger_count: Optional[int] = None
    reported_by: Optional[str] = None

    @property
    def has_position(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def to_dict(self) -> Dict:
        data = {
            "source": self.source.value,
            "timestamp": self.timestamp.isoformat(),
            "quality": round(self.quality, 4),
            "train_id": self.train_id,
        }
        if self.source is SourceKind.POSITIONAL:
            data.update(latitude=self.latitude, longitude=self.longitude, speed=self.speed,
                        heading=self.heading, accuracy=self.accuracy)
        elif self.source is SourceKind.OCCUPANCY:
            data.update(section_id=self.section_id, occupied=self.occupied,
                        detected_train_id=self.detected_train_id, signal_state=self.signal_state)
        else:
            data.update(station_code=self.station_code, event=self.event.value if self.event else None,
                        platform=self.platform, delay_minutes=self.delay_minutes,
                        passenger_count=self.passenger_count, reported_by=self.reported_by)
        return data


@dataclass
class TrainState:
    """Fused position/velocity estimate of one train."""
    train_id: str
    latitude: float
    longitude: float
    speed: float
    heading: float
    confidence: float
    timestamp: datetime
    position_variance: float
    velocity_variance: float
    delay_minutes: float = 0.0
    current_station: Optional[str] = None
    data_quality: float = 0.0
    readings_fused: int = 0

    def copy(self) -> "TrainState":
        return replace(self)

    def to_update_event(self) -> Dict:
        return {
            "train_id": self.train_id,
            "position": {"lat": self.latitude, "lon": self.longitude},
            "speed": round(self.speed, 3),
            "heading": round(self.heading, 3),
            "confidence": round(self.confidence, 4),
            "timestamp": self.timestamp.isoformat(),
        }

    def to_dict(self) -> Dict:
        data = self.to_update_event()
        data.update(
            delay_minutes=self.delay_minutes,
            current_station=self.current_station,
            data_quality=round(self.data_quality, 4),
            readings_fused=self.readings_fused,
        )
        return data
