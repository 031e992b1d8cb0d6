"""
Data models for scheduling operations.

Reference data (trains, routes, stations, track sections) is read-only for the
optimizer; schedules are the unit the optimizer produces and the reconciler
mutates.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Dict, Optional, Tuple

from railtraffic.core.errors import NotFoundError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive timestamps as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def minutes_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 60.0


class TrainType(Enum):
    """Train categories, in descending order of precedence."""
    FLAGSHIP = "FLAGSHIP"
    SUPERFAST_EXPRESS = "SUPERFAST_EXPRESS"
    EXPRESS = "EXPRESS"
    PASSENGER = "PASSENGER"
    FREIGHT = "FREIGHT"

    @property
    def defaults(self) -> Dict[str, float]:
        return _TYPE_DEFAULTS[self]


# priority, allowed halts, max delay (min), max speed (km/h), halt duration (min)
_TYPE_DEFAULTS = {
    TrainType.FLAGSHIP: {"priority": 1, "allowed_halts": 0, "max_delay": 0, "max_speed": 160, "halt_minutes": 2},
    TrainType.SUPERFAST_EXPRESS: {"priority": 2, "allowed_halts": 4, "max_delay": 15, "max_speed": 130, "halt_minutes": 3},
    TrainType.EXPRESS: {"priority": 3, "allowed_halts": 5, "max_delay": 25, "max_speed": 110, "halt_minutes": 5},
    TrainType.PASSENGER: {"priority": 4, "allowed_halts": 15, "max_delay": 120, "max_speed": 80, "halt_minutes": 10},
    TrainType.FREIGHT: {"priority": 5, "allowed_halts": 999, "max_delay": 999, "max_speed": 60, "halt_minutes": 15},
}

LOWEST_PRIORITY = max(d["priority"] for d in _TYPE_DEFAULTS.values())


class TrainStatus(Enum):
    SCHEDULED = "SCHEDULED"
    RUNNING = "RUNNING"
    HALTED = "HALTED"
    DELAYED = "DELAYED"
    ARRIVED = "ARRIVED"
    CANCELLED = "CANCELLED"


@dataclass
class Train:
    """Data structure for train information used in optimization."""
    train_id: str
    train_type: TrainType
    route_id: str
    priority: Optional[int] = None  # lower = higher precedence
    max_speed: Optional[float] = None
    allowed_halts: Optional[int] = None
    max_delay_minutes: Optional[float] = None
    origin: Optional[str] = None
    destination: Optional[str] = None
    driver_id: Optional[str] = None
    scheduled_departure: Optional[datetime] = None
    status: TrainStatus = TrainStatus.SCHEDULED
    delay_minutes: float = 0.0

    def __post_init__(self):
        """Fill unset limits from the train type defaults."""
        if isinstance(self.train_type, str):
            self.train_type = TrainType(self.train_type.upper())
        defaults = self.train_type.defaults
        if self.priority is None:
            self.priority = int(defaults["priority"])
        if self.max_speed is None:
            self.max_speed = float(defaults["max_speed"])
        if self.allowed_halts is None:
            self.allowed_halts = int(defaults["allowed_halts"])
        if self.max_delay_minutes is None:
            self.max_delay_minutes = float(defaults["max_delay"])
        if self.scheduled_departure is not None:
            self.scheduled_departure = ensure_aware(self.scheduled_departure)

    @property
    def halt_minutes(self) -> float:
        return float(self.train_type.defaults["halt_minutes"])

    @property
    def priority_weight(self) -> float:
        """Delay penalty per minute; highest-precedence trains cost the most."""
        return float(max(1, LOWEST_PRIORITY + 1 - self.priority))

    @property
    def is_active(self) -> bool:
        return self.status not in (TrainStatus.ARRIVED, TrainStatus.CANCELLED)


@dataclass
class RouteStop:
    station_code: str
    distance_km: float  # cumulative from route start
    allowed_types: List[TrainType] = field(default_factory=list)  # empty = all types

    def allows(self, train_type: TrainType) -> bool:
        return not self.allowed_types or train_type in self.allowed_types


@dataclass
class MaintenanceWindow:
    start: datetime
    end: datetime
    description: str = ""

    def __post_init__(self):
        self.start = ensure_aware(self.start)
        self.end = ensure_aware(self.end)

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return start < self.end and self.start < end


@dataclass
class Route:
    """Ordered station list with cumulative distances and maintenance windows."""
    route_id: str
    stops: List[RouteStop]
    max_speed_kmh: float = 110.0
    electrified: bool = True
    gauge: str = "BROAD_GAUGE"
    maintenance_windows: List[MaintenanceWindow] = field(default_factory=list)

    def __post_init__(self):
        self.stops = sorted(self.stops, key=lambda s: s.distance_km)

    @property
    def station_codes(self) -> List[str]:
        return [s.station_code for s in self.stops]

    @property
    def total_distance_km(self) -> float:
        if not self.stops:
            return 0.0
        return self.stops[-1].distance_km - self.stops[0].distance_km

    def index_of(self, station_code: str) -> int:
        for i, stop in enumerate(self.stops):
            if stop.station_code == station_code:
                return i
        raise NotFoundError("Station", f"{station_code} on route {self.route_id}")

    def path(self, origin: Optional[str] = None, destination: Optional[str] = None) -> List[RouteStop]:
        """Stops travelled from origin to destination, reversed when running down the route."""
        start = self.index_of(origin) if origin else 0
        end = self.index_of(destination) if destination else len(self.stops) - 1
        if start <= end:
            return list(self.stops[start:end + 1])
        return list(reversed(self.stops[end:start + 1]))

    def travel_time_minutes(self, from_station: str, to_station: str, speed_kmh: float) -> float:
        """Running time between two stations at the given speed (capped at the route limit)."""
        distance = abs(
            self.stops[self.index_of(to_station)].distance_km
            - self.stops[self.index_of(from_station)].distance_km
        )
        speed = min(speed_kmh, self.max_speed_kmh) if speed_kmh > 0 else self.max_speed_kmh
        return distance / speed * 60.0

    def blocking_window(self, start: datetime, end: datetime) -> Optional[MaintenanceWindow]:
        for window in self.maintenance_windows:
            if window.overlaps(start, end):
                return window
        return None


@dataclass
class PlatformOccupancy:
    train_id: str
    platform: Optional[int]
    arrival: datetime
    departure: Optional[datetime] = None


@dataclass
class Station:
    code: str
    name: str = ""
    latitude: float = 0.0
    longitude: float = 0.0
    platform_count: int = 2
    occupancy: List[PlatformOccupancy] = field(default_factory=list)

    def occupy(self, train_id: str, platform: Optional[int], arrival: datetime,
               departure: Optional[datetime] = None) -> None:
        self.release(train_id)
        self.occupancy.append(PlatformOccupancy(train_id, platform, arrival, departure))

    def release(self, train_id: str) -> None:
        self.occupancy = [o for o in self.occupancy if o.train_id != train_id]

    @property
    def free_platforms(self) -> int:
        return max(0, self.platform_count - len(self.occupancy))


@dataclass
class TrackSection:
    section_id: str
    latitude: float
    longitude: float
    route_id: Optional[str] = None


@dataclass(frozen=True)
class ScheduleEntry:
    station_code: str
    arrival: datetime
    departure: datetime
    is_halt: bool = False
    halt_minutes: float = 0.0
    platform: Optional[int] = None

    def shifted(self, minutes: float, departure_only: bool = False) -> "ScheduleEntry":
        delta = timedelta(minutes=minutes)
        if departure_only:
            return replace(self, departure=self.departure + delta)
        return replace(self, arrival=self.arrival + delta, departure=self.departure + delta)

    @property
    def dwell_minutes(self) -> float:
        return minutes_between(self.arrival, self.departure)

    def to_dict(self) -> Dict:
        return {
            "station_code": self.station_code,
            "arrival": self.arrival.isoformat(),
            "departure": self.departure.isoformat(),
            "is_halt": self.is_halt,
            "halt_minutes": self.halt_minutes,
            "platform": self.platform,
        }


@dataclass
class TrainSchedule:
    """Planned timetable of one train; entries are in route order."""
    train_id: str
    route_id: str
    priority: int
    train_type: TrainType
    entries: List[ScheduleEntry]
    baseline_arrival: Optional[datetime] = None  # undisturbed arrival at destination
    total_delay_minutes: float = 0.0

    def copy(self) -> "TrainSchedule":
        return replace(self, entries=list(self.entries))

    @property
    def halts(self) -> int:
        return sum(1 for e in self.entries if e.is_halt)

    @property
    def start(self) -> Optional[datetime]:
        return self.entries[0].arrival if self.entries else None

    @property
    def end(self) -> Optional[datetime]:
        return self.entries[-1].arrival if self.entries else None

    def index_of(self, station_code: str) -> int:
        for i, entry in enumerate(self.entries):
            if entry.station_code == station_code:
                return i
        raise NotFoundError("Station", f"{station_code} in schedule of {self.train_id}")

    def entry_for(self, station_code: str) -> Optional[ScheduleEntry]:
        for entry in self.entries:
            if entry.station_code == station_code:
                return entry
        return None

    def first_remaining_index(self, now: datetime) -> int:
        """Index of the first stop the train has not yet departed from."""
        for i, entry in enumerate(self.entries):
            if entry.departure >= now:
                return i
        return len(self.entries)

    def shift_from(self, index: int, minutes: float, departure_only: bool = False) -> "TrainSchedule":
        """
        Right-shift stops from ``index`` onward.

        With ``departure_only`` the stop at ``index`` keeps its arrival and its
        dwell grows by ``minutes``; every later stop moves in full.
        """
        if minutes == 0 or index >= len(self.entries):
            return self.copy()
        entries = list(self.entries[:index])
        entries.append(self.entries[index].shifted(minutes, departure_only=departure_only))
        entries.extend(e.shifted(minutes) for e in self.entries[index + 1:])
        return replace(self, entries=entries)

    def computed_delay_minutes(self) -> float:
        if not self.entries or self.baseline_arrival is None:
            return 0.0
        return max(0.0, minutes_between(self.baseline_arrival, self.entries[-1].arrival))

    def segments(self) -> List[Tuple[int, str, str, datetime, datetime]]:
        """(stop index, from, to, departure, arrival) per hop."""
        hops = []
        for i in range(len(self.entries) - 1):
            a, b = self.entries[i], self.entries[i + 1]
            hops.append((i, a.station_code, b.station_code, a.departure, b.arrival))
        return hops

    def to_dict(self) -> Dict:
        return {
            "train_id": self.train_id,
            "route_id": self.route_id,
            "priority": self.priority,
            "train_type": self.train_type.value,
            "entries": [e.to_dict() for e in self.entries],
            "baseline_arrival": self.baseline_arrival.isoformat() if self.baseline_arrival else None,
            "total_delay_minutes": round(self.total_delay_minutes, 2),
        }


class ViolationType(Enum):
    PLATFORM_CAPACITY = "platform_capacity"
    HEADWAY = "headway"
    SINGLE_LINE = "single_line"
    MAINTENANCE_WINDOW = "maintenance_window"


@dataclass
class Violation:
    """A hard-constraint breach inside a set of schedules."""
    kind: ViolationType
    train_ids: Tuple[str, ...]
    location: str
    start: datetime
    end: datetime
    # train_id -> (stop index to shift from, minutes needed to clear, shift departure only)
    remedies: Dict[str, Tuple[int, float, bool]] = field(default_factory=dict)
    description: str = ""

    def to_dict(self) -> Dict:
        return {
            "kind": self.kind.value,
            "train_ids": list(self.train_ids),
            "location": self.location,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "description": self.description,
        }


@dataclass
class PerformanceMetrics:
    average_delay_minutes: float = 0.0
    max_delay_minutes: float = 0.0
    total_delay_minutes: float = 0.0
    on_time_percentage: float = 0.0
    conflict_count: int = 0
    trains: int = 0
    events_processed: int = 0
    throughput: int = 0
    peak_platform_occupancy: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            "average_delay_minutes": round(self.average_delay_minutes, 2),
            "max_delay_minutes": round(self.max_delay_minutes, 2),
            "total_delay_minutes": round(self.total_delay_minutes, 2),
            "on_time_percentage": round(self.on_time_percentage, 2),
            "conflict_count": self.conflict_count,
            "trains": self.trains,
            "events_processed": self.events_processed,
            "throughput": self.throughput,
            "peak_platform_occupancy": dict(self.peak_platform_occupancy),
        }


@dataclass
class OptimizationOutput:
    """Results from optimization."""
    run_id: str
    schedules: Dict[str, TrainSchedule]
    metrics: PerformanceMetrics
    generated_at: datetime
    time_horizon_minutes: int
    status: str
    feasible: bool
    residual_conflicts: int
    computation_time: float
    generations_run: int = 0
    best_fitness: float = 0.0
    repair_method: str = "none"
    search_status: str = "NONE"  # CONVERGED, GENERATION_LIMIT or TIME_LIMIT

    def to_dict(self) -> Dict:
        return {
            "run_id": self.run_id,
            "schedules": {tid: s.to_dict() for tid, s in self.schedules.items()},
            "metrics": self.metrics.to_dict(),
            "generated_at": self.generated_at.isoformat(),
            "time_horizon_minutes": self.time_horizon_minutes,
            "status": self.status,
            "feasible": self.feasible,
            "residual_conflicts": self.residual_conflicts,
            "computation_time": round(self.computation_time, 4),
            "generations_run": self.generations_run,
            "best_fitness": round(self.best_fitness, 2),
            "repair_method": self.repair_method,
            "search_status": self.search_status,
        }


@dataclass
class RealTimeUpdateResult:
    train_id: str
    updated_schedule: TrainSchedule
    affected_schedules: Dict[str, TrainSchedule]
    processing_time_ms: float
    explanation: str
    reported_delay_minutes: float = 0.0
    yield_minutes: float = 0.0
    residual_conflicts: int = 0
    feasible: bool = True
    status: str = "APPLIED"

    def to_dict(self) -> Dict:
        return {
            "train_id": self.train_id,
            "updated_schedule": self.updated_schedule.to_dict(),
            "affected_schedules": {tid: s.to_dict() for tid, s in self.affected_schedules.items()},
            "processing_time_ms": round(self.processing_time_ms, 3),
            "explanation": self.explanation,
            "reported_delay_minutes": round(self.reported_delay_minutes, 2),
            "yield_minutes": round(self.yield_minutes, 2),
            "residual_conflicts": self.residual_conflicts,
            "feasible": self.feasible,
            "status": self.status,
        }


@dataclass
class DisruptionEvent:
    """Data structure for disruption events in what-if analysis."""
    event_type: str  # delay, cancellation, emergency
    affected_trains: List[str]
    delay_minutes: float
    start_time: Optional[datetime] = None
    duration_minutes: float = 0.0
    description: str = ""


@dataclass
class Scenario:
    scenario_id: str
    name: str
    disruption: DisruptionEvent
    description: str = ""
