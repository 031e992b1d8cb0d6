"""
Conflict detector.

Runs four independent checks over one snapshot of the fused train states:
converging paths, resource over-allocation, delay bubble-up and safety
distance. Detection is read-only; every conflict found is published on the
conflict channel.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from itertools import combinations
from typing import Callable, Dict, List, Optional

from railtraffic.services.channels import EventChannel
from railtraffic.services.detection.geo import haversine_km, nearest
from railtraffic.services.detection.models import (
    Conflict, ConflictSeverity, ConflictType, RecommendedAction
)
from railtraffic.services.optimization.models import (
    LOWEST_PRIORITY, Route, Train, TrainSchedule, minutes_between, utcnow
)
from railtraffic.services.store import NetworkStore
from railtraffic.services.telemetry.models import TrainState

logger = logging.getLogger(__name__)


@dataclass
class _TrainView:
    """Everything one cycle knows about a train, taken from the cycle's snapshot."""
    state: TrainState
    train: Optional[Train] = None
    route: Optional[Route] = None
    schedule: Optional[TrainSchedule] = None
    remaining: List[str] = field(default_factory=list)

    @property
    def train_id(self) -> str:
        return self.state.train_id

    @property
    def has_fix(self) -> bool:
        return self.state.confidence > 0.0

    @property
    def priority(self) -> int:
        if self.train is not None:
            return self.train.priority
        if self.schedule is not None:
            return self.schedule.priority
        return LOWEST_PRIORITY

    @property
    def delay_minutes(self) -> float:
        scheduled = self.schedule.total_delay_minutes if self.schedule else 0.0
        return max(self.state.delay_minutes or 0.0, scheduled)

    @property
    def unapplied_delay_minutes(self) -> float:
        scheduled = self.schedule.total_delay_minutes if self.schedule else 0.0
        return max(0.0, (self.state.delay_minutes or 0.0) - scheduled)


class ConflictDetector:
    """Detects conflicts between live trains."""

    def __init__(self, store: NetworkStore, channel: Optional[EventChannel] = None,
                 convergence_margin_minutes: float = 5.0,
                 stationary_speed_threshold: float = 5.0,
                 occupancy_bucket_minutes: int = 10,
                 max_platform_occupancy: int = 2,
                 safety_distance_km: float = 2.0,
                 station_radius_km: float = 1.0,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.channel = channel
        self.convergence_margin_minutes = convergence_margin_minutes
        self.stationary_speed_threshold = stationary_speed_threshold
        self.occupancy_bucket_minutes = occupancy_bucket_minutes
        self.max_platform_occupancy = max_platform_occupancy
        self.safety_distance_km = safety_distance_km
        self.station_radius_km = station_radius_km
        self.clock = clock

    @classmethod
    def from_settings(cls, settings, store, channel=None, clock=utcnow) -> "ConflictDetector":
        return cls(
            store,
            channel,
            convergence_margin_minutes=settings.convergence_margin_minutes,
            stationary_speed_threshold=settings.stationary_speed_threshold,
            occupancy_bucket_minutes=settings.occupancy_bucket_minutes,
            max_platform_occupancy=settings.max_platform_occupancy,
            safety_distance_km=settings.safety_distance_km,
            station_radius_km=settings.station_radius_km,
            clock=clock,
        )

    def detect(self) -> List[Conflict]:
        """Run one detection cycle. Never raises."""
        now = self.clock()
        states = self.store.snapshot_states()
        schedules = self.store.snapshot_schedules()
        views = [self._view(state, schedules, now) for _, state in sorted(states.items())]

        conflicts: List[Conflict] = []
        for check in (self.check_converging_paths, self.check_resource_overallocation,
                      self.check_delay_bubble_up, self.check_safety_distance):
            try:
                conflicts.extend(check(views, now))
            except Exception as e:
                logger.error(f"{check.__name__} failed: {str(e)}")

        if conflicts:
            logger.info(f"Detection cycle found {len(conflicts)} conflicts across {len(views)} trains")
        if self.channel is not None:
            for conflict in conflicts:
                self.channel.publish(conflict)
        return conflicts

    # ------------------------------------------------------------------
    # Snapshot views
    # ------------------------------------------------------------------

    def _view(self, state: TrainState, schedules: Dict[str, TrainSchedule], now: datetime) -> _TrainView:
        view = _TrainView(state=state, train=self.store.trains.get(state.train_id),
                          schedule=schedules.get(state.train_id))
        if view.train is not None:
            view.route = self.store.routes.get(view.train.route_id)
        try:
            view.remaining = self._remaining_stations(view, now)
        except Exception as e:
            logger.warning(f"Cannot place {state.train_id} on its route: {str(e)}")
        return view

    def _remaining_stations(self, view: _TrainView, now: datetime) -> List[str]:
        if view.schedule is not None and view.schedule.entries:
            index = view.schedule.first_remaining_index(now)
            return [e.station_code for e in view.schedule.entries[index:]]
        if view.route is None:
            return []
        path = [s.station_code for s in view.route.path(view.train.origin, view.train.destination)]
        if view.state.current_station in path:
            return path[path.index(view.state.current_station):]
        located = [(code, self.store.stations[code].latitude, self.store.stations[code].longitude)
                   for code in path if code in self.store.stations]
        closest = nearest(view.state.latitude, view.state.longitude, located)
        if closest is None:
            return path
        return path[path.index(closest[0]):]

    def _station_at(self, view: _TrainView) -> Optional[str]:
        if view.state.current_station:
            return view.state.current_station
        located = [(s.code, s.latitude, s.longitude) for s in self.store.stations.values()]
        closest = nearest(view.state.latitude, view.state.longitude, located)
        if closest is not None and closest[1] <= self.station_radius_km:
            return closest[0]
        return None

    def estimated_arrival(self, view: _TrainView, station_code: str, now: datetime) -> Optional[datetime]:
        """Kinematic ETA while moving; the scheduled arrival otherwise."""
        station = self.store.stations.get(station_code)
        if station is not None and view.state.speed > self.stationary_speed_threshold:
            distance = haversine_km(view.state.latitude, view.state.longitude,
                                    station.latitude, station.longitude)
            return now + timedelta(hours=distance / view.state.speed)
        if view.schedule is not None:
            entry = view.schedule.entry_for(station_code)
            if entry is not None:
                return entry.arrival + timedelta(minutes=view.unapplied_delay_minutes)
        return None

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def check_converging_paths(self, views: List[_TrainView], now: datetime) -> List[Conflict]:
        conflicts = []
        for a, b in combinations(views, 2):
            shared = set(b.remaining) - {a.state.current_station, b.state.current_station}
            point = next((code for code in a.remaining if code in shared), None)
            if point is None:
                continue
            eta_a = self.estimated_arrival(a, point, now)
            eta_b = self.estimated_arrival(b, point, now)
            if eta_a is None or eta_b is None:
                continue
            gap = abs(minutes_between(eta_a, eta_b))
            if gap >= self.convergence_margin_minutes:
                continue
            order = sorted((a, b), key=lambda v: (v.priority, self.estimated_arrival(v, point, now), v.train_id))
            station = self.store.stations.get(point)
            conflicts.append(Conflict.create(
                ConflictType.CONVERGING_PATHS,
                ConflictSeverity.HIGH,
                [a.train_id, b.train_id],
                {"station_code": point,
                 "lat": station.latitude if station else None,
                 "lon": station.longitude if station else None},
                f"Trains {a.train_id} and {b.train_id} converge on {point} {gap:.1f} minutes apart",
                RecommendedAction.PRIORITY_BASED_SEQUENCING,
                estimated_conflict_time=min(eta_a, eta_b),
                resolution_order=[v.train_id for v in order],
                details={"eta_gap_minutes": round(gap, 3),
                         "etas": {a.train_id: eta_a.isoformat(), b.train_id: eta_b.isoformat()}},
                detected_at=now,
            ))
        return conflicts

    def check_resource_overallocation(self, views: List[_TrainView], now: datetime) -> List[Conflict]:
        bucket_seconds = self.occupancy_bucket_minutes * 60
        groups: Dict[tuple, List[_TrainView]] = {}
        for view in views:
            if view.state.speed >= self.stationary_speed_threshold:
                continue
            station_code = self._station_at(view)
            if station_code is None:
                continue
            bucket = math.floor(view.state.timestamp.timestamp() / bucket_seconds)
            groups.setdefault((station_code, bucket), []).append(view)

        conflicts = []
        for (station_code, bucket), group in sorted(groups.items()):
            capacity = self.store.platform_capacity(station_code, self.max_platform_occupancy)
            if len(group) <= capacity:
                continue
            station = self.store.stations.get(station_code)
            train_ids = [v.train_id for v in group]
            conflicts.append(Conflict.create(
                ConflictType.RESOURCE_OVERALLOCATION,
                ConflictSeverity.MEDIUM,
                train_ids,
                {"station_code": station_code,
                 "lat": station.latitude if station else None,
                 "lon": station.longitude if station else None},
                f"{len(group)} trains at {station_code} with {capacity} platforms",
                RecommendedAction.STAGGER_ARRIVALS,
                resolution_order=[v.train_id for v in sorted(group, key=lambda v: (v.priority, v.train_id))],
                details={"platform_capacity": capacity, "occupying": len(group),
                         "bucket_start": datetime.fromtimestamp(bucket * bucket_seconds,
                                                                tz=now.tzinfo).isoformat()},
                detected_at=now,
            ))
        return conflicts

    def check_delay_bubble_up(self, views: List[_TrainView], now: datetime) -> List[Conflict]:
        conflicts = []
        for delayed in views:
            if delayed.delay_minutes <= 0:
                continue
            affected = []
            shared_stations = {}
            for other in views:
                if other is delayed or other.priority >= delayed.priority:
                    continue
                shared = [code for code in delayed.remaining if code in set(other.remaining)]
                shared = [code for code in shared if self._overlaps_at(delayed, other, code)]
                if shared:
                    affected.append(other)
                    shared_stations[other.train_id] = shared
            if not affected:
                continue
            order = sorted(affected, key=lambda v: (v.priority, v.train_id)) + [delayed]
            conflicts.append(Conflict.create(
                ConflictType.DELAY_BUBBLE_UP,
                ConflictSeverity.HIGH,
                [delayed.train_id] + [v.train_id for v in affected],
                {"station_code": shared_stations[affected[0].train_id][0],
                 "lat": delayed.state.latitude, "lon": delayed.state.longitude},
                f"Delay of {delayed.delay_minutes:.0f} minutes on {delayed.train_id} affects "
                f"higher-priority trains {', '.join(v.train_id for v in affected)}",
                RecommendedAction.PRIORITY_RESEQUENCING,
                resolution_order=[v.train_id for v in order],
                details={"delayed_train": delayed.train_id,
                         "delay_minutes": delayed.delay_minutes,
                         "unapplied_delay_minutes": delayed.unapplied_delay_minutes,
                         "shared_stations": shared_stations},
                detected_at=now,
            ))
        return conflicts

    def _overlaps_at(self, delayed: _TrainView, other: _TrainView, station_code: str) -> bool:
        """With both timetables known, the delayed stay must come within the margin of the other's."""
        if delayed.schedule is None or other.schedule is None:
            return True
        mine = delayed.schedule.entry_for(station_code)
        theirs = other.schedule.entry_for(station_code)
        if mine is None or theirs is None:
            return True
        margin = timedelta(minutes=self.convergence_margin_minutes)
        pending = timedelta(minutes=delayed.unapplied_delay_minutes)
        arrival, departure = mine.arrival + pending, mine.departure + pending
        return arrival < theirs.departure + margin and theirs.arrival < departure + margin

    def check_safety_distance(self, views: List[_TrainView], now: datetime) -> List[Conflict]:
        conflicts = []
        for a, b in combinations([v for v in views if v.has_fix], 2):
            distance = haversine_km(a.state.latitude, a.state.longitude, b.state.latitude, b.state.longitude)
            if not distance < self.safety_distance_km:
                continue
            conflicts.append(Conflict.create(
                ConflictType.SAFETY_DISTANCE_VIOLATION,
                ConflictSeverity.CRITICAL,
                [a.train_id, b.train_id],
                {"lat": (a.state.latitude + b.state.latitude) / 2,
                 "lon": (a.state.longitude + b.state.longitude) / 2},
                f"Trains {a.train_id} and {b.train_id} are {distance:.3f} km apart",
                RecommendedAction.EMERGENCY_HALT,
                resolution_order=[v.train_id for v in sorted((a, b), key=lambda v: (v.priority, v.train_id))],
                details={"distance_km": distance, "minimum_km": self.safety_distance_km},
                detected_at=now,
            ))
        return conflicts
