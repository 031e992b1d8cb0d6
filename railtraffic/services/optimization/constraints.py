"""
Constraint definitions for schedule validation and repair.

``ScheduleValidator`` finds hard-constraint violations in a set of schedules.
``TrainSchedulingConstraints`` expresses the same constraints as a CP-SAT
model over per-stop right-shift variables, used by the repair stage.
"""

from collections import namedtuple
from datetime import datetime, timedelta
from itertools import combinations
from typing import Callable, Dict, List, Optional, Tuple
import logging
import math

from ortools.sat.python import cp_model

from railtraffic.services.optimization.models import (
    LOWEST_PRIORITY, Route, ScheduleEntry, TrainSchedule, Violation, ViolationType, minutes_between
)

logger = logging.getLogger(__name__)

Hop = namedtuple("Hop", ["train_id", "index", "origin", "destination", "departure", "arrival"])

CapacityFn = Callable[[str], int]


def occupies_platform(entry: ScheduleEntry) -> bool:
    """A stop holds a platform when it is a halt or the train waits there."""
    return entry.is_halt or entry.departure > entry.arrival


def clearance_minutes(minutes: float) -> float:
    """Round a required shift up to whole seconds (at least one)."""
    seconds = math.ceil(round(minutes * 60.0, 6))
    return max(1, seconds) / 60.0


def segment_key(a: str, b: str) -> Tuple[str, str]:
    return (a, b) if a <= b else (b, a)


def collect_hops(schedules: Dict[str, TrainSchedule]) -> Dict[Tuple[str, str], List[Hop]]:
    """Group every train's station-to-station hops by undirected segment."""
    segments: Dict[Tuple[str, str], List[Hop]] = {}
    for schedule in schedules.values():
        for index, origin, destination, departure, arrival in schedule.segments():
            segments.setdefault(segment_key(origin, destination), []).append(
                Hop(schedule.train_id, index, origin, destination, departure, arrival)
            )
    return segments


def precedence_key(schedule: TrainSchedule) -> Tuple:
    """Sort key: higher-precedence trains first."""
    start = schedule.start.timestamp() if schedule.start else float("inf")
    return (schedule.priority, start, schedule.train_id)


class ScheduleValidator:
    """
    Detects hard-constraint violations in a set of schedules.

    Every violation carries remedies: for each train that could clear it by
    right-shifting, the stop index to shift from, the minutes required and
    whether only the departure from that stop moves.
    """

    def __init__(self, headway_minutes: float = 5, platform_buffer_minutes: float = 2,
                 token_system_enabled: bool = True, default_platform_capacity: int = 2):
        self.headway_minutes = headway_minutes
        self.platform_buffer_minutes = platform_buffer_minutes
        self.token_system_enabled = token_system_enabled
        self.default_platform_capacity = default_platform_capacity

    @classmethod
    def from_settings(cls, settings) -> "ScheduleValidator":
        return cls(
            headway_minutes=settings.headway_minutes,
            platform_buffer_minutes=settings.platform_buffer_minutes,
            token_system_enabled=settings.token_system_enabled,
            default_platform_capacity=settings.max_platform_occupancy,
        )

    def find_violations(self, schedules: Dict[str, TrainSchedule],
                        routes: Optional[Dict[str, Route]] = None,
                        platform_capacity: Optional[CapacityFn] = None) -> List[Violation]:
        """
        Find all violations, earliest first.

        Args:
            schedules: Schedules keyed by train id
            routes: Routes keyed by id, for maintenance windows
            platform_capacity: Platform count lookup by station code

        Returns:
            List of violations sorted by start time
        """
        violations = self.platform_violations(schedules, platform_capacity)
        segments = collect_hops(schedules)
        violations.extend(self.headway_violations(segments))
        if self.token_system_enabled:
            violations.extend(self.single_line_violations(segments))
        if routes:
            violations.extend(self.maintenance_violations(schedules, routes))
        violations.sort(key=lambda v: (v.start, v.kind.value, v.train_ids))
        return violations

    def count(self, schedules, routes=None, platform_capacity=None) -> int:
        return len(self.find_violations(schedules, routes, platform_capacity))

    def _capacity(self, station_code: str, platform_capacity: Optional[CapacityFn]) -> int:
        if platform_capacity is None:
            return self.default_platform_capacity
        return platform_capacity(station_code)

    def platform_violations(self, schedules: Dict[str, TrainSchedule],
                            platform_capacity: Optional[CapacityFn] = None) -> List[Violation]:
        buffer = timedelta(minutes=self.platform_buffer_minutes)
        stays_by_station: Dict[str, List[Tuple[datetime, datetime, str, int]]] = {}
        for schedule in schedules.values():
            for i, entry in enumerate(schedule.entries):
                if occupies_platform(entry):
                    stays_by_station.setdefault(entry.station_code, []).append(
                        (entry.arrival, entry.departure + buffer, schedule.train_id, i)
                    )

        violations = []
        for station_code, stays in stays_by_station.items():
            capacity = self._capacity(station_code, platform_capacity)
            if len(stays) <= capacity:
                continue
            stays.sort(key=lambda s: (s[0], s[2]))
            active: List[Tuple[datetime, datetime, str, int]] = []
            for stay in stays:
                active = [a for a in active if a[1] > stay[0]]
                active.append(stay)
                if len(active) > capacity:
                    violations.append(self._platform_violation(station_code, capacity, active))
        return violations

    def _platform_violation(self, station_code, capacity, active) -> Violation:
        remedies = {}
        for stay in active:
            arrival, _, train_id, index = stay
            released = min(other[1] for other in active if other is not stay)
            need = clearance_minutes(minutes_between(arrival, released))
            if index > 0:
                remedies[train_id] = (index - 1, need, True)
            else:
                remedies[train_id] = (0, need, False)
        return Violation(
            kind=ViolationType.PLATFORM_CAPACITY,
            train_ids=tuple(sorted(a[2] for a in active)),
            location=station_code,
            start=max(a[0] for a in active),
            end=min(a[1] for a in active),
            remedies=remedies,
            description=f"{len(active)} trains share {capacity} platform(s) at {station_code}",
        )

    def headway_violations(self, segments: Dict[Tuple[str, str], List[Hop]]) -> List[Violation]:
        headway = self.headway_minutes
        violations = []
        for key, hops in segments.items():
            for a, b in combinations(hops, 2):
                if a.train_id == b.train_id or (a.origin, a.destination) != (b.origin, b.destination):
                    continue
                first, second = sorted((a, b), key=lambda h: (h.departure, h.train_id))
                departure_gap = minutes_between(first.departure, second.departure)
                arrival_gap = minutes_between(first.arrival, second.arrival)
                if departure_gap >= headway and arrival_gap >= headway:
                    continue
                overtaking = arrival_gap < 0
                violations.append(Violation(
                    kind=ViolationType.HEADWAY,
                    train_ids=tuple(sorted((first.train_id, second.train_id))),
                    location=f"{first.origin}-{first.destination}",
                    start=second.departure,
                    end=max(first.arrival, second.arrival),
                    remedies={
                        second.train_id: (second.index,
                                          clearance_minutes(headway - min(departure_gap, arrival_gap)), True),
                        first.train_id: (first.index,
                                         clearance_minutes(headway + max(departure_gap, arrival_gap)), True),
                    },
                    description=(
                        f"{second.train_id} overtakes {first.train_id}" if overtaking else
                        f"{second.train_id} follows {first.train_id} within {headway} min"
                    ) + f" between {first.origin} and {first.destination}",
                ))
        return violations

    def single_line_violations(self, segments: Dict[Tuple[str, str], List[Hop]]) -> List[Violation]:
        violations = []
        for key, hops in segments.items():
            for a, b in combinations(hops, 2):
                if a.train_id == b.train_id or a.origin != b.destination or a.destination != b.origin:
                    continue
                if not (a.departure < b.arrival and b.departure < a.arrival):
                    continue
                violations.append(Violation(
                    kind=ViolationType.SINGLE_LINE,
                    train_ids=tuple(sorted((a.train_id, b.train_id))),
                    location=f"{key[0]}-{key[1]}",
                    start=max(a.departure, b.departure),
                    end=min(a.arrival, b.arrival),
                    remedies={
                        a.train_id: (a.index, clearance_minutes(minutes_between(a.departure, b.arrival)), True),
                        b.train_id: (b.index, clearance_minutes(minutes_between(b.departure, a.arrival)), True),
                    },
                    description=f"{a.train_id} and {b.train_id} hold the token for {key[0]}-{key[1]} together",
                ))
        return violations

    def maintenance_violations(self, schedules: Dict[str, TrainSchedule],
                               routes: Dict[str, Route]) -> List[Violation]:
        violations = []
        for schedule in schedules.values():
            route = routes.get(schedule.route_id)
            if route is None or not route.maintenance_windows:
                continue
            for index, origin, destination, departure, arrival in schedule.segments():
                window = route.blocking_window(departure, arrival)
                if window is None:
                    continue
                violations.append(Violation(
                    kind=ViolationType.MAINTENANCE_WINDOW,
                    train_ids=(schedule.train_id,),
                    location=f"{origin}-{destination}",
                    start=max(departure, window.start),
                    end=min(arrival, window.end),
                    remedies={
                        schedule.train_id: (index, clearance_minutes(minutes_between(departure, window.end)), True),
                    },
                    description=f"{schedule.train_id} runs {origin}-{destination} during maintenance "
                                f"{window.description}".rstrip(),
                ))
        return violations


class TrainSchedulingConstraints:
    """
    CP-SAT model of the schedule constraints.

    Decision variables are non-negative right-shifts in seconds for the
    arrival and departure of every stop. Running times between stops are
    preserved, dwell times never shrink, and pass-through stops stay
    pass-through.
    """

    SAFETY_MARGIN_SECONDS = 1

    def __init__(self, model: cp_model.CpModel, schedules: Dict[str, TrainSchedule],
                 max_shift_seconds: int = 24 * 3600):
        self.model = model
        self.schedules = schedules
        self.max_shift_seconds = max_shift_seconds
        self.arrival_shift: Dict[Tuple[str, int], cp_model.IntVar] = {}
        self.departure_shift: Dict[Tuple[str, int], cp_model.IntVar] = {}
        starts = [e.arrival for s in schedules.values() for e in s.entries]
        self.base = min(starts) if starts else None
        self._add_shift_variables()

    def _seconds(self, at: datetime) -> int:
        return int(round((at - self.base).total_seconds()))

    def _add_shift_variables(self) -> None:
        for train_id, schedule in self.schedules.items():
            for i, entry in enumerate(schedule.entries):
                arr = self.model.NewIntVar(0, self.max_shift_seconds, f"{train_id}_arr_shift_{i}")
                dep = self.model.NewIntVar(0, self.max_shift_seconds, f"{train_id}_dep_shift_{i}")
                self.arrival_shift[(train_id, i)] = arr
                self.departure_shift[(train_id, i)] = dep
                if occupies_platform(entry):
                    self.model.Add(dep >= arr)
                else:
                    self.model.Add(dep == arr)
                if i > 0:
                    self.model.Add(arr == self.departure_shift[(train_id, i - 1)])
        logger.debug(f"Created shift variables for {len(self.arrival_shift)} stops")

    def _departure(self, hop: Hop):
        return self._seconds(hop.departure) + self.departure_shift[(hop.train_id, hop.index)]

    def _arrival(self, hop: Hop):
        return self._seconds(hop.arrival) + self.arrival_shift[(hop.train_id, hop.index + 1)]

    def add_platform_capacity_constraints(self, buffer_minutes: float, platform_capacity: CapacityFn) -> int:
        """
        Add cumulative platform capacity per station.

        Args:
            buffer_minutes: Clearance held after each departure
            platform_capacity: Platform count lookup by station code

        Returns:
            Number of stations constrained
        """
        buffer_seconds = int(round(buffer_minutes * 60)) + self.SAFETY_MARGIN_SECONDS
        intervals_by_station: Dict[str, List] = {}
        for train_id, schedule in self.schedules.items():
            for i, entry in enumerate(schedule.entries):
                if not occupies_platform(entry):
                    continue
                start = self._seconds(entry.arrival) + self.arrival_shift[(train_id, i)]
                end = self._seconds(entry.departure) + buffer_seconds + self.departure_shift[(train_id, i)]
                size = self.model.NewIntVar(0, 2 * self.max_shift_seconds + 86400, f"{train_id}_stay_{i}")
                self.model.Add(size == end - start)
                interval = self.model.NewIntervalVar(start, size, end, f"{train_id}_platform_{i}")
                intervals_by_station.setdefault(entry.station_code, []).append(interval)

        constrained = 0
        for station_code, intervals in intervals_by_station.items():
            capacity = platform_capacity(station_code)
            if len(intervals) <= capacity:
                continue
            self.model.AddCumulative(intervals, [1] * len(intervals), capacity)
            constrained += 1
        logger.debug(f"Added platform capacity constraints at {constrained} stations")
        return constrained

    def add_headway_constraints(self, headway_minutes: float) -> int:
        """Same-direction trains on a segment keep the headway at both ends."""
        headway = int(round(headway_minutes * 60)) + self.SAFETY_MARGIN_SECONDS
        added = 0
        for hops in collect_hops(self.schedules).values():
            for a, b in combinations(hops, 2):
                if a.train_id == b.train_id or (a.origin, a.destination) != (b.origin, b.destination):
                    continue
                a_first = self.model.NewBoolVar(f"{a.train_id}_{a.index}_before_{b.train_id}_{b.index}")
                self.model.Add(self._departure(b) >= self._departure(a) + headway).OnlyEnforceIf(a_first)
                self.model.Add(self._arrival(b) >= self._arrival(a) + headway).OnlyEnforceIf(a_first)
                self.model.Add(self._departure(a) >= self._departure(b) + headway).OnlyEnforceIf(a_first.Not())
                self.model.Add(self._arrival(a) >= self._arrival(b) + headway).OnlyEnforceIf(a_first.Not())
                added += 1
        logger.debug(f"Added {added} headway disjunctions")
        return added

    def add_single_line_constraints(self) -> int:
        """Opposite-direction trains never hold the same segment together."""
        margin = self.SAFETY_MARGIN_SECONDS
        added = 0
        for hops in collect_hops(self.schedules).values():
            for a, b in combinations(hops, 2):
                if a.train_id == b.train_id or a.origin != b.destination or a.destination != b.origin:
                    continue
                a_first = self.model.NewBoolVar(f"{a.train_id}_{a.index}_token_{b.train_id}_{b.index}")
                self.model.Add(self._departure(b) >= self._arrival(a) + margin).OnlyEnforceIf(a_first)
                self.model.Add(self._departure(a) >= self._arrival(b) + margin).OnlyEnforceIf(a_first.Not())
                added += 1
        logger.debug(f"Added {added} single-line token disjunctions")
        return added

    def add_maintenance_window_constraints(self, routes: Dict[str, Route]) -> int:
        """Hops finish before a maintenance window opens or start after it closes."""
        margin = self.SAFETY_MARGIN_SECONDS
        added = 0
        for train_id, schedule in self.schedules.items():
            route = routes.get(schedule.route_id)
            if route is None:
                continue
            for window in route.maintenance_windows:
                window_start = self._seconds(window.start)
                window_end = self._seconds(window.end)
                for index, origin, destination, departure, arrival in schedule.segments():
                    hop = Hop(train_id, index, origin, destination, departure, arrival)
                    if self._seconds(departure) >= window_end:
                        continue
                    before = self.model.NewBoolVar(f"{train_id}_{index}_before_maint_{window_start}")
                    self.model.Add(self._arrival(hop) + margin <= window_start).OnlyEnforceIf(before)
                    self.model.Add(self._departure(hop) >= window_end + margin).OnlyEnforceIf(before.Not())
                    added += 1
        logger.debug(f"Added {added} maintenance window constraints")
        return added

    def set_objective(self) -> None:
        """Minimize priority-weighted destination delay, then total waiting."""
        terms = []
        for train_id, schedule in self.schedules.items():
            if not schedule.entries:
                continue
            weight = max(1, LOWEST_PRIORITY + 1 - schedule.priority)
            last = len(schedule.entries) - 1
            terms.append(100 * weight * self.arrival_shift[(train_id, last)])
            terms.extend(self.departure_shift[(train_id, i)] for i in range(last))
        if terms:
            self.model.Minimize(sum(terms))

    def shifted_schedules(self, solver: cp_model.CpSolver) -> Dict[str, TrainSchedule]:
        """Apply the solved shifts to copies of the input schedules."""
        result = {}
        for train_id, schedule in self.schedules.items():
            entries = []
            for i, entry in enumerate(schedule.entries):
                arrival_shift = solver.Value(self.arrival_shift[(train_id, i)])
                departure_shift = solver.Value(self.departure_shift[(train_id, i)])
                entries.append(ScheduleEntry(
                    station_code=entry.station_code,
                    arrival=entry.arrival + timedelta(seconds=arrival_shift),
                    departure=entry.departure + timedelta(seconds=departure_shift),
                    is_halt=entry.is_halt,
                    halt_minutes=entry.halt_minutes,
                    platform=entry.platform,
                ))
            shifted = schedule.copy()
            shifted.entries = entries
            result[train_id] = shifted
        return result
