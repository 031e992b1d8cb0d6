"""
Network store.

Central state container for reference data, schedules and fused train states.
One instance is owned by the process (or by a test) and handed to every
component. Mutable per-train data is guarded by per-train locks; the registry
lock only protects dictionary structure and is held briefly.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from railtraffic.core.errors import NotFoundError
from railtraffic.services.optimization.models import (
    Route, Station, TrackSection, Train, TrainSchedule, TrainStatus, utcnow
)
from railtraffic.services.telemetry.models import TrainState

logger = logging.getLogger(__name__)


class NetworkStore:

    def __init__(self):
        self.trains: Dict[str, Train] = {}
        self.routes: Dict[str, Route] = {}
        self.stations: Dict[str, Station] = {}
        self.sections: Dict[str, TrackSection] = {}

        self._schedules: Dict[str, TrainSchedule] = {}
        self._states: Dict[str, TrainState] = {}
        self._delay_log: Dict[str, List[Tuple[datetime, float]]] = {}
        self._carried_delays: Dict[str, float] = {}
        self._train_locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.RLock()
        self.last_update: Optional[datetime] = None

    # ------------------------------------------------------------------
    # Reference data
    # ------------------------------------------------------------------

    def load(self, trains: Iterable[Train] = (), routes: Iterable[Route] = (),
             stations: Iterable[Station] = (), sections: Iterable[TrackSection] = ()) -> None:
        with self._registry_lock:
            for route in routes:
                self.routes[route.route_id] = route
            for station in stations:
                self.stations[station.code] = station
            for section in sections:
                self.sections[section.section_id] = section
            for train in trains:
                self.trains[train.train_id] = train
        logger.info(f"Loaded {len(self.trains)} trains, {len(self.routes)} routes, "
                    f"{len(self.stations)} stations, {len(self.sections)} sections")

    def get_train(self, train_id: str) -> Train:
        train = self.trains.get(train_id)
        if train is None:
            raise NotFoundError("Train", train_id)
        return train

    def get_route(self, route_id: str) -> Route:
        route = self.routes.get(route_id)
        if route is None:
            raise NotFoundError("Route", route_id)
        return route

    def active_trains(self) -> List[Train]:
        return [t for t in self.trains.values() if t.is_active]

    def platform_capacity(self, station_code: str, default: int) -> int:
        station = self.stations.get(station_code)
        return station.platform_count if station else default

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def train_lock(self, train_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._train_locks.get(train_id)
            if lock is None:
                lock = threading.Lock()
                self._train_locks[train_id] = lock
            return lock

    @contextmanager
    def lock_trains(self, train_ids: Iterable[str]) -> Iterator[None]:
        """Hold the locks of several trains, always acquired in sorted order."""
        locks = [self.train_lock(tid) for tid in sorted(set(train_ids))]
        acquired = []
        try:
            for lock in locks:
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    # ------------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------------

    def get_schedule(self, train_id: str) -> Optional[TrainSchedule]:
        with self._registry_lock:
            return self._schedules.get(train_id)

    def set_schedule(self, schedule: TrainSchedule) -> None:
        """Caller must hold the train's lock."""
        with self._registry_lock:
            self._schedules[schedule.train_id] = schedule
            self.last_update = utcnow()

    def snapshot_schedules(self) -> Dict[str, TrainSchedule]:
        with self._registry_lock:
            return {tid: s.copy() for tid, s in self._schedules.items()}

    @property
    def schedule_count(self) -> int:
        with self._registry_lock:
            return len(self._schedules)

    def record_delay(self, train_id: str, minutes: float, at: Optional[datetime] = None) -> None:
        with self._registry_lock:
            self._delay_log.setdefault(train_id, []).append((at or utcnow(), minutes))

    def delays_since(self, train_id: str, since: datetime) -> float:
        with self._registry_lock:
            return sum(m for at, m in self._delay_log.get(train_id, []) if at >= since)

    def delays_before(self, train_id: str, before: datetime) -> float:
        """Live delay applied to a train before ``before``, including compacted history."""
        with self._registry_lock:
            logged = sum(m for at, m in self._delay_log.get(train_id, []) if at < before)
            return self._carried_delays.get(train_id, 0.0) + logged

    def compact_delay_log(self, cutoff: datetime) -> None:
        """Fold log entries older than ``cutoff`` into each train's carried total."""
        with self._registry_lock:
            for train_id, log in self._delay_log.items():
                old = [m for at, m in log if at < cutoff]
                if old:
                    self._carried_delays[train_id] = self._carried_delays.get(train_id, 0.0) + sum(old)
                    log[:] = [(at, m) for at, m in log if at >= cutoff]

    def install_schedules(self, schedules: Dict[str, TrainSchedule], started_at: datetime,
                          log_retention: Optional[timedelta] = None) -> Dict[str, float]:
        """
        Install optimizer output computed from a snapshot taken at ``started_at``.

        Delays applied by the reconciler after that snapshot are re-applied on
        top of the new schedules. Returns the re-applied minutes per train.
        Delays from before the snapshot were already planned around by the run.
        """
        reapplied: Dict[str, float] = {}
        with self.lock_trains(schedules.keys()):
            for train_id, schedule in schedules.items():
                pending = self.delays_since(train_id, started_at)
                if pending > 0:
                    schedule = schedule.shift_from(0, pending)
                    schedule.total_delay_minutes += pending
                    reapplied[train_id] = pending
                self.set_schedule(schedule)
        if log_retention is not None:
            self.compact_delay_log(started_at - log_retention)
        if reapplied:
            logger.info(f"Re-applied reconciler delays to {len(reapplied)} optimized schedules")
        return reapplied

    # ------------------------------------------------------------------
    # Train states
    # ------------------------------------------------------------------

    def get_state(self, train_id: str) -> Optional[TrainState]:
        with self._registry_lock:
            state = self._states.get(train_id)
            return state.copy() if state else None

    def put_state(self, state: TrainState) -> None:
        """Caller must hold the train's lock."""
        with self._registry_lock:
            self._states[state.train_id] = state
            self.last_update = utcnow()

    def snapshot_states(self) -> Dict[str, TrainState]:
        """Consistent copy of all fused states at one instant."""
        with self._registry_lock:
            return {tid: s.copy() for tid, s in self._states.items()}

    def deactivate_train(self, train_id: str, status: TrainStatus = TrainStatus.ARRIVED) -> None:
        train = self.get_train(train_id)
        with self.lock_trains([train_id]):
            train.status = status
            with self._registry_lock:
                self._states.pop(train_id, None)
                self._schedules.pop(train_id, None)
                self._delay_log.pop(train_id, None)
                self._carried_delays.pop(train_id, None)
            for station in self.stations.values():
                station.release(train_id)
        logger.info(f"Train {train_id} deactivated ({status.value})")
