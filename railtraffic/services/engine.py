"""
Engine wiring.

One ``RailTrafficEngine`` owns the network store, the event channels and
every core component. The API layer holds a single instance; tests build
their own.
"""

import logging
import random
from collections import deque
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Tuple

from railtraffic.core.config import Settings, settings as default_settings
from railtraffic.services.channels import EventChannel
from railtraffic.services.detection.detector import ConflictDetector
from railtraffic.services.detection.loop import DetectionLoop
from railtraffic.services.detection.models import Conflict, ConflictType
from railtraffic.services.optimization.constraints import ScheduleValidator
from railtraffic.services.optimization.models import RealTimeUpdateResult, TrainStatus, utcnow
from railtraffic.services.optimization.optimizer import TrainSchedulingOptimizer
from railtraffic.services.optimization.reconciler import RealTimeReconciler
from railtraffic.services.optimization.repair import ScheduleRepairer
from railtraffic.services.optimization.simulation import DiscreteEventSimulator
from railtraffic.services.optimization.whatif import ScenarioAnalyzer
from railtraffic.services.store import NetworkStore
from railtraffic.services.telemetry.estimator import StateEstimator
from railtraffic.services.telemetry.models import Reading, SourceKind, StationEventKind, TrainState
from railtraffic.services.telemetry.normalizer import TelemetryNormalizer

logger = logging.getLogger(__name__)

QUALITY_SAMPLE_SIZE = 500


class RailTrafficEngine:

    def __init__(self, settings: Settings = default_settings, store: Optional[NetworkStore] = None,
                 rng: Optional[random.Random] = None, clock: Callable[[], datetime] = utcnow):
        self.settings = settings
        self.store = store or NetworkStore()
        self.clock = clock

        self.state_channel: EventChannel[Dict[str, Any]] = EventChannel("state-updates", settings.channel_max_size)
        self.conflict_channel: EventChannel[Conflict] = EventChannel("conflict-alerts", settings.channel_max_size)

        self.normalizer = TelemetryNormalizer(clock)
        self.estimator = StateEstimator(self.store, self.state_channel, settings.reading_window_seconds)
        self.validator = ScheduleValidator.from_settings(settings)
        self.detector = ConflictDetector.from_settings(settings, self.store, self.conflict_channel, clock)
        self.detection_loop = DetectionLoop(self.detector, settings.detection_interval_seconds)
        self.optimizer = TrainSchedulingOptimizer(self.store, settings, rng, clock)
        self.reconciler = RealTimeReconciler(self.store, self.validator, clock)
        self.analyzer = ScenarioAnalyzer(
            self.store,
            repairer_factory=lambda: ScheduleRepairer.from_settings(
                settings, routes=self.store.routes, platform_capacity=self._capacity
            ),
            simulator_factory=lambda: DiscreteEventSimulator(
                self.validator, self.store.routes, self._capacity, settings.on_time_threshold_minutes
            ),
            timeout_seconds=settings.scenario_timeout_seconds,
            clock=clock,
        )
        self._quality: Dict[SourceKind, Deque[float]] = {
            kind: deque(maxlen=QUALITY_SAMPLE_SIZE) for kind in SourceKind
        }
        self._received: Dict[SourceKind, int] = {kind: 0 for kind in SourceKind}

    def _capacity(self, station_code: str) -> int:
        return self.store.platform_capacity(station_code, self.settings.max_platform_occupancy)

    # ------------------------------------------------------------------
    # Telemetry
    # ------------------------------------------------------------------

    def ingest(self, kind: SourceKind, raw: Mapping[str, Any]) -> Tuple[Reading, Optional[TrainState]]:
        """Normalize one raw reading and fuse it into its train's state."""
        reading = self.normalizer.normalize(kind, raw)
        self._quality[kind].append(reading.quality)
        self._received[kind] += 1
        if kind is SourceKind.STATION_EVENT:
            self._apply_station_event(reading)
        return reading, self.estimator.ingest(reading)

    def _apply_station_event(self, reading: Reading) -> None:
        station = self.store.stations.get(reading.station_code) if reading.station_code else None
        train = self.store.trains.get(reading.train_id) if reading.train_id else None
        if station is None or train is None or reading.event is None:
            return
        if reading.event is StationEventKind.ARRIVAL and station.code == train.destination and train.is_active:
            self.retire_train(train.train_id, TrainStatus.ARRIVED)
            return
        with self.store.lock_trains([train.train_id]):
            if reading.event in (StationEventKind.ARRIVAL, StationEventKind.HALT_START):
                station.occupy(train.train_id, reading.platform, reading.timestamp)
                if train.is_active:
                    train.status = TrainStatus.HALTED
            else:
                station.release(train.train_id)
                if train.is_active:
                    train.status = TrainStatus.RUNNING

    def retire_train(self, train_id: str, status: TrainStatus = TrainStatus.ARRIVED) -> None:
        """Deactivate a train whose journey completed or was cancelled and drop its fused state."""
        self.store.deactivate_train(train_id, status)
        self.estimator.forget(train_id)

    def data_quality(self) -> Dict[str, Dict[str, float]]:
        """Average quality of recent readings per source kind."""
        report = {}
        for kind in SourceKind:
            samples = list(self._quality[kind])
            report[kind.value] = {
                "readings_received": self._received[kind],
                "average_quality": round(sum(samples) / len(samples), 4) if samples else 0.0,
            }
        return report

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    def dispatch_conflict(self, conflict: Conflict) -> Optional[RealTimeUpdateResult]:
        """Hand a delay bubble-up to the reconciler for priority resequencing."""
        if conflict.conflict_type is not ConflictType.DELAY_BUBBLE_UP:
            return None
        if not self.settings.priority_resequencing_enabled:
            return None
        try:
            return self.reconciler.resolve_conflict(conflict)
        except Exception as e:
            logger.error(f"Priority resequencing for {conflict.conflict_id} failed: {str(e)}")
            return None

    def drain_events(self) -> Tuple[List[Dict[str, Any]], List[Conflict]]:
        return self.state_channel.drain(), self.conflict_channel.drain()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        loop = self.detection_loop
        return {
            "active_schedules": self.store.schedule_count,
            "last_update": self.store.last_update.isoformat() if self.store.last_update else None,
            "rolling_horizon_minutes": self.settings.rolling_horizon_minutes,
            "update_interval_minutes": self.settings.update_interval_minutes,
            "constraints": self.settings.constraint_parameters(),
            "tracked_trains": len(self.store.snapshot_states()),
            "detection": {
                "enabled": loop.enabled,
                "interval_seconds": loop.interval_seconds,
                "cycles": loop.cycles,
                "skipped": loop.skipped,
                "last_cycle_at": loop.last_cycle_at.isoformat() if loop.last_cycle_at else None,
            },
            "data_quality": self.data_quality(),
            "channels": {
                channel.name: {"pending": len(channel), "published": channel.published, "dropped": channel.dropped}
                for channel in (self.state_channel, self.conflict_channel)
            },
        }
