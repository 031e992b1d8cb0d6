"""
State estimator.

Fuses the sliding window of normalized readings of each train into a single
position/velocity estimate using scalar Kalman-style updates. The estimate is
recomputed from the last committed filter state plus the timestamp-sorted
window, so readings delivered out of order fuse to the same result as readings
delivered in order.
"""

import bisect
import logging
import math
import threading
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Dict, List, Optional

from railtraffic.services.channels import EventChannel
from railtraffic.services.store import NetworkStore
from railtraffic.services.telemetry.models import Reading, SourceKind, StationEventKind, TrainState

logger = logging.getLogger(__name__)

INITIAL_POSITION_VARIANCE = 10.0
INITIAL_VELOCITY_VARIANCE = 5.0
MAX_POSITION_VARIANCE = 100.0
MAX_VELOCITY_VARIANCE = 50.0

# per second of elapsed time
PROCESS_NOISE = {"position": 0.1, "velocity": 0.5}

MEASUREMENT_NOISE = {
    SourceKind.POSITIONAL: 3.0,
    SourceKind.OCCUPANCY: 50.0,
    SourceKind.STATION_EVENT: 100.0,
}

KM_PER_DEGREE = 111.32


def kalman_gain(variance: float, measurement_noise: float) -> float:
    return variance / (variance + measurement_noise)


def confidence_from(position_variance: float, velocity_variance: float) -> float:
    position_confidence = 1.0 - min(position_variance / MAX_POSITION_VARIANCE, 1.0)
    velocity_confidence = 1.0 - min(velocity_variance / MAX_VELOCITY_VARIANCE, 1.0)
    return min(1.0, max(0.0, (position_confidence + velocity_confidence) / 2.0))


def _reading_key(reading: Reading):
    return (reading.timestamp, reading.source.value, repr(reading))


@dataclass
class _Filter:
    latitude: float
    longitude: float
    speed: float
    heading: float
    position_variance: float
    velocity_variance: float
    timestamp: object
    delay_minutes: float = 0.0
    current_station: Optional[str] = None
    readings: int = 0


@dataclass
class _Track:
    committed: Optional[_Filter] = None
    window: List[Reading] = field(default_factory=list)
    newest: object = None


class StateEstimator:
    """Maintains one fusion track per train and publishes every fused state."""

    def __init__(self, store: NetworkStore, channel: Optional[EventChannel] = None,
                 window_seconds: int = 300):
        self.store = store
        self.channel = channel
        self.window = timedelta(seconds=window_seconds)
        self._tracks: Dict[str, _Track] = {}
        self._tracks_lock = threading.Lock()

    def _track(self, train_id: str) -> _Track:
        with self._tracks_lock:
            track = self._tracks.get(train_id)
            if track is None:
                track = _Track()
                self._tracks[train_id] = track
            return track

    def forget(self, train_id: str) -> None:
        with self._tracks_lock:
            self._tracks.pop(train_id, None)

    def ingest(self, reading: Reading) -> Optional[TrainState]:
        """Add one reading to its train's window and re-fuse. Never raises."""
        if not reading.train_id:
            logger.debug(f"Dropping {reading.source.value} reading without train identity")
            return None
        return self.ingest_batch(reading.train_id, [reading])

    def ingest_batch(self, train_id: str, readings: List[Reading]) -> Optional[TrainState]:
        with self.store.train_lock(train_id):
            train = self.store.trains.get(train_id)
            if train is not None and not train.is_active:
                logger.debug(f"Ignoring reading for retired train {train_id}")
                return None
            track = self._track(train_id)
            for reading in readings:
                self._admit(train_id, track, reading)
            if track.committed is None and not track.window:
                return self.store.get_state(train_id)

            cutoff = track.newest - self.window
            while track.window and track.window[0].timestamp < cutoff:
                aged = track.window.pop(0)
                track.committed = self._apply(train_id, track.committed, aged)

            fused = track.committed
            for reading in track.window:
                fused = self._apply(train_id, fused, reading)
            if fused is None:
                logger.debug(f"No position fix for {train_id} yet, holding {len(track.window)} readings")
                return None

            qualities = [r.quality for r in track.window]
            state = TrainState(
                train_id=train_id,
                latitude=fused.latitude,
                longitude=fused.longitude,
                speed=fused.speed,
                heading=fused.heading,
                confidence=confidence_from(fused.position_variance, fused.velocity_variance),
                timestamp=fused.timestamp,
                position_variance=fused.position_variance,
                velocity_variance=fused.velocity_variance,
                delay_minutes=fused.delay_minutes,
                current_station=fused.current_station,
                data_quality=sum(qualities) / len(qualities) if qualities else 0.0,
                readings_fused=fused.readings,
            )
            self.store.put_state(state)

        logger.debug(f"Fused state for {train_id}: confidence={state.confidence:.3f}")
        if self.channel is not None:
            self.channel.publish(state.to_update_event())
        return state

    def _admit(self, train_id: str, track: _Track, reading: Reading) -> None:
        committed_until = track.committed.timestamp if track.committed else None
        newest = reading.timestamp if track.newest is None else max(track.newest, reading.timestamp)
        if reading.timestamp < newest - self.window or (
                committed_until is not None and reading.timestamp < committed_until):
            logger.warning(f"Discarding stale {reading.source.value} reading for {train_id} "
                           f"at {reading.timestamp.isoformat()}")
            return
        track.newest = newest
        keys = [_reading_key(r) for r in track.window]
        track.window.insert(bisect.bisect_right(keys, _reading_key(reading)), reading)

    # ------------------------------------------------------------------
    # Filter steps
    # ------------------------------------------------------------------

    def _seed(self, reading: Reading) -> Optional[_Filter]:
        reference = self._reference_position(reading)
        if reference is None:
            return None
        lat, lon = reference
        return _Filter(
            latitude=lat,
            longitude=lon,
            speed=reading.speed or 0.0,
            heading=reading.heading or 0.0,
            position_variance=INITIAL_POSITION_VARIANCE,
            velocity_variance=INITIAL_VELOCITY_VARIANCE,
            timestamp=reading.timestamp,
        )

    def _reference_position(self, reading: Reading):
        if reading.source is SourceKind.POSITIONAL and reading.has_position:
            return reading.latitude, reading.longitude
        if reading.source is SourceKind.OCCUPANCY and reading.section_id in self.store.sections:
            section = self.store.sections[reading.section_id]
            return section.latitude, section.longitude
        if reading.source is SourceKind.STATION_EVENT and reading.station_code in self.store.stations:
            station = self.store.stations[reading.station_code]
            return station.latitude, station.longitude
        return None

    def _predict(self, state: _Filter, reading: Reading) -> _Filter:
        dt = max(0.0, (reading.timestamp - state.timestamp).total_seconds())
        if dt == 0:
            return state
        distance_km = state.speed * dt / 3600.0
        heading = math.radians(state.heading)
        dlat = distance_km * math.cos(heading) / KM_PER_DEGREE
        cos_lat = max(0.01, math.cos(math.radians(state.latitude)))
        dlon = distance_km * math.sin(heading) / (KM_PER_DEGREE * cos_lat)
        return replace(
            state,
            latitude=state.latitude + dlat,
            longitude=state.longitude + dlon,
            position_variance=min(MAX_POSITION_VARIANCE, state.position_variance + PROCESS_NOISE["position"] * dt),
            velocity_variance=min(MAX_VELOCITY_VARIANCE, state.velocity_variance + PROCESS_NOISE["velocity"] * dt),
            timestamp=reading.timestamp,
        )

    def _apply(self, train_id: str, state: Optional[_Filter], reading: Reading) -> Optional[_Filter]:
        # a track starts at its first reading that can be placed on the network
        state = self._seed(reading) if state is None else self._predict(state, reading)
        if state is None:
            return None
        noise = MEASUREMENT_NOISE[reading.source] / max(reading.quality, 0.1)

        if reading.source is SourceKind.POSITIONAL:
            state = self._update_positional(state, reading, noise)
        elif reading.source is SourceKind.OCCUPANCY:
            state = self._update_occupancy(train_id, state, reading, noise)
        else:
            state = self._update_station_event(state, reading, noise)
        return replace(state, readings=state.readings + 1)

    def _correct_position(self, state: _Filter, lat: float, lon: float, noise: float) -> _Filter:
        gain = kalman_gain(state.position_variance, noise)
        return replace(
            state,
            latitude=state.latitude + gain * (lat - state.latitude),
            longitude=state.longitude + gain * (lon - state.longitude),
            position_variance=(1.0 - gain) * state.position_variance,
        )

    def _update_positional(self, state: _Filter, reading: Reading, noise: float) -> _Filter:
        if reading.has_position:
            state = self._correct_position(state, reading.latitude, reading.longitude, noise)
        if reading.speed is None and reading.heading is None:
            return state
        speed = reading.speed if reading.speed is not None else state.speed
        heading = reading.heading if reading.heading is not None else state.heading
        gain = kalman_gain(state.velocity_variance, noise)
        turn = ((heading - state.heading + 180.0) % 360.0) - 180.0
        return replace(
            state,
            speed=state.speed + gain * (speed - state.speed),
            heading=(state.heading + gain * turn) % 360.0,
            velocity_variance=(1.0 - gain) * state.velocity_variance,
        )

    def _update_occupancy(self, train_id: str, state: _Filter, reading: Reading, noise: float) -> _Filter:
        if not reading.occupied or reading.detected_train_id != train_id:
            return state
        section = self.store.sections.get(reading.section_id)
        if section is None:
            return state
        return self._correct_position(state, section.latitude, section.longitude, noise)

    def _update_station_event(self, state: _Filter, reading: Reading, noise: float) -> _Filter:
        station = self.store.stations.get(reading.station_code)
        if station is not None:
            state = self._correct_position(state, station.latitude, station.longitude, noise)
        if reading.event in (StationEventKind.ARRIVAL, StationEventKind.DEPARTURE):
            state = replace(state, speed=0.0)
        if reading.event in (StationEventKind.ARRIVAL, StationEventKind.HALT_START):
            state = replace(state, current_station=reading.station_code)
        elif reading.event in (StationEventKind.DEPARTURE, StationEventKind.HALT_END):
            state = replace(state, current_station=None)
        if reading.delay_minutes is not None:
            state = replace(state, delay_minutes=reading.delay_minutes)
        return state
