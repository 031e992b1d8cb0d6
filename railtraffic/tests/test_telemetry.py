"""
Tests for telemetry normalization and state estimation.
"""
import pytest
from datetime import timedelta

from railtraffic.services.channels import EventChannel
from railtraffic.services.detection.detector import ConflictDetector
from railtraffic.services.store import NetworkStore
from railtraffic.services.telemetry.estimator import StateEstimator, confidence_from
from railtraffic.services.telemetry.models import SourceKind, StationEventKind
from railtraffic.services.telemetry.normalizer import TelemetryNormalizer, parse_timestamp


@pytest.fixture
def normalizer(now):
    return TelemetryNormalizer(clock=lambda: now)


class TestNormalizer:
    """Test cases for raw reading normalization."""

    def test_clean_positional_reading_has_full_quality(self, normalizer, now):
        reading = normalizer.normalize_positional({
            "train_id": "12001", "lat": 28.5, "lon": 77.1, "speed": 80,
            "heading": 370, "accuracy": 3, "timestamp": now.isoformat(),
        })
        assert reading.quality == pytest.approx(1.0)
        assert reading.heading == pytest.approx(10.0)
        assert reading.timestamp == now

    @pytest.mark.parametrize("extra, expected", [
        ({"accuracy": 20}, 0.8),
        ({"accuracy": 60}, 0.8 * 0.6),
        ({"speed": 250}, 0.5),
    ])
    def test_positional_quality_penalties(self, normalizer, now, extra, expected):
        raw = {"train_id": "12001", "lat": 28.5, "lon": 77.1, "speed": 80, "timestamp": now.isoformat()}
        raw.update(extra)
        assert normalizer.normalize_positional(raw).quality == pytest.approx(expected)

    def test_stale_and_unparseable_timestamps_reduce_quality(self, normalizer, now):
        old = normalizer.normalize_positional({
            "train_id": "12001", "lat": 28.5, "lon": 77.1,
            "timestamp": (now - timedelta(seconds=60)).isoformat(),
        })
        garbled = normalizer.normalize_positional({
            "train_id": "12001", "lat": 28.5, "lon": 77.1, "timestamp": "yesterday-ish",
        })
        assert old.quality == pytest.approx(0.7)
        assert garbled.quality == pytest.approx(0.7)
        assert garbled.timestamp == now

    def test_missing_coordinates_floor_quality(self, normalizer):
        reading = normalizer.normalize_positional({"train_id": "12001", "lat": "north", "speed": 50})
        assert reading.quality == pytest.approx(0.1)
        assert not reading.has_position

    def test_missing_kinematics_stay_unknown(self, normalizer, now):
        reading = normalizer.normalize_positional({
            "train_id": "12001", "lat": 28.5, "lon": 77.1, "timestamp": now.isoformat(),
        })
        assert reading.quality == pytest.approx(1.0)
        assert reading.speed is None
        assert reading.heading is None

    def test_malformed_payload_never_raises(self, normalizer):
        for kind in SourceKind:
            reading = normalizer.normalize(kind, ["not", "a", "mapping"])
            assert 0.1 <= reading.quality <= 1.0

    def test_occupancy_quality(self, normalizer):
        unknown = normalizer.normalize_occupancy({"section_id": "TC-1", "status": "UNKNOWN"})
        contradictory = normalizer.normalize_occupancy({
            "section_id": "TC-1", "status": "OCCUPIED", "signal_state": "GREEN", "train_id": "12001",
        })
        clear = normalizer.normalize_occupancy({
            "section_id": "TC-1", "status": "OCCUPIED", "signal_state": "RED", "train_id": "12001",
        })
        unnamed = normalizer.normalize_occupancy({"status": "OCCUPIED", "signal_state": "RED"})

        assert unknown.quality == pytest.approx(0.3)
        assert unknown.occupied is False
        assert contradictory.quality == pytest.approx(0.5)
        assert clear.quality == pytest.approx(1.0)
        assert clear.detected_train_id == "12001"
        assert unnamed.quality == pytest.approx(0.1)

    def test_station_event_quality(self, normalizer):
        complete = normalizer.normalize_station_event({
            "train_id": "12001", "station_code": "GZB", "event": "arrival",
            "platform": 2, "delay": 12, "reported_by": "SM-GZB",
        })
        unattributed = normalizer.normalize_station_event({
            "train_id": "12001", "station_code": "GZB", "event": "ARRIVAL",
        })
        vague = normalizer.normalize_station_event({"event": "teleport", "reported_by": "SM-GZB"})
        implausible = normalizer.normalize_station_event({
            "train_id": "12001", "station_code": "GZB", "event": "DEPARTURE",
            "delay": 600, "reported_by": "SM-GZB",
        })

        assert complete.quality == pytest.approx(1.0)
        assert complete.event is StationEventKind.ARRIVAL
        assert complete.delay_minutes == 12
        assert unattributed.quality == pytest.approx(0.8)
        assert vague.quality == pytest.approx(0.5)
        assert vague.event is None
        assert implausible.quality == pytest.approx(0.7)

    def test_epoch_milliseconds_are_parsed(self, now):
        parsed, ok = parse_timestamp(now.timestamp() * 1000, now)
        assert ok
        assert parsed == now


class TestStateEstimator:
    """Test cases for multi-source fusion."""

    def _readings(self, normalizer, now):
        return [
            normalizer.normalize_positional({
                "train_id": "12001", "lat": 28.10 + 0.01 * i, "lon": 77.0, "speed": 90 + i,
                "heading": 0, "accuracy": 5, "timestamp": (now + timedelta(seconds=10 * i)).isoformat(),
            })
            for i in range(4)
        ]

    def test_confidence_bounds(self):
        assert confidence_from(0.0, 0.0) == 1.0
        assert confidence_from(1000.0, 1000.0) == 0.0
        assert 0.0 <= confidence_from(50.0, 10.0) <= 1.0

    def test_out_of_order_delivery_fuses_to_same_state(self, store, normalizer, now):
        readings = self._readings(normalizer, now)
        in_order = StateEstimator(NetworkStore())
        shuffled = StateEstimator(NetworkStore())

        for reading in readings:
            expected = in_order.ingest(reading)
        for reading in [readings[2], readings[0], readings[3], readings[1]]:
            actual = shuffled.ingest(reading)

        assert actual.latitude == pytest.approx(expected.latitude)
        assert actual.longitude == pytest.approx(expected.longitude)
        assert actual.speed == pytest.approx(expected.speed)
        assert actual.confidence == pytest.approx(expected.confidence)
        assert actual.readings_fused == expected.readings_fused == 4

    def test_state_tracks_positional_readings(self, store, normalizer, now):
        estimator = StateEstimator(store)
        for reading in self._readings(normalizer, now):
            state = estimator.ingest(reading)

        assert 28.10 <= state.latitude <= 28.13
        assert 0.0 <= state.confidence <= 1.0
        assert state.confidence > 0.5
        assert store.get_state("12001").timestamp == now + timedelta(seconds=30)

    def test_reading_without_train_is_dropped(self, store, normalizer):
        estimator = StateEstimator(store)
        assert estimator.ingest(normalizer.normalize_positional({"lat": 28.1, "lon": 77.0})) is None
        assert store.snapshot_states() == {}

    def test_readings_without_position_create_no_state(self, store, normalizer, now):
        estimator = StateEstimator(store)
        for train_id in ("12001", "22002"):
            state = estimator.ingest(normalizer.normalize_positional({
                "train_id": train_id, "speed": 80, "timestamp": now.isoformat(),
            }))
            assert state is None
        estimator.ingest(normalizer.normalize_station_event({
            "train_id": "50003", "station_code": "XYZ", "event": "ARRIVAL", "timestamp": now.isoformat(),
        }))

        assert store.snapshot_states() == {}
        assert ConflictDetector(store, clock=lambda: now).detect() == []

    def test_track_starts_at_first_placed_reading(self, store, normalizer, now):
        estimator = StateEstimator(store)
        estimator.ingest(normalizer.normalize_positional({
            "train_id": "12001", "speed": 80, "timestamp": now.isoformat(),
        }))
        state = estimator.ingest(normalizer.normalize_positional({
            "train_id": "12001", "lat": 28.2, "lon": 77.0, "speed": 80,
            "timestamp": (now + timedelta(seconds=10)).isoformat(),
        }))

        assert state.readings_fused == 1
        assert state.latitude == pytest.approx(28.2)

    def test_missing_speed_keeps_velocity_estimate(self, store, normalizer, now):
        estimator = StateEstimator(store)
        for i in range(5):
            before = estimator.ingest(normalizer.normalize_positional({
                "train_id": "12001", "lat": 28.1 + 0.003 * i, "lon": 77.0, "speed": 100, "heading": 0,
                "timestamp": (now + timedelta(seconds=10 * i)).isoformat(),
            }))
        after = estimator.ingest(normalizer.normalize_positional({
            "train_id": "12001", "lat": 28.115, "lon": 77.0,
            "timestamp": (now + timedelta(seconds=50)).isoformat(),
        }))

        assert before.speed == pytest.approx(100.0)
        assert after.speed == pytest.approx(before.speed)
        assert after.heading == pytest.approx(before.heading)

    def test_retired_train_readings_are_ignored(self, store, normalizer, now):
        estimator = StateEstimator(store)
        store.deactivate_train("12001")

        state = estimator.ingest(normalizer.normalize_positional({
            "train_id": "12001", "lat": 28.2, "lon": 77.0, "timestamp": now.isoformat(),
        }))

        assert state is None
        assert store.snapshot_states() == {}

    def test_reading_older_than_window_is_discarded(self, store, normalizer, now):
        estimator = StateEstimator(store, window_seconds=300)
        fresh = normalizer.normalize_positional({
            "train_id": "12001", "lat": 28.2, "lon": 77.0,
            "timestamp": (now + timedelta(seconds=400)).isoformat(),
        })
        stale = normalizer.normalize_positional({
            "train_id": "12001", "lat": 28.9, "lon": 77.0, "timestamp": now.isoformat(),
        })
        estimator.ingest(fresh)
        state = estimator.ingest(stale)

        assert state.readings_fused == 1
        assert state.latitude == pytest.approx(28.2)

    def test_station_arrival_sets_station_and_delay(self, store, normalizer, stations, now):
        estimator = StateEstimator(store)
        state = estimator.ingest(normalizer.normalize_station_event({
            "train_id": "22002", "station_code": "GZB", "event": "ARRIVAL", "delay": 7,
            "reported_by": "SM-GZB", "timestamp": now.isoformat(),
        }))
        gzb = next(s for s in stations if s.code == "GZB")

        assert state.current_station == "GZB"
        assert state.speed == 0.0
        assert state.delay_minutes == 7
        assert state.latitude == pytest.approx(gzb.latitude)

    def test_occupancy_reading_pulls_towards_section(self, store, normalizer, now):
        estimator = StateEstimator(store)
        estimator.ingest(normalizer.normalize_positional({
            "train_id": "12001", "lat": 28.30, "lon": 77.0, "timestamp": now.isoformat(),
        }))
        before = store.get_state("12001")
        after = estimator.ingest(normalizer.normalize_occupancy({
            "section_id": "TC-GZB-1", "status": "OCCUPIED", "signal_state": "RED",
            "train_id": "12001", "timestamp": (now + timedelta(seconds=5)).isoformat(),
        }))
        section = store.sections["TC-GZB-1"]

        assert abs(after.latitude - section.latitude) < abs(before.latitude - section.latitude)

    def test_every_fusion_publishes_update_event(self, store, normalizer, now):
        channel = EventChannel("state-updates", 10)
        estimator = StateEstimator(store, channel)
        for reading in self._readings(normalizer, now):
            estimator.ingest(reading)

        events = channel.drain()
        assert len(events) == 4
        assert set(events[-1]) == {"train_id", "position", "speed", "heading", "confidence", "timestamp"}


class TestEventChannel:

    def test_overflow_drops_oldest(self):
        channel = EventChannel("test", max_size=2)
        for i in range(3):
            channel.publish(i)

        assert channel.dropped == 1
        assert channel.published == 3
        assert channel.drain() == [1, 2]
        assert len(channel) == 0
