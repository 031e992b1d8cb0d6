"""
Telemetry normalizer.

Converts raw positional, track-occupancy and station-event payloads into
``Reading`` objects with a quality score in [0.1, 1.0]. Malformed input never
raises; it produces a low-quality reading instead.
"""

import logging
import math
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional, Tuple

from railtraffic.services.optimization.models import ensure_aware, utcnow
from railtraffic.services.telemetry.models import Reading, SourceKind, StationEventKind

logger = logging.getLogger(__name__)

QUALITY_FLOOR = 0.1
PROCEED_ASPECTS = {"GREEN"}


def _to_float(value: Any) -> Optional[float]:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    return result if math.isfinite(result) else None


def _to_int(value: Any) -> Optional[int]:
    result = _to_float(value)
    return int(result) if result is not None else None


def _to_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _first(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def parse_timestamp(value: Any, received_at: datetime) -> Tuple[datetime, bool]:
    """
    Parse an ISO string, datetime or epoch number (seconds or milliseconds).

    Returns the timestamp and whether it was usable; unusable values fall back
    to the receipt time.
    """
    if value is None:
        return received_at, True
    if isinstance(value, datetime):
        return ensure_aware(value), True
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = float(value)
        if seconds > 1e12:
            seconds /= 1000.0
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc), True
        except (OverflowError, OSError, ValueError):
            return received_at, False
    if isinstance(value, str):
        try:
            return ensure_aware(datetime.fromisoformat(value.replace("Z", "+00:00"))), True
        except ValueError:
            return received_at, False
    return received_at, False


class TelemetryNormalizer:
    """Produces normalized readings; has no side effects."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock

    def normalize(self, kind: SourceKind, raw: Mapping[str, Any]) -> Reading:
        if kind is SourceKind.POSITIONAL:
            return self.normalize_positional(raw)
        if kind is SourceKind.OCCUPANCY:
            return self.normalize_occupancy(raw)
        return self.normalize_station_event(raw)

    def normalize_positional(self, raw: Mapping[str, Any]) -> Reading:
        raw = raw if isinstance(raw, Mapping) else {}
        now = self.clock()
        timestamp, timestamp_ok = parse_timestamp(raw.get("timestamp"), now)

        lat = _to_float(_first(raw, "lat", "latitude"))
        lon = _to_float(_first(raw, "lon", "longitude"))
        if lat is not None and not -90.0 <= lat <= 90.0:
            lat = None
        if lon is not None and not -180.0 <= lon <= 180.0:
            lon = None
        accuracy = _to_float(raw.get("accuracy"))
        speed = _to_float(raw.get("speed"))
        heading = _to_float(raw.get("heading"))

        quality = 1.0
        effective_accuracy = accuracy if accuracy is not None else 3.0
        if effective_accuracy > 10:
            quality *= 0.8
        if effective_accuracy > 50:
            quality *= 0.6
        if speed is not None and speed > 200:
            quality *= 0.5
        age_seconds = (now - timestamp).total_seconds()
        if age_seconds > 30 or not timestamp_ok:
            quality *= 0.7
        if lat is None or lon is None:
            quality = QUALITY_FLOOR

        return Reading(
            source=SourceKind.POSITIONAL,
            timestamp=timestamp,
            quality=max(QUALITY_FLOOR, quality),
            train_id=_to_str(_first(raw, "train_id", "trainId")),
            latitude=lat if lon is not None else None,
            longitude=lon if lat is not None else None,
            speed=max(0.0, speed) if speed is not None else None,
            heading=(heading % 360.0) if heading is not None else None,
            accuracy=effective_accuracy,
        )

    def normalize_occupancy(self, raw: Mapping[str, Any]) -> Reading:
        raw = raw if isinstance(raw, Mapping) else {}
        timestamp, _ = parse_timestamp(raw.get("timestamp"), self.clock())

        status = _to_str(raw.get("status"))
        status = status.upper() if status else None
        occupied_flag = raw.get("occupied")
        if isinstance(occupied_flag, bool):
            occupied = occupied_flag
        else:
            occupied = status == "OCCUPIED"
        unknown = status == "UNKNOWN" or (status is None and not isinstance(occupied_flag, bool))
        signal = _to_str(raw.get("signal_state"))
        signal = signal.upper() if signal else "GREEN"
        detected = _to_str(_first(raw, "detected_train_id", "train_id", "trainId"))

        quality = 1.0
        if unknown:
            quality *= 0.3
        if occupied and signal in PROCEED_ASPECTS:
            quality *= 0.5
        if _to_str(raw.get("section_id")) is None:
            quality = QUALITY_FLOOR

        return Reading(
            source=SourceKind.OCCUPANCY,
            timestamp=timestamp,
            quality=max(QUALITY_FLOOR, quality),
            train_id=detected,
            section_id=_to_str(raw.get("section_id")),
            occupied=occupied and not unknown,
            detected_train_id=detected,
            signal_state=signal,
        )

    def normalize_station_event(self, raw: Mapping[str, Any]) -> Reading:
        raw = raw if isinstance(raw, Mapping) else {}
        timestamp, _ = parse_timestamp(raw.get("timestamp"), self.clock())

        event_text = _to_str(raw.get("event"))
        try:
            event = StationEventKind(event_text.upper()) if event_text else None
        except ValueError:
            event = None
        train_id = _to_str(_first(raw, "train_id", "trainId"))
        delay = _to_float(_first(raw, "delay", "delay_minutes"))
        reported_by = _to_str(_first(raw, "reported_by", "station_master", "stationMaster"))

        quality = 1.0
        if event is None or train_id is None:
            quality *= 0.5
        if delay is not None and delay > 480:
            quality *= 0.7
        if reported_by is None:
            quality *= 0.8

        return Reading(
            source=SourceKind.STATION_EVENT,
            timestamp=timestamp,
            quality=max(QUALITY_FLOOR, quality),
            train_id=train_id,
            station_code=_to_str(_first(raw, "station_code", "station_id", "stationId")),
            event=event,
            platform=_to_int(raw.get("platform")),
            delay_minutes=max(0.0, delay) if delay is not None else None,
            passenger_count=_to_int(_first(raw, "passenger_count", "passengers")),
            reported_by=reported_by,
        )
