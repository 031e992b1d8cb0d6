"""
API routes for raw telemetry ingestion and fused train states.
"""
from fastapi import APIRouter, Body, Depends, HTTPException, status
from typing import Any, Dict, List
import logging

from railtraffic.core.dependencies import get_engine
from railtraffic.schemas.telemetry import IngestResponse, TrainStateOut
from railtraffic.services.engine import RailTrafficEngine
from railtraffic.services.telemetry.models import Reading, SourceKind

router = APIRouter()
logger = logging.getLogger(__name__)

_COMMON_FIELDS = ("source", "timestamp", "quality", "train_id")


def _reading_out(reading: Reading) -> Dict[str, Any]:
    data = reading.to_dict()
    payload = {k: v for k, v in data.items() if k not in _COMMON_FIELDS}
    out = {k: data[k] for k in _COMMON_FIELDS}
    out["payload"] = payload
    return out


def _ingest(engine: RailTrafficEngine, kind: SourceKind, raw: Dict[str, Any]) -> Dict[str, Any]:
    try:
        reading, state = engine.ingest(kind, raw)
    except Exception as e:
        logger.error(f"Failed to ingest {kind.value} reading: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Ingestion failed: {str(e)}"
        )
    return {
        "reading": _reading_out(reading),
        "state": state.to_dict() if state is not None else None,
    }


@router.post("/positional", response_model=IngestResponse)
def ingest_positional(raw: Dict[str, Any] = Body(...), engine: RailTrafficEngine = Depends(get_engine)):
    """
    Ingest one GPS-style positional reading.

    Malformed fields are tolerated and lower the reading's quality score.
    """
    return _ingest(engine, SourceKind.POSITIONAL, raw)


@router.post("/occupancy", response_model=IngestResponse)
def ingest_occupancy(raw: Dict[str, Any] = Body(...), engine: RailTrafficEngine = Depends(get_engine)):
    """Ingest one track-circuit occupancy reading."""
    return _ingest(engine, SourceKind.OCCUPANCY, raw)


@router.post("/station-event", response_model=IngestResponse)
def ingest_station_event(raw: Dict[str, Any] = Body(...), engine: RailTrafficEngine = Depends(get_engine)):
    """Ingest one manual station report."""
    return _ingest(engine, SourceKind.STATION_EVENT, raw)


@router.get("/states", response_model=List[TrainStateOut])
def list_states(engine: RailTrafficEngine = Depends(get_engine)):
    """Fused state of every tracked train."""
    states = engine.store.snapshot_states()
    return [states[tid].to_dict() for tid in sorted(states)]


@router.get("/states/{train_id}", response_model=TrainStateOut)
def get_state(train_id: str, engine: RailTrafficEngine = Depends(get_engine)):
    state = engine.store.get_state(train_id)
    if state is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No state for train {train_id}"
        )
    return state.to_dict()
