"""
API routes for loading network reference data into the engine.
"""
from fastapi import APIRouter, Depends, HTTPException, status
import logging

from railtraffic.core.dependencies import get_engine
from railtraffic.core.errors import NotFoundError
from railtraffic.schemas.network import NetworkLoadRequest, NetworkSummary, TrainRetiredOut
from railtraffic.services.optimization.models import TrainStatus
from railtraffic.services.engine import RailTrafficEngine

router = APIRouter()
logger = logging.getLogger(__name__)


def _summary(engine: RailTrafficEngine) -> dict:
    store = engine.store
    return {
        "trains": len(store.trains),
        "routes": len(store.routes),
        "stations": len(store.stations),
        "sections": len(store.sections),
    }


@router.put("", response_model=NetworkSummary)
def load_network(request: NetworkLoadRequest, engine: RailTrafficEngine = Depends(get_engine)):
    """
    Load stations, routes, trains and track sections.

    Records replace existing ones with the same key. Every train must run on a
    route that is loaded, either already or in this request.
    """
    known_routes = set(engine.store.routes) | {r.route_id for r in request.routes}
    unknown = sorted({t.route_id for t in request.trains if t.route_id not in known_routes})
    if unknown:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Trains reference unknown routes: {', '.join(unknown)}"
        )
    try:
        routes = [r.to_domain() for r in request.routes]
        trains = [t.to_domain() for t in request.trains]
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    engine.store.load(
        trains=trains,
        routes=routes,
        stations=[s.to_domain() for s in request.stations],
        sections=[s.to_domain() for s in request.sections],
    )
    return _summary(engine)


@router.get("", response_model=NetworkSummary)
def get_network(engine: RailTrafficEngine = Depends(get_engine)):
    return _summary(engine)


@router.post("/trains/{train_id}/cancel", response_model=TrainRetiredOut)
def cancel_train(train_id: str, engine: RailTrafficEngine = Depends(get_engine)):
    """Cancel a train: its schedule, fused state and platform holds are released."""
    try:
        engine.retire_train(train_id, TrainStatus.CANCELLED)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    logger.info(f"Train {train_id} cancelled")
    return {"train_id": train_id, "status": TrainStatus.CANCELLED.value}
