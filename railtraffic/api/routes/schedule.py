"""
API routes for schedule optimization, real-time updates and what-if analysis.
"""
from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.orm import Session
from typing import List, Optional
import logging
import uuid

from railtraffic.core.dependencies import get_db, get_engine
from railtraffic.core.errors import NotFoundError
from railtraffic.models.optimization_run import OptimizationRun
from railtraffic.schemas.schedule import (
    OptimizationRequest, OptimizationRunOut, RealTimeUpdateRequest, WhatIfRequest
)
from railtraffic.services.engine import RailTrafficEngine
from railtraffic.services.optimization.models import DisruptionEvent, Scenario

router = APIRouter()
logger = logging.getLogger(__name__)


def _record_run(db: Session, **fields) -> None:
    """Store one run row; a failed write is logged, never surfaced to the caller."""
    try:
        db.add(OptimizationRun(**fields))
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to record {fields.get('kind')} run {fields.get('run_id')}: {str(e)}")


@router.post("/optimize")
def optimize_schedule(
    request: OptimizationRequest,
    db: Session = Depends(get_db),
    engine: RailTrafficEngine = Depends(get_engine)
):
    """
    Optimize train schedules over the rolling horizon.

    Args:
        request: Trains and horizon to plan
        db: Database session
        engine: Rail traffic engine

    Returns:
        Optimized schedules with performance metrics
    """
    logger.info(f"Received optimization request for {len(request.train_ids or [])} named trains")
    try:
        output = engine.optimizer.optimize_schedule(
            train_ids=request.train_ids,
            horizon_start=request.horizon_start,
            horizon_minutes=request.horizon_minutes,
        )
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        logger.error(f"Optimization failed: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Optimization failed: {str(e)}"
        )

    _record_run(
        db,
        run_id=output.run_id,
        kind="OPTIMIZATION",
        status=output.status,
        feasible=output.feasible,
        train_count=output.metrics.trains,
        average_delay=output.metrics.average_delay_minutes,
        on_time_percentage=output.metrics.on_time_percentage,
        conflict_count=output.residual_conflicts,
        computation_time=output.computation_time,
    )
    return output.to_dict()


@router.post("/realtime-update")
def realtime_update(
    request: RealTimeUpdateRequest,
    db: Session = Depends(get_db),
    engine: RailTrafficEngine = Depends(get_engine)
):
    """
    Apply a live delay report and locally repair the trains it now conflicts with.
    """
    logger.info(f"Real-time update for train {request.train_id}: +{request.delay_minutes} min")
    try:
        result = engine.reconciler.apply_delay(
            request.train_id,
            request.delay_minutes,
            current_position=request.current_position,
            affected_trains=request.affected_trains,
        )
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        logger.error(f"Real-time update failed: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Real-time update failed: {str(e)}"
        )

    _record_run(
        db,
        run_id=str(uuid.uuid4()),
        kind="REALTIME_UPDATE",
        status=result.status,
        feasible=result.feasible,
        train_count=1 + len(result.affected_schedules),
        average_delay=result.updated_schedule.total_delay_minutes,
        on_time_percentage=0.0,
        conflict_count=result.residual_conflicts,
        computation_time=result.processing_time_ms / 1000.0,
    )
    return result.to_dict()


@router.post("/whatif")
def what_if_analysis(
    request: WhatIfRequest,
    db: Session = Depends(get_db),
    engine: RailTrafficEngine = Depends(get_engine)
):
    """
    Evaluate hypothetical disruptions against the current schedules.

    The analysis is time-boxed; on expiry the response has status TIMEOUT.
    """
    scenarios = [
        Scenario(
            scenario_id=s.scenario_id or str(uuid.uuid4()),
            name=s.name,
            description=s.description,
            disruption=DisruptionEvent(
                event_type=s.disruption.event_type,
                affected_trains=s.disruption.affected_trains,
                delay_minutes=s.disruption.delay_minutes,
                start_time=s.disruption.start_time,
                duration_minutes=s.disruption.duration_minutes,
                description=s.disruption.description,
            ),
        )
        for s in request.scenarios
    ]
    logger.info(f"What-if analysis requested for {len(scenarios)} scenarios")
    try:
        analysis = engine.analyzer.analyze(scenarios, timeout_seconds=request.timeout_seconds)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        logger.error(f"What-if analysis failed: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"What-if analysis failed: {str(e)}"
        )

    best = next((o for o in analysis.outcomes if o.scenario_id == analysis.best_scenario), None)
    _record_run(
        db,
        run_id=analysis.analysis_id,
        kind="WHAT_IF",
        status=analysis.status,
        feasible=best.feasible if best else False,
        train_count=best.metrics.trains if best else 0,
        average_delay=best.metrics.average_delay_minutes if best else 0.0,
        on_time_percentage=best.metrics.on_time_percentage if best else 0.0,
        conflict_count=best.residual_conflicts if best else 0,
        computation_time=analysis.computation_time,
    )
    return analysis.to_dict()


@router.get("/current")
def get_current_schedules(engine: RailTrafficEngine = Depends(get_engine)):
    """Current schedules with their evaluated metrics."""
    schedules = engine.store.snapshot_schedules()
    metrics = engine.optimizer.evaluate(schedules)
    return {
        "schedules": {tid: schedules[tid].to_dict() for tid in sorted(schedules)},
        "metrics": metrics.to_dict(),
        "last_update": engine.store.last_update.isoformat() if engine.store.last_update else None,
    }


@router.get("/runs", response_model=List[OptimizationRunOut])
def list_runs(
    kind: Optional[str] = Query(None, description="Filter by OPTIMIZATION, REALTIME_UPDATE or WHAT_IF"),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db)
):
    """Most recent runs first."""
    query = db.query(OptimizationRun)
    if kind:
        query = query.filter(OptimizationRun.kind == kind.upper())
    return query.order_by(OptimizationRun.created_at.desc(), OptimizationRun.id.desc()).limit(limit).all()
