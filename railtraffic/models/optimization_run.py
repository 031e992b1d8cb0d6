"""
Optimization run database model.
"""

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String

from railtraffic.db.base import Base
from railtraffic.services.optimization.models import utcnow


class OptimizationRun(Base):
    """
    One optimization, reconciliation or scenario analysis.

    Attributes:
        run_id: Engine-assigned run identifier
        kind: OPTIMIZATION, REALTIME_UPDATE or WHAT_IF
        status: Outcome status reported by the engine
        feasible: Whether the resulting schedules are conflict-free
        train_count: Trains covered by the run
        average_delay: Average delay in minutes
        on_time_percentage: Share of trains within the on-time threshold
        conflict_count: Residual conflicts
        computation_time: Wall time in seconds
    """

    __tablename__ = "optimization_runs"

    id = Column(Integer, primary_key=True, index=True)
    run_id = Column(String(64), unique=True, index=True, nullable=False)
    kind = Column(String(32), nullable=False, index=True)
    status = Column(String(32), nullable=False)
    feasible = Column(Boolean, default=True)
    train_count = Column(Integer, default=0)
    average_delay = Column(Float, default=0.0)
    on_time_percentage = Column(Float, default=0.0)
    conflict_count = Column(Integer, default=0)
    computation_time = Column(Float, default=0.0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self):
        return f"<OptimizationRun(run_id='{self.run_id}', kind='{self.kind}', status='{self.status}')>"
