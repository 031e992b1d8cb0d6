"""
What-if scenario analysis.

Applies hypothetical disruptions to copies of the current schedules, repairs
and evaluates each, and compares the outcome with the undisturbed baseline.
The whole analysis is time-boxed and reports TIMEOUT instead of hanging.
"""

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import logging
import threading
import time
import uuid

from railtraffic.core.errors import NotFoundError, ScenarioTimeoutError
from railtraffic.services.optimization.models import (
    DisruptionEvent, PerformanceMetrics, Scenario, TrainSchedule, ensure_aware, utcnow
)
from railtraffic.services.optimization.repair import ScheduleRepairer
from railtraffic.services.optimization.simulation import DiscreteEventSimulator
from railtraffic.services.store import NetworkStore

logger = logging.getLogger(__name__)

DISRUPTION_TYPES = ("delay", "cancellation", "emergency")


@dataclass
class ScenarioOutcome:
    scenario_id: str
    name: str
    metrics: PerformanceMetrics
    impact: Dict[str, float]
    feasible: bool
    residual_conflicts: int
    recommendation: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scenario_id": self.scenario_id,
            "name": self.name,
            "metrics": self.metrics.to_dict(),
            "impact": {k: round(v, 2) for k, v in self.impact.items()},
            "feasible": self.feasible,
            "residual_conflicts": self.residual_conflicts,
            "recommendation": self.recommendation,
        }


@dataclass
class ScenarioAnalysis:
    analysis_id: str
    status: str  # COMPLETED, TIMEOUT
    baseline: Optional[PerformanceMetrics] = None
    outcomes: List[ScenarioOutcome] = field(default_factory=list)
    best_scenario: Optional[str] = None
    computation_time: float = 0.0
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "analysis_id": self.analysis_id,
            "status": self.status,
            "baseline": self.baseline.to_dict() if self.baseline else None,
            "scenarios": [o.to_dict() for o in self.outcomes],
            "best_scenario": self.best_scenario,
            "computation_time": round(self.computation_time, 4),
            "message": self.message,
        }


class ScenarioAnalyzer:

    def __init__(self, store: NetworkStore, repairer_factory: Callable[[], ScheduleRepairer],
                 simulator_factory: Callable[[], DiscreteEventSimulator],
                 timeout_seconds: float = 30.0, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.repairer_factory = repairer_factory
        self.simulator_factory = simulator_factory
        self.timeout_seconds = timeout_seconds
        self.clock = clock

    def analyze(self, scenarios: List[Scenario], timeout_seconds: Optional[float] = None) -> ScenarioAnalysis:
        """
        Evaluate scenarios against the current schedules within the time box.

        Args:
            scenarios: Scenarios to evaluate
            timeout_seconds: Overrides the configured time box

        Returns:
            ScenarioAnalysis with status COMPLETED, or TIMEOUT when the box expires

        Raises:
            NotFoundError: A scenario names a train without a schedule
            ValueError: Unknown disruption type
        """
        analysis_id = str(uuid.uuid4())
        timeout = self.timeout_seconds if timeout_seconds is None else timeout_seconds
        started = time.time()
        try:
            return self._run_with_timeout(analysis_id, scenarios, timeout)
        except ScenarioTimeoutError as e:
            logger.warning(f"What-if analysis {analysis_id} timed out: {str(e)}")
            return ScenarioAnalysis(
                analysis_id=analysis_id,
                status="TIMEOUT",
                computation_time=time.time() - started,
                message=str(e),
            )

    def _run_with_timeout(self, analysis_id: str, scenarios: List[Scenario], timeout: float) -> ScenarioAnalysis:
        cancelled = threading.Event()
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="whatif")
        future = executor.submit(self._analyze, analysis_id, scenarios, cancelled)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            cancelled.set()
            raise ScenarioTimeoutError(timeout)
        finally:
            executor.shutdown(wait=False)

    def _analyze(self, analysis_id: str, scenarios: List[Scenario], cancelled: threading.Event) -> ScenarioAnalysis:
        started = time.time()
        logger.info(f"Running what-if analysis {analysis_id} over {len(scenarios)} scenarios")
        simulator = self.simulator_factory()
        baseline_schedules = self.store.snapshot_schedules()
        baseline = simulator.evaluate(baseline_schedules)

        outcomes = []
        for scenario in scenarios:
            if cancelled.is_set():
                break
            modified = self.apply_disruption(baseline_schedules, scenario.disruption)
            repaired = self.repairer_factory().repair(modified)
            metrics = simulator.evaluate(repaired.schedules)
            impact = {
                "delta_average_delay_minutes": metrics.average_delay_minutes - baseline.average_delay_minutes,
                "delta_on_time_percentage": metrics.on_time_percentage - baseline.on_time_percentage,
                "delta_conflicts": float(metrics.conflict_count - baseline.conflict_count),
                "delta_total_delay_minutes": metrics.total_delay_minutes - baseline.total_delay_minutes,
            }
            outcomes.append(ScenarioOutcome(
                scenario_id=scenario.scenario_id,
                name=scenario.name,
                metrics=metrics,
                impact=impact,
                feasible=repaired.feasible,
                residual_conflicts=repaired.residual_conflicts,
                recommendation=self._recommend(repaired.feasible, impact),
            ))

        best = min(
            outcomes,
            key=lambda o: (not o.feasible, o.metrics.average_delay_minutes, o.metrics.conflict_count),
            default=None,
        )
        return ScenarioAnalysis(
            analysis_id=analysis_id,
            status="COMPLETED",
            baseline=baseline,
            outcomes=outcomes,
            best_scenario=best.scenario_id if best else None,
            computation_time=time.time() - started,
        )

    def apply_disruption(self, schedules: Dict[str, TrainSchedule],
                         disruption: DisruptionEvent) -> Dict[str, TrainSchedule]:
        """Apply a disruption to copies of the schedules."""
        if disruption.event_type not in DISRUPTION_TYPES:
            raise ValueError(f"Unknown disruption type {disruption.event_type}")
        for train_id in disruption.affected_trains:
            if train_id not in schedules:
                raise NotFoundError("Schedule", train_id)

        at = ensure_aware(disruption.start_time) if disruption.start_time else self.clock()
        modified = {tid: s.copy() for tid, s in schedules.items()}
        for train_id in disruption.affected_trains:
            if disruption.event_type == "cancellation":
                modified.pop(train_id, None)
                continue
            minutes = disruption.delay_minutes
            if disruption.event_type == "emergency":
                minutes = max(disruption.delay_minutes, disruption.duration_minutes)
            schedule = modified[train_id]
            index = schedule.first_remaining_index(at)
            shifted = schedule.shift_from(index, minutes)
            shifted.total_delay_minutes = schedule.total_delay_minutes + minutes
            modified[train_id] = shifted
        return modified

    @staticmethod
    def _recommend(feasible: bool, impact: Dict[str, float]) -> str:
        if not feasible:
            return "Residual conflicts remain: resequence manually before accepting this scenario"
        delta = impact["delta_average_delay_minutes"]
        if delta <= 1:
            return "Minimal impact: absorb with local repair"
        if delta <= 10:
            return "Moderate impact: re-run the rolling-horizon optimization"
        return "Severe impact: re-optimize and notify affected stations"
