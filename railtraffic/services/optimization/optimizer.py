"""
Main optimization engine: genetic search, constraint repair, discrete-event evaluation.
"""

from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional
import logging
import random
import time
import uuid

from railtraffic.core.config import Settings, settings as default_settings
from railtraffic.services.optimization.constraints import ScheduleValidator
from railtraffic.services.optimization.genetic import GeneticScheduler
from railtraffic.services.optimization.models import (
    OptimizationOutput, PerformanceMetrics, Route, Train, TrainSchedule, ensure_aware, utcnow
)
from railtraffic.services.optimization.repair import ScheduleRepairer
from railtraffic.services.optimization.simulation import DiscreteEventSimulator
from railtraffic.services.store import NetworkStore

logger = logging.getLogger(__name__)


class TrainSchedulingOptimizer:
    """
    Rolling-horizon schedule optimizer.

    Runs a genetic search for a low-delay timetable, repairs residual
    constraint violations with CP-SAT (greedy fallback), and evaluates the
    result with a discrete-event replay. Infeasible outcomes are returned as
    fully formed results carrying their residual conflict count.
    """

    def __init__(self, store: NetworkStore, settings: Settings = default_settings,
                 rng: Optional[random.Random] = None, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.settings = settings
        self.rng = rng or random.Random()
        self.clock = clock
        self.validator = ScheduleValidator.from_settings(settings)

    def _capacity(self, station_code: str) -> int:
        return self.store.platform_capacity(station_code, self.settings.max_platform_occupancy)

    def select_trains(self, train_ids: Optional[List[str]], horizon_start: datetime,
                      horizon_end: datetime) -> List[Train]:
        """Trains to plan: the requested ones, or every active train departing inside the horizon."""
        if train_ids:
            return [self.store.get_train(tid) for tid in dict.fromkeys(train_ids)]
        return [
            t for t in self.store.active_trains()
            if t.scheduled_departure is None or t.scheduled_departure <= horizon_end
        ]

    def optimize_schedule(self, train_ids: Optional[List[str]] = None,
                          horizon_start: Optional[datetime] = None,
                          horizon_minutes: Optional[int] = None,
                          install: bool = True) -> OptimizationOutput:
        """
        Produce a best-effort feasible timetable.

        Args:
            train_ids: Trains to schedule; all active trains in the horizon when omitted
            horizon_start: Start of the planning horizon (defaults to now)
            horizon_minutes: Horizon length (defaults to the rolling horizon setting)
            install: Store the result as the current schedules

        Returns:
            OptimizationOutput; ``feasible`` is False when conflicts remain

        Raises:
            NotFoundError: A requested train or its route is unknown
        """
        started_at = self.clock()
        start_time = time.time()
        horizon_start = ensure_aware(horizon_start) if horizon_start else started_at
        horizon_minutes = horizon_minutes or self.settings.rolling_horizon_minutes
        horizon_end = horizon_start + timedelta(minutes=horizon_minutes)

        trains = self.select_trains(train_ids, horizon_start, horizon_end)
        routes: Dict[str, Route] = {t.route_id: self.store.get_route(t.route_id) for t in trains}
        # unknown origin/destination stations fail here, before any search
        for train in trains:
            routes[train.route_id].path(train.origin, train.destination)

        if not trains:
            logger.warning("No trains to schedule in the planning horizon")
            return self._create_empty_solution(horizon_start, horizon_minutes, time.time() - start_time)

        logger.info(f"Starting optimization for {len(trains)} trains over {horizon_minutes} min horizon")

        search = GeneticScheduler.from_settings(
            self.settings, self.validator, routes, platform_capacity=self._capacity, rng=self.rng
        )
        # live delays already applied stay applied in the new timetable
        carried = {t.train_id: self.store.delays_before(t.train_id, started_at) for t in trains}
        search_result = search.evolve(trains, horizon_start, carried)

        repairer = ScheduleRepairer.from_settings(
            self.settings, routes=routes, platform_capacity=self._capacity, seed=self.rng.randrange(2 ** 31)
        )
        repaired = repairer.repair(search_result.best)
        schedules = repaired.schedules
        for schedule in schedules.values():
            schedule.total_delay_minutes = schedule.computed_delay_minutes()

        simulator = DiscreteEventSimulator(
            self.validator, routes, self._capacity, self.settings.on_time_threshold_minutes
        )
        metrics = simulator.evaluate(schedules, horizon_end)

        status = search_result.status if repaired.feasible else "INFEASIBLE"
        if not repaired.feasible:
            logger.warning(f"Optimization left {repaired.residual_conflicts} residual conflicts "
                           f"(search stopped on {search_result.status})")

        if install:
            self.store.install_schedules(
                schedules, started_at, log_retention=timedelta(minutes=self.settings.rolling_horizon_minutes)
            )

        output = OptimizationOutput(
            run_id=str(uuid.uuid4()),
            schedules=schedules,
            metrics=metrics,
            generated_at=self.clock(),
            time_horizon_minutes=horizon_minutes,
            status=status,
            feasible=repaired.feasible,
            residual_conflicts=repaired.residual_conflicts,
            computation_time=time.time() - start_time,
            generations_run=search_result.generations_run,
            best_fitness=search_result.best_fitness,
            repair_method=repaired.method,
            search_status=search_result.status,
        )
        logger.info(f"Optimization {output.status} in {output.computation_time:.2f}s: "
                    f"avg delay {metrics.average_delay_minutes:.1f} min, "
                    f"on-time {metrics.on_time_percentage:.1f}%, {output.residual_conflicts} conflicts")
        return output

    def _create_empty_solution(self, horizon_start: datetime, horizon_minutes: int,
                               computation_time: float) -> OptimizationOutput:
        """Create empty solution when no trains are in the window."""
        return OptimizationOutput(
            run_id=str(uuid.uuid4()),
            schedules={},
            metrics=PerformanceMetrics(),
            generated_at=self.clock(),
            time_horizon_minutes=horizon_minutes,
            status="NO_TRAINS",
            feasible=True,
            residual_conflicts=0,
            computation_time=computation_time,
        )

    def evaluate(self, schedules: Dict[str, TrainSchedule]) -> PerformanceMetrics:
        """Discrete-event metrics for an arbitrary set of schedules."""
        routes = {s.route_id: self.store.routes[s.route_id] for s in schedules.values()
                  if s.route_id in self.store.routes}
        simulator = DiscreteEventSimulator(
            self.validator, routes, self._capacity, self.settings.on_time_threshold_minutes
        )
        return simulator.evaluate(schedules)
