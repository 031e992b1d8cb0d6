"""
Constraint repair stage.

Takes the best individual of the genetic search and removes hard-constraint
violations by right-shifting stops. The CP-SAT model is tried first; the
greedy detect-then-patch loop is the fallback. A repair never returns more
violations than it was given.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple
import logging

from ortools.sat.python import cp_model

from railtraffic.services.optimization.constraints import (
    ScheduleValidator, TrainSchedulingConstraints, occupies_platform, precedence_key
)
from railtraffic.services.optimization.models import Route, TrainSchedule, Violation

logger = logging.getLogger(__name__)


@dataclass
class RepairResult:
    schedules: Dict[str, TrainSchedule]
    violations_before: int
    violations: List[Violation] = field(default_factory=list)
    method: str = "none"
    iterations: int = 0

    @property
    def residual_conflicts(self) -> int:
        return len(self.violations)

    @property
    def feasible(self) -> bool:
        return not self.violations


def assign_platforms(schedules: Dict[str, TrainSchedule], platform_capacity: Callable[[str], int],
                     buffer_minutes: float) -> Dict[str, TrainSchedule]:
    """
    Number platforms per station by interval colouring.

    Stays are taken in arrival order and given the lowest platform free at
    arrival. A stay that finds no free platform keeps ``platform=None``.
    """
    buffer = timedelta(minutes=buffer_minutes)
    stays: Dict[str, List[Tuple[datetime, str, int]]] = {}
    for train_id, schedule in schedules.items():
        for i, entry in enumerate(schedule.entries):
            if occupies_platform(entry):
                stays.setdefault(entry.station_code, []).append((entry.arrival, train_id, i))

    assigned: Dict[Tuple[str, int], int] = {}
    for station_code, station_stays in stays.items():
        busy_until: Dict[int, datetime] = {}
        capacity = platform_capacity(station_code)
        for arrival, train_id, i in sorted(station_stays):
            free = [p for p in range(1, capacity + 1) if p not in busy_until or busy_until[p] <= arrival]
            if not free:
                logger.warning(f"No free platform at {station_code} for {train_id}")
                continue
            platform = free[0]
            busy_until[platform] = schedules[train_id].entries[i].departure + buffer
            assigned[(train_id, i)] = platform

    result = {}
    for train_id, schedule in schedules.items():
        numbered = schedule.copy()
        numbered.entries = [
            replace(entry, platform=assigned.get((train_id, i))) for i, entry in enumerate(schedule.entries)
        ]
        result[train_id] = numbered
    return result


class ScheduleRepairer:
    """Removes constraint violations from a set of schedules by right-shifting."""

    def __init__(self, validator: ScheduleValidator, routes: Optional[Dict[str, Route]] = None,
                 platform_capacity: Optional[Callable[[str], int]] = None,
                 max_iterations: int = 500, solver_time_limit_seconds: float = 5.0,
                 use_cp_sat: bool = True, seed: int = 0):
        self.validator = validator
        self.routes = routes or {}
        self.platform_capacity = platform_capacity or (lambda code: validator.default_platform_capacity)
        self.max_iterations = max_iterations
        self.solver_time_limit_seconds = solver_time_limit_seconds
        self.use_cp_sat = use_cp_sat
        self.seed = seed

    @classmethod
    def from_settings(cls, settings, routes=None, platform_capacity=None, seed: int = 0) -> "ScheduleRepairer":
        return cls(
            validator=ScheduleValidator.from_settings(settings),
            routes=routes,
            platform_capacity=platform_capacity,
            max_iterations=settings.repair_max_iterations,
            solver_time_limit_seconds=settings.repair_solver_time_limit_seconds,
            use_cp_sat=settings.use_cp_sat_repair,
            seed=seed,
        )

    def find_violations(self, schedules: Dict[str, TrainSchedule]) -> List[Violation]:
        return self.validator.find_violations(schedules, self.routes, self.platform_capacity)

    def repair(self, schedules: Dict[str, TrainSchedule]) -> RepairResult:
        """
        Repair a set of schedules.

        Args:
            schedules: Schedules keyed by train id; not modified

        Returns:
            RepairResult with the repaired copies and residual violations
        """
        violations = self.find_violations(schedules)
        before = len(violations)
        best = {tid: s.copy() for tid, s in schedules.items()}
        method = "none"
        iterations = 0

        if violations and self.use_cp_sat:
            candidate = self._solve_cp_sat(best)
            if candidate is not None:
                candidate_violations = self.find_violations(candidate)
                if len(candidate_violations) < len(violations):
                    best, violations, method = candidate, candidate_violations, "cp_sat"

        if violations:
            patched, patched_violations, iterations = self._greedy_repair(best, violations)
            if len(patched_violations) < len(violations):
                best, violations = patched, patched_violations
                method = "cp_sat+greedy" if method == "cp_sat" else "greedy"

        if before:
            logger.info(f"Repair ({method}) reduced violations from {before} to {len(violations)}")
        best = assign_platforms(best, self.platform_capacity, self.validator.platform_buffer_minutes)
        return RepairResult(
            schedules=best,
            violations_before=before,
            violations=violations,
            method=method,
            iterations=iterations,
        )

    def _solve_cp_sat(self, schedules: Dict[str, TrainSchedule]) -> Optional[Dict[str, TrainSchedule]]:
        try:
            model = cp_model.CpModel()
            constraints = TrainSchedulingConstraints(model, schedules)
            constraints.add_platform_capacity_constraints(
                self.validator.platform_buffer_minutes, self.platform_capacity
            )
            constraints.add_headway_constraints(self.validator.headway_minutes)
            if self.validator.token_system_enabled:
                constraints.add_single_line_constraints()
            if self.routes:
                constraints.add_maintenance_window_constraints(self.routes)
            constraints.set_objective()

            solver = cp_model.CpSolver()
            solver.parameters.max_time_in_seconds = self.solver_time_limit_seconds
            solver.parameters.num_workers = 1
            solver.parameters.random_seed = self.seed
            status = solver.Solve(model)
        except Exception as e:
            logger.error(f"CP-SAT repair model failed: {str(e)}")
            return None

        if status in (cp_model.OPTIMAL, cp_model.FEASIBLE):
            logger.debug(f"CP-SAT repair {solver.StatusName(status)} in {solver.WallTime():.2f}s")
            return constraints.shifted_schedules(solver)
        logger.warning(f"CP-SAT repair ended {solver.StatusName(status)}, falling back to greedy repair")
        return None

    def _greedy_repair(self, schedules: Dict[str, TrainSchedule], violations: List[Violation]):
        """Patch the earliest violation by delaying its lowest-precedence train, repeatedly."""
        current = dict(schedules)
        best, best_violations = current, violations
        iterations = 0
        while violations and iterations < self.max_iterations:
            iterations += 1
            violation = violations[0]
            train_id = self.yielding_train(violation, current)
            index, minutes, departure_only = violation.remedies[train_id]
            logger.debug(f"Patching {violation.kind.value} at {violation.location}: "
                         f"delay {train_id} by {minutes:.2f} min from stop {index}")
            current = dict(current)
            current[train_id] = current[train_id].shift_from(index, minutes, departure_only)
            violations = self.find_violations(current)
            if len(violations) < len(best_violations):
                best, best_violations = current, violations
        return best, best_violations, iterations

    @staticmethod
    def yielding_train(violation: Violation, schedules: Dict[str, TrainSchedule]) -> str:
        """The lowest-precedence train among those able to clear the violation."""
        candidates = [schedules[tid] for tid in violation.remedies if tid in schedules]
        return max(candidates, key=precedence_key).train_id
