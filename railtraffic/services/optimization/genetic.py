"""
Genetic search over whole-network timetables.

An individual maps every train id to one ``TrainSchedule``. Fitness is the
priority-weighted delay plus a heavy penalty per constraint violation, so
conflict-free individuals always beat conflicting ones.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple
import logging
import random
import time

from railtraffic.services.optimization.constraints import ScheduleValidator
from railtraffic.services.optimization.models import (
    LOWEST_PRIORITY, Route, ScheduleEntry, Train, TrainSchedule
)

logger = logging.getLogger(__name__)

Individual = Dict[str, TrainSchedule]


@dataclass
class GeneticResult:
    best: Individual
    best_fitness: float
    generations_run: int
    status: str  # CONVERGED, GENERATION_LIMIT, TIME_LIMIT
    history: List[float] = field(default_factory=list)


def priority_weight(priority: int) -> float:
    return float(max(1, LOWEST_PRIORITY + 1 - priority))


class ScheduleGenerator:
    """Builds random per-train schedules that respect halt budgets and maintenance windows."""

    def __init__(self, rng: random.Random, halt_probability: float = 0.3,
                 max_departure_offset_minutes: float = 60):
        self.rng = rng
        self.halt_probability = halt_probability
        self.max_departure_offset_minutes = max_departure_offset_minutes

    @staticmethod
    def earliest_departure(train: Train, horizon_start: datetime, carried_delay_minutes: float = 0.0) -> datetime:
        """Timetabled departure plus delays already applied to the train, never before the horizon."""
        if train.scheduled_departure is None:
            return horizon_start
        return max(horizon_start, train.scheduled_departure + timedelta(minutes=carried_delay_minutes))

    def choose_halts(self, train: Train, route: Route) -> List[bool]:
        """Halt flags along the train's path: origin and destination always, others by chance."""
        stops = route.path(train.origin, train.destination)
        flags = []
        budget = train.allowed_halts
        for i, stop in enumerate(stops):
            if i == 0 or i == len(stops) - 1:
                flags.append(True)
                continue
            halt = self.rng.random() < self.halt_probability
            if halt and budget > 0 and stop.allows(train.train_type):
                flags.append(True)
                budget -= 1
            else:
                flags.append(False)
        return flags

    @staticmethod
    def build(train: Train, route: Route, departure: datetime, halts: List[bool]) -> List[ScheduleEntry]:
        """Lay out entries from an origin departure time and halt flags."""
        stops = route.path(train.origin, train.destination)
        halt_minutes = train.halt_minutes
        entries = []
        clock = departure
        for i, stop in enumerate(stops):
            if i == 0:
                arrival = departure - timedelta(minutes=halt_minutes)
                entries.append(ScheduleEntry(stop.station_code, arrival, departure, True, halt_minutes))
                continue
            run = route.travel_time_minutes(stops[i - 1].station_code, stop.station_code, train.max_speed)
            arrival = clock + timedelta(minutes=run)
            dwell = halt_minutes if halts[i] else 0.0
            leave = arrival + timedelta(minutes=dwell)
            entries.append(ScheduleEntry(stop.station_code, arrival, leave, halts[i], dwell))
            clock = leave
        return entries

    def baseline_arrival(self, train: Train, route: Route, earliest: datetime, halts: List[bool]) -> datetime:
        """Destination arrival when leaving at the earliest departure with nominal halts."""
        entries = self.build(train, route, earliest, halts)
        return entries[-1].arrival

    def clear_maintenance(self, train: Train, route: Route, departure: datetime,
                          halts: List[bool]) -> List[ScheduleEntry]:
        """Push the departure past any maintenance window the journey would run into."""
        entries = self.build(train, route, departure, halts)
        for _ in range(len(route.maintenance_windows) + 1):
            blocked = None
            for a, b in zip(entries, entries[1:]):
                window = route.blocking_window(a.departure, b.arrival)
                if window is not None:
                    blocked = (a.departure, window.end)
                    break
            if blocked is None:
                break
            departure = departure + (blocked[1] - blocked[0])
            entries = self.build(train, route, departure, halts)
        return entries

    def random_schedule(self, train: Train, route: Route, horizon_start: datetime,
                        carried_delay_minutes: float = 0.0) -> TrainSchedule:
        earliest = self.earliest_departure(train, horizon_start, carried_delay_minutes)
        # delay is measured against the undisturbed timetable
        undisturbed = self.earliest_departure(train, horizon_start)
        halts = self.choose_halts(train, route)
        offset = self.rng.uniform(0, self.max_departure_offset_minutes)
        entries = self.clear_maintenance(train, route, earliest + timedelta(minutes=offset), halts)
        return TrainSchedule(
            train_id=train.train_id,
            route_id=route.route_id,
            priority=train.priority,
            train_type=train.train_type,
            entries=entries,
            baseline_arrival=self.baseline_arrival(train, route, undisturbed, halts),
        )


class GeneticScheduler:
    """
    Genetic algorithm: tournament selection, single-point crossover across
    trains, single-stop time-shift mutation and elitism.
    """

    def __init__(self, validator: ScheduleValidator, routes: Dict[str, Route],
                 platform_capacity=None, rng: Optional[random.Random] = None,
                 population_size: int = 50, generations: int = 100,
                 mutation_rate: float = 0.1, crossover_rate: float = 0.8,
                 elite_fraction: float = 0.2, tournament_size: int = 3,
                 convergence_patience: int = 10, convergence_tolerance: float = 1e-6,
                 conflict_penalty: float = 1000.0, halt_probability: float = 0.3,
                 max_mutation_shift_minutes: float = 20, max_departure_offset_minutes: float = 60,
                 time_limit_seconds: Optional[float] = None):
        self.validator = validator
        self.routes = routes
        self.platform_capacity = platform_capacity
        self.rng = rng or random.Random()
        self.population_size = max(2, population_size)
        self.generations = generations
        self.mutation_rate = mutation_rate
        self.crossover_rate = crossover_rate
        self.elite_count = max(1, int(self.population_size * elite_fraction))
        self.tournament_size = max(1, tournament_size)
        self.convergence_patience = convergence_patience
        self.convergence_tolerance = convergence_tolerance
        self.conflict_penalty = conflict_penalty
        self.max_mutation_shift_minutes = max_mutation_shift_minutes
        self.time_limit_seconds = time_limit_seconds
        self.generator = ScheduleGenerator(self.rng, halt_probability, max_departure_offset_minutes)
        self._earliest: Dict[str, datetime] = {}
        self._carried: Dict[str, float] = {}

    @classmethod
    def from_settings(cls, settings, validator, routes, platform_capacity=None, rng=None) -> "GeneticScheduler":
        return cls(
            validator=validator,
            routes=routes,
            platform_capacity=platform_capacity,
            rng=rng,
            population_size=settings.population_size,
            generations=settings.generations,
            mutation_rate=settings.mutation_rate,
            crossover_rate=settings.crossover_rate,
            elite_fraction=settings.elite_fraction,
            tournament_size=settings.tournament_size,
            convergence_patience=settings.convergence_patience,
            convergence_tolerance=settings.convergence_tolerance,
            conflict_penalty=settings.conflict_penalty,
            halt_probability=settings.halt_probability,
            max_mutation_shift_minutes=settings.max_mutation_shift_minutes,
            max_departure_offset_minutes=settings.max_departure_offset_minutes,
            time_limit_seconds=settings.optimization_timeout_seconds,
        )

    def fitness(self, individual: Individual) -> float:
        weighted_delay = sum(
            s.computed_delay_minutes() * priority_weight(s.priority) for s in individual.values()
        )
        violations = self.validator.count(individual, self.routes, self.platform_capacity)
        return weighted_delay + violations * self.conflict_penalty

    def evolve(self, trains: List[Train], horizon_start: datetime,
               carried_delays: Optional[Dict[str, float]] = None) -> GeneticResult:
        """
        Run the search.

        Args:
            trains: Trains to schedule; their routes must be in ``self.routes``
            horizon_start: Start of the planning horizon
            carried_delays: Minutes of live delay already applied per train; no
                schedule departs before its timetable plus this delay

        Returns:
            GeneticResult with the best individual found
        """
        trains = sorted(trains, key=lambda t: t.train_id)
        self._carried = dict(carried_delays or {})
        self._earliest = {
            t.train_id: ScheduleGenerator.earliest_departure(
                t, horizon_start, self._carried.get(t.train_id, 0.0)
            )
            for t in trains
        }
        started = time.time()
        logger.info(f"Starting genetic search: {len(trains)} trains, population {self.population_size}, "
                    f"{self.generations} generations")

        population = [self._random_individual(trains, horizon_start) for _ in range(self.population_size)]
        scores = [self.fitness(ind) for ind in population]
        best_score = min(scores)
        best = population[scores.index(best_score)]
        history = [best_score]
        stale = 0
        status = "GENERATION_LIMIT"
        generations_run = 0

        for generation in range(self.generations):
            if self.time_limit_seconds is not None and time.time() - started > self.time_limit_seconds:
                status = "TIME_LIMIT"
                logger.warning(f"Genetic search hit its {self.time_limit_seconds}s time limit "
                               f"after {generations_run} generations")
                break

            ranked = sorted(zip(scores, range(len(population))), key=lambda pair: pair[0])
            next_population = [population[i] for _, i in ranked[:self.elite_count]]
            while len(next_population) < self.population_size:
                parent1 = self._tournament(population, scores)
                parent2 = self._tournament(population, scores)
                if self.rng.random() < self.crossover_rate:
                    child1, child2 = self._crossover(parent1, parent2)
                else:
                    child1, child2 = dict(parent1), dict(parent2)
                for child in (child1, child2):
                    if self.rng.random() < self.mutation_rate:
                        child = self._mutate(child)
                    if len(next_population) < self.population_size:
                        next_population.append(child)

            population = next_population
            scores = [self.fitness(ind) for ind in population]
            generations_run += 1

            generation_best = min(scores)
            if generation_best < best_score - self.convergence_tolerance:
                best_score = generation_best
                best = population[scores.index(generation_best)]
                stale = 0
            else:
                stale += 1
            history.append(best_score)
            logger.debug(f"Generation {generation + 1}: best fitness {best_score:.2f}")

            if stale >= self.convergence_patience:
                status = "CONVERGED"
                break

        logger.info(f"Genetic search finished ({status}) after {generations_run} generations, "
                    f"best fitness {best_score:.2f}")
        return GeneticResult(
            best={tid: s.copy() for tid, s in best.items()},
            best_fitness=best_score,
            generations_run=generations_run,
            status=status,
            history=history,
        )

    def _random_individual(self, trains: List[Train], horizon_start: datetime) -> Individual:
        return {
            t.train_id: self.generator.random_schedule(
                t, self.routes[t.route_id], horizon_start, self._carried.get(t.train_id, 0.0)
            )
            for t in trains
        }

    def _tournament(self, population: List[Individual], scores: List[float]) -> Individual:
        contestants = [self.rng.randrange(len(population)) for _ in range(self.tournament_size)]
        winner = min(contestants, key=lambda i: scores[i])
        return population[winner]

    def _crossover(self, parent1: Individual, parent2: Individual) -> Tuple[Individual, Individual]:
        train_ids = sorted(parent1)
        if len(train_ids) < 2:
            return dict(parent1), dict(parent2)
        cut = self.rng.randint(1, len(train_ids) - 1)
        child1 = {tid: (parent1 if i < cut else parent2)[tid] for i, tid in enumerate(train_ids)}
        child2 = {tid: (parent2 if i < cut else parent1)[tid] for i, tid in enumerate(train_ids)}
        return child1, child2

    def _mutate(self, individual: Individual) -> Individual:
        """Shift one stop of one train by up to the mutation limit, never before its earliest slot."""
        mutated = dict(individual)
        train_id = self.rng.choice(sorted(mutated))
        schedule = mutated[train_id]
        if len(schedule.entries) < 2:
            return mutated
        index = self.rng.randrange(len(schedule.entries) - 1)
        shift = self.rng.uniform(-self.max_mutation_shift_minutes, self.max_mutation_shift_minutes)

        if index == 0:
            slack = (schedule.entries[0].departure - self._earliest[train_id]).total_seconds() / 60.0
            shift = max(shift, -slack)
            mutated[train_id] = schedule.shift_from(0, shift)
        else:
            entry = schedule.entries[index]
            slack = entry.dwell_minutes - entry.halt_minutes
            shift = max(shift, -slack)
            mutated[train_id] = schedule.shift_from(index, shift, departure_only=True)
        return mutated
