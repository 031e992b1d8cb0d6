"""
Tests for schedule constraints, repair, genetic search and the optimizer.
"""
import pytest
import random
from datetime import timedelta

from railtraffic.core.errors import NotFoundError
from railtraffic.services.optimization.constraints import ScheduleValidator
from railtraffic.services.optimization.genetic import GeneticScheduler, ScheduleGenerator
from railtraffic.services.optimization.models import (
    MaintenanceWindow, Train, TrainSchedule, TrainType, ViolationType
)
from railtraffic.services.optimization.optimizer import TrainSchedulingOptimizer
from railtraffic.services.optimization.repair import RepairResult, ScheduleRepairer
from railtraffic.services.optimization.simulation import DiscreteEventSimulator
from railtraffic.services.store import NetworkStore


def make_schedule(train, route, departure, halts=None):
    """Deterministic schedule halting only at origin and destination unless told otherwise."""
    stops = route.path(train.origin, train.destination)
    halts = halts or [i in (0, len(stops) - 1) for i in range(len(stops))]
    entries = ScheduleGenerator.build(train, route, departure, halts)
    return TrainSchedule(
        train_id=train.train_id,
        route_id=route.route_id,
        priority=train.priority,
        train_type=train.train_type,
        entries=entries,
        baseline_arrival=entries[-1].arrival,
    )


def by_id(trains):
    return {t.train_id: t for t in trains}


def kinds(violations):
    return {v.kind for v in violations}


def assert_platforms_exclusive(schedules, buffer_minutes):
    stays = {}
    for schedule in schedules.values():
        for entry in schedule.entries:
            if entry.platform is not None:
                stays.setdefault((entry.station_code, entry.platform), []).append(
                    (entry.arrival, entry.departure + timedelta(minutes=buffer_minutes))
                )
    for intervals in stays.values():
        intervals.sort()
        for (_, end), (start, _) in zip(intervals, intervals[1:]):
            assert end <= start


@pytest.fixture
def validator():
    return ScheduleValidator(headway_minutes=5, platform_buffer_minutes=2)


class TestScheduleValidator:
    """Test cases for hard-constraint detection."""

    def test_single_train_is_conflict_free(self, validator, trains, route, now):
        express = by_id(trains)["12001"]
        schedules = {"12001": make_schedule(express, route, now + timedelta(minutes=10))}
        assert validator.find_violations(schedules) == []

    def test_simultaneous_departures_break_headway(self, validator, trains, route, now):
        t = by_id(trains)
        schedules = {
            "12001": make_schedule(t["12001"], route, now + timedelta(minutes=10)),
            "22002": make_schedule(t["22002"], route, now + timedelta(minutes=10)),
        }
        violations = validator.find_violations(schedules)

        assert kinds(violations) == {ViolationType.HEADWAY}
        assert violations[0].location == "NDLS-GZB"
        assert set(violations[0].remedies) == {"12001", "22002"}

    def test_opposing_trains_need_the_token(self, trains, route, now):
        t = by_id(trains)
        schedules = {
            "12001": make_schedule(t["12001"], route, now + timedelta(minutes=10)),
            "12004": make_schedule(t["12004"], route, now + timedelta(minutes=15)),
        }
        with_token = ScheduleValidator(token_system_enabled=True).find_violations(schedules)
        without_token = ScheduleValidator(token_system_enabled=False).find_violations(schedules)

        assert ViolationType.SINGLE_LINE in kinds(with_token)
        assert ViolationType.SINGLE_LINE not in kinds(without_token)

    def test_platform_capacity(self, validator, trains, route, now):
        t = by_id(trains)
        schedules = {
            "12001": make_schedule(t["12001"], route, now + timedelta(minutes=10)),
            "22002": make_schedule(t["22002"], route, now + timedelta(minutes=10)),
        }
        roomy = validator.find_violations(schedules, platform_capacity=lambda code: 2)
        assert ViolationType.PLATFORM_CAPACITY not in kinds(roomy)

        single = validator.find_violations(schedules, platform_capacity=lambda code: 1)
        platform = [v for v in single if v.kind is ViolationType.PLATFORM_CAPACITY]
        assert [v.location for v in platform] == ["NDLS"]
        assert set(platform[0].remedies) == {"12001", "22002"}

    def test_maintenance_window(self, validator, trains, route, now):
        route.maintenance_windows.append(
            MaintenanceWindow(now + timedelta(minutes=20), now + timedelta(minutes=40), "track renewal")
        )
        schedules = {"12001": make_schedule(by_id(trains)["12001"], route, now + timedelta(minutes=10))}

        violations = validator.find_violations(schedules, routes={"R1": route})

        assert kinds(violations) == {ViolationType.MAINTENANCE_WINDOW}
        assert validator.find_violations(schedules) == []


class TestScheduleRepairer:
    """Test cases for constraint repair."""

    @pytest.mark.parametrize("use_cp_sat", [True, False])
    def test_repair_removes_headway_conflict(self, validator, trains, route, now, use_cp_sat):
        t = by_id(trains)
        schedules = {
            "12001": make_schedule(t["12001"], route, now + timedelta(minutes=10)),
            "22002": make_schedule(t["22002"], route, now + timedelta(minutes=10)),
        }
        repairer = ScheduleRepairer(validator, routes={"R1": route}, use_cp_sat=use_cp_sat,
                                    solver_time_limit_seconds=2.0)

        result = repairer.repair(schedules)

        assert result.violations_before == 1
        assert result.feasible
        assert result.method in (("cp_sat", "cp_sat+greedy") if use_cp_sat else ("greedy",))
        for train_id, repaired in result.schedules.items():
            original = schedules[train_id]
            for before, after in zip(original.entries, repaired.entries):
                assert after.arrival >= before.arrival
                assert after.departure >= before.departure
        assert_platforms_exclusive(result.schedules, validator.platform_buffer_minutes)

    def test_greedy_repair_delays_lower_precedence_train(self, validator, trains, route, now):
        t = by_id(trains)
        schedules = {
            "12001": make_schedule(t["12001"], route, now + timedelta(minutes=10)),
            "22002": make_schedule(t["22002"], route, now + timedelta(minutes=10)),
        }
        result = ScheduleRepairer(validator, use_cp_sat=False).repair(schedules)

        assert result.schedules["12001"].entries[0].departure == now + timedelta(minutes=10)
        assert result.schedules["22002"].entries[0].departure > now + timedelta(minutes=10)

    def test_repair_is_idempotent_on_feasible_schedules(self, validator, trains, route, now):
        t = by_id(trains)
        schedules = {
            "12001": make_schedule(t["12001"], route, now + timedelta(minutes=10)),
            "22002": make_schedule(t["22002"], route, now + timedelta(minutes=40)),
        }
        repairer = ScheduleRepairer(validator, routes={"R1": route})

        first = repairer.repair(schedules)
        second = repairer.repair(first.schedules)

        assert first.method == "none"
        assert second.method == "none"
        for train_id in schedules:
            assert first.schedules[train_id].entries == second.schedules[train_id].entries
            assert [(e.arrival, e.departure) for e in first.schedules[train_id].entries] == \
                [(e.arrival, e.departure) for e in schedules[train_id].entries]

    def test_repair_never_increases_violations(self, validator, trains, route, now):
        schedules = {
            t.train_id: make_schedule(t, route, now + timedelta(minutes=10)) for t in trains
        }
        result = ScheduleRepairer(validator, routes={"R1": route}, solver_time_limit_seconds=2.0).repair(schedules)

        assert result.residual_conflicts <= result.violations_before
        assert_platforms_exclusive(result.schedules, validator.platform_buffer_minutes)


class TestGeneticScheduler:
    """Test cases for the genetic search."""

    def test_random_schedules_respect_halt_budget_and_earliest_departure(self, trains, route, now):
        generator = ScheduleGenerator(random.Random(3), halt_probability=1.0)
        for train in trains:
            schedule = generator.random_schedule(train, route, now)
            intermediate = [e for e in schedule.entries[1:-1] if e.is_halt]
            assert len(intermediate) <= train.allowed_halts
            assert schedule.entries[0].is_halt and schedule.entries[-1].is_halt
            assert schedule.entries[0].departure >= train.scheduled_departure

    def test_flagship_never_halts_midway(self, route, now):
        flagship = Train("20001", TrainType.FLAGSHIP, "R1", origin="NDLS", destination="CNB")
        generator = ScheduleGenerator(random.Random(5), halt_probability=1.0)

        schedule = generator.random_schedule(flagship, route, now)

        assert [e.is_halt for e in schedule.entries] == [True, False, False, True]

    def test_conflicts_dominate_fitness(self, validator, trains, route, now):
        t = by_id(trains)
        search = GeneticScheduler(validator, {"R1": route}, rng=random.Random(1))
        clean = {
            "12001": make_schedule(t["12001"], route, now + timedelta(minutes=10)),
            "22002": make_schedule(t["22002"], route, now + timedelta(minutes=40)),
        }
        clashing = {
            "12001": make_schedule(t["12001"], route, now + timedelta(minutes=10)),
            "22002": make_schedule(t["22002"], route, now + timedelta(minutes=10)),
        }
        assert search.fitness(clean) < search.fitness(clashing)

    def test_evolve_reports_status(self, validator, trains, route, now):
        search = GeneticScheduler(validator, {"R1": route}, rng=random.Random(2),
                                  population_size=8, generations=5, convergence_patience=3)
        result = search.evolve(trains, now)

        assert result.status in ("CONVERGED", "GENERATION_LIMIT")
        assert set(result.best) == {t.train_id for t in trains}
        assert result.history == sorted(result.history, reverse=True)

    def test_applied_delay_moves_earliest_departure(self, trains, route, now):
        express = by_id(trains)["12001"]
        generator = ScheduleGenerator(random.Random(2))

        schedule = generator.random_schedule(express, route, now, carried_delay_minutes=45)

        assert schedule.entries[0].departure >= express.scheduled_departure + timedelta(minutes=45)
        assert schedule.computed_delay_minutes() >= 45 - 1e-9

    def test_evolve_never_plans_before_applied_delay(self, validator, trains, route, now):
        search = GeneticScheduler(validator, {"R1": route}, rng=random.Random(6),
                                  population_size=8, generations=5, convergence_patience=3)
        result = search.evolve(trains, now, carried_delays={"22002": 60})

        assert result.best["22002"].entries[0].departure >= now + timedelta(minutes=70)


class TestDiscreteEventSimulator:

    def test_metrics_for_delayed_and_on_time_trains(self, validator, trains, route, now):
        t = by_id(trains)
        on_time = make_schedule(t["12001"], route, now + timedelta(minutes=10))
        late = make_schedule(t["22002"], route, now + timedelta(minutes=40))
        late = late.shift_from(0, 12)
        simulator = DiscreteEventSimulator(validator, {"R1": route}, on_time_threshold_minutes=5)

        metrics = simulator.evaluate({"12001": on_time, "22002": late})

        assert metrics.trains == 2
        assert metrics.average_delay_minutes == pytest.approx(6.0)
        assert metrics.max_delay_minutes == pytest.approx(12.0)
        assert metrics.on_time_percentage == pytest.approx(50.0)
        assert metrics.conflict_count == 0
        assert metrics.throughput == 2
        assert metrics.peak_platform_occupancy["NDLS"] == 1

    def test_zero_trains(self, validator):
        metrics = DiscreteEventSimulator(validator).evaluate({})
        assert metrics.trains == 0
        assert metrics.average_delay_minutes == 0.0
        assert metrics.on_time_percentage == 0.0


class TestTrainSchedulingOptimizer:
    """Test cases for the end-to-end optimizer."""

    def test_empty_network(self, test_settings, now):
        optimizer = TrainSchedulingOptimizer(NetworkStore(), test_settings, random.Random(1), clock=lambda: now)
        output = optimizer.optimize_schedule()

        assert output.status == "NO_TRAINS"
        assert output.feasible
        assert output.schedules == {}
        assert output.metrics.on_time_percentage == 0.0

    def test_unknown_train(self, test_settings, store, now):
        optimizer = TrainSchedulingOptimizer(store, test_settings, random.Random(1), clock=lambda: now)
        with pytest.raises(NotFoundError):
            optimizer.optimize_schedule(train_ids=["99999"])

    def test_basic_optimization(self, test_settings, store, now):
        optimizer = TrainSchedulingOptimizer(store, test_settings, random.Random(4), clock=lambda: now)
        output = optimizer.optimize_schedule(horizon_start=now)

        assert output.feasible
        assert output.status in ("CONVERGED", "GENERATION_LIMIT", "TIME_LIMIT")
        assert set(output.schedules) == {"12001", "22002", "50003", "12004"}
        assert optimizer.validator.count(output.schedules, store.routes, optimizer._capacity) == 0
        assert output.metrics.conflict_count == 0
        assert store.schedule_count == 4
        for schedule in output.schedules.values():
            assert schedule.total_delay_minutes >= 0
            assert all(e.platform is not None for e in schedule.entries if e.is_halt)

    def test_timeout_reported_alongside_infeasibility(self, test_settings, validator, store, trains, route, now,
                                                       monkeypatch):
        t = by_id(trains)
        clashing = {
            "12001": make_schedule(t["12001"], route, now + timedelta(minutes=10)),
            "22002": make_schedule(t["22002"], route, now + timedelta(minutes=10)),
        }
        unresolved = RepairResult(
            schedules=clashing, violations_before=1,
            violations=validator.find_violations(clashing),
        )
        evolve = GeneticScheduler.evolve

        def timed_out(self, *args, **kwargs):
            result = evolve(self, *args, **kwargs)
            result.status = "TIME_LIMIT"
            return result

        monkeypatch.setattr(GeneticScheduler, "evolve", timed_out)
        monkeypatch.setattr(ScheduleRepairer, "repair", lambda self, schedules: unresolved)
        optimizer = TrainSchedulingOptimizer(store, test_settings, random.Random(4), clock=lambda: now)

        output = optimizer.optimize_schedule(train_ids=["12001", "22002"], install=False)

        assert output.status == "INFEASIBLE"
        assert output.search_status == "TIME_LIMIT"
        assert not output.feasible
        assert output.residual_conflicts == len(unresolved.violations) > 0
        assert output.to_dict()["search_status"] == "TIME_LIMIT"

    def test_same_seed_same_timetable(self, test_settings, route, stations, trains, now):
        test_settings.use_cp_sat_repair = False
        outputs = []
        for _ in range(2):
            network = NetworkStore()
            network.load(trains=trains, routes=[route], stations=stations)
            optimizer = TrainSchedulingOptimizer(network, test_settings, random.Random(21), clock=lambda: now)
            outputs.append(optimizer.optimize_schedule(horizon_start=now, install=False))

        first, second = ({tid: s.to_dict() for tid, s in o.schedules.items()} for o in outputs)
        assert first == second
        assert outputs[0].feasible == outputs[1].feasible
