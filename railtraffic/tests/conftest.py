"""
Test configuration and fixtures for the rail traffic engine.
"""
import pytest
import math
import os
import random
from datetime import datetime, timedelta, timezone
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Set testing environment variable
os.environ["TESTING"] = "true"

# Create test database engine first
SQLALCHEMY_DATABASE_URL = "sqlite://"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Import app after setting up test database
from railtraffic.main import app
from railtraffic.db.models import Base  # Import from models file
from railtraffic.core.config import Settings
from railtraffic.core.dependencies import get_db, get_engine
from railtraffic.services.engine import RailTrafficEngine
from railtraffic.services.optimization.models import (
    Route, RouteStop, Station, TrackSection, Train, TrainType
)
from railtraffic.services.store import NetworkStore

NOW = datetime(2025, 3, 10, 8, 0, tzinfo=timezone.utc)

# cumulative distance (km) of each station on route R1
ROUTE_STOPS = [("NDLS", 0.0), ("GZB", 40.0), ("ALJN", 80.0), ("CNB", 120.0)]


def override_get_db():
    """Override database dependency for testing."""
    try:
        db = TestingSessionLocal()
        yield db
    finally:
        db.close()


app.dependency_overrides[get_db] = override_get_db

# Create all tables in the test database
Base.metadata.create_all(bind=engine)


def station_position(distance_km: float):
    """Stations lie due north of each other, so distance along the route is great-circle distance."""
    return 28.0 + math.degrees(distance_km / 6371.0), 77.0


def fixed_clock():
    return NOW


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def test_settings():
    """Small search budgets so optimization tests stay fast."""
    return Settings(
        database_url=SQLALCHEMY_DATABASE_URL,
        population_size=12,
        generations=15,
        convergence_patience=5,
        optimization_timeout_seconds=20,
        repair_solver_time_limit_seconds=2.0,
        max_departure_offset_minutes=30,
        scenario_timeout_seconds=20.0,
    )


@pytest.fixture
def route():
    return Route(
        route_id="R1",
        stops=[RouteStop(code, km) for code, km in ROUTE_STOPS],
        max_speed_kmh=120.0,
    )


@pytest.fixture
def stations():
    result = []
    for code, km in ROUTE_STOPS:
        lat, lon = station_position(km)
        result.append(Station(code=code, name=code.title(), latitude=lat, longitude=lon, platform_count=2))
    return result


@pytest.fixture
def trains():
    return [
        Train("12001", TrainType.EXPRESS, "R1", origin="NDLS", destination="CNB",
              scheduled_departure=NOW + timedelta(minutes=10)),
        Train("22002", TrainType.PASSENGER, "R1", origin="NDLS", destination="CNB",
              scheduled_departure=NOW + timedelta(minutes=10)),
        Train("50003", TrainType.FREIGHT, "R1", origin="NDLS", destination="CNB",
              scheduled_departure=NOW + timedelta(minutes=20)),
        Train("12004", TrainType.SUPERFAST_EXPRESS, "R1", origin="CNB", destination="NDLS",
              scheduled_departure=NOW + timedelta(minutes=15)),
    ]


@pytest.fixture
def store(route, stations, trains):
    """Network store loaded with the sample network."""
    network = NetworkStore()
    sections = [TrackSection("TC-GZB-1", *station_position(38.0), route_id="R1")]
    network.load(trains=trains, routes=[route], stations=stations, sections=sections)
    return network


@pytest.fixture
def rail_engine(test_settings, store):
    return RailTrafficEngine(test_settings, store=store, rng=random.Random(7), clock=fixed_clock)


@pytest.fixture
def client(rail_engine):
    """Create test client bound to a fresh engine."""
    app.dependency_overrides[get_engine] = lambda: rail_engine
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.pop(get_engine, None)


@pytest.fixture(autouse=True)
def cleanup_db():
    """Clean up database after each test."""
    yield
    # Clear all data but keep tables
    with engine.connect() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
        conn.commit()
