"""
Tests for API endpoints.
"""
import pytest
import asyncio
import json
from datetime import datetime, timezone

from railtraffic.api.routes import websocket as websocket_routes
from railtraffic.services.detection.models import (
    Conflict, ConflictSeverity, ConflictType, RecommendedAction
)
from railtraffic.services.telemetry.models import SourceKind

NOW = datetime(2025, 3, 10, 8, 0, tzinfo=timezone.utc)


def position_reading(train_id="12001", lat=28.3, lon=77.0, speed=60):
    return {
        "train_id": train_id,
        "lat": lat,
        "lon": lon,
        "speed": speed,
        "heading": 0,
        "accuracy": 3,
        "timestamp": NOW.isoformat(),
    }


class TestNetworkAPI:
    """Test cases for network loading."""

    def test_get_network(self, client):
        response = client.get("/api/network")

        assert response.status_code == 200
        assert response.json() == {"trains": 4, "routes": 1, "stations": 4, "sections": 1}

    def test_load_network(self, client):
        payload = {
            "stations": [{"code": "MTJ", "name": "Mathura", "latitude": 27.48, "longitude": 77.67}],
            "routes": [{
                "route_id": "R2",
                "stops": [{"station_code": "NDLS", "distance_km": 0},
                          {"station_code": "MTJ", "distance_km": 141}],
                "max_speed_kmh": 130,
            }],
            "trains": [{"train_id": 12280, "train_type": "EXPRESS", "route_id": "R2",
                        "origin": "NDLS", "destination": "MTJ"}],
        }
        response = client.put("/api/network", json=payload)

        assert response.status_code == 200
        assert response.json() == {"trains": 5, "routes": 2, "stations": 5, "sections": 1}

    def test_load_network_unknown_route(self, client):
        payload = {"trains": [{"train_id": "1", "train_type": "FREIGHT", "route_id": "NOPE"}]}
        response = client.put("/api/network", json=payload)

        assert response.status_code == 400
        assert "NOPE" in response.json()["detail"]

    def test_load_network_invalid_train_type(self, client):
        payload = {"trains": [{"train_id": "1", "train_type": "HOVERCRAFT", "route_id": "R1"}]}
        response = client.put("/api/network", json=payload)

        assert response.status_code == 422

    def test_cancel_train(self, client, rail_engine):
        client.post("/api/telemetry/positional", json=position_reading())

        response = client.post("/api/network/trains/12001/cancel")

        assert response.status_code == 200
        assert response.json() == {"train_id": "12001", "status": "CANCELLED"}
        assert rail_engine.store.get_state("12001") is None
        assert not rail_engine.store.trains["12001"].is_active

    def test_cancel_unknown_train(self, client):
        response = client.post("/api/network/trains/99999/cancel")

        assert response.status_code == 404


class TestTelemetryAPI:
    """Test cases for telemetry ingestion."""

    def test_ingest_positional(self, client):
        response = client.post("/api/telemetry/positional", json=position_reading())

        assert response.status_code == 200
        result = response.json()
        assert result["reading"]["source"] == "positional"
        assert result["reading"]["quality"] == 1.0
        assert result["state"]["train_id"] == "12001"
        assert result["state"]["position"]["lat"] == pytest.approx(28.3)

        states = client.get("/api/telemetry/states").json()
        assert [s["train_id"] for s in states] == ["12001"]
        assert client.get("/api/telemetry/states/12001").status_code == 200

    def test_malformed_reading_is_scored_not_rejected(self, client):
        response = client.post("/api/telemetry/positional", json={"lat": "north", "speed": "fast"})

        assert response.status_code == 200
        result = response.json()
        assert result["reading"]["quality"] == pytest.approx(0.1)
        assert result["state"] is None

    def test_ingest_occupancy_and_station_event(self, client):
        occupancy = client.post("/api/telemetry/occupancy", json={
            "section_id": "TC-GZB-1", "status": "OCCUPIED", "detected_train_id": "12001",
            "timestamp": NOW.isoformat(),
        })
        event = client.post("/api/telemetry/station-event", json={
            "train_id": "12001", "station_code": "GZB", "event": "ARRIVAL",
            "reported_by": "SM-GZB", "timestamp": NOW.isoformat(),
        })

        assert occupancy.status_code == 200
        assert occupancy.json()["reading"]["payload"]["section_id"] == "TC-GZB-1"
        assert event.status_code == 200
        assert event.json()["reading"]["payload"]["event"] == "ARRIVAL"

    def test_unknown_state(self, client):
        response = client.get("/api/telemetry/states/99999")
        assert response.status_code == 404


class TestScheduleAPI:
    """Test cases for schedule API endpoints."""

    def test_optimize_schedule_endpoint(self, client):
        """Test the POST /api/schedule/optimize endpoint."""
        response = client.post("/api/schedule/optimize", json={"horizon_start": NOW.isoformat()})

        assert response.status_code == 200
        result = response.json()
        assert "run_id" in result
        assert set(result["schedules"]) == {"12001", "22002", "50003", "12004"}
        assert "metrics" in result
        assert "computation_time" in result
        assert result["feasible"] is True

        current = client.get("/api/schedule/current").json()
        assert set(current["schedules"]) == set(result["schedules"])
        assert current["metrics"]["trains"] == 4

        runs = client.get("/api/schedule/runs").json()
        assert len(runs) == 1
        assert runs[0]["kind"] == "OPTIMIZATION"
        assert runs[0]["run_id"] == result["run_id"]

    def test_optimize_unknown_train(self, client):
        response = client.post("/api/schedule/optimize", json={"train_ids": ["99999"]})
        assert response.status_code == 404

    def test_optimize_invalid_horizon(self, client):
        response = client.post("/api/schedule/optimize", json={"horizon_minutes": 0})
        assert response.status_code == 422

    def test_realtime_update_without_schedule(self, client):
        response = client.post("/api/schedule/realtime-update", json={"train_id": "12001", "delay_minutes": 5})
        assert response.status_code == 404

    def test_realtime_update_negative_delay(self, client):
        response = client.post("/api/schedule/realtime-update", json={"train_id": "12001", "delay_minutes": -5})
        assert response.status_code == 422

    def test_realtime_update(self, client):
        client.post("/api/schedule/optimize", json={"horizon_start": NOW.isoformat()})

        response = client.post("/api/schedule/realtime-update", json={"train_id": 22002, "delay_minutes": 10})

        assert response.status_code == 200
        result = response.json()
        assert result["train_id"] == "22002"
        assert result["explanation"].startswith("Train 22002 delayed by 10 minutes.")
        assert result["processing_time_ms"] >= 0

        runs = client.get("/api/schedule/runs", params={"kind": "realtime_update"}).json()
        assert [r["kind"] for r in runs] == ["REALTIME_UPDATE"]

    def test_whatif_requires_scenarios(self, client):
        response = client.post("/api/schedule/whatif", json={"scenarios": []})
        assert response.status_code == 422

    def test_whatif_rejects_unknown_type(self, client):
        scenario = {"name": "Flood", "disruption": {"event_type": "flood", "affected_trains": ["12001"]}}
        response = client.post("/api/schedule/whatif", json={"scenarios": [scenario]})
        assert response.status_code == 422

    def test_whatif_analysis_endpoint(self, client):
        """Test the POST /api/schedule/whatif endpoint."""
        client.post("/api/schedule/optimize", json={"horizon_start": NOW.isoformat()})
        request_data = {
            "scenarios": [
                {"scenario_id": "signal", "name": "Signal failure",
                 "disruption": {"event_type": "delay", "affected_trains": ["12001"], "delay_minutes": 45}},
                {"scenario_id": "cancel", "name": "Cancel freight",
                 "disruption": {"event_type": "cancellation", "affected_trains": ["50003"]}},
            ]
        }

        response = client.post("/api/schedule/whatif", json=request_data)

        assert response.status_code == 200
        result = response.json()
        assert result["status"] == "COMPLETED"
        assert [s["scenario_id"] for s in result["scenarios"]] == ["signal", "cancel"]
        assert result["best_scenario"] in ("signal", "cancel")
        assert result["baseline"]["trains"] == 4

    def test_whatif_unknown_train(self, client):
        scenario = {"name": "Ghost", "disruption": {"event_type": "delay", "affected_trains": ["99999"],
                                                     "delay_minutes": 5}}
        response = client.post("/api/schedule/whatif", json={"scenarios": [scenario]})
        assert response.status_code == 404


class TestConflictAPI:
    """Test cases for conflict detection endpoints."""

    def test_detect_without_states(self, client):
        response = client.get("/api/conflicts")

        assert response.status_code == 200
        result = response.json()
        assert result["conflicts"] == []
        assert result["count"] == 0

    def test_detect_safety_violation(self, client):
        client.post("/api/telemetry/positional", json=position_reading("12001", lat=28.3))
        client.post("/api/telemetry/positional", json=position_reading("22002", lat=28.3005))

        result = client.get("/api/conflicts").json()

        types = {c["type"] for c in result["conflicts"]}
        assert "SAFETY_DISTANCE_VIOLATION" in types

    def test_toggle_detection(self, client):
        response = client.post("/api/conflicts/detection", params={"enabled": False})

        assert response.status_code == 200
        assert response.json()["enabled"] is False
        assert client.get("/api/status").json()["detection"]["enabled"] is False


class TestStatusAPI:

    def test_status(self, client):
        response = client.get("/api/status")

        assert response.status_code == 200
        result = response.json()
        assert result["active_schedules"] == 0
        assert result["constraints"]["headway_minutes"] == 5
        assert set(result["data_quality"]) == {"positional", "occupancy", "station_event"}

    def test_health_and_root(self, client):
        assert client.get("/health").json()["status"] == "healthy"
        assert client.get("/").json()["health_url"] == "/health"


class FakeSocket:
    def __init__(self):
        self.sent = []

    async def send_text(self, text):
        self.sent.append(json.loads(text))

    def types(self):
        return [m["type"] for m in self.sent]


class TestWebSocket:
    """Test cases for real-time broadcasts."""

    def test_ping_pong(self, client):
        with client.websocket_connect("/ws/updates") as ws:
            assert ws.receive_json()["type"] == "connection_established"
            ws.send_text(json.dumps({"type": "ping"}))
            assert ws.receive_json()["type"] == "pong"
            ws.send_text("not json")
            assert ws.receive_json()["message"] == "Invalid JSON format"

    def test_request_current_state(self, client):
        client.post("/api/telemetry/positional", json=position_reading("12001"))
        client.post("/api/telemetry/positional", json=position_reading("22002", lat=28.1))

        with client.websocket_connect("/ws/updates?train_id=22002") as ws:
            ws.receive_json()
            ws.send_text(json.dumps({"type": "request_current_state"}))
            message = ws.receive_json()

        assert message["type"] == "current_state"
        assert [s["train_id"] for s in message["data"]] == ["22002"]

    def test_forward_engine_events(self, rail_engine, monkeypatch):
        manager = websocket_routes.ConnectionManager()
        monkeypatch.setattr(websocket_routes, "manager", manager)
        aggregate, express, freight = FakeSocket(), FakeSocket(), FakeSocket()
        for socket, train_id in ((aggregate, None), (express, "12001"), (freight, "50003")):
            manager.active_connections.append(socket)
            manager.connection_info[socket] = {"train_id": train_id}

        rail_engine.ingest(SourceKind.POSITIONAL, position_reading("12001"))
        rail_engine.conflict_channel.publish(Conflict.create(
            ConflictType.SAFETY_DISTANCE_VIOLATION,
            ConflictSeverity.CRITICAL,
            ["12001", "22002"],
            {"latitude": 28.3, "longitude": 77.0},
            "too close",
            RecommendedAction.EMERGENCY_HALT,
            detected_at=NOW,
        ))

        forwarded = asyncio.run(websocket_routes.forward_engine_events(rail_engine))

        assert forwarded == 2
        assert aggregate.types() == ["state_update", "conflict_alert"]
        assert express.types() == ["train_state_update", "conflict_alert", "train_conflict_alert"]
        assert freight.types() == ["conflict_alert"]
        assert len(rail_engine.state_channel) == 0
