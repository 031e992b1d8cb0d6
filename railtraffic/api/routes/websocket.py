"""
WebSocket routes for real-time train state and conflict broadcasts.
"""
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, Query
from typing import List, Dict, Any, Optional
import json
import asyncio
import logging

from railtraffic.core.dependencies import get_engine
from railtraffic.services.detection.models import ConflictType
from railtraffic.services.engine import RailTrafficEngine
from railtraffic.services.optimization.models import utcnow

router = APIRouter()
logger = logging.getLogger(__name__)


def _now() -> str:
    return utcnow().isoformat()


class ConnectionManager:
    """Manages WebSocket connections for real-time updates."""

    def __init__(self):
        self.active_connections: List[WebSocket] = []
        # Stores metadata per connection (e.g., train_id)
        self.connection_info: Dict[WebSocket, Dict[str, Any]] = {}

    async def connect(self, websocket: WebSocket, client_info: Dict[str, Any] = None):
        """Accept a new WebSocket connection."""
        await websocket.accept()
        self.active_connections.append(websocket)
        self.connection_info[websocket] = client_info or {}
        logger.info(
            f"WebSocket connection established. "
            f"Train={client_info.get('train_id') if client_info else None}, "
            f"Total connections: {len(self.active_connections)}"
        )

    def disconnect(self, websocket: WebSocket):
        """Remove a WebSocket connection."""
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
            self.connection_info.pop(websocket, None)
            logger.info(
                f"WebSocket connection closed. Total connections: {len(self.active_connections)}"
            )

    async def send_personal_message(self, message: Dict[str, Any], websocket: WebSocket):
        """Send a message to a specific client."""
        try:
            await websocket.send_text(json.dumps(message, default=str))
        except Exception as e:
            logger.error(f"Failed to send personal message: {str(e)}")
            self.disconnect(websocket)

    async def broadcast(self, message: Dict[str, Any]):
        """Broadcast a message to all connected clients (no filtering)."""
        if not self.active_connections:
            return
        disconnected = []
        for connection in list(self.active_connections):
            try:
                await connection.send_text(json.dumps(message, default=str))
            except Exception as e:
                logger.error(f"Failed to broadcast to connection: {str(e)}")
                disconnected.append(connection)
        for connection in disconnected:
            self.disconnect(connection)

    async def broadcast_to_trains(self, message: Dict[str, Any], train_ids: List[str]):
        """Send a message to clients subscribed to any of the given trains."""
        if not self.active_connections:
            return
        wanted = set(train_ids)
        disconnected = []
        for connection in list(self.active_connections):
            if self.connection_info.get(connection, {}).get("train_id") not in wanted:
                continue
            try:
                await connection.send_text(json.dumps(message, default=str))
            except Exception as e:
                logger.error(f"Failed to send train update: {str(e)}")
                disconnected.append(connection)
        for connection in disconnected:
            self.disconnect(connection)

    def subscribers(self, train_id: Optional[str]) -> List[WebSocket]:
        return [c for c in self.active_connections if self.connection_info.get(c, {}).get("train_id") == train_id]

    async def send_state_update(self, state_event: Dict[str, Any]):
        """Aggregate subscribers get every train; per-train subscribers get their own."""
        message = {
            "type": "state_update",
            "timestamp": _now(),
            "data": state_event,
        }
        aggregate = self.subscribers(None)
        for connection in aggregate:
            await self.send_personal_message(message, connection)
        await self.broadcast_to_trains({**message, "type": "train_state_update"}, [state_event["train_id"]])

    async def send_conflict_alert(self, conflict_data: Dict[str, Any]):
        """Conflict alerts go to ALL clients, then again to each involved train's channel."""
        message = {
            "type": "conflict_alert",
            "timestamp": _now(),
            "data": conflict_data,
        }
        await self.broadcast(message)
        await self.broadcast_to_trains({**message, "type": "train_conflict_alert"}, conflict_data.get("trains", []))

    async def send_alert(self, alert_data: Dict[str, Any]):
        """Send alert notification to ALL clients."""
        message = {
            "type": "alert",
            "timestamp": _now(),
            "data": alert_data,
        }
        await self.broadcast(message)

    def get_connection_stats(self) -> Dict[str, Any]:
        """Get statistics about current connections."""
        return {
            "total_connections": len(self.active_connections),
            "connection_details": [
                {
                    "id": id(conn),
                    "info": self.connection_info.get(conn, {})
                }
                for conn in self.active_connections
            ]
        }


# Global connection manager instance
manager = ConnectionManager()


@router.websocket("/updates")
async def websocket_endpoint(
    websocket: WebSocket,
    train_id: Optional[str] = Query(None),
    engine: RailTrafficEngine = Depends(get_engine)
):
    """
    WebSocket endpoint for real-time train updates.

    Clients connect with ?train_id=XYZ for one train's channel, or without it
    for the aggregate channel. Clients can receive:
    - State updates (aggregate, or filtered by train)
    - Conflict alerts (to all clients, and again on each involved train's channel)
    - Reconciliation alerts
    - Heartbeats
    """
    await manager.connect(websocket, client_info={"train_id": train_id})
    try:
        await manager.send_personal_message({
            "type": "connection_established",
            "message": f"Connected to rail traffic engine (train={train_id})",
            "timestamp": _now()
        }, websocket)

        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
                await handle_client_message(websocket, message, engine)
            except json.JSONDecodeError:
                await manager.send_personal_message({
                    "type": "error",
                    "message": "Invalid JSON format",
                    "timestamp": _now()
                }, websocket)
            except Exception as e:
                logger.error(f"Error handling client message: {str(e)}")
                await manager.send_personal_message({
                    "type": "error",
                    "message": "Error processing message",
                    "timestamp": _now()
                }, websocket)

    except WebSocketDisconnect:
        manager.disconnect(websocket)
    except Exception as e:
        logger.error(f"WebSocket error: {str(e)}")
        manager.disconnect(websocket)


async def handle_client_message(websocket: WebSocket, message: Dict[str, Any], engine: RailTrafficEngine):
    """
    Handle incoming messages from WebSocket clients.
    """
    message_type = message.get("type", "unknown") if isinstance(message, dict) else "unknown"
    logger.debug(f"Received WebSocket message: {message_type}")

    if message_type == "request_current_state":
        train_id = manager.connection_info.get(websocket, {}).get("train_id")
        states = engine.store.snapshot_states()
        if train_id is not None:
            states = {k: v for k, v in states.items() if k == train_id}
        await manager.send_personal_message({
            "type": "current_state",
            "data": [s.to_dict() for s in states.values()],
            "timestamp": _now()
        }, websocket)

    elif message_type == "ping":
        await manager.send_personal_message({
            "type": "pong",
            "timestamp": _now()
        }, websocket)

    else:
        await manager.send_personal_message({
            "type": "error",
            "message": f"Unknown message type: {message_type}",
            "timestamp": _now()
        }, websocket)


@router.get("/connections")
async def get_connection_stats():
    """Get statistics about current WebSocket connections."""
    return manager.get_connection_stats()


async def forward_engine_events(engine: RailTrafficEngine) -> int:
    """
    Drain the engine's channels once and push the events to clients.

    Delay bubble-up conflicts are also handed to the reconciler.

    Returns:
        Number of events forwarded
    """
    states, conflicts = engine.drain_events()
    for state_event in states:
        await manager.send_state_update(state_event)
    for conflict in conflicts:
        await manager.send_conflict_alert(conflict.to_dict())
        if conflict.conflict_type is ConflictType.DELAY_BUBBLE_UP:
            result = await asyncio.to_thread(engine.dispatch_conflict, conflict)
            if result is not None:
                await manager.send_alert({
                    "kind": "priority_resequencing",
                    "conflict_id": conflict.conflict_id,
                    "explanation": result.explanation,
                    "affected_trains": list(result.affected_schedules),
                })
    return len(states) + len(conflicts)


async def event_forwarder(engine: RailTrafficEngine, interval_seconds: float):
    """Background task draining engine channels into the connection manager."""
    while True:
        try:
            await forward_engine_events(engine)
            await asyncio.sleep(interval_seconds)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error forwarding engine events: {str(e)}")
            await asyncio.sleep(interval_seconds)


async def periodic_updates():
    while True:
        try:
            if manager.active_connections:
                await manager.broadcast({
                    "type": "heartbeat",
                    "timestamp": _now(),
                    "active_connections": len(manager.active_connections)
                })
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error in periodic updates: {str(e)}")
            await asyncio.sleep(30)
