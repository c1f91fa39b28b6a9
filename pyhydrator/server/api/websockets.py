"""
WebSocket Endpoint for Signal Streaming

Every outbound orchestrator signal (provide-data, cache-hydrated, error,
token-expired, busy-timeout-recovery, notification, ...) is pushed to the
connected clients as JSON.  Clients may also send inbound signals over the
same socket.

Routes:
    - WS /ws/signals -> bidirectional signal stream

Message Format:
    {"signal": "provide-data", "payload": {"domain": "energy", "periodKey": "...", "items": [...], "version": 3}}

Usage Example:
    JavaScript:
        const ws = new WebSocket('ws://localhost:8680/ws/signals');
        ws.onmessage = (event) => {
            const msg = JSON.parse(event.data);
            if (msg.signal === 'provide-data') render(msg.payload.items);
        };
        ws.send(JSON.stringify({signal: 'request-data', payload: {domain: 'energy', widgetId: 'card-1'}}));
"""
import asyncio
import logging
from typing import Any, Dict, Set

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from pyhydrator.bus import Transport
from pyhydrator.const import INBOUND_SIGNALS
from pyhydrator.server.core import orchestrator_manager

router = APIRouter()
logger = logging.getLogger(__name__)


class ConnectionManager:
    """
    Manages WebSocket connections for broadcasting signals.

    Dead connections found during a broadcast are removed.
    """

    def __init__(self):
        self.active_connections: list[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        """Accept and register a new WebSocket connection."""
        await websocket.accept()
        self.active_connections.append(websocket)

    def disconnect(self, websocket: WebSocket):
        """Remove a WebSocket connection from active list."""
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)

    async def broadcast(self, message: dict):
        """Broadcast message to all connected clients."""
        dead_connections = []
        for connection in list(self.active_connections):
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.error(f"Error sending to websocket: {e}")
                dead_connections.append(connection)

        # Clean up dead connections
        for connection in dead_connections:
            self.disconnect(connection)


class WebSocketTransport(Transport):
    """Event bus transport delivering signals to WebSocket clients."""
    name = "websocket"

    def __init__(self, connections: ConnectionManager):
        self.connections = connections
        self._tasks: Set[asyncio.Task] = set()

    def deliver(self, signal: str, payload: Dict[str, Any]) -> None:
        if not self.connections.active_connections:
            return
        task = asyncio.ensure_future(self.connections.broadcast({"signal": signal, "payload": payload}))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()


manager = ConnectionManager()
transport = WebSocketTransport(manager)


@router.websocket("/signals")
async def websocket_signals(websocket: WebSocket):
    """
    Stream outbound signals and accept inbound ones.

    Unknown or outbound signal names sent by a client are answered with an
    error message and otherwise ignored.
    """
    await manager.connect(websocket)
    try:
        while True:
            message = await websocket.receive_json()
            signal = message.get("signal") if isinstance(message, dict) else None
            if signal not in INBOUND_SIGNALS:
                await websocket.send_json({"error": f"Unsupported signal: {signal}"})
                continue
            orchestrator_manager.get().bus.publish(signal, message.get("payload") or {})
    except WebSocketDisconnect:
        manager.disconnect(websocket)
    except Exception as e:
        logger.error(f"WebSocket error (signals): {type(e).__name__}: {e}")
        manager.disconnect(websocket)
