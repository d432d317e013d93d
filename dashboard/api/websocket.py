"""
Sales CRM Hub — Notifications WebSocket
=========================================
Streams one user's CRM alerts over a WebSocket.

Each connection owns a NotificationWatcher bound to the caller's access
token. The watcher is stopped when the socket closes.

Clients connect to ws://host/ws/notifications?token=<access token> and receive:
- connected: acknowledgement, with the categories being watched
- alert: {title, description, severity}
- pong: reply to {"type": "ping"}
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Set

from fastapi import WebSocket, WebSocketDisconnect

from models.crm_models import Alert
from scripts.crm.notification_watcher import NotificationWatcher
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import SupabaseRealtimeBackend

logger = setup_logger("websocket")

# Swapped out in tests
backend_factory = SupabaseRealtimeBackend


class WebSocketManager:
    """Tracks active notification sockets."""

    def __init__(self):
        self._connections: Set[WebSocket] = set()

    async def connect(self, websocket: WebSocket):
        """Accept and register a new WebSocket connection."""
        await websocket.accept()
        self._connections.add(websocket)
        logger.info(
            "WebSocket connected. Active connections: %d", len(self._connections)
        )

    def disconnect(self, websocket: WebSocket):
        """Remove a disconnected WebSocket."""
        self._connections.discard(websocket)
        logger.info(
            "WebSocket disconnected. Active connections: %d", len(self._connections)
        )

    async def send_to(self, websocket: WebSocket, message: Dict[str, Any]):
        """Send a message to a specific connection."""
        payload = json.dumps(
            {
                **message,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            default=str,
        )
        try:
            await websocket.send_text(payload)
        except Exception as e:
            logger.warning("WebSocket send failed, dropping connection: %s", e)
            self._connections.discard(websocket)

    @property
    def connection_count(self) -> int:
        return len(self._connections)


# Singleton manager
ws_manager = WebSocketManager()


async def notifications_endpoint(websocket: WebSocket):
    """WebSocket endpoint streaming the caller's CRM alerts."""
    token = websocket.query_params.get("token")
    await ws_manager.connect(websocket)

    async def send_alert(alert: Alert):
        await ws_manager.send_to(websocket, {"event": "alert", "data": alert.model_dump()})

    backend = backend_factory(access_token=token)
    watcher = NotificationWatcher(backend, alert_sink=send_alert)
    await watcher.start()

    await ws_manager.send_to(websocket, {
        "event": "connected",
        "data": {"state": watcher.state.value, "categories": watcher.categories},
    })

    try:
        while True:
            data = await websocket.receive_text()
            try:
                msg = json.loads(data)
            except json.JSONDecodeError:
                continue
            if isinstance(msg, dict) and msg.get("type") == "ping":
                await ws_manager.send_to(websocket, {"event": "pong", "data": {}})
    except WebSocketDisconnect:
        pass
    finally:
        ws_manager.disconnect(websocket)
        await watcher.stop()
        await backend.close()
