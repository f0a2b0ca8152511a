from typing import Dict, Optional
from fastapi import WebSocket
import asyncio
import json

class ConnectionManager:
    """Websocket fan-out for registry change events.

    A connection may subscribe to a single device; ``None`` means all devices.
    """

    def __init__(self) -> None:
        self.active_connections: Dict[WebSocket, Optional[str]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, device_id: Optional[str] = None):
        await websocket.accept()
        # greet before registering so the hello is always the first frame
        await websocket.send_json({"kind": "connection", "message": "Connected", "device_id": device_id})
        async with self._lock:
            self.active_connections[websocket] = device_id

    async def disconnect(self, websocket: WebSocket):
        async with self._lock:
            self.active_connections.pop(websocket, None)

    async def broadcast_event(self, event: dict):
        message = json.dumps(event)
        target = event.get("device_id")
        tasks = []
        async with self._lock:
            for ws, device_id in list(self.active_connections.items()):
                if device_id is None or device_id == target:
                    tasks.append(self._safe_send(ws, message))
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _safe_send(self, ws: WebSocket, message: str):
        try:
            await ws.send_text(message)
        except Exception:
            await self.disconnect(ws)
