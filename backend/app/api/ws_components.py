from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from app.session.engine import SyncEngine
from app.system_metrics import increment_metric

logger = logging.getLogger("app.api.ws_components")


@dataclass(eq=False)
class WebSocketConnection:
    connection_id: str
    websocket: WebSocket
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def send(self, payload: dict) -> None:
        if self.websocket.client_state != WebSocketState.CONNECTED:
            return
        encoded = json.dumps(payload)
        async with self.send_lock:
            await self.websocket.send_text(encoded)

    async def close(self) -> None:
        if self.websocket.client_state != WebSocketState.CONNECTED:
            return
        await self.websocket.close(code=1011)


@dataclass
class RoomEventDispatcher:
    engine: SyncEngine
    max_text_bytes: int

    async def dispatch(self, connection: WebSocketConnection, raw_text: str) -> None:
        if len(raw_text.encode("utf-8")) > self.max_text_bytes:
            await self._protocol_error(connection, "Message too large")
            return
        try:
            message = json.loads(raw_text)
        except ValueError:
            await self._protocol_error(connection, "Malformed message")
            return
        if not isinstance(message, dict):
            await self._protocol_error(connection, "Malformed message")
            return

        event_type = str(message.get("type") or "")
        room_id = str(message.get("room_id") or "").strip()

        if event_type in {"join", "join-room"}:
            await self.engine.join(connection, room_id, str(message.get("user_name") or ""))
        elif event_type == "code-change":
            code = message.get("code")
            if not isinstance(code, str):
                await self._protocol_error(connection, "code must be a string")
                return
            await self.engine.edit(connection, room_id, code)
        elif event_type == "language-change":
            await self.engine.change_language(connection, room_id, str(message.get("language") or ""))
        else:
            await self._protocol_error(connection, f"Unknown event: {event_type or 'missing type'}")

    @staticmethod
    async def _protocol_error(connection: WebSocketConnection, message: str) -> None:
        increment_metric("ws_protocol_errors_total")
        try:
            await connection.send({"type": "error", "message": message})
        except Exception as exc:
            logger.info("error event not delivered | connection_id=%s err=%r", connection.connection_id, exc)
