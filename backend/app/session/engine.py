# app/session/engine.py

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Awaitable, Protocol

from app.session.registry import Room, RoomRegistry
from app.session.scheduler import PendingWriteScheduler
from app.session.session_store import SessionStore
from app.system_metrics import increment_metric, set_metric
from core.config import CODE_PERSIST_DEBOUNCE_SEC, ROOM_GRACE_PERIOD_SEC, WS_SEND_TIMEOUT_SEC
from core.logger import log_event
from core.state import ConnectionState

logger = logging.getLogger("app.session.engine")

ROOM_NOT_FOUND = "Room not found"
NOT_JOINED = "Join the room before sending updates"


class RoomConnection(Protocol):
    connection_id: str

    async def send(self, payload: dict) -> None:
        ...

    async def close(self) -> None:
        ...


class SyncEngine:
    """Authoritative room state plus fan-out to every connection in a room.

    Every mutation of a room happens while holding that room's lock, and the
    matching broadcast is sent before the lock is released, so peers observe
    updates in the order the engine processed them. Persistence never runs
    under the lock: code writes are debounced per room and everything else is
    fired into background tasks whose failures are only logged.
    """

    def __init__(
        self,
        registry: RoomRegistry,
        store: SessionStore,
        *,
        debounce_sec: float = CODE_PERSIST_DEBOUNCE_SEC,
        grace_period_sec: float = ROOM_GRACE_PERIOD_SEC,
        send_timeout_sec: float = WS_SEND_TIMEOUT_SEC,
    ):
        self.registry = registry
        self.store = store
        self.debounce_sec = max(0.0, float(debounce_sec))
        self.grace_period_sec = max(0.0, float(grace_period_sec))
        self.send_timeout_sec = max(0.01, float(send_timeout_sec))
        self._connections: dict[str, RoomConnection] = {}
        self._connection_rooms: dict[str, str] = {}
        self._states: dict[str, ConnectionState] = {}
        self._code_writes = PendingWriteScheduler("code-persist")
        self._teardowns = PendingWriteScheduler("room-teardown")
        self._background: set[asyncio.Task] = set()

    def state_of(self, connection_id: str) -> ConnectionState:
        return self._states.get(connection_id, ConnectionState.DISCONNECTED)

    def room_of(self, connection_id: str) -> str | None:
        return self._connection_rooms.get(connection_id)

    # ================= EVENTS =================

    async def join(self, connection: RoomConnection, room_id: str, display_name: str = "") -> bool:
        connection_id = connection.connection_id
        previous_room_id = self._connection_rooms.get(connection_id)
        if previous_room_id and previous_room_id != room_id:
            await self._leave(connection_id, previous_room_id)

        self._states[connection_id] = ConnectionState.JOINING
        room = self.registry.get(room_id)
        if room is None:
            return await self._reject_join(connection, room_id)

        async with room.lock:
            if self.registry.get(room_id) is not room:
                return await self._reject_join(connection, room_id)

            room.participants.add(connection_id)
            self._connections[connection_id] = connection
            self._connection_rooms[connection_id] = room_id
            self._states[connection_id] = ConnectionState.JOINED
            count = room.participant_count

            await self._send(connection, {
                "type": "room-state",
                "language": room.language,
                "code": room.code,
                "participant_count": count,
            })
            await self._broadcast(room, {
                "type": "user-joined",
                "user_name": str(display_name or ""),
                "participant_count": count,
            }, exclude=connection_id)

        self._run_in_background(
            self.store.add_participant(room_id, connection_id),
            operation="add_participant",
            room_id=room_id,
        )
        log_event("sync_engine", "joined", room_id, connection_id=connection_id, participant_count=count)
        return True

    async def edit(self, connection: RoomConnection, room_id: str, code: str) -> bool:
        room = await self._require_joined(connection, room_id)
        if room is None:
            return False

        new_code = str(code or "")
        async with room.lock:
            room.code = new_code
            await self._broadcast(room, {"type": "code-update", "code": new_code}, exclude=connection.connection_id)

        self._code_writes.schedule(
            room_id,
            functools.partial(self._persist_code, room_id, new_code),
            self.debounce_sec,
        )
        increment_metric("code_changes_total")
        return True

    async def change_language(self, connection: RoomConnection, room_id: str, language: str) -> bool:
        room = await self._require_joined(connection, room_id)
        if room is None:
            return False

        new_language = str(language or "").strip().lower()
        async with room.lock:
            room.language = new_language
            await self._broadcast(room, {"type": "language-update", "language": new_language}, exclude=None)

        self._run_in_background(
            self.store.update(room_id, {"language": new_language}),
            operation="update_language",
            room_id=room_id,
        )
        log_event("sync_engine", "language_changed", room_id, language=new_language)
        return True

    async def disconnect(self, connection: RoomConnection) -> None:
        connection_id = connection.connection_id
        room_id = self._connection_rooms.get(connection_id)
        if room_id:
            await self._leave(connection_id, room_id)
        self._states.pop(connection_id, None)

    # ================= LIFECYCLE =================

    async def _leave(self, connection_id: str, room_id: str) -> None:
        self._connection_rooms.pop(connection_id, None)
        self._connections.pop(connection_id, None)
        self._states[connection_id] = ConnectionState.DISCONNECTED

        room = self.registry.get(room_id)
        if room is None:
            return

        async with room.lock:
            if connection_id not in room.participants:
                return
            room.participants.discard(connection_id)
            count = room.participant_count
            await self._broadcast(room, {"type": "user-left", "participant_count": count}, exclude=connection_id)

        log_event("sync_engine", "left", room_id, connection_id=connection_id, participant_count=count)
        if count == 0:
            self._teardowns.schedule(
                room_id,
                functools.partial(self._teardown_if_empty, room_id),
                self.grace_period_sec,
            )

    async def _teardown_if_empty(self, room_id: str) -> None:
        room = self.registry.get(room_id)
        if room is None:
            return
        async with room.lock:
            if room.participants:
                return
            self.registry.remove(room_id)
        set_metric("rooms_active", float(len(self.registry)))
        log_event("sync_engine", "room_torn_down", room_id)
        try:
            await self.store.end_session(room_id)
        except Exception as exc:
            logger.warning("Session end_session failed | room_id=%s err=%s", room_id, exc)

    async def shutdown(self) -> None:
        await self._code_writes.flush_all()
        await self._teardowns.cancel_all()
        pending = list(self._background)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ================= HELPERS =================

    async def _require_joined(self, connection: RoomConnection, room_id: str) -> Room | None:
        connection_id = connection.connection_id
        if self.state_of(connection_id) != ConnectionState.JOINED or self._connection_rooms.get(connection_id) != room_id:
            await self._send(connection, {"type": "error", "message": NOT_JOINED})
            return None
        room = self.registry.get(room_id)
        if room is None:
            await self._send(connection, {"type": "error", "message": ROOM_NOT_FOUND})
            return None
        return room

    async def _reject_join(self, connection: RoomConnection, room_id: str) -> bool:
        self._states[connection.connection_id] = ConnectionState.DISCONNECTED
        await self._send(connection, {"type": "error", "message": ROOM_NOT_FOUND})
        log_event("sync_engine", "join_rejected", room_id, connection_id=connection.connection_id)
        return False

    async def _persist_code(self, room_id: str, code: str) -> None:
        try:
            await self.store.append_history(room_id, code)
        except Exception as exc:
            logger.warning("Session code write failed | room_id=%s err=%s", room_id, exc)

    def _run_in_background(self, coro: Awaitable, *, operation: str, room_id: str) -> asyncio.Task:
        async def _guarded():
            try:
                await coro
            except Exception as exc:
                logger.warning("Session %s failed | room_id=%s err=%s", operation, room_id, exc)

        task = asyncio.create_task(_guarded())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _send(self, connection: RoomConnection, payload: dict) -> bool:
        try:
            await asyncio.wait_for(connection.send(payload), timeout=self.send_timeout_sec)
            return True
        except Exception as exc:
            increment_metric("ws_send_failures_total")
            logger.info("send failed | connection_id=%s err=%r", connection.connection_id, exc)
            return False

    async def _broadcast(self, room: Room, payload: dict, exclude: str | None = None) -> None:
        # Caller holds room.lock. Peers are sent to concurrently; a peer whose
        # send fails or times out is dropped so it is not waited on again.
        while True:
            targets = [
                self._connections[connection_id]
                for connection_id in list(room.participants)
                if connection_id != exclude and connection_id in self._connections
            ]
            if not targets:
                return
            delivered = await asyncio.gather(*(self._send(conn, payload) for conn in targets))
            dropped = [conn for conn, ok in zip(targets, delivered) if not ok]
            if not dropped:
                return
            for conn in dropped:
                self._drop_peer(room, conn)
            payload = {"type": "user-left", "participant_count": room.participant_count}
            exclude = None

    def _drop_peer(self, room: Room, connection: RoomConnection) -> None:
        connection_id = connection.connection_id
        room.participants.discard(connection_id)
        self._connections.pop(connection_id, None)
        self._connection_rooms.pop(connection_id, None)
        self._states[connection_id] = ConnectionState.DISCONNECTED
        increment_metric("ws_peers_dropped_total")
        log_event("sync_engine", "peer_dropped", room.id, connection_id=connection_id, participant_count=room.participant_count)
        self._run_in_background(
            asyncio.wait_for(connection.close(), timeout=self.send_timeout_sec),
            operation="close_dropped_peer",
            room_id=room.id,
        )
        if not room.participants:
            self._teardowns.schedule(
                room.id,
                functools.partial(self._teardown_if_empty, room.id),
                self.grace_period_sec,
            )
