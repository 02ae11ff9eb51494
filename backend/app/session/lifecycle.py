from __future__ import annotations

import logging

from app.session.registry import RoomRegistry
from app.session.session_store import SessionRecord, SessionStore
from app.system_metrics import set_metric
from core.config import DEFAULT_LANGUAGE, FRONTEND_URL
from core.logger import log_event

logger = logging.getLogger("app.session.lifecycle")


class SessionNotFoundError(LookupError):
    pass


class SessionLifecycleController:
    """Room creation plus reads that reconcile live rooms with persisted sessions."""

    def __init__(self, registry: RoomRegistry, store: SessionStore, base_url: str = FRONTEND_URL):
        self.registry = registry
        self.store = store
        self.base_url = str(base_url or "").rstrip("/")

    def share_url(self, room_id: str) -> str:
        return f"{self.base_url}/interview/{room_id}"

    async def create_room(self, candidate_name: str, language: str | None = None) -> dict:
        chosen_language = str(language or DEFAULT_LANGUAGE).strip().lower() or DEFAULT_LANGUAGE
        room = self.registry.create_unique(str(candidate_name or "").strip(), chosen_language)
        set_metric("rooms_active", float(len(self.registry)))

        try:
            await self.store.create(SessionRecord(
                session_id=room.id,
                candidate_name=room.candidate_name,
                language=room.language,
                code=room.code,
                is_active=True,
                created_at=room.created_at,
            ))
        except Exception as exc:
            logger.warning("Session create failed; continuing in memory | room_id=%s err=%s", room.id, exc)

        log_event("lifecycle", "room_created", room.id, language=room.language)
        return {"id": room.id, "url": self.share_url(room.id)}

    async def fetch(self, room_id: str) -> dict:
        room = self.registry.get(room_id)
        if room is not None:
            return room.snapshot()

        record = await self._find_quietly(room_id)
        if record is None:
            raise SessionNotFoundError(room_id)
        return {
            "id": record.session_id,
            "candidate_name": record.candidate_name,
            "language": record.language,
            "code": record.code,
            "participant_count": 0,
            "created_at": record.created_at,
            "is_active": record.is_active,
            "ended_at": record.ended_at,
        }

    async def list_recent(self, limit: int = 20) -> list[dict]:
        try:
            rows = await self.store.list_recent(limit)
        except Exception as exc:
            logger.warning("Session list_recent failed | err=%s", exc)
            return []
        return [
            {
                "id": record.session_id,
                "candidate_name": record.candidate_name,
                "language": record.language,
                "is_active": record.is_active,
                "created_at": record.created_at,
                "ended_at": record.ended_at,
                "participant_count": len(record.participants),
            }
            for record in rows
        ]

    async def details(self, session_id: str) -> dict:
        record = await self._find_quietly(session_id)
        if record is None:
            raise SessionNotFoundError(session_id)
        return {
            "id": record.session_id,
            "candidate_name": record.candidate_name,
            "language": record.language,
            "code": record.code,
            "is_active": record.is_active,
            "created_at": record.created_at,
            "updated_at": record.updated_at,
            "ended_at": record.ended_at,
            "participants": list(record.participants),
            "code_history": list(record.code_history),
        }

    async def delete(self, session_id: str) -> None:
        # Administrative delete of the persisted record only; a live room keeps running.
        if not await self.store.delete(session_id):
            raise SessionNotFoundError(session_id)
        log_event("lifecycle", "session_deleted", session_id)

    async def _find_quietly(self, session_id: str) -> SessionRecord | None:
        try:
            return await self.store.find(session_id)
        except Exception as exc:
            logger.warning("Session find failed | session_id=%s err=%s", session_id, exc)
            return None
