from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Protocol

from core.config import CODE_HISTORY_LIMIT, REDIS_URL, SESSION_STORE_BACKEND, SESSION_STORE_PATH

logger = logging.getLogger("app.session.session_store")


@dataclass
class SessionRecord:
    session_id: str
    candidate_name: str = ""
    language: str = ""
    code: str = ""
    participants: list[str] = field(default_factory=list)
    is_active: bool = True
    created_at: float = 0.0
    updated_at: float = 0.0
    ended_at: float | None = None
    code_history: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "SessionRecord":
        ended_at = data.get("ended_at")
        return cls(
            session_id=str(data.get("session_id") or ""),
            candidate_name=str(data.get("candidate_name") or ""),
            language=str(data.get("language") or ""),
            code=str(data.get("code") or ""),
            participants=[str(item) for item in (data.get("participants") or [])],
            is_active=bool(data.get("is_active", True)),
            created_at=float(data.get("created_at") or 0.0),
            updated_at=float(data.get("updated_at") or 0.0),
            ended_at=float(ended_at) if ended_at is not None else None,
            code_history=[
                {"timestamp": float(item.get("timestamp") or 0.0), "code": str(item.get("code") or "")}
                for item in (data.get("code_history") or [])
                if isinstance(item, dict)
            ],
        )

    def copy(self) -> "SessionRecord":
        return SessionRecord.from_dict(self.to_dict())


_UPDATABLE_FIELDS = {"candidate_name", "language", "code", "is_active"}


class SessionStore(Protocol):
    async def create(self, record: SessionRecord) -> SessionRecord:
        ...

    async def find(self, session_id: str) -> SessionRecord | None:
        ...

    async def update(self, session_id: str, updates: dict) -> SessionRecord | None:
        ...

    async def add_participant(self, session_id: str, connection_id: str) -> None:
        ...

    async def append_history(self, session_id: str, code: str, timestamp: float | None = None) -> SessionRecord | None:
        ...

    async def end_session(self, session_id: str) -> SessionRecord | None:
        ...

    async def delete(self, session_id: str) -> bool:
        ...

    async def list_recent(self, limit: int = 20) -> list[SessionRecord]:
        ...

    async def close(self) -> None:
        ...


class LocalSessionStore:
    """In-process session store, optionally mirrored to a JSON file."""

    def __init__(self, path: Path | None = None, history_limit: int = CODE_HISTORY_LIMIT):
        self._lock = asyncio.Lock()
        self._path = path
        self._history_limit = max(1, int(history_limit))
        self._records: dict[str, SessionRecord] = {}
        self._load()

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except Exception as exc:
            logger.warning("Session store load failed | path=%s err=%s", self._path, exc)
            return
        if not isinstance(payload, dict):
            return
        self._records = {
            str(key): SessionRecord.from_dict(value)
            for key, value in payload.items()
            if isinstance(key, str) and isinstance(value, dict)
        }

    def _persist(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self._path.with_suffix(".tmp")
        data = {key: record.to_dict() for key, record in self._records.items()}
        temp_path.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")
        temp_path.replace(self._path)

    async def create(self, record: SessionRecord) -> SessionRecord:
        now_ts = time.time()
        async with self._lock:
            stored = record.copy()
            stored.created_at = stored.created_at or now_ts
            stored.updated_at = now_ts
            self._records[stored.session_id] = stored
            self._persist()
            return stored.copy()

    async def find(self, session_id: str) -> SessionRecord | None:
        async with self._lock:
            record = self._records.get(session_id)
            return record.copy() if record else None

    async def update(self, session_id: str, updates: dict) -> SessionRecord | None:
        async with self._lock:
            record = self._records.get(session_id)
            if record is None:
                return None
            for key, value in dict(updates or {}).items():
                if key in _UPDATABLE_FIELDS:
                    setattr(record, key, value)
            record.updated_at = time.time()
            self._persist()
            return record.copy()

    async def add_participant(self, session_id: str, connection_id: str) -> None:
        async with self._lock:
            record = self._records.get(session_id)
            if record is None or not connection_id:
                return
            if connection_id not in record.participants:
                record.participants.append(connection_id)
            record.is_active = True
            record.updated_at = time.time()
            self._persist()

    async def append_history(self, session_id: str, code: str, timestamp: float | None = None) -> SessionRecord | None:
        async with self._lock:
            record = self._records.get(session_id)
            if record is None:
                return None
            now_ts = float(timestamp or time.time())
            record.code = str(code or "")
            record.code_history.append({"timestamp": now_ts, "code": record.code})
            if len(record.code_history) > self._history_limit:
                record.code_history = record.code_history[-self._history_limit:]
            record.updated_at = now_ts
            self._persist()
            return record.copy()

    async def end_session(self, session_id: str) -> SessionRecord | None:
        async with self._lock:
            record = self._records.get(session_id)
            if record is None:
                return None
            if record.is_active or record.ended_at is None:
                record.is_active = False
                record.ended_at = record.ended_at or time.time()
                record.updated_at = time.time()
                self._persist()
            return record.copy()

    async def delete(self, session_id: str) -> bool:
        async with self._lock:
            removed = self._records.pop(session_id, None)
            if removed is not None:
                self._persist()
            return removed is not None

    async def list_recent(self, limit: int = 20) -> list[SessionRecord]:
        capped = max(1, min(int(limit or 20), 200))
        async with self._lock:
            rows = sorted(self._records.values(), key=lambda item: item.created_at, reverse=True)
            return [record.copy() for record in rows[:capped]]

    async def close(self) -> None:
        return


class RedisSessionStore:
    """Redis-backed session records.

    Keys:
    - session:{id} (hash, scalar fields)
    - session:{id}:participants (set)
    - session:{id}:history (list of JSON snapshots, trimmed to the newest N)
    - sessions:by_created (sorted set, score = created_at)
    """

    _INDEX_KEY = "sessions:by_created"

    def __init__(self, redis_url: str = "", history_limit: int = CODE_HISTORY_LIMIT, client=None):
        if client is None:
            import redis.asyncio as redis_async

            client = redis_async.from_url(redis_url, decode_responses=True)
        self._redis = client
        self._history_limit = max(1, int(history_limit))

    @staticmethod
    def _record_key(session_id: str) -> str:
        return f"session:{session_id}"

    @staticmethod
    def _participants_key(session_id: str) -> str:
        return f"session:{session_id}:participants"

    @staticmethod
    def _history_key(session_id: str) -> str:
        return f"session:{session_id}:history"

    @staticmethod
    def _encode_scalars(record: SessionRecord) -> dict[str, str]:
        return {
            "session_id": record.session_id,
            "candidate_name": record.candidate_name,
            "language": record.language,
            "code": record.code,
            "is_active": json.dumps(bool(record.is_active)),
            "created_at": str(record.created_at),
            "updated_at": str(record.updated_at),
            "ended_at": "" if record.ended_at is None else str(record.ended_at),
        }

    async def _exists(self, session_id: str) -> bool:
        return bool(await self._redis.exists(self._record_key(session_id)))

    async def create(self, record: SessionRecord) -> SessionRecord:
        now_ts = time.time()
        stored = record.copy()
        stored.created_at = stored.created_at or now_ts
        stored.updated_at = now_ts
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._record_key(stored.session_id), mapping=self._encode_scalars(stored))
            pipe.zadd(self._INDEX_KEY, {stored.session_id: stored.created_at})
            await pipe.execute()
        return stored

    async def find(self, session_id: str) -> SessionRecord | None:
        data = await self._redis.hgetall(self._record_key(session_id))
        if not data:
            return None
        participants = await self._redis.smembers(self._participants_key(session_id))
        raw_history = await self._redis.lrange(self._history_key(session_id), 0, -1)
        history = []
        for item in raw_history:
            try:
                history.append(json.loads(item))
            except ValueError:
                continue
        ended_at = str(data.get("ended_at") or "")
        return SessionRecord(
            session_id=str(data.get("session_id") or session_id),
            candidate_name=str(data.get("candidate_name") or ""),
            language=str(data.get("language") or ""),
            code=str(data.get("code") or ""),
            participants=sorted(participants or []),
            is_active=str(data.get("is_active") or "true").lower() in {"1", "true", "yes", "on"},
            created_at=float(data.get("created_at") or 0.0),
            updated_at=float(data.get("updated_at") or 0.0),
            ended_at=float(ended_at) if ended_at else None,
            code_history=history,
        )

    async def update(self, session_id: str, updates: dict) -> SessionRecord | None:
        if not await self._exists(session_id):
            return None
        mapping = {}
        for key, value in dict(updates or {}).items():
            if key not in _UPDATABLE_FIELDS:
                continue
            mapping[key] = json.dumps(bool(value)) if key == "is_active" else str(value or "")
        mapping["updated_at"] = str(time.time())
        await self._redis.hset(self._record_key(session_id), mapping=mapping)
        return await self.find(session_id)

    async def add_participant(self, session_id: str, connection_id: str) -> None:
        if not connection_id or not await self._exists(session_id):
            return
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.sadd(self._participants_key(session_id), connection_id)
            pipe.hset(
                self._record_key(session_id),
                mapping={"is_active": json.dumps(True), "updated_at": str(time.time())},
            )
            await pipe.execute()

    async def append_history(self, session_id: str, code: str, timestamp: float | None = None) -> SessionRecord | None:
        if not await self._exists(session_id):
            return None
        now_ts = float(timestamp or time.time())
        snapshot = json.dumps({"timestamp": now_ts, "code": str(code or "")}, ensure_ascii=False)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._record_key(session_id), mapping={"code": str(code or ""), "updated_at": str(now_ts)})
            pipe.rpush(self._history_key(session_id), snapshot)
            pipe.ltrim(self._history_key(session_id), -self._history_limit, -1)
            await pipe.execute()
        return await self.find(session_id)

    async def end_session(self, session_id: str) -> SessionRecord | None:
        record = await self.find(session_id)
        if record is None:
            return None
        if record.ended_at is None:
            now_ts = time.time()
            await self._redis.hset(
                self._record_key(session_id),
                mapping={"is_active": json.dumps(False), "ended_at": str(now_ts), "updated_at": str(now_ts)},
            )
            record.is_active = False
            record.ended_at = now_ts
            record.updated_at = now_ts
        return record

    async def delete(self, session_id: str) -> bool:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.delete(self._record_key(session_id))
            pipe.delete(self._participants_key(session_id))
            pipe.delete(self._history_key(session_id))
            pipe.zrem(self._INDEX_KEY, session_id)
            results = await pipe.execute()
        return bool(results and results[0])

    async def list_recent(self, limit: int = 20) -> list[SessionRecord]:
        capped = max(1, min(int(limit or 20), 200))
        session_ids = await self._redis.zrevrange(self._INDEX_KEY, 0, capped - 1)
        rows = []
        for session_id in session_ids:
            record = await self.find(session_id)
            if record is not None:
                rows.append(record)
        return rows

    async def close(self) -> None:
        await self._redis.aclose()


def build_session_store(backend: str | None = None) -> SessionStore:
    choice = str(backend or SESSION_STORE_BACKEND or "memory").strip().lower()
    if choice == "file":
        return LocalSessionStore(path=SESSION_STORE_PATH)
    if choice == "redis":
        if not REDIS_URL:
            raise RuntimeError("SESSION_STORE_BACKEND=redis requires REDIS_URL")
        return RedisSessionStore(REDIS_URL)
    return LocalSessionStore()
