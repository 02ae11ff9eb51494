from __future__ import annotations

import asyncio
import secrets
import string
import time
from dataclasses import dataclass, field
from threading import Lock

_ROOM_ID_ALPHABET = string.digits + string.ascii_lowercase
ROOM_ID_LENGTH = 9


def generate_room_id(length: int = ROOM_ID_LENGTH) -> str:
    """Short base-36 token. Uniqueness is best-effort, not a security boundary."""
    return "".join(secrets.choice(_ROOM_ID_ALPHABET) for _ in range(max(1, int(length))))


@dataclass
class Room:
    id: str
    candidate_name: str
    language: str
    code: str = ""
    participants: set[str] = field(default_factory=set)
    created_at: float = field(default_factory=time.time)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    @property
    def participant_count(self) -> int:
        return len(self.participants)

    def snapshot(self) -> dict:
        return {
            "id": self.id,
            "candidate_name": self.candidate_name,
            "language": self.language,
            "code": self.code,
            "participant_count": self.participant_count,
            "created_at": self.created_at,
            "is_active": True,
        }


class RoomRegistry:
    def __init__(self):
        self._lock = Lock()
        self._rooms: dict[str, Room] = {}

    def create(self, room_id: str, candidate_name: str, language: str) -> Room:
        with self._lock:
            if room_id in self._rooms:
                raise ValueError(f"Room id already in use: {room_id}")
            room = Room(id=room_id, candidate_name=str(candidate_name or ""), language=language)
            self._rooms[room_id] = room
            return room

    def create_unique(self, candidate_name: str, language: str, attempts: int = 8) -> Room:
        for _ in range(max(1, attempts)):
            try:
                return self.create(generate_room_id(), candidate_name, language)
            except ValueError:
                continue
        raise RuntimeError("Could not allocate a unique room id")

    def get(self, room_id: str) -> Room | None:
        with self._lock:
            return self._rooms.get(str(room_id or ""))

    def remove(self, room_id: str) -> Room | None:
        with self._lock:
            return self._rooms.pop(str(room_id or ""), None)

    def __contains__(self, room_id: object) -> bool:
        with self._lock:
            return room_id in self._rooms

    def __len__(self) -> int:
        with self._lock:
            return len(self._rooms)
