# backend/core/state.py

from enum import Enum

class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    JOINING = "joining"
    JOINED = "joined"
