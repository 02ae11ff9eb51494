import os
from pathlib import Path
from dotenv import load_dotenv

_BACKEND_ROOT = Path(__file__).resolve().parents[1]
_BACKEND_ENV_PATH = _BACKEND_ROOT / ".env"
load_dotenv(dotenv_path=_BACKEND_ENV_PATH, override=False)

FRONTEND_URL = str(os.getenv("FRONTEND_URL") or "http://localhost:5173").strip().rstrip("/")
DEFAULT_LANGUAGE = str(os.getenv("DEFAULT_LANGUAGE") or "javascript").strip().lower()

ROOM_GRACE_PERIOD_SEC = max(0.0, float(os.getenv("ROOM_GRACE_PERIOD_SEC", "60")))
CODE_PERSIST_DEBOUNCE_SEC = max(0.0, float(os.getenv("CODE_PERSIST_DEBOUNCE_SEC", "2.0")))
CODE_HISTORY_LIMIT = max(1, int(os.getenv("CODE_HISTORY_LIMIT", "50")))

EXECUTION_TIMEOUT_SEC = max(1.0, float(os.getenv("EXECUTION_TIMEOUT_SEC", "5")))
EXECUTION_SCRATCH_DIR = Path(os.getenv("EXECUTION_SCRATCH_DIR") or (_BACKEND_ROOT / "temp"))
EXECUTION_MAX_OUTPUT_CHARS = max(256, int(os.getenv("EXECUTION_MAX_OUTPUT_CHARS", "10000")))
EXECUTION_MAX_CONCURRENCY = max(0, int(os.getenv("EXECUTION_MAX_CONCURRENCY", "0")))

SESSION_STORE_BACKEND = str(os.getenv("SESSION_STORE_BACKEND") or "memory").strip().lower()
SESSION_STORE_PATH = Path(os.getenv("SESSION_STORE_PATH") or (_BACKEND_ROOT / "data" / "sessions.json"))
REDIS_URL = str(os.getenv("REDIS_URL") or "").strip()

WS_MAX_TEXT_BYTES = max(1024, int(os.getenv("WS_MAX_TEXT_BYTES", "1048576")))
WS_SEND_TIMEOUT_SEC = max(0.5, float(os.getenv("WS_SEND_TIMEOUT_SEC", "5")))


def get_allowed_origins() -> list[str]:
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if not raw:
        return [
            "http://localhost:5173",
            "http://localhost:5174",
            "http://127.0.0.1:5173",
            FRONTEND_URL,
        ]
    return [item.strip() for item in raw.split(",") if item.strip()]
