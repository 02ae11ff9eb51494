from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging
import time

from app.api.execute import router as execute_router
from app.api.sessions import router as sessions_router
from app.api.ws_room import router as room_ws_router
from app.execution import ExecutionRunner
from app.session.engine import SyncEngine
from app.session.lifecycle import SessionLifecycleController
from app.session.registry import RoomRegistry
from app.session.session_store import LocalSessionStore, SessionStore, build_session_store
from app.system_metrics import get_metrics_snapshot
from core.config import (
    CODE_PERSIST_DEBOUNCE_SEC,
    ROOM_GRACE_PERIOD_SEC,
    get_allowed_origins,
)

logger = logging.getLogger("app.main")


def _build_store() -> SessionStore:
    try:
        store = build_session_store()
        logger.info("Session store initialized: %s", store.__class__.__name__)
        return store
    except Exception as exc:
        logger.warning("Session store fallback to LocalSessionStore due to init error: %s", exc)
        return LocalSessionStore()


def create_app(
    store: SessionStore | None = None,
    execution_runner: ExecutionRunner | None = None,
    debounce_sec: float = CODE_PERSIST_DEBOUNCE_SEC,
    grace_period_sec: float = ROOM_GRACE_PERIOD_SEC,
) -> FastAPI:
    app = FastAPI(title="Interview Pad API")
    allowed_origins = get_allowed_origins()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=True,
    )

    registry = RoomRegistry()
    session_store = store if store is not None else _build_store()
    app.state.registry = registry
    app.state.session_store = session_store
    app.state.sync_engine = SyncEngine(
        registry,
        session_store,
        debounce_sec=debounce_sec,
        grace_period_sec=grace_period_sec,
    )
    app.state.lifecycle = SessionLifecycleController(registry, session_store)
    app.state.execution_runner = execution_runner or ExecutionRunner()

    @app.on_event("startup")
    async def startup_banner():
        logger.info("[SYSTEM] CORS allow_origins=%s", allowed_origins)
        logger.info("[SYSTEM] execution languages=%s", app.state.execution_runner.languages)

    @app.on_event("shutdown")
    async def shutdown_handler():
        await app.state.sync_engine.shutdown()
        try:
            await app.state.session_store.close()
        except Exception as exc:
            logger.warning("[SYSTEM] session store close failed: %s", exc)
        logger.info("[SYSTEM] shutdown complete")

    @app.get("/healthz")
    async def healthz():
        return {"status": "ok", "service": "backend", "timestamp": time.time()}

    @app.get("/api/system/metrics")
    async def system_metrics_route():
        return get_metrics_snapshot(extra={"rooms_live": len(registry)})

    app.include_router(sessions_router)
    app.include_router(execute_router)
    app.include_router(room_ws_router)
    return app


app = create_app()
