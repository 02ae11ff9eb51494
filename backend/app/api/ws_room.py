from fastapi import APIRouter, WebSocket, WebSocketDisconnect
import logging
import uuid

from app.api.ws_components import RoomEventDispatcher, WebSocketConnection
from app.session.engine import SyncEngine
from app.system_metrics import decrement_metric, increment_metric
from core.config import WS_MAX_TEXT_BYTES
from core.logger import log_event

logging.basicConfig(
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    level=logging.INFO,
)

logger = logging.getLogger("ws_room")

router = APIRouter()


@router.websocket("/ws/room")
async def room_ws(websocket: WebSocket):
    engine: SyncEngine = websocket.app.state.sync_engine
    connection = WebSocketConnection(connection_id=str(uuid.uuid4()), websocket=websocket)
    dispatcher = RoomEventDispatcher(engine=engine, max_text_bytes=WS_MAX_TEXT_BYTES)

    await websocket.accept()
    increment_metric("ws_connections_active")
    log_event("ws_room", "connect", connection_id=connection.connection_id)

    try:
        while True:
            raw_text = await websocket.receive_text()
            await dispatcher.dispatch(connection, raw_text)
    except WebSocketDisconnect:
        pass
    except Exception as exc:
        logger.warning("ws receive loop failed | connection_id=%s err=%s", connection.connection_id, exc)
    finally:
        room_id = engine.room_of(connection.connection_id) or ""
        await engine.disconnect(connection)
        decrement_metric("ws_connections_active")
        increment_metric("ws_disconnects_total")
        log_event("ws_room", "disconnect", room_id, connection_id=connection.connection_id)
