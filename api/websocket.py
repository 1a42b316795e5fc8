from fastapi import APIRouter, WebSocket, WebSocketDisconnect
import logging

import core.globals
from core.progress_store import ProgressSubscription
from schemas.models import TERMINAL_STATES
from config import HEARTBEAT_INTERVAL_S

logger = logging.getLogger(__name__)
router = APIRouter()

_TERMINAL_VALUES = {status.value for status in TERMINAL_STATES}


class ConnectionManager:
    """Open progress sockets, so shutdown can close them and status can count them."""

    def __init__(self):
        self.active_connections: set = set()

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.add(websocket)

    def disconnect(self, websocket: WebSocket):
        self.active_connections.discard(websocket)

    async def close_all(self):
        for connection in list(self.active_connections):
            try:
                await connection.close()
            except Exception as e:
                logger.debug(f"Error closing ws connection: {e}")
            self.disconnect(connection)

ws_manager = ConnectionManager()

@router.websocket("/ws/progress/{job_id}")
async def websocket_progress(websocket: WebSocket, job_id: str):
    await ws_manager.connect(websocket)
    manager = core.globals.job_manager
    subscription = None
    unsubscribe = None
    try:
        if manager.get_progress(job_id) is None:
            await websocket.send_json({"job_id": job_id, "status": "unknown"})
            await websocket.close()
            return

        subscription = ProgressSubscription()
        unsubscribe = manager.subscribe(job_id, subscription)
        while True:
            snapshot = await subscription.next(timeout=HEARTBEAT_INTERVAL_S)
            if snapshot is None:
                if subscription.lost:
                    logger.warning(f"WebSocket for {job_id[:8]} fell behind, closing")
                    await websocket.close()
                    break
                await websocket.send_json({"event": "heartbeat"})
                continue
            await websocket.send_json(snapshot)
            if snapshot["status"] in _TERMINAL_VALUES:
                await websocket.close()
                break
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.warning(f"WebSocket error for {job_id[:8]}: {e}")
    finally:
        if subscription is not None:
            subscription.close()
            unsubscribe()
        ws_manager.disconnect(websocket)
