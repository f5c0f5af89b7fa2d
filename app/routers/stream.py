import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from app.services.event_bus import event_bus
from app.services.history import get_history_store
from app.services.session import sessions

logger = logging.getLogger(__name__)
router = APIRouter()

# Seconds without events before a keep-alive ping is sent
PING_INTERVAL = 10.0


@router.websocket("/ws/sessions/{session_id}")
async def session_events_ws(websocket: WebSocket, session_id: str):
    """Live progress of one session: ingestion/suggestion retries and state changes."""
    await websocket.accept()
    if sessions.get(session_id) is None:
        await websocket.send_json({"type": "error", "message": f"Session {session_id} not found"})
        await websocket.close()
        return

    queue = event_bus.subscribe(session_id)
    logger.info("Session %s event client connected", session_id)
    try:
        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=PING_INTERVAL)
            except asyncio.TimeoutError:
                event = {"type": "ping"}

            try:
                await websocket.send_json(event)
            except Exception:
                logger.debug("Failed to send event to session client")
                break
    except WebSocketDisconnect:
        logger.info("Session %s event client disconnected", session_id)
    except asyncio.CancelledError:
        pass
    finally:
        event_bus.unsubscribe(session_id, queue)


@router.websocket("/ws/history")
async def history_ws(websocket: WebSocket):
    """Live history view: the full, most-recent-first list after every change."""
    await websocket.accept()
    store = await get_history_store()
    queue = await store.subscribe()
    logger.info("History client connected")
    try:
        while True:
            try:
                snapshot = await asyncio.wait_for(queue.get(), timeout=PING_INTERVAL)
                event = {
                    "type": "history_snapshot",
                    "entries": [r.model_dump(mode="json", by_alias=True) for r in snapshot],
                }
            except asyncio.TimeoutError:
                event = {"type": "ping"}

            try:
                await websocket.send_json(event)
            except Exception:
                logger.debug("Failed to send history snapshot")
                break
    except WebSocketDisconnect:
        logger.info("History client disconnected")
    except asyncio.CancelledError:
        pass
    finally:
        store.unsubscribe(queue)
