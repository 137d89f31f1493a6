import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)

router = APIRouter()

@router.websocket("/events")
async def event_stream(websocket: WebSocket):
    """Pushes every published scheduler event to the connected dashboard."""
    events = websocket.app.state.events
    # Subscribe before accepting so nothing published after the handshake is missed
    queue = events.open_queue()

    async def forward():
        while True:
            event = await queue.get()
            await websocket.send_json(event.to_dict())

    forwarder = None
    try:
        await websocket.accept()
        logger.info(f"Event stream client connected ({events.subscriber_count} subscribers)")
        forwarder = asyncio.create_task(forward())
        # Inbound messages are ignored; receiving only detects the disconnect
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info("Event stream client disconnected")
    finally:
        if forwarder:
            forwarder.cancel()
        events.close_queue(queue)
