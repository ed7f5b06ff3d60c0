"""
Live events router: pushes engine events to browser clients over a WebSocket.

Each connection subscribes to the process event bus and receives every event
as a JSON message of the form {"type": "<event>", "data": {...}}.
"""
import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder

from events import EventType, get_event_bus

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Events"])

# Messages buffered per client before new ones are dropped
MAX_PENDING_MESSAGES = 1000


@router.websocket("/ws")
async def event_stream(websocket: WebSocket):
    loop = asyncio.get_running_loop()
    outbox: asyncio.Queue = asyncio.Queue(maxsize=MAX_PENDING_MESSAGES)

    def offer(message: dict) -> None:
        try:
            outbox.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("[EVENTS] Client too slow, dropping %s event", message["type"])

    def forward(event: EventType, payload: dict) -> None:
        # Emitters may run outside this connection's loop
        loop.call_soon_threadsafe(offer, {"type": event.value, "data": jsonable_encoder(payload)})

    unsubscribe = get_event_bus().subscribe(forward)
    await websocket.accept()
    logger.debug("[EVENTS] Client connected")

    async def send_loop():
        await websocket.send_json({"type": "connected", "data": {}})
        while True:
            await websocket.send_json(await outbox.get())

    sender = asyncio.create_task(send_loop())
    try:
        # Clients only listen; reading detects the disconnect
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("[EVENTS] Client disconnected")
    finally:
        unsubscribe()
        sender.cancel()
        await asyncio.gather(sender, return_exceptions=True)
