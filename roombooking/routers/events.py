import asyncio
import contextlib
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, WebSocket, WebSocketDisconnect, status

from ..deps import authenticate_token
from ..domain.events import room_channel, user_channel
from ..infrastructure.broadcast import ChannelBroadcaster, Message

logger = logging.getLogger(__name__)

router = APIRouter(tags=["events"])


async def _forward(websocket: WebSocket, queue: "asyncio.Queue[Message]") -> None:
    while True:
        message = await queue.get()
        await websocket.send_json(message)


async def _stream(websocket: WebSocket, channel: str) -> None:
    broadcaster: ChannelBroadcaster = websocket.app.state.broadcaster
    # Subscribe before accepting so nothing published after the handshake is missed.
    async with broadcaster.subscribe(channel) as queue:
        await websocket.accept()
        logger.debug("subscriber joined %s", channel)
        sender = asyncio.create_task(_forward(websocket, queue))
        try:
            while True:
                # Clients only send keepalives; reading is how a disconnect is noticed.
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.debug("subscriber left %s", channel)
        finally:
            sender.cancel()
            with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect):
                await sender


async def _authenticate(websocket: WebSocket, token: Optional[str]) -> Optional[int]:
    try:
        return authenticate_token(token)
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return None


@router.websocket("/ws/rooms/{room_id}")
async def room_events(websocket: WebSocket, room_id: int, token: Optional[str] = Query(default=None)) -> None:
    if await _authenticate(websocket, token) is None:
        return
    await _stream(websocket, room_channel(room_id))


@router.websocket("/ws/me")
async def my_events(websocket: WebSocket, token: Optional[str] = Query(default=None)) -> None:
    user_id = await _authenticate(websocket, token)
    if user_id is None:
        return
    await _stream(websocket, user_channel(user_id))
