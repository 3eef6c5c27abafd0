"""Realtime chat WebSocket endpoint"""

import asyncio
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from motor.motor_asyncio import AsyncIOMotorDatabase

from market_chat.core.exceptions import Unauthenticated
from market_chat.core.security import extract_bearer_token
from market_chat.database import get_database
from market_chat.realtime.gateway import Gateway, get_gateway
from market_chat.realtime.session import CLOSE_UNAUTHENTICATED, ChatSession

logger = logging.getLogger(__name__)

router = APIRouter()


async def _stop(task: asyncio.Task):
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


@router.websocket("/ws/chat")
async def chat_socket(
    websocket: WebSocket,
    token: Optional[str] = Query(None),
    db: AsyncIOMotorDatabase = Depends(get_database),
    gateway: Gateway = Depends(get_gateway),
):
    """
    Bidirectional chat channel.

    Frames are JSON objects ``{"event": ..., "data": {...}}``. The credential
    comes from ``?token=``, an ``Authorization: Bearer`` header or a first
    ``authenticate`` frame.
    """
    await websocket.accept()
    connection = gateway.register(websocket)
    session = ChatSession(db, gateway, connection)
    writer = asyncio.create_task(connection.pump())

    try:
        credential = token or extract_bearer_token(websocket.headers.get("authorization"))
        try:
            if credential is None:
                credential = await session.wait_for_credentials(websocket.receive_json)
            identity = await session.authenticate(credential)
        except Unauthenticated as e:
            logger.info(f"Rejected connection {connection.id}: {e.message}")
            await _stop(writer)
            await websocket.send_json({"event": "error", "data": {"message": e.message}})
            await websocket.close(code=CLOSE_UNAUTHENTICATED)
            return

        await session.bootstrap()
        gateway.send_to(connection, "authenticated", {"userId": identity.id, "role": identity.role.value})

        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            raw = message.get("text")
            if raw is None:
                # Binary frames carry no JSON event
                session.emit_error("Malformed frame")
                continue
            try:
                frame = json.loads(raw)
            except ValueError:
                session.emit_error("Malformed frame")
                continue
            await session.dispatch(frame)

    except WebSocketDisconnect:
        pass
    finally:
        session.close()
        if not writer.done():
            await _stop(writer)
