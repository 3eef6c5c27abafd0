"""Live connection registry, rooms and broadcast"""

import asyncio
import logging
import uuid
from collections import defaultdict
from typing import Dict, Optional, Set

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder
from starlette.websockets import WebSocketDisconnect

from market_chat.config import settings
from market_chat.models.user import Identity
from market_chat.realtime.bus import BroadcastBus, LocalBus

logger = logging.getLogger(__name__)

ADMIN_ROOM = "admins"


def chat_room(chat_id: str) -> str:
    return f"chat:{chat_id}"


def user_room(user_id: str) -> str:
    return f"user:{user_id}"


class Connection:
    """
    One live WebSocket.

    Outgoing frames go through a bounded outbox drained by ``pump``, so
    producers never wait on the network. A full outbox drops the frame.
    """

    def __init__(self, websocket: WebSocket, outbox_size: int = None):
        self.id = uuid.uuid4().hex
        self.websocket = websocket
        self.identity: Optional[Identity] = None
        self.rooms: Set[str] = set()
        self.outbox: asyncio.Queue = asyncio.Queue(maxsize=outbox_size or settings.outbox_size)

    def send(self, event: str, data: dict) -> bool:
        try:
            self.outbox.put_nowait({"event": event, "data": data})
            return True
        except asyncio.QueueFull:
            logger.warning(f"Outbox full for connection {self.id}, dropped '{event}'")
            return False

    async def pump(self):
        """Write queued frames to the socket until it closes."""
        while True:
            frame = await self.outbox.get()
            try:
                await self.websocket.send_json(frame)
            except (WebSocketDisconnect, RuntimeError):
                return
            except Exception as e:
                logger.warning(f"Writing to connection {self.id} failed, stopping its writer: {e}")
                return


class Gateway:
    """
    Process-local registry of connections and room membership.

    ``broadcast`` goes through the bus so that members connected to other
    instances are reached too; the bus hands envelopes back to ``_deliver``
    on every instance.
    """

    def __init__(self, bus: BroadcastBus = None):
        self.connections: Dict[str, Connection] = {}
        self.rooms: Dict[str, Set[str]] = defaultdict(set)
        self.by_identity: Dict[str, Set[str]] = defaultdict(set)
        self.bus = None
        self.use_bus(bus or LocalBus())

    def use_bus(self, bus: BroadcastBus):
        bus.attach(self._deliver)
        self.bus = bus

    async def start(self):
        await self.bus.start()

    async def stop(self):
        await self.bus.stop()

    # Registry

    def register(self, websocket: WebSocket) -> Connection:
        connection = Connection(websocket)
        self.connections[connection.id] = connection
        return connection

    def bind(self, connection: Connection, identity: Identity):
        connection.identity = identity
        self.by_identity[identity.id].add(connection.id)

    def unregister(self, connection: Connection):
        for room in list(connection.rooms):
            self.leave(connection, room)
        self.connections.pop(connection.id, None)
        if connection.identity is not None:
            ids = self.by_identity.get(connection.identity.id)
            if ids is not None:
                ids.discard(connection.id)
                if not ids:
                    del self.by_identity[connection.identity.id]

    def join(self, connection: Connection, room: str):
        self.rooms[room].add(connection.id)
        connection.rooms.add(room)

    def leave(self, connection: Connection, room: str):
        members = self.rooms.get(room)
        if members is not None:
            members.discard(connection.id)
            if not members:
                del self.rooms[room]
        connection.rooms.discard(room)

    def members(self, room: str) -> Set[str]:
        return set(self.rooms.get(room, ()))

    def is_online(self, identity_id: str) -> bool:
        return bool(self.by_identity.get(identity_id))

    # Delivery

    async def broadcast(self, room: str, event: str, data: dict, exclude: Optional[str] = None):
        """
        Send ``event`` to every member of ``room``, at most once.

        Failures are logged, never raised: the store already holds the
        change and clients reconcile on their next fetch.
        """
        envelope = {
            "room": room,
            "event": event,
            "data": jsonable_encoder(data),
            "exclude": exclude,
        }
        try:
            await self.bus.publish(envelope)
        except Exception as e:
            logger.warning(f"Broadcast of '{event}' to {room} failed: {e}")

    def send_to(self, connection: Connection, event: str, data: dict) -> bool:
        return connection.send(event, jsonable_encoder(data))

    async def _deliver(self, envelope: dict):
        exclude = envelope.get("exclude")
        for connection_id in self.members(envelope["room"]):
            if connection_id == exclude:
                continue
            connection = self.connections.get(connection_id)
            if connection is not None:
                connection.send(envelope["event"], envelope["data"])


gateway = Gateway()


def get_gateway() -> Gateway:
    """Dependency to get the process gateway"""
    return gateway
