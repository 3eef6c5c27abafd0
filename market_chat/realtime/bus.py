"""Broadcast buses carrying room events between gateway instances"""

import asyncio
import json
import logging
from typing import Awaitable, Callable, Optional

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

Deliver = Callable[[dict], Awaitable[None]]

# Seconds between resubscribe attempts, doubled per failure up to the cap
RECONNECT_DELAY = 0.5
RECONNECT_DELAY_MAX = 30.0


class BroadcastBus:
    """
    Moves a broadcast envelope to every gateway that may hold room members.

    An envelope is ``{"room", "event", "data", "exclude"}`` with JSON-safe
    data. Delivery is at most once.
    """

    def __init__(self):
        self._deliver: Optional[Deliver] = None

    def attach(self, deliver: Deliver):
        self._deliver = deliver

    async def start(self):
        pass

    async def stop(self):
        pass

    async def publish(self, envelope: dict):
        raise NotImplementedError


class LocalBus(BroadcastBus):
    """Fan-out inside this process only."""

    async def publish(self, envelope: dict):
        if self._deliver is not None:
            await self._deliver(envelope)


class RedisBus(BroadcastBus):
    """
    Fan-out across processes through a Redis pub/sub channel.

    Every instance publishes to and listens on the same channel, so an
    instance also receives its own broadcasts and delivers them locally.
    A lost subscription is re-established with exponential backoff; frames
    published while it is down are not replayed.
    """

    def __init__(
        self,
        url: str = None,
        channel: str = "market_chat:broadcast",
        client=None,
        retry_delay: float = RECONNECT_DELAY,
    ):
        super().__init__()
        self.channel = channel
        self.redis = client if client is not None else aioredis.from_url(url, decode_responses=True)
        self.retry_delay = retry_delay
        self._pubsub = None
        self._listener: Optional[asyncio.Task] = None

    async def start(self):
        await self._subscribe()
        self._listener = asyncio.create_task(self._listen())
        logger.info(f"Subscribed to broadcast channel {self.channel}")

    async def stop(self):
        if self._listener:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"Broadcast listener on {self.channel} ended with an error: {e}")
            self._listener = None
        await self._close_pubsub()
        await self.redis.aclose()

    async def publish(self, envelope: dict):
        await self.redis.publish(self.channel, json.dumps(envelope))

    async def _subscribe(self):
        self._pubsub = self.redis.pubsub(ignore_subscribe_messages=True)
        await self._pubsub.subscribe(self.channel)

    async def _close_pubsub(self):
        pubsub, self._pubsub = self._pubsub, None
        if pubsub is None:
            return
        try:
            await pubsub.unsubscribe(self.channel)
            await pubsub.aclose()
        except Exception as e:
            logger.warning(f"Closing subscription to {self.channel} failed: {e}")

    async def _listen(self):
        delay = self.retry_delay
        while True:
            try:
                if self._pubsub is None:
                    await self._subscribe()
                    logger.info(f"Resubscribed to broadcast channel {self.channel}")
                async for item in self._pubsub.listen():
                    delay = self.retry_delay
                    await self._handle(item)
                logger.warning(f"Subscription to {self.channel} ended")
            except Exception as e:
                logger.error(f"Broadcast listener on {self.channel} failed: {e}; retrying in {delay:.2f}s")

            await self._close_pubsub()
            await asyncio.sleep(delay)
            delay = min(delay * 2, RECONNECT_DELAY_MAX)

    async def _handle(self, item: dict):
        if item.get("type") != "message":
            return
        try:
            envelope = json.loads(item["data"])
        except (TypeError, ValueError) as e:
            logger.warning(f"Dropping malformed broadcast envelope: {e}")
            return
        if self._deliver is None:
            return
        try:
            await self._deliver(envelope)
        except Exception as e:
            logger.error(f"Delivering broadcast to room {envelope.get('room')} failed: {e}")
