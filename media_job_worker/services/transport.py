"""
Message transport for the queue consumer.

The consumer only depends on the MessageTransport contract. RedisTransport
implements a reliable queue on plain Redis lists:

- ``<prefix>:<queue>:pending``   LPUSH by producers, consumed from the right
- ``<prefix>:<queue>:active:<consumer>``  messages delivered to this consumer
- ``<prefix>:<queue>:delayed``   sorted set of nacked messages by due time
- ``<prefix>:<queue>:dead``      dead-lettered messages

Every message travels in a JSON envelope carrying its id, body and the number
of completed deliveries.
"""

import asyncio
import json
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ..core.exceptions import QueueError
from ..utils.logger import get_logger, set_log_context


@dataclass
class Delivery:
    """One delivery of a message to this consumer."""
    id: str
    body: str
    attempt: int
    raw: Any = None
    enqueued_at: Optional[float] = None
    tag: str = field(default_factory=lambda: uuid.uuid4().hex)


DeliveryHandler = Callable[[Delivery], Awaitable[None]]


class MessageTransport(ABC):
    """Broker contract used by the queue consumer."""

    @abstractmethod
    async def connect(self) -> None:
        """Open the broker connection."""

    @abstractmethod
    async def consume(self, handler: DeliveryHandler, prefetch: int = 1) -> None:
        """
        Deliver messages to ``handler`` until ``cancel`` is called.

        At most ``prefetch`` deliveries are unsettled at any time; a credit is
        returned when a delivery is acked, nacked or dead-lettered.
        """

    @abstractmethod
    async def ack(self, delivery: Delivery) -> None:
        """Remove a delivery permanently."""

    @abstractmethod
    async def nack(self, delivery: Delivery, delay: float = 0.0) -> None:
        """Return a delivery to the queue after ``delay`` seconds."""

    @abstractmethod
    async def dead_letter(self, delivery: Delivery, reason: str) -> None:
        """Move a delivery to the dead-letter queue."""

    @abstractmethod
    async def cancel(self) -> None:
        """Stop delivering new messages."""

    @abstractmethod
    async def close(self) -> None:
        """Release the broker connection."""

    @abstractmethod
    async def publish(self, body: str) -> str:
        """Enqueue a new message and return its id."""


def make_envelope(body: str, message_id: Optional[str] = None, deliveries: int = 0) -> Dict[str, Any]:
    return {
        "id": message_id or uuid.uuid4().hex,
        "body": body,
        "deliveries": deliveries,
        "enqueued_at": time.time(),
    }


class RedisTransport(MessageTransport):
    """
    Reliable queue on Redis lists.

    Deliveries are moved atomically from the pending list to this consumer's
    active list, so a crashed consumer's messages are recovered the next time
    a consumer with the same id connects.
    """

    PROMOTE_SCRIPT = """
    local due = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, ARGV[2])
    for _, raw in ipairs(due) do
        redis.call('ZREM', KEYS[1], raw)
        redis.call('LPUSH', KEYS[2], raw)
    end
    return #due
    """

    def __init__(
        self,
        redis_url: str,
        queue: str,
        consumer_id: str,
        key_prefix: str = "media-worker",
        poll_timeout: float = 1.0,
        promote_interval: float = 0.5,
        recover_on_connect: bool = True,
        client: Optional[aioredis.Redis] = None
    ):
        """
        Initialize the transport.

        Args:
            redis_url: Redis connection URL
            queue: Queue name
            consumer_id: Stable id of this consumer, names its active list
            key_prefix: Prefix for every key
            poll_timeout: Blocking pop timeout in seconds
            promote_interval: How often delayed messages are checked
            recover_on_connect: Return this consumer's unacknowledged messages on connect
            client: Optional pre-built redis client
        """
        self.redis_url = redis_url
        self.queue = queue
        self.consumer_id = consumer_id
        self.poll_timeout = poll_timeout
        self.promote_interval = promote_interval
        self.recover_on_connect = recover_on_connect

        base = f"{key_prefix}:{queue}"
        self.pending_key = f"{base}:pending"
        self.active_key = f"{base}:active:{consumer_id}"
        self.delayed_key = f"{base}:delayed"
        self.dead_key = f"{base}:dead"

        self.redis: Optional[aioredis.Redis] = client
        self._credits: Optional[asyncio.Semaphore] = None
        self._stopped = asyncio.Event()
        self._unsettled: Set[str] = set()
        self._dispatch_tasks: Set[asyncio.Task] = set()
        self._promoter: Optional[asyncio.Task] = None
        self._promote = None

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="transport")

    async def connect(self) -> None:
        if self.redis is None:
            self.redis = aioredis.from_url(self.redis_url, decode_responses=True)
        try:
            await self.redis.ping()
            recovered = await self._recover_active() if self.recover_on_connect else 0
        except RedisError as e:
            raise QueueError("connect", str(e))

        self._promote = self.redis.register_script(self.PROMOTE_SCRIPT)
        self._stopped.clear()

        self.logger.info("Connected to broker", extra={
            "queue": self.queue,
            "consumer_id": self.consumer_id,
            "recovered": recovered
        })

    async def _recover_active(self) -> int:
        """Return messages left in this consumer's active list to the queue."""
        entries = await self.redis.lrange(self.active_key, 0, -1)
        for raw in entries:
            envelope = self._parse(raw)
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.lrem(self.active_key, 1, raw)
                if envelope is None:
                    pipe.lpush(self.dead_key, json.dumps({"raw": raw, "reason": "unreadable envelope"}))
                else:
                    envelope["deliveries"] = envelope.get("deliveries", 0) + 1
                    pipe.rpush(self.pending_key, json.dumps(envelope))
                await pipe.execute()
        if entries:
            self.logger.warning("Recovered unacknowledged messages", extra={"count": len(entries)})
        return len(entries)

    async def consume(self, handler: DeliveryHandler, prefetch: int = 1) -> None:
        if self.redis is None:
            raise QueueError("consume", "transport is not connected")

        self._credits = asyncio.Semaphore(prefetch)
        self._promoter = asyncio.create_task(self._promote_loop())

        self.logger.info("Consuming", extra={"queue": self.queue, "prefetch": prefetch})

        while not self._stopped.is_set():
            if not await self._acquire_credit():
                break

            try:
                raw = await self.redis.blmove(
                    self.pending_key, self.active_key, self.poll_timeout, src="RIGHT", dest="LEFT"
                )
            except RedisError as e:
                self._credits.release()
                self.logger.error("Broker receive failed", extra={"error": str(e)})
                await asyncio.sleep(self.poll_timeout)
                continue

            if raw is None:
                self._credits.release()
                continue

            envelope = self._parse(raw)
            if envelope is None:
                self.logger.error("Dropping unreadable envelope", extra={"raw": raw[:200]})
                async with self.redis.pipeline(transaction=True) as pipe:
                    pipe.lrem(self.active_key, 1, raw)
                    pipe.lpush(self.dead_key, json.dumps({"raw": raw, "reason": "unreadable envelope"}))
                    await pipe.execute()
                self._credits.release()
                continue

            delivery = Delivery(
                id=envelope["id"],
                body=envelope.get("body", ""),
                attempt=envelope.get("deliveries", 0) + 1,
                raw=raw,
                enqueued_at=envelope.get("enqueued_at")
            )
            self._unsettled.add(delivery.tag)

            task = asyncio.create_task(self._dispatch(handler, delivery))
            self._dispatch_tasks.add(task)
            task.add_done_callback(self._dispatch_tasks.discard)

        self._promoter.cancel()
        await asyncio.gather(self._promoter, return_exceptions=True)
        self._promoter = None
        self.logger.info("Stopped consuming", extra={"queue": self.queue})

    async def _acquire_credit(self) -> bool:
        acquire = asyncio.ensure_future(self._credits.acquire())
        stopped = asyncio.ensure_future(self._stopped.wait())
        done, waiting = await asyncio.wait({acquire, stopped}, return_when=asyncio.FIRST_COMPLETED)
        for future in waiting:
            future.cancel()

        if acquire in done:
            if self._stopped.is_set():
                self._credits.release()
                return False
            return True
        return False

    async def _dispatch(self, handler: DeliveryHandler, delivery: Delivery):
        try:
            await handler(delivery)
        except Exception:
            self.logger.error("Delivery handler failed", exc_info=True, extra={"message_id": delivery.id})
            if delivery.tag in self._unsettled:
                try:
                    await self.nack(delivery, delay=0)
                except QueueError as e:
                    # stays in the active list and is recovered on reconnect
                    self.logger.error("Could not return failed delivery", extra={
                        "message_id": delivery.id,
                        "error": e.message
                    })

    def _settle(self, delivery: Delivery):
        if delivery.tag in self._unsettled:
            self._unsettled.discard(delivery.tag)
            if self._credits is not None:
                self._credits.release()

    async def ack(self, delivery: Delivery) -> None:
        try:
            await self.redis.lrem(self.active_key, 1, delivery.raw)
        except RedisError as e:
            raise QueueError("ack", str(e))
        finally:
            self._settle(delivery)

    async def nack(self, delivery: Delivery, delay: float = 0.0) -> None:
        envelope = self._parse(delivery.raw) or make_envelope(delivery.body, delivery.id)
        envelope["deliveries"] = delivery.attempt
        requeued = json.dumps(envelope)

        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.lrem(self.active_key, 1, delivery.raw)
                if delay > 0:
                    pipe.zadd(self.delayed_key, {requeued: time.time() + delay})
                else:
                    pipe.rpush(self.pending_key, requeued)
                await pipe.execute()
        except RedisError as e:
            raise QueueError("nack", str(e))
        finally:
            self._settle(delivery)

    async def dead_letter(self, delivery: Delivery, reason: str) -> None:
        envelope = self._parse(delivery.raw) or make_envelope(delivery.body, delivery.id)
        envelope["deliveries"] = delivery.attempt
        envelope["reason"] = reason
        envelope["dead_lettered_at"] = time.time()

        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.lrem(self.active_key, 1, delivery.raw)
                pipe.lpush(self.dead_key, json.dumps(envelope))
                await pipe.execute()
        except RedisError as e:
            raise QueueError("dead_letter", str(e))
        finally:
            self._settle(delivery)

        self.logger.warning("Message dead-lettered", extra={
            "message_id": delivery.id,
            "attempt": delivery.attempt,
            "reason": reason
        })

    async def cancel(self) -> None:
        self._stopped.set()

    async def close(self) -> None:
        self._stopped.set()
        if self._promoter is not None:
            self._promoter.cancel()
            await asyncio.gather(self._promoter, return_exceptions=True)
            self._promoter = None
        if self.redis is not None:
            await self.redis.aclose()
            self.redis = None

    async def publish(self, body: str) -> str:
        envelope = make_envelope(body)
        try:
            await self.redis.lpush(self.pending_key, json.dumps(envelope))
        except RedisError as e:
            raise QueueError("publish", str(e))
        return envelope["id"]

    async def _promote_loop(self):
        while not self._stopped.is_set():
            try:
                moved = await self._promote(keys=[self.delayed_key, self.pending_key], args=[time.time(), 100])
                if moved:
                    self.logger.debug("Promoted delayed messages", extra={"count": moved})
            except RedisError as e:
                self.logger.warning("Delayed message promotion failed", extra={"error": str(e)})
            await asyncio.sleep(self.promote_interval)

    async def list_dead_letters(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Dead-lettered envelopes, most recent first."""
        entries = await self.redis.lrange(self.dead_key, 0, limit - 1)
        return [self._parse(raw) or {"raw": raw} for raw in entries]

    async def requeue_dead_letter(self, message_id: str) -> bool:
        """
        Move a dead-lettered message back to the pending queue.

        Returns:
            True if the message was found and requeued
        """
        for raw in await self.redis.lrange(self.dead_key, 0, -1):
            envelope = self._parse(raw)
            if envelope is None or envelope.get("id") != message_id:
                continue
            requeued = make_envelope(envelope.get("body", ""), message_id)
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.lrem(self.dead_key, 1, raw)
                pipe.lpush(self.pending_key, json.dumps(requeued))
                await pipe.execute()
            self.logger.info("Requeued dead letter", extra={"message_id": message_id})
            return True
        return False

    async def queue_depths(self) -> Dict[str, int]:
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.llen(self.pending_key)
            pipe.llen(self.active_key)
            pipe.zcard(self.delayed_key)
            pipe.llen(self.dead_key)
            pending, active, delayed, dead = await pipe.execute()
        return {"pending": pending, "active": active, "delayed": delayed, "dead": dead}

    @staticmethod
    def _parse(raw: Any) -> Optional[Dict[str, Any]]:
        try:
            envelope = json.loads(raw)
        except (TypeError, ValueError):
            return None
        if not isinstance(envelope, dict) or "id" not in envelope:
            return None
        return envelope
