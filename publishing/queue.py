"""
Multipost Publish Queue
=======================
Redis-backed delivery queue with delay, attempts and backoff.

Keys (prefix multipost:<name>):
    :ready                  list, LPUSH in / consumed from the right
    :delayed                zset, score = ready time in epoch ms
    :processing:<worker>    list, reserved deliveries of one worker
    :failed                 list, terminal deliveries with their error

Delivery is at-least-once: a worker that dies mid-job leaves its delivery in
its processing list and requeue_stalled() puts it back on startup.
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from . import config

logger = logging.getLogger("multipost-worker")

KEY_PREFIX = "multipost"
DEFAULT_JOB_NAME = "publish-post"


def _now_ms() -> int:
    return int(time.time() * 1000)


def default_backoff() -> Dict[str, Any]:
    return {"type": "exponential", "delay": config.JOB_BACKOFF_DELAY_MS}


def compute_backoff_ms(attempts_made: int, backoff: Optional[Dict[str, Any]]) -> int:
    """Delay before the next delivery after attempts_made failures."""
    if not backoff:
        return 0
    delay = int(backoff.get("delay") or 0)
    if backoff.get("type") == "exponential":
        return delay * 2 ** max(attempts_made - 1, 0)
    return delay


def compute_delay_ms(scheduled_at: Optional[datetime], now: Optional[datetime] = None) -> int:
    """Milliseconds until scheduled_at, never negative."""
    if scheduled_at is None:
        return 0
    now = now or datetime.now(timezone.utc)
    if scheduled_at.tzinfo is None:
        scheduled_at = scheduled_at.replace(tzinfo=timezone.utc)
    return max(int((scheduled_at - now).total_seconds() * 1000), 0)


@dataclass
class Delivery:
    id: str
    name: str
    data: Dict[str, Any]
    attempts: int = 1
    backoff: Dict[str, Any] = field(default_factory=default_backoff)
    attempts_made: int = 0
    enqueued_at: int = 0
    raw: Optional[str] = None

    def to_message(self) -> str:
        return json.dumps({
            "id": self.id,
            "name": self.name,
            "data": self.data,
            "attempts": self.attempts,
            "backoff": self.backoff,
            "attempts_made": self.attempts_made,
            "enqueued_at": self.enqueued_at,
        }, separators=(",", ":"))

    @classmethod
    def from_message(cls, raw: str) -> "Delivery":
        msg = json.loads(raw)
        return cls(
            id=msg["id"],
            name=msg.get("name") or DEFAULT_JOB_NAME,
            data=msg.get("data") or {},
            attempts=int(msg.get("attempts") or 1),
            backoff=msg.get("backoff") or {},
            attempts_made=int(msg.get("attempts_made") or 0),
            enqueued_at=int(msg.get("enqueued_at") or 0),
            raw=raw,
        )


class PublishQueue:
    def __init__(self, redis_client, name: str = config.PUBLISH_QUEUE_NAME, worker_id: str = config.WORKER_ID):
        self.redis = redis_client
        self.name = name
        self.worker_id = worker_id

    @property
    def ready_key(self) -> str:
        return f"{KEY_PREFIX}:{self.name}:ready"

    @property
    def delayed_key(self) -> str:
        return f"{KEY_PREFIX}:{self.name}:delayed"

    @property
    def processing_key(self) -> str:
        return f"{KEY_PREFIX}:{self.name}:processing:{self.worker_id}"

    @property
    def failed_key(self) -> str:
        return f"{KEY_PREFIX}:{self.name}:failed"

    async def _schedule(self, raw: str, delay_ms: int, now_ms: Optional[int] = None):
        if delay_ms > 0:
            ready_at = (now_ms if now_ms is not None else _now_ms()) + delay_ms
            await self.redis.zadd(self.delayed_key, {raw: ready_at})
        else:
            await self.redis.lpush(self.ready_key, raw)

    async def enqueue(
        self,
        data: Dict[str, Any],
        name: str = DEFAULT_JOB_NAME,
        attempts: int = config.JOB_MAX_ATTEMPTS,
        backoff: Optional[Dict[str, Any]] = None,
        delay_ms: int = 0,
        now_ms: Optional[int] = None,
    ) -> Delivery:
        delivery = Delivery(
            id=str(uuid.uuid4()),
            name=name,
            data=data,
            attempts=attempts,
            backoff=backoff or default_backoff(),
            attempts_made=0,
            enqueued_at=now_ms if now_ms is not None else _now_ms(),
        )
        delivery.raw = delivery.to_message()
        await self._schedule(delivery.raw, max(int(delay_ms), 0), now_ms)
        logger.info(f"Enqueued {name} {data} delay_ms={delay_ms} attempts={attempts}")
        return delivery

    async def promote_due(self, now_ms: Optional[int] = None) -> int:
        """Move delayed messages whose time has come onto the ready list."""
        now_ms = now_ms if now_ms is not None else _now_ms()
        due = await self.redis.zrangebyscore(self.delayed_key, "-inf", now_ms)
        moved = 0
        for raw in due:
            # only the caller that removed it may push it
            if await self.redis.zrem(self.delayed_key, raw):
                await self.redis.lpush(self.ready_key, raw)
                moved += 1
        return moved

    async def reserve(self, timeout: float = config.POLL_INTERVAL, now_ms: Optional[int] = None) -> Optional[Delivery]:
        await self.promote_due(now_ms)
        raw = await self.redis.blmove(self.ready_key, self.processing_key, timeout, src="RIGHT", dest="LEFT")
        if raw is None:
            return None

        try:
            return Delivery.from_message(raw)
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Invalid queue message dropped: {e}")
            await self.redis.lrem(self.processing_key, 1, raw)
            await self.redis.lpush(self.failed_key, json.dumps({"raw": raw, "error": "invalid message"}))
            return None

    async def ack(self, delivery: Delivery):
        await self.redis.lrem(self.processing_key, 1, delivery.raw)

    async def retry(self, delivery: Delivery, now_ms: Optional[int] = None) -> int:
        """Reschedule after a failed attempt. Returns the backoff in ms."""
        nxt = Delivery(
            id=delivery.id,
            name=delivery.name,
            data=delivery.data,
            attempts=delivery.attempts,
            backoff=delivery.backoff,
            attempts_made=delivery.attempts_made + 1,
            enqueued_at=delivery.enqueued_at,
        )
        nxt.raw = nxt.to_message()
        delay_ms = compute_backoff_ms(nxt.attempts_made, nxt.backoff)

        await self._schedule(nxt.raw, delay_ms, now_ms)
        await self.redis.lrem(self.processing_key, 1, delivery.raw)
        logger.info(f"Retrying {delivery.name} {delivery.data} in {delay_ms}ms (attempt {nxt.attempts_made + 1})")
        return delay_ms

    async def fail(self, delivery: Delivery, error: str):
        record = json.dumps({
            "id": delivery.id,
            "name": delivery.name,
            "data": delivery.data,
            "attempts_made": delivery.attempts_made + 1,
            "error": error,
            "failed_at": _now_ms(),
        }, separators=(",", ":"))
        await self.redis.lpush(self.failed_key, record)
        await self.redis.lrem(self.processing_key, 1, delivery.raw)

    async def requeue_stalled(self) -> int:
        """Push deliveries this worker left reserved back onto the ready list."""
        count = 0
        while True:
            raw = await self.redis.lmove(self.processing_key, self.ready_key, src="RIGHT", dest="RIGHT")
            if raw is None:
                break
            count += 1
        if count:
            logger.warning(f"Requeued {count} stalled deliveries from {self.processing_key}")
        return count
