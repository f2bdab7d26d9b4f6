"""
Multipost Worker Service - Publish Queue Consumer
"""

import sys
import asyncio
import logging
import signal
from typing import Optional

import asyncpg
import redis.asyncio as redis

from publishing import config
from publishing import crypto
from publishing import db as db_stage
from publishing.adapters import build_registry
from publishing.errors import ConfigError
from publishing.orchestrator import DeliveryOutcome, Orchestrator
from publishing.queue import PublishQueue
from publishing.storage import MediaStorage
from publishing.tokens import TokenManager

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s [worker] %(message)s")
logger = logging.getLogger("multipost-worker")

db_pool: Optional[asyncpg.Pool] = None
redis_client: Optional[redis.Redis] = None
shutdown_requested = False


def handle_shutdown(signum, frame):
    global shutdown_requested
    logger.info(f"Shutdown signal received ({signum})")
    shutdown_requested = True


async def handle_delivery(queue: PublishQueue, orchestrator: Orchestrator, delivery):
    """Run one delivery and settle it on the queue."""
    logger.info(f"Delivery {delivery.id}: {delivery.data} (attempt {delivery.attempts_made + 1}/{delivery.attempts})")
    try:
        outcome = await orchestrator.process(delivery)
    except Exception as e:
        # failure bookkeeping itself failed (database down); let the queue retry
        logger.exception(f"Delivery {delivery.id} could not be settled: {e}")
        outcome = DeliveryOutcome.RETRY

    if outcome == DeliveryOutcome.RETRY:
        await queue.retry(delivery)
    elif outcome == DeliveryOutcome.FAILED:
        await queue.fail(delivery, f"job {delivery.data.get('job_id')} failed")
    else:
        await queue.ack(delivery)
    logger.info(f"Delivery {delivery.id}: {outcome.value}")


async def process_jobs(queue: PublishQueue, orchestrator: Orchestrator, concurrency: int):
    logger.info(f"Worker {queue.worker_id} started, waiting for jobs (concurrency={concurrency})...")
    semaphore = asyncio.Semaphore(concurrency)
    in_flight = set()

    async def _run(delivery):
        try:
            await handle_delivery(queue, orchestrator, delivery)
        except Exception as e:
            # left in the processing list; requeue_stalled() picks it up on restart
            logger.exception(f"Delivery {delivery.id} settle error: {e}")
        finally:
            semaphore.release()

    while not shutdown_requested:
        await semaphore.acquire()
        try:
            delivery = await queue.reserve(timeout=config.POLL_INTERVAL)
        except Exception as e:
            semaphore.release()
            logger.exception(f"Queue reserve error: {e}")
            await asyncio.sleep(1)
            continue

        if delivery is None:
            semaphore.release()
            continue

        task = asyncio.create_task(_run(delivery))
        in_flight.add(task)
        task.add_done_callback(in_flight.discard)

    if in_flight:
        logger.info(f"Waiting for {len(in_flight)} in-flight deliveries...")
        await asyncio.gather(*in_flight, return_exceptions=True)
    logger.info("Worker shutting down...")


async def main():
    global db_pool, redis_client

    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)

    try:
        config.validate_env()
        crypto.init_encryption_key()
    except ConfigError as e:
        logger.error(e.message)
        sys.exit(1)

    db_pool = await asyncpg.create_pool(config.DATABASE_URL, min_size=2, max_size=5)
    async with db_pool.acquire() as conn:
        await db_stage.apply_migrations(conn)
    logger.info("Database connected")

    redis_client = redis.from_url(config.REDIS_URL, decode_responses=True)
    await redis_client.ping()
    logger.info("Redis connected")

    queue = PublishQueue(redis_client, name=config.PUBLISH_QUEUE_NAME, worker_id=config.WORKER_ID)
    tokens = TokenManager(db_pool)
    registry = build_registry(tokens, MediaStorage())
    orchestrator = Orchestrator(db_pool, registry)

    try:
        await queue.requeue_stalled()
        await process_jobs(queue, orchestrator, max(config.WORKER_CONCURRENCY, 1))
    finally:
        if db_pool:
            await db_pool.close()
        if redis_client:
            await redis_client.aclose()


if __name__ == "__main__":
    asyncio.run(main())
