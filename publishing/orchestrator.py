"""
Multipost Job Orchestrator
==========================
Runs one delivered publish job end to end:

    load job/post/destinations -> job RUNNING -> each destination through its
    state machine -> aggregate post status -> job SUCCESS, or raise for retry

and decides, after a failed delivery, whether the queue should try again.

Failure classes:
  - FatalJobError      data-integrity problem, job FAILED at once, never retried
  - RetryableJobError  every destination failed; redelivery may fix it
  - anything else      infrastructure fault during the run; retried
Destination-level errors (adapter, token, refresh, unsupported platform) never
escape a destination; they end it FAILED and the run continues. A failed
destination row write is an infrastructure fault and ends the run.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Iterable, Dict, Any

from . import db as db_stage
from . import destinations as dest_stage
from .adapters import AdapterRegistry, PublishRequest
from .errors import (
    FatalJobError,
    NoDestinations,
    PublishError,
    RetryableJobError,
    safe_error_message,
)
from .models import (
    DestinationStatus,
    Job,
    LogLevel,
    MediaAsset,
    Post,
    PostDestination,
    PostStatus,
    summarize_destinations,
)

logger = logging.getLogger("multipost-worker")


class DeliveryOutcome(str, Enum):
    COMPLETED = "completed"  # ack
    RETRY = "retry"          # reschedule with backoff
    FAILED = "failed"        # terminal, move to the failed list
    SKIPPED = "skipped"      # duplicate delivery of a finished job, ack


def aggregate_post_status(statuses: Iterable[DestinationStatus]) -> PostStatus:
    """All published -> PUBLISHED, none -> FAILED, otherwise PARTIALLY_PUBLISHED."""
    statuses = list(statuses)
    published = sum(1 for s in statuses if s == DestinationStatus.PUBLISHED)
    if statuses and published == len(statuses):
        return PostStatus.PUBLISHED
    if published == 0:
        return PostStatus.FAILED
    return PostStatus.PARTIALLY_PUBLISHED


class Orchestrator:
    def __init__(self, pool, registry: AdapterRegistry):
        self.pool = pool
        self.registry = registry

    async def _log(self, job_id: str, level: LogLevel, message: str, data: Optional[Dict[str, Any]] = None):
        log_fn = {LogLevel.INFO: logger.info, LogLevel.WARN: logger.warning, LogLevel.ERROR: logger.error}[level]
        log_fn(f"[job={job_id}] {message}" + (f" {data}" if data else ""))
        await db_stage.insert_job_log(self.pool, job_id, level, message, data)

    async def _fail_fatal(self, job: Job, error: FatalJobError):
        message = safe_error_message(error)
        await db_stage.mark_job_failed(self.pool, job.id, message)
        await self._log(job.id, LogLevel.ERROR, "Publish job failed permanently", {
            "error": message,
            "code": error.code.value,
        })

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self, job_id: str) -> Optional[PostStatus]:
        """
        Run one delivery of a job.

        Returns the aggregate post status, or None when the job had already
        finished (duplicate delivery). Raises FatalJobError or
        RetryableJobError; infrastructure exceptions propagate as they are.
        """
        job = await db_stage.load_job(self.pool, job_id)
        if not job:
            raise FatalJobError(f"Job {job_id} not found")

        if job.is_terminal():
            logger.info(f"[job={job_id}] Duplicate delivery of {job.status.value} job, skipping")
            return None

        try:
            post = await db_stage.load_post(self.pool, job.post_id)
            if not post:
                raise FatalJobError("Job record or post not found", details={"post_id": job.post_id})

            destinations = await db_stage.load_destinations(self.pool, post.id)
            if not destinations:
                raise NoDestinations("Post has no destinations to publish", details={"post_id": post.id})

            media = await db_stage.load_media_asset(self.pool, post.media_asset_id)
            if not media:
                raise FatalJobError("Media asset not found", details={"media_asset_id": post.media_asset_id})
        except FatalJobError as e:
            await self._fail_fatal(job, e)
            raise

        attempts = await db_stage.mark_job_running(self.pool, job.id)
        await self._log(job.id, LogLevel.INFO, "Starting publish job", {
            "post_id": post.id,
            "destinations": [d.platform.value for d in destinations],
            "attempts": attempts,
        })

        statuses = []
        for dest in destinations:
            statuses.append(await self._publish_destination(job, post, dest, media))

        post_status = aggregate_post_status(statuses)
        published_at = datetime.now(timezone.utc) if post_status == PostStatus.PUBLISHED else None
        await db_stage.set_post_status(self.pool, post.id, post_status, published_at=published_at)
        logger.info(f"[job={job.id}] Destinations: {summarize_destinations(destinations)}")

        if post_status == PostStatus.FAILED:
            await self._log(job.id, LogLevel.ERROR, "Publish job failed for all destinations", {
                "post_status": post_status.value,
            })
            raise RetryableJobError("All destinations failed to publish")

        await db_stage.mark_job_succeeded(self.pool, job.id)
        await self._log(job.id, LogLevel.INFO, "Publish job completed", {"post_status": post_status.value})
        return post_status

    async def _publish_destination(
        self,
        job: Job,
        post: Post,
        dest: PostDestination,
        media: MediaAsset,
    ) -> DestinationStatus:
        """
        Drive one destination through its state machine.

        Adapter, token and registry errors end the destination FAILED. Errors
        from the state writes themselves propagate and fail the whole run.
        """
        platform = dest.platform.value

        if dest_stage.is_already_published(dest):
            await self._log(job.id, LogLevel.INFO, f"{platform} already published, skipping", {
                "platform": platform,
                "external_post_id": dest.external_post_id,
            })
            return DestinationStatus.PUBLISHED

        await dest_stage.begin_attempt(self.pool, dest)
        await self._log(job.id, LogLevel.INFO, f"Uploading to {platform}", {
            "platform": platform,
            "attempts": dest.attempts,
        })

        request = PublishRequest(post=post, destination=dest, media_asset=media, user_id=post.user_id)
        try:
            adapter = self.registry.get(dest.platform)
            handle = await adapter.upload(request)
        except Exception as e:
            return await self._destination_failed(job, dest, e)

        await dest_stage.mark_processing(self.pool, dest)
        await self._log(job.id, LogLevel.INFO, f"Processing {platform}", {"platform": platform})

        try:
            result = await adapter.finalize(request, handle)
        except Exception as e:
            return await self._destination_failed(job, dest, e)

        await dest_stage.mark_published(self.pool, dest, result)
        await self._log(job.id, LogLevel.INFO, f"Published to {platform}", {
            "platform": platform,
            "external_post_id": result.external_post_id,
        })
        return DestinationStatus.PUBLISHED

    async def _destination_failed(self, job: Job, dest: PostDestination, error: Exception) -> DestinationStatus:
        platform = dest.platform.value
        message = safe_error_message(error)
        if not isinstance(error, PublishError):
            logger.exception(f"[job={job.id}] Unexpected error publishing {platform}: {error}")

        await dest_stage.mark_failed(self.pool, dest, message)
        await self._log(job.id, LogLevel.ERROR, f"Failed to publish {platform}", {
            "platform": platform,
            "error": message,
            "attempts": dest.attempts,
        })
        return DestinationStatus.FAILED

    # ------------------------------------------------------------------
    # Failure bookkeeping
    # ------------------------------------------------------------------

    async def record_failure(self, job_id: str, error: Exception, attempts_made: Optional[int] = None) -> bool:
        """
        Persist the outcome of a failed delivery.

        attempts_made is the queue's count of earlier failed deliveries.
        Returns True when the failure is terminal.
        """
        if isinstance(error, FatalJobError):
            return True

        job = await db_stage.load_job(self.pool, job_id)
        if not job:
            logger.error(f"[job={job_id}] Failed delivery for unknown job")
            return True

        message = safe_error_message(error)
        delivery_attempts = attempts_made + 1 if attempts_made is not None else 0
        final = job.attempts_exhausted(delivery_attempts)

        if final:
            await db_stage.mark_job_failed(self.pool, job.id, message)
        else:
            await db_stage.mark_job_pending(self.pool, job.id, message)

        await self._log(job.id, LogLevel.ERROR, "Publish job failed", {
            "error": message,
            "attempts_made": max(job.attempts, delivery_attempts),
            "max_attempts": job.max_attempts,
            "final": final,
        })
        return final

    async def process(self, delivery) -> DeliveryOutcome:
        """Run a queue delivery and tell the caller what to do with it."""
        job_id = (delivery.data or {}).get("job_id")
        if not job_id:
            logger.error(f"Delivery {delivery.id} carries no job_id")
            return DeliveryOutcome.FAILED

        try:
            post_status = await self.run(job_id)
        except FatalJobError as e:
            logger.error(f"[job={job_id}] Fatal: {e.message}")
            return DeliveryOutcome.FAILED
        except Exception as e:
            if not isinstance(e, PublishError):
                logger.exception(f"[job={job_id}] Run failed: {e}")
            final = await self.record_failure(job_id, e, delivery.attempts_made)
            return DeliveryOutcome.FAILED if final else DeliveryOutcome.RETRY

        if post_status is None:
            return DeliveryOutcome.SKIPPED
        return DeliveryOutcome.COMPLETED
