"""
Multipost Destination State Machine
===================================
    QUEUED -> UPLOADING -> PROCESSING -> PUBLISHED
    QUEUED | UPLOADING | PROCESSING -> FAILED

Each job attempt starts a destination over with begin_attempt(), whatever
state an earlier attempt left it in. Every transition is written to the
destination row before the caller sees the new state.
"""

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional

from . import db as db_stage
from .errors import InvalidTransition
from .models import DestinationStatus, PostDestination, PublishResult

logger = logging.getLogger("multipost-worker")

TRANSITIONS = {
    DestinationStatus.QUEUED: {DestinationStatus.UPLOADING, DestinationStatus.FAILED},
    DestinationStatus.UPLOADING: {DestinationStatus.PROCESSING, DestinationStatus.FAILED},
    DestinationStatus.PROCESSING: {DestinationStatus.PUBLISHED, DestinationStatus.FAILED},
    DestinationStatus.PUBLISHED: set(),
    DestinationStatus.FAILED: set(),
}


def can_transition(current: DestinationStatus, target: DestinationStatus) -> bool:
    return target in TRANSITIONS.get(current, set())


def _check(dest: PostDestination, target: DestinationStatus):
    if not can_transition(dest.status, target):
        raise InvalidTransition(
            f"Destination {dest.platform.value} cannot move from {dest.status.value} to {target.value}",
            details={"destination_id": dest.id, "from": dest.status.value, "to": target.value},
        )


async def _apply(pool, dest: PostDestination, **changes) -> PostDestination:
    # the caller's record only changes once the row write went through
    await db_stage.save_destination(pool, replace(dest, **changes))
    for name, value in changes.items():
        setattr(dest, name, value)
    return dest


def is_already_published(dest: PostDestination) -> bool:
    """Published by an earlier or overlapping run."""
    return dest.status == DestinationStatus.PUBLISHED and bool(dest.external_post_id)


async def begin_attempt(pool, dest: PostDestination) -> PostDestination:
    """Restart from QUEUED, count the attempt and move to UPLOADING."""
    return await _apply(pool, dest, status=DestinationStatus.UPLOADING, attempts=dest.attempts + 1)


async def mark_processing(pool, dest: PostDestination) -> PostDestination:
    _check(dest, DestinationStatus.PROCESSING)
    return await _apply(pool, dest, status=DestinationStatus.PROCESSING)


async def mark_published(pool, dest: PostDestination, result: PublishResult) -> PostDestination:
    _check(dest, DestinationStatus.PUBLISHED)
    changes = {"status": DestinationStatus.PUBLISHED, "external_post_id": result.external_post_id}
    if result.external_media_id is not None:
        changes["external_media_id"] = result.external_media_id
    return await _apply(pool, dest, **changes)


async def mark_failed(
    pool,
    dest: PostDestination,
    message: str,
    now: Optional[datetime] = None,
) -> PostDestination:
    _check(dest, DestinationStatus.FAILED)
    return await _apply(
        pool,
        dest,
        status=DestinationStatus.FAILED,
        last_error=message,
        last_error_at=now or datetime.now(timezone.utc),
    )
