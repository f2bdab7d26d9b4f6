import pytest

from publishing import db as db_stage
from publishing.adapters import AdapterRegistry, PlatformAdapter, UploadHandle
from publishing.errors import FatalJobError, PlatformPublishError, RetryableJobError
from publishing.models import DestinationStatus, JobStatus, Platform, PostStatus, PublishResult
from publishing.orchestrator import DeliveryOutcome, Orchestrator, aggregate_post_status
from publishing.queue import Delivery

S = DestinationStatus


class ScriptedAdapter(PlatformAdapter):
    """Adapter whose upload outcome per call is scripted: True succeeds, an exception is raised."""

    def __init__(self, platform, outcomes=(True,)):
        self.platform = platform
        self.outcomes = list(outcomes)
        self.uploads = 0

    async def upload(self, request):
        outcome = self.outcomes[min(self.uploads, len(self.outcomes) - 1)]
        self.uploads += 1
        if isinstance(outcome, Exception):
            raise outcome
        return UploadHandle(platform=self.platform, remote_id=f"{self.platform.value.lower()}-{self.uploads}")

    async def finalize(self, request, handle):
        return PublishResult(external_post_id=handle.remote_id)


def _orchestrator(*adapters):
    return Orchestrator(None, AdapterRegistry(adapters))


def _delivery(job, attempts_made=0):
    return Delivery(id="delivery-1", name="publish-post", data={"job_id": job.id}, attempts=job.max_attempts,
                    attempts_made=attempts_made)


@pytest.mark.parametrize("statuses,expected", [
    ([S.PUBLISHED, S.PUBLISHED], PostStatus.PUBLISHED),
    ([S.PUBLISHED, S.FAILED], PostStatus.PARTIALLY_PUBLISHED),
    ([S.FAILED, S.FAILED], PostStatus.FAILED),
    ([], PostStatus.FAILED),
])
def test_aggregate_post_status(statuses, expected):
    assert aggregate_post_status(statuses) == expected


@pytest.mark.asyncio
async def test_all_destinations_published(store):
    post = store.add_post([Platform.YOUTUBE])
    job = store.add_job(post)
    orchestrator = _orchestrator(ScriptedAdapter(Platform.YOUTUBE))

    assert await orchestrator.process(_delivery(job)) == DeliveryOutcome.COMPLETED

    dest = store.destinations_of(post)[0]
    assert dest.status == S.PUBLISHED
    assert dest.external_post_id == "youtube-1"
    assert store.dest_history[dest.id] == [S.QUEUED, S.UPLOADING, S.PROCESSING, S.PUBLISHED]
    assert store.posts[post.id].status == PostStatus.PUBLISHED
    assert store.posts[post.id].published_at is not None
    assert store.jobs[job.id].status == JobStatus.SUCCESS
    assert store.jobs[job.id].attempts == 1
    messages = [entry.message for entry in store.logs_of(store.jobs[job.id])]
    assert messages == [
        "Starting publish job",
        "Uploading to YOUTUBE",
        "Processing YOUTUBE",
        "Published to YOUTUBE",
        "Publish job completed",
    ]


@pytest.mark.asyncio
async def test_one_failing_destination_is_partial(store):
    post = store.add_post([Platform.YOUTUBE, Platform.INSTAGRAM, Platform.FACEBOOK])
    job = store.add_job(post)
    orchestrator = _orchestrator(
        ScriptedAdapter(Platform.YOUTUBE),
        ScriptedAdapter(Platform.INSTAGRAM),
        ScriptedAdapter(Platform.FACEBOOK, [RuntimeError("connection reset by peer")]),
    )

    assert await orchestrator.run(job.id) == PostStatus.PARTIALLY_PUBLISHED

    yt, ig, fb = store.destinations_of(post)
    assert yt.status == S.PUBLISHED and ig.status == S.PUBLISHED
    assert fb.status == S.FAILED
    assert fb.last_error == "connection reset by peer"
    assert fb.last_error_at is not None
    assert store.posts[post.id].status == PostStatus.PARTIALLY_PUBLISHED
    assert store.posts[post.id].published_at is None
    assert store.jobs[job.id].status == JobStatus.SUCCESS
    assert "Failed to publish FACEBOOK" in [e.message for e in store.logs_of(job)]


@pytest.mark.asyncio
async def test_unsupported_platform_fails_only_that_destination(store):
    post = store.add_post([Platform.YOUTUBE, Platform.TIKTOK])
    job = store.add_job(post)
    orchestrator = _orchestrator(ScriptedAdapter(Platform.YOUTUBE))

    assert await orchestrator.run(job.id) == PostStatus.PARTIALLY_PUBLISHED
    tiktok = store.destinations_of(post)[1]
    assert tiktok.status == S.FAILED
    assert tiktok.last_error == "Unsupported platform: TIKTOK"


@pytest.mark.asyncio
async def test_fails_twice_then_succeeds(store):
    post = store.add_post([Platform.YOUTUBE])
    job = store.add_job(post, max_attempts=3)
    adapter = ScriptedAdapter(Platform.YOUTUBE, [
        PlatformPublishError("YouTube upload failed: HTTP 503"),
        PlatformPublishError("YouTube upload failed: HTTP 503"),
        True,
    ])
    orchestrator = _orchestrator(adapter)

    assert await orchestrator.process(_delivery(job, 0)) == DeliveryOutcome.RETRY
    assert store.jobs[job.id].status == JobStatus.PENDING
    assert store.posts[post.id].status == PostStatus.FAILED
    assert await orchestrator.process(_delivery(job, 1)) == DeliveryOutcome.RETRY
    assert await orchestrator.process(_delivery(job, 2)) == DeliveryOutcome.COMPLETED

    stored_job = store.jobs[job.id]
    assert stored_job.attempts == 3
    assert stored_job.status == JobStatus.SUCCESS
    assert stored_job.last_error == "All destinations failed to publish"
    dest = store.destinations_of(post)[0]
    assert dest.status == S.PUBLISHED
    assert dest.attempts == 3
    assert store.posts[post.id].status == PostStatus.PUBLISHED


@pytest.mark.asyncio
async def test_always_failing_job_ends_failed(store):
    post = store.add_post([Platform.YOUTUBE])
    job = store.add_job(post, max_attempts=2)
    orchestrator = _orchestrator(ScriptedAdapter(Platform.YOUTUBE, [PlatformPublishError("quota exceeded")]))

    assert await orchestrator.process(_delivery(job, 0)) == DeliveryOutcome.RETRY
    assert await orchestrator.process(_delivery(job, 1)) == DeliveryOutcome.FAILED

    stored_job = store.jobs[job.id]
    assert stored_job.status == JobStatus.FAILED
    assert stored_job.attempts == 2
    assert stored_job.finished_at is not None
    assert store.destinations_of(post)[0].status == S.FAILED
    assert store.destinations_of(post)[0].last_error == "quota exceeded"
    assert store.posts[post.id].status == PostStatus.FAILED


@pytest.mark.asyncio
async def test_all_failed_run_raises_retryable(store):
    post = store.add_post([Platform.YOUTUBE])
    job = store.add_job(post)
    orchestrator = _orchestrator(ScriptedAdapter(Platform.YOUTUBE, [PlatformPublishError("nope")]))

    with pytest.raises(RetryableJobError):
        await orchestrator.run(job.id)
    assert "Publish job failed for all destinations" in [e.message for e in store.logs_of(job)]


@pytest.mark.asyncio
async def test_missing_job_is_fatal(store):
    orchestrator = _orchestrator(ScriptedAdapter(Platform.YOUTUBE))
    with pytest.raises(FatalJobError):
        await orchestrator.run("00000000-0000-0000-0000-000000000000")


@pytest.mark.asyncio
async def test_missing_post_fails_job_without_retry(store):
    post = store.add_post([Platform.YOUTUBE])
    job = store.add_job(post)
    del store.posts[post.id]
    orchestrator = _orchestrator(ScriptedAdapter(Platform.YOUTUBE))

    assert await orchestrator.process(_delivery(job)) == DeliveryOutcome.FAILED
    assert store.jobs[job.id].status == JobStatus.FAILED
    assert store.jobs[job.id].last_error == "Job record or post not found"
    assert store.jobs[job.id].attempts == 0


@pytest.mark.asyncio
async def test_post_without_destinations_fails_job(store):
    post = store.add_post([])
    job = store.add_job(post)
    orchestrator = _orchestrator(ScriptedAdapter(Platform.YOUTUBE))

    assert await orchestrator.process(_delivery(job)) == DeliveryOutcome.FAILED
    assert store.jobs[job.id].status == JobStatus.FAILED
    assert store.jobs[job.id].last_error == "Post has no destinations to publish"
    assert "Publish job failed permanently" in [e.message for e in store.logs_of(job)]


@pytest.mark.asyncio
async def test_missing_media_is_fatal(store):
    post = store.add_post([Platform.YOUTUBE])
    job = store.add_job(post)
    del store.media[post.media_asset_id]
    adapter = ScriptedAdapter(Platform.YOUTUBE)

    assert await _orchestrator(adapter).process(_delivery(job)) == DeliveryOutcome.FAILED
    assert adapter.uploads == 0
    assert store.jobs[job.id].last_error == "Media asset not found"


@pytest.mark.asyncio
async def test_duplicate_delivery_of_finished_job_is_skipped(store):
    post = store.add_post([Platform.YOUTUBE])
    job = store.add_job(post, status=JobStatus.SUCCESS, attempts=1)
    adapter = ScriptedAdapter(Platform.YOUTUBE)

    assert await _orchestrator(adapter).process(_delivery(job)) == DeliveryOutcome.SKIPPED
    assert adapter.uploads == 0
    assert store.jobs[job.id].attempts == 1


@pytest.mark.asyncio
async def test_already_published_destination_is_not_republished(store):
    post = store.add_post([])
    store.add_destination(post, Platform.YOUTUBE, status=S.PUBLISHED, external_post_id="vid-0", attempts=1)
    store.add_destination(post, Platform.INSTAGRAM)
    job = store.add_job(post)
    youtube = ScriptedAdapter(Platform.YOUTUBE)
    instagram = ScriptedAdapter(Platform.INSTAGRAM)

    assert await _orchestrator(youtube, instagram).run(job.id) == PostStatus.PUBLISHED
    assert youtube.uploads == 0
    assert instagram.uploads == 1
    assert store.destinations_of(post)[0].external_post_id == "vid-0"
    assert "YOUTUBE already published, skipping" in [e.message for e in store.logs_of(job)]


@pytest.mark.asyncio
async def test_delivery_without_job_id_is_failed(store):
    orchestrator = _orchestrator(ScriptedAdapter(Platform.YOUTUBE))
    delivery = Delivery(id="x", name="publish-post", data={})
    assert await orchestrator.process(delivery) == DeliveryOutcome.FAILED


@pytest.mark.asyncio
async def test_record_failure_uses_the_larger_attempt_count(store):
    post = store.add_post([Platform.YOUTUBE])
    job = store.add_job(post, max_attempts=3, attempts=3)
    orchestrator = _orchestrator(ScriptedAdapter(Platform.YOUTUBE))

    final = await orchestrator.record_failure(job.id, RuntimeError("redis went away"), attempts_made=0)

    assert final is True
    assert store.jobs[job.id].status == JobStatus.FAILED
    assert store.jobs[job.id].last_error == "redis went away"


@pytest.mark.asyncio
async def test_lost_destination_write_retries_the_job_with_the_real_error(store, monkeypatch):
    post = store.add_post([Platform.YOUTUBE, Platform.INSTAGRAM])
    job = store.add_job(post, max_attempts=3)
    youtube = ScriptedAdapter(Platform.YOUTUBE)
    instagram = ScriptedAdapter(Platform.INSTAGRAM)
    database = {"up": False}

    async def save_destination(pool, dest):
        if not database["up"] and dest.platform == Platform.YOUTUBE and dest.status == S.PUBLISHED:
            raise ConnectionError("connection to database lost")
        await store.save_destination(pool, dest)

    monkeypatch.setattr(db_stage, "save_destination", save_destination)
    orchestrator = _orchestrator(youtube, instagram)

    assert await orchestrator.process(_delivery(job, 0)) == DeliveryOutcome.RETRY
    assert instagram.uploads == 0
    yt, ig = store.destinations_of(post)
    assert yt.status == S.PROCESSING
    assert yt.external_post_id is None
    assert ig.status == S.QUEUED
    assert store.jobs[job.id].status == JobStatus.PENDING
    assert store.jobs[job.id].last_error == "connection to database lost"

    database["up"] = True
    assert await orchestrator.process(_delivery(job, 1)) == DeliveryOutcome.COMPLETED
    assert [d.status for d in store.destinations_of(post)] == [S.PUBLISHED, S.PUBLISHED]
    assert youtube.uploads == 2
    assert store.posts[post.id].status == PostStatus.PUBLISHED
