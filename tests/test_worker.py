import json

import pytest

import worker
from publishing.adapters import AdapterRegistry, PlatformAdapter, UploadHandle
from publishing.errors import PlatformPublishError
from publishing.models import JobStatus, Platform, PublishResult
from publishing.orchestrator import Orchestrator
from publishing.queue import PublishQueue

NOW_MS = 1_700_000_000_000


class OneShotAdapter(PlatformAdapter):
    platform = Platform.YOUTUBE

    def __init__(self, error=None):
        self.error = error

    async def upload(self, request):
        if self.error:
            raise self.error
        return UploadHandle(platform=self.platform, remote_id="vid-1")

    async def finalize(self, request, handle):
        return PublishResult(external_post_id=handle.remote_id)


@pytest.fixture
def queue(fake_redis):
    return PublishQueue(fake_redis, name="publish", worker_id="w1")


async def _reserve_job(queue, job):
    await queue.enqueue({"job_id": job.id}, attempts=job.max_attempts, now_ms=NOW_MS)
    return await queue.reserve(timeout=0, now_ms=NOW_MS)


@pytest.mark.asyncio
async def test_completed_delivery_is_acked(store, queue, fake_redis):
    post = store.add_post([Platform.YOUTUBE])
    job = store.add_job(post)
    delivery = await _reserve_job(queue, job)

    await worker.handle_delivery(queue, Orchestrator(None, AdapterRegistry([OneShotAdapter()])), delivery)

    assert store.jobs[job.id].status == JobStatus.SUCCESS
    assert await fake_redis.llen(queue.processing_key) == 0
    assert await fake_redis.llen(queue.ready_key) == 0
    assert await fake_redis.zcard(queue.delayed_key) == 0


@pytest.mark.asyncio
async def test_failed_attempt_is_rescheduled(store, queue, fake_redis):
    post = store.add_post([Platform.YOUTUBE])
    job = store.add_job(post, max_attempts=3)
    delivery = await _reserve_job(queue, job)
    orchestrator = Orchestrator(None, AdapterRegistry([OneShotAdapter(PlatformPublishError("quota"))]))

    await worker.handle_delivery(queue, orchestrator, delivery)

    assert store.jobs[job.id].status == JobStatus.PENDING
    assert await fake_redis.llen(queue.processing_key) == 0
    assert await fake_redis.zcard(queue.delayed_key) == 1


@pytest.mark.asyncio
async def test_fatal_delivery_goes_to_failed_list(store, queue, fake_redis):
    post = store.add_post([])
    job = store.add_job(post)
    delivery = await _reserve_job(queue, job)

    await worker.handle_delivery(queue, Orchestrator(None, AdapterRegistry([OneShotAdapter()])), delivery)

    assert store.jobs[job.id].status == JobStatus.FAILED
    record = json.loads(fake_redis.lists[queue.failed_key][0])
    assert record["data"] == {"job_id": job.id}


class StopAfterUploadAdapter(OneShotAdapter):
    """Requests shutdown while its delivery is still in flight."""

    async def upload(self, request):
        worker.handle_shutdown(15, None)
        return await super().upload(request)


@pytest.mark.asyncio
async def test_shutdown_drains_in_flight_delivery(store, queue, fake_redis, monkeypatch):
    monkeypatch.setattr(worker, "shutdown_requested", False)
    post = store.add_post([Platform.YOUTUBE])
    job = store.add_job(post)
    await queue.enqueue({"job_id": job.id}, attempts=job.max_attempts)
    orchestrator = Orchestrator(None, AdapterRegistry([StopAfterUploadAdapter()]))

    await worker.process_jobs(queue, orchestrator, concurrency=1)

    assert worker.shutdown_requested is True
    assert store.jobs[job.id].status == JobStatus.SUCCESS
    assert await fake_redis.llen(queue.processing_key) == 0
