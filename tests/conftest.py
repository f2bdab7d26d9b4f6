import copy
import itertools
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from publishing import crypto
from publishing import db as db_stage
from publishing.models import (
    ConnectedAccount,
    Job,
    JobLogEntry,
    JobStatus,
    MediaAsset,
    MediaType,
    Platform,
    Post,
    PostDestination,
    PostStatus,
)

TEST_KEY_HEX = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"


@pytest.fixture(autouse=True)
def env(monkeypatch):
    monkeypatch.setenv("TOKEN_ENCRYPTION_KEY", TEST_KEY_HEX)
    monkeypatch.setenv("OAUTH_STATE_SECRET", "state-secret")
    monkeypatch.setenv("GOOGLE_CLIENT_ID", "client-id")
    monkeypatch.setenv("GOOGLE_CLIENT_SECRET", "client-secret")
    monkeypatch.setenv("GOOGLE_REDIRECT_URI", "http://localhost:8000/oauth/youtube/callback")
    monkeypatch.delenv("ALLOW_LEGACY_PLAINTEXT_TOKENS", raising=False)
    crypto.reset_encryption_key()
    crypto.init_encryption_key()
    yield
    crypto.reset_encryption_key()


def utcnow():
    return datetime.now(timezone.utc)


class FakeStore:
    """In-memory stand-in for the asyncpg layer in publishing.db."""

    def __init__(self):
        self.media = {}
        self.posts = {}
        self.destinations = {}
        self.jobs = {}
        self.job_logs = []
        self.accounts = {}
        self.dest_history = {}
        self.account_writes = 0
        self._order = itertools.count()
        self._dest_order = {}

    # -------- seeding helpers --------

    def add_media(self, user_id="u1", type=MediaType.VIDEO, storage_key="media/clip.mp4", size_bytes=11):
        asset = MediaAsset(
            id=str(uuid.uuid4()),
            user_id=user_id,
            type=type,
            storage_key=storage_key,
            mime_type="video/mp4",
            size_bytes=size_bytes,
        )
        self.media[asset.id] = asset
        return asset

    def add_post(self, platforms, user_id="u1", media=None, **fields):
        media = media or self.add_media(user_id=user_id)
        post = Post(id=str(uuid.uuid4()), user_id=user_id, media_asset_id=media.id, **fields)
        self.posts[post.id] = post
        for p in platforms:
            self.add_destination(post, p)
        return post

    def add_destination(self, post, platform, **fields):
        dest = PostDestination(id=str(uuid.uuid4()), post_id=post.id, platform=platform, **fields)
        self.destinations[dest.id] = dest
        self._dest_order[dest.id] = next(self._order)
        self.dest_history[dest.id] = [dest.status]
        return dest

    def add_job(self, post, max_attempts=3, **fields):
        job = Job(
            id=str(uuid.uuid4()),
            user_id=post.user_id,
            post_id=post.id,
            max_attempts=max_attempts,
            payload={"post_id": post.id},
            **fields,
        )
        self.jobs[job.id] = job
        return job

    def add_account(self, user_id="u1", platform=Platform.YOUTUBE, access_token="access-1",
                    refresh_token="refresh-1", expires_in=timedelta(hours=1), is_active=True):
        account = ConnectedAccount(
            id=str(uuid.uuid4()),
            user_id=user_id,
            platform=platform,
            access_token=crypto.encrypt_string(access_token) if access_token else None,
            refresh_token=crypto.encrypt_string(refresh_token) if refresh_token else None,
            token_type="Bearer",
            scope="youtube.upload",
            expires_at=utcnow() + expires_in if expires_in is not None else None,
            is_active=is_active,
        )
        self.accounts[account.id] = account
        return account

    def destinations_of(self, post):
        found = [d for d in self.destinations.values() if d.post_id == post.id]
        return sorted(found, key=lambda d: self._dest_order[d.id])

    def logs_of(self, job):
        return [entry for entry in self.job_logs if entry.job_id == job.id]

    def account_for(self, user_id, platform=Platform.YOUTUBE):
        for a in self.accounts.values():
            if a.user_id == user_id and a.platform == platform:
                return a
        return None

    # -------- publishing.db replacements --------

    async def load_job(self, pool, job_id):
        return copy.deepcopy(self.jobs.get(job_id))

    async def load_post(self, pool, post_id):
        return copy.deepcopy(self.posts.get(post_id))

    async def load_post_for_user(self, pool, post_id, user_id):
        post = self.posts.get(post_id)
        return copy.deepcopy(post) if post and post.user_id == user_id else None

    async def load_destinations(self, pool, post_id):
        return copy.deepcopy(self.destinations_of(self.posts[post_id])) if post_id in self.posts else []

    async def load_media_asset(self, pool, media_asset_id):
        return copy.deepcopy(self.media.get(media_asset_id))

    async def mark_job_running(self, pool, job_id):
        job = self.jobs[job_id]
        job.status = JobStatus.RUNNING
        job.attempts += 1
        job.started_at = utcnow()
        return job.attempts

    async def mark_job_succeeded(self, pool, job_id):
        job = self.jobs[job_id]
        job.status = JobStatus.SUCCESS
        job.finished_at = job.finished_at or utcnow()

    async def mark_job_pending(self, pool, job_id, error):
        job = self.jobs[job_id]
        job.status = JobStatus.PENDING
        job.last_error = error

    async def mark_job_failed(self, pool, job_id, error):
        job = self.jobs[job_id]
        job.status = JobStatus.FAILED
        job.last_error = error
        job.finished_at = job.finished_at or utcnow()

    async def insert_job_log(self, pool, job_id, level, message, data=None):
        self.job_logs.append(JobLogEntry(job_id=job_id, level=level, message=message, data=data, created_at=utcnow()))

    async def save_destination(self, pool, dest):
        self.destinations[dest.id] = copy.deepcopy(dest)
        self.dest_history[dest.id].append(dest.status)

    async def set_post_status(self, pool, post_id, status, published_at=None):
        post = self.posts[post_id]
        post.status = status
        if published_at is not None:
            post.published_at = published_at

    async def create_post(self, pool, user_id, media_asset_id, destinations, title=None, description=None,
                          hashtags=None, visibility=None, scheduled_at=None):
        post = Post(
            id=str(uuid.uuid4()),
            user_id=user_id,
            media_asset_id=media_asset_id,
            title=title,
            description=description,
            hashtags=hashtags,
            visibility=visibility,
            scheduled_at=scheduled_at,
        )
        self.posts[post.id] = post
        created = [self.add_destination(post, Platform(d["platform"])) for d in destinations]
        return copy.deepcopy(post), copy.deepcopy(created)

    async def create_job(self, pool, user_id, post_id, payload, max_attempts, scheduled_at=None):
        job = Job(
            id=str(uuid.uuid4()),
            user_id=user_id,
            post_id=post_id,
            payload=payload,
            max_attempts=max_attempts,
            scheduled_at=scheduled_at,
        )
        self.jobs[job.id] = job
        return copy.deepcopy(job)

    async def mark_post_queued(self, pool, post_id):
        self.posts[post_id].status = PostStatus.QUEUED

    async def update_post(self, pool, post_id, fields):
        post = self.posts[post_id]
        for k, v in fields.items():
            setattr(post, k, v)

    async def upsert_destination_overrides(self, pool, post_id, platform, fields):
        post = self.posts[post_id]
        dest = next((d for d in self.destinations_of(post) if d.platform == platform), None)
        if dest is None:
            dest = self.add_destination(post, platform)
        for k, v in fields.items():
            setattr(dest, k, v)

    async def load_connected_account(self, pool, user_id, platform):
        return copy.deepcopy(self.account_for(user_id, platform))

    async def list_connected_accounts(self, pool, user_id):
        return [copy.deepcopy(a) for a in self.accounts.values() if a.user_id == user_id]

    async def save_refreshed_credentials(self, pool, account_id, access_token, refresh_token, expires_at,
                                         token_type, scope):
        self.account_writes += 1
        account = self.accounts[account_id]
        account.access_token = access_token
        if refresh_token is not None:
            account.refresh_token = refresh_token
        account.expires_at = expires_at
        account.token_type = token_type
        account.scope = scope
        account.is_active = True

    async def upsert_connected_account(self, pool, account):
        self.account_writes += 1
        existing = self.account_for(account.user_id, account.platform)
        stored = copy.deepcopy(account)
        if existing is not None:
            stored.id = existing.id
            if stored.refresh_token is None:
                stored.refresh_token = existing.refresh_token
            del self.accounts[existing.id]
        self.accounts[stored.id] = stored
        return copy.deepcopy(stored)


DB_FUNCTIONS = [
    "load_job", "load_post", "load_post_for_user", "load_destinations", "load_media_asset",
    "mark_job_running", "mark_job_succeeded", "mark_job_pending", "mark_job_failed",
    "insert_job_log", "save_destination", "set_post_status", "create_post", "create_job",
    "mark_post_queued", "update_post", "upsert_destination_overrides", "load_connected_account",
    "list_connected_accounts", "save_refreshed_credentials", "upsert_connected_account",
]


@pytest.fixture
def store(monkeypatch):
    fake = FakeStore()
    for name in DB_FUNCTIONS:
        monkeypatch.setattr(db_stage, name, getattr(fake, name))
    return fake


class FakeRedis:
    """The subset of redis.asyncio commands PublishQueue uses."""

    def __init__(self):
        self.lists = {}
        self.zsets = {}

    async def ping(self):
        return True

    async def lpush(self, key, *values):
        lst = self.lists.setdefault(key, [])
        for v in values:
            lst.insert(0, v)
        return len(lst)

    async def lrem(self, key, count, value):
        lst = self.lists.get(key, [])
        removed = 0
        i = 0
        while i < len(lst) and (count == 0 or removed < count):
            if lst[i] == value:
                lst.pop(i)
                removed += 1
            else:
                i += 1
        return removed

    def _pop(self, key, side):
        lst = self.lists.get(key) or []
        if not lst:
            return None
        return lst.pop(-1) if side == "RIGHT" else lst.pop(0)

    def _push(self, key, value, side):
        lst = self.lists.setdefault(key, [])
        if side == "RIGHT":
            lst.append(value)
        else:
            lst.insert(0, value)

    async def lmove(self, first_list, second_list, src="LEFT", dest="RIGHT"):
        value = self._pop(first_list, src)
        if value is not None:
            self._push(second_list, value, dest)
        return value

    async def blmove(self, first_list, second_list, timeout, src="LEFT", dest="RIGHT"):
        return await self.lmove(first_list, second_list, src=src, dest=dest)

    async def llen(self, key):
        return len(self.lists.get(key, []))

    async def zadd(self, key, mapping):
        self.zsets.setdefault(key, {}).update(mapping)
        return len(mapping)

    async def zrangebyscore(self, key, min, max):
        zset = self.zsets.get(key, {})
        lo = float("-inf") if min == "-inf" else float(min)
        hi = float("inf") if max == "+inf" else float(max)
        return [m for m, s in sorted(zset.items(), key=lambda kv: kv[1]) if lo <= s <= hi]

    async def zrem(self, key, *values):
        zset = self.zsets.get(key, {})
        removed = 0
        for v in values:
            if v in zset:
                del zset[v]
                removed += 1
        return removed

    async def zcard(self, key):
        return len(self.zsets.get(key, {}))


@pytest.fixture
def fake_redis():
    return FakeRedis()


class FakeStorage:
    def __init__(self, objects=None):
        self.objects = dict(objects or {"media/clip.mp4": b"video-bytes"})

    async def size_of(self, storage_key):
        return len(self.objects[storage_key])

    async def open_stream(self, storage_key):
        yield self.objects[storage_key]

    async def read_bytes(self, storage_key):
        return self.objects[storage_key]


@pytest.fixture
def storage():
    return FakeStorage()
