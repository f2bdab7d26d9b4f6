"""
Multipost API Service
=====================
Thin FastAPI surface over the publish core:
- Post creation / edit / lookup with per-platform destinations
- Publish enqueue (creates the Job row, queues {job_id} with delay + backoff)
- YouTube OAuth start / callback / manual refresh
- Connected accounts listing (never returns token material)
- Request IDs + JSON errors + access logging

Caller identity is the X-User-Id header; authentication lives in front of
this service.
"""

import time
import uuid
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime
from typing import Optional, List

import asyncpg
import redis.asyncio as redis

from fastapi import FastAPI, HTTPException, Depends, Query, Header, Request
from fastapi.responses import RedirectResponse, JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from publishing import config
from publishing import crypto
from publishing import db as db_stage
from publishing import oauth as oauth_stage
from publishing.errors import PublishError, InvalidState, get_http_status
from publishing.models import Platform, PostStatus, Visibility
from publishing.queue import PublishQueue, compute_delay_ms
from publishing.tokens import TokenManager

# ============================================================
# Logging
# ============================================================

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger("multipost-api")

API_VERSION = "1.0.0"


# ============================================================
# Request Models
# ============================================================

class DestinationInput(BaseModel):
    platform: Platform
    platform_title: Optional[str] = Field(None, min_length=1)
    platform_description: Optional[str] = Field(None, min_length=1)
    platform_visibility: Optional[Visibility] = None


class PostCreate(BaseModel):
    media_asset_id: str = Field(..., min_length=1)
    title: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = Field(None, min_length=1)
    hashtags: Optional[str] = Field(None, min_length=1)
    visibility: Optional[Visibility] = None
    scheduled_at: Optional[datetime] = None
    platforms: List[Platform] = []
    destinations: List[DestinationInput] = []


class PostUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = Field(None, min_length=1)
    hashtags: Optional[str] = Field(None, min_length=1)
    visibility: Optional[Visibility] = None
    scheduled_at: Optional[datetime] = None
    destinations: Optional[List[DestinationInput]] = None


# ============================================================
# Lifespan: pool, redis, queue, token manager
# ============================================================

async def init_services(app: FastAPI):
    config.validate_env(require_oauth=True)
    crypto.init_encryption_key()

    pool = await asyncpg.create_pool(config.DATABASE_URL, min_size=1, max_size=10, command_timeout=30)
    async with pool.acquire() as conn:
        await db_stage.apply_migrations(conn)
    logger.info("Database connected")

    redis_client = redis.from_url(config.REDIS_URL, decode_responses=True)
    await redis_client.ping()
    logger.info("Redis initialized")

    app.state.db_pool = pool
    app.state.redis = redis_client
    app.state.queue = PublishQueue(redis_client, name=config.PUBLISH_QUEUE_NAME)
    app.state.tokens = TokenManager(pool)


async def close_services(app: FastAPI):
    redis_client = getattr(app.state, "redis", None)
    if redis_client is not None:
        await redis_client.aclose()
    pool = getattr(app.state, "db_pool", None)
    if pool is not None:
        await pool.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_services(app)
    yield
    await close_services(app)


app = FastAPI(title="Multipost API", version=API_VERSION, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[config.FRONTEND_URL],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)


@app.middleware("http")
async def request_id_and_logging(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid

    start = time.time()
    status_code = 500

    try:
        response = await call_next(request)
        status_code = response.status_code
    except Exception as e:
        logger.exception(f"[RID:{rid}] Unhandled exception: {e}")
        return JSONResponse(
            status_code=500,
            content={"error": "internal_error", "request_id": rid},
            headers={"X-Request-ID": rid},
        )
    finally:
        duration_ms = int((time.time() - start) * 1000)
        logger.info(f"rid={rid} {request.method} {request.url.path} status={status_code} dur_ms={duration_ms}")

    response.headers["X-Request-ID"] = rid
    response.headers["X-Content-Type-Options"] = "nosniff"
    return response


@app.exception_handler(PublishError)
async def publish_error_handler(request: Request, exc: PublishError):
    rid = getattr(request.state, "request_id", None)
    return JSONResponse(
        status_code=get_http_status(exc.code),
        content={"error": exc.message, "code": exc.code.value, "request_id": rid},
    )


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException):
    rid = getattr(request.state, "request_id", None)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail, "request_id": rid},
        headers=getattr(exc, "headers", None),
    )


# ============================================================
# Dependencies
# ============================================================

async def get_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(401, "Missing x-user-id header")
    return x_user_id.strip()


def get_pool(request: Request):
    pool = getattr(request.app.state, "db_pool", None)
    if pool is None:
        raise HTTPException(500, "Database not available")
    return pool


def get_queue(request: Request) -> PublishQueue:
    queue = getattr(request.app.state, "queue", None)
    if queue is None:
        raise HTTPException(503, "Queue not available")
    return queue


def get_tokens(request: Request, pool=Depends(get_pool)) -> TokenManager:
    return getattr(request.app.state, "tokens", None) or TokenManager(pool)


def _require_uuid(value: str, what: str) -> str:
    try:
        return str(uuid.UUID(value))
    except ValueError:
        raise HTTPException(404, f"{what} not found")


def _post_payload(post, destinations) -> dict:
    data = asdict(post)
    data["destinations"] = [asdict(d) for d in destinations]
    return data


# ============================================================
# Health
# ============================================================

@app.get("/health")
async def health_alias():
    return {"status": "ok"}


@app.get("/api/health")
async def health(request: Request):
    return {
        "status": "ok",
        "version": API_VERSION,
        "database": getattr(request.app.state, "db_pool", None) is not None,
        "queue": getattr(request.app.state, "queue", None) is not None,
        "youtube_configured": config.youtube_configured(),
        "frontend_url": config.FRONTEND_URL,
    }


# ============================================================
# Posts
# ============================================================

@app.post("/api/posts", status_code=201)
async def create_post(data: PostCreate, user_id: str = Depends(get_user_id), pool=Depends(get_pool)):
    media_asset_id = _require_uuid(data.media_asset_id, "Media asset")
    media = await db_stage.load_media_asset(pool, media_asset_id)
    if not media or media.user_id != user_id:
        raise HTTPException(404, "Media asset not found")

    # explicit destination entries win over bare platform names
    by_platform = {p: {"platform": p.value} for p in data.platforms}
    for d in data.destinations:
        by_platform[d.platform] = {
            "platform": d.platform.value,
            "platform_title": d.platform_title,
            "platform_description": d.platform_description,
            "platform_visibility": d.platform_visibility.value if d.platform_visibility else None,
        }

    post, destinations = await db_stage.create_post(
        pool,
        user_id=user_id,
        media_asset_id=media_asset_id,
        destinations=list(by_platform.values()),
        title=data.title,
        description=data.description,
        hashtags=data.hashtags,
        visibility=data.visibility.value if data.visibility else None,
        scheduled_at=data.scheduled_at,
    )
    logger.info(f"Post created: post={post.id} user={user_id} platforms={[d.platform.value for d in destinations]}")
    return _post_payload(post, destinations)


@app.get("/api/posts/{post_id}")
async def get_post(post_id: str, user_id: str = Depends(get_user_id), pool=Depends(get_pool)):
    post = await db_stage.load_post_for_user(pool, _require_uuid(post_id, "Post"), user_id)
    if not post:
        raise HTTPException(404, "Post not found")
    destinations = await db_stage.load_destinations(pool, post.id)
    return _post_payload(post, destinations)


@app.patch("/api/posts/{post_id}")
async def update_post(
    post_id: str,
    data: PostUpdate,
    user_id: str = Depends(get_user_id),
    pool=Depends(get_pool),
):
    post = await db_stage.load_post_for_user(pool, _require_uuid(post_id, "Post"), user_id)
    if not post:
        raise HTTPException(404, "Post not found")

    fields = data.model_dump(exclude_unset=True, exclude={"destinations"})
    if fields.get("visibility") is not None:
        fields["visibility"] = fields["visibility"].value
    await db_stage.update_post(pool, post.id, fields)

    for d in data.destinations or []:
        overrides = d.model_dump(exclude_unset=True, exclude={"platform"})
        if overrides.get("platform_visibility") is not None:
            overrides["platform_visibility"] = overrides["platform_visibility"].value
        await db_stage.upsert_destination_overrides(pool, post.id, d.platform, overrides)

    post = await db_stage.load_post_for_user(pool, post.id, user_id)
    if not post:
        raise HTTPException(404, "Post not found")
    destinations = await db_stage.load_destinations(pool, post.id)
    return _post_payload(post, destinations)


@app.post("/api/posts/{post_id}/publish", status_code=202)
async def publish_post(
    post_id: str,
    user_id: str = Depends(get_user_id),
    pool=Depends(get_pool),
    queue: PublishQueue = Depends(get_queue),
):
    post = await db_stage.load_post_for_user(pool, _require_uuid(post_id, "Post"), user_id)
    if not post:
        raise HTTPException(404, "Post not found")
    if post.status == PostStatus.PUBLISHED:
        raise HTTPException(409, "Post is already published")

    destinations = await db_stage.load_destinations(pool, post.id)
    if not destinations:
        raise HTTPException(400, "Post has no destinations to publish")

    platforms = [d.platform.value for d in destinations]
    job = await db_stage.create_job(
        pool,
        user_id=user_id,
        post_id=post.id,
        payload={"post_id": post.id, "platforms": platforms},
        max_attempts=config.JOB_MAX_ATTEMPTS,
        scheduled_at=post.scheduled_at,
    )
    await db_stage.mark_post_queued(pool, post.id)

    await queue.enqueue(
        {"job_id": job.id},
        attempts=job.max_attempts,
        backoff={"type": "exponential", "delay": config.JOB_BACKOFF_DELAY_MS},
        delay_ms=compute_delay_ms(post.scheduled_at),
    )
    logger.info(f"Publish queued: job={job.id} post={post.id} platforms={platforms}")
    return {"job_id": job.id, "post_id": post.id, "status": job.status.value}


# ============================================================
# YouTube OAuth
# ============================================================

def _connections_url(query: str) -> str:
    return f"{config.FRONTEND_URL.rstrip('/')}/settings/connections?{query}"


@app.get("/oauth/youtube/start")
async def youtube_oauth_start(user_id: str = Depends(get_user_id)):
    return RedirectResponse(oauth_stage.create_youtube_auth_url(user_id))


@app.get("/oauth/youtube/callback")
async def youtube_oauth_callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    pool=Depends(get_pool),
):
    if error:
        return RedirectResponse(_connections_url("error=youtube_oauth_failed"))
    if not code or not state:
        raise HTTPException(400, "Missing code or state")

    try:
        account = await oauth_stage.complete_youtube_connection(pool, code, state)
    except InvalidState:
        return RedirectResponse(_connections_url("error=invalid_state"))
    except PublishError as e:
        logger.warning(f"YouTube OAuth callback failed: {e.code.value} {e.message}")
        return RedirectResponse(_connections_url("error=youtube_token_failed"))

    logger.info(f"YouTube connected: user={account.user_id}")
    return RedirectResponse(_connections_url("connected=youtube"))


@app.post("/oauth/youtube/refresh")
async def youtube_oauth_refresh(user_id: str = Depends(get_user_id), tokens: TokenManager = Depends(get_tokens)):
    await tokens.force_refresh(user_id, Platform.YOUTUBE)
    return {"ok": True}


# ============================================================
# Connections
# ============================================================

@app.get("/api/connections")
async def list_connections(user_id: str = Depends(get_user_id), pool=Depends(get_pool)):
    accounts = await db_stage.list_connected_accounts(pool, user_id)
    return [a.to_public_dict() for a in accounts]


if __name__ == "__main__":
    import os
    import uvicorn
    uvicorn.run("app:app", host="0.0.0.0", port=int(os.environ.get("PORT", 8000)))
