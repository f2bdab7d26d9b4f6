"""
Multipost Database Functions
============================
asyncpg helpers for the API service and the publish worker, plus the
versioned schema migrations both processes apply on startup.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Tuple

import asyncpg

from .models import (
    ConnectedAccount,
    DestinationStatus,
    Job,
    JobStatus,
    JobType,
    LogLevel,
    MediaAsset,
    Platform,
    Post,
    PostDestination,
    PostStatus,
)

logger = logging.getLogger("multipost-worker")


# ============================================================
# Migrations
# ============================================================

MIGRATIONS: List[Tuple[int, str]] = [
    (1, """
        CREATE EXTENSION IF NOT EXISTS pgcrypto;
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version INTEGER PRIMARY KEY,
            applied_at TIMESTAMPTZ DEFAULT NOW()
        );
    """),
    (2, """
        CREATE TABLE IF NOT EXISTS media_assets (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id TEXT NOT NULL,
            type TEXT NOT NULL,
            storage_key TEXT NOT NULL,
            url TEXT,
            mime_type TEXT,
            size_bytes BIGINT,
            original_filename TEXT,
            created_at TIMESTAMPTZ DEFAULT NOW()
        );
        CREATE INDEX IF NOT EXISTS idx_media_assets_user ON media_assets(user_id);
    """),
    (3, """
        CREATE TABLE IF NOT EXISTS posts (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id TEXT NOT NULL,
            media_asset_id UUID NOT NULL REFERENCES media_assets(id),
            title TEXT,
            description TEXT,
            hashtags TEXT,
            visibility TEXT,
            scheduled_at TIMESTAMPTZ,
            status TEXT NOT NULL DEFAULT 'DRAFT',
            published_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW()
        );
        CREATE INDEX IF NOT EXISTS idx_posts_user_status ON posts(user_id, status);

        CREATE TABLE IF NOT EXISTS post_destinations (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            post_id UUID NOT NULL REFERENCES posts(id) ON DELETE CASCADE,
            platform TEXT NOT NULL,
            platform_title TEXT,
            platform_description TEXT,
            platform_visibility TEXT,
            status TEXT NOT NULL DEFAULT 'QUEUED',
            attempts INTEGER NOT NULL DEFAULT 0,
            external_post_id TEXT,
            external_media_id TEXT,
            last_error TEXT,
            last_error_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW(),
            UNIQUE (post_id, platform)
        );
    """),
    (4, """
        CREATE TABLE IF NOT EXISTS jobs (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id TEXT NOT NULL,
            post_id UUID NOT NULL REFERENCES posts(id) ON DELETE CASCADE,
            type TEXT NOT NULL DEFAULT 'PUBLISH_POST',
            status TEXT NOT NULL DEFAULT 'PENDING',
            payload JSONB NOT NULL DEFAULT '{}'::jsonb,
            attempts INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 3,
            scheduled_at TIMESTAMPTZ,
            last_error TEXT,
            started_at TIMESTAMPTZ,
            finished_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW()
        );
        CREATE INDEX IF NOT EXISTS idx_jobs_post ON jobs(post_id);
        CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);

        CREATE TABLE IF NOT EXISTS job_logs (
            id BIGSERIAL PRIMARY KEY,
            job_id UUID NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
            level TEXT NOT NULL,
            message TEXT NOT NULL,
            data JSONB,
            created_at TIMESTAMPTZ DEFAULT NOW()
        );
        CREATE INDEX IF NOT EXISTS idx_job_logs_job ON job_logs(job_id, created_at);
    """),
    (5, """
        CREATE TABLE IF NOT EXISTS connected_accounts (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id TEXT NOT NULL,
            platform TEXT NOT NULL,
            access_token TEXT,
            refresh_token TEXT,
            token_type TEXT,
            scope TEXT,
            expires_at TIMESTAMPTZ,
            is_active BOOLEAN NOT NULL DEFAULT TRUE,
            external_user_id TEXT,
            external_username TEXT,
            external_page_id TEXT,
            external_ig_account_id TEXT,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW(),
            UNIQUE (user_id, platform)
        );
    """),
]


async def apply_migrations(conn: asyncpg.Connection):
    await conn.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version INTEGER PRIMARY KEY,
            applied_at TIMESTAMPTZ DEFAULT NOW()
        );
    """)

    applied = await conn.fetch("SELECT version FROM schema_migrations")
    applied_set = {r["version"] for r in applied}

    for version, sql in MIGRATIONS:
        if version in applied_set:
            continue
        logger.info(f"[MIGRATION] Applying v{version}")
        async with conn.transaction():
            await conn.execute(sql)
            await conn.execute("INSERT INTO schema_migrations(version) VALUES($1)", version)
        logger.info(f"[MIGRATION] Applied v{version}")


# ============================================================
# Load Functions (used by the orchestrator)
# ============================================================

async def load_job(pool: asyncpg.Pool, job_id: str) -> Optional[Job]:
    async with pool.acquire() as conn:
        row = await conn.fetchrow("SELECT * FROM jobs WHERE id = $1", job_id)
        return Job.from_row(dict(row)) if row else None


async def load_post(pool: asyncpg.Pool, post_id: str) -> Optional[Post]:
    async with pool.acquire() as conn:
        row = await conn.fetchrow("SELECT * FROM posts WHERE id = $1", post_id)
        return Post.from_row(dict(row)) if row else None


async def load_post_for_user(pool: asyncpg.Pool, post_id: str, user_id: str) -> Optional[Post]:
    """Load a post only if it belongs to user_id."""
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            "SELECT * FROM posts WHERE id = $1 AND user_id = $2", post_id, user_id
        )
        return Post.from_row(dict(row)) if row else None


async def load_destinations(pool: asyncpg.Pool, post_id: str) -> List[PostDestination]:
    """Destinations of a post in creation order."""
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            "SELECT * FROM post_destinations WHERE post_id = $1 ORDER BY created_at, platform",
            post_id,
        )
        return [PostDestination.from_row(dict(r)) for r in rows]


async def load_media_asset(pool: asyncpg.Pool, media_asset_id: str) -> Optional[MediaAsset]:
    async with pool.acquire() as conn:
        row = await conn.fetchrow("SELECT * FROM media_assets WHERE id = $1", media_asset_id)
        return MediaAsset.from_row(dict(row)) if row else None


# ============================================================
# Job Status Updates
# ============================================================

async def mark_job_running(pool: asyncpg.Pool, job_id: str) -> int:
    """Move the job to RUNNING and count the attempt. Returns the new attempt count."""
    async with pool.acquire() as conn:
        attempts = await conn.fetchval(
            """
            UPDATE jobs
            SET status = $2,
                attempts = attempts + 1,
                started_at = NOW(),
                updated_at = NOW()
            WHERE id = $1
            RETURNING attempts
            """,
            job_id,
            JobStatus.RUNNING.value,
        )
        return attempts or 0


async def mark_job_succeeded(pool: asyncpg.Pool, job_id: str):
    async with pool.acquire() as conn:
        await conn.execute(
            """
            UPDATE jobs
            SET status = $2,
                finished_at = COALESCE(finished_at, NOW()),
                updated_at = NOW()
            WHERE id = $1
            """,
            job_id,
            JobStatus.SUCCESS.value,
        )


async def mark_job_pending(pool: asyncpg.Pool, job_id: str, error: Optional[str]):
    """Job is waiting for a redelivery after a retryable failure."""
    async with pool.acquire() as conn:
        await conn.execute(
            """
            UPDATE jobs
            SET status = $2,
                last_error = $3,
                updated_at = NOW()
            WHERE id = $1
            """,
            job_id,
            JobStatus.PENDING.value,
            error,
        )


async def mark_job_failed(pool: asyncpg.Pool, job_id: str, error: Optional[str]):
    """Terminal failure; finished_at is written once."""
    async with pool.acquire() as conn:
        await conn.execute(
            """
            UPDATE jobs
            SET status = $2,
                last_error = $3,
                finished_at = COALESCE(finished_at, NOW()),
                updated_at = NOW()
            WHERE id = $1
            """,
            job_id,
            JobStatus.FAILED.value,
            error,
        )


async def insert_job_log(
    pool: asyncpg.Pool,
    job_id: str,
    level: LogLevel,
    message: str,
    data: Optional[Dict[str, Any]] = None,
):
    async with pool.acquire() as conn:
        await conn.execute(
            "INSERT INTO job_logs (job_id, level, message, data) VALUES ($1, $2, $3, $4::jsonb)",
            job_id,
            level.value,
            message,
            json.dumps(data) if data is not None else None,
        )


# ============================================================
# Destinations & Posts
# ============================================================

async def save_destination(pool: asyncpg.Pool, dest: PostDestination):
    """Overwrite the mutable columns of a destination row."""
    async with pool.acquire() as conn:
        await conn.execute(
            """
            UPDATE post_destinations
            SET status = $2,
                attempts = $3,
                external_post_id = $4,
                external_media_id = $5,
                last_error = $6,
                last_error_at = $7,
                updated_at = NOW()
            WHERE id = $1
            """,
            dest.id,
            dest.status.value,
            dest.attempts,
            dest.external_post_id,
            dest.external_media_id,
            dest.last_error,
            dest.last_error_at,
        )


async def set_post_status(
    pool: asyncpg.Pool,
    post_id: str,
    status: PostStatus,
    published_at: Optional[datetime] = None,
):
    async with pool.acquire() as conn:
        await conn.execute(
            """
            UPDATE posts
            SET status = $2,
                published_at = COALESCE($3, published_at),
                updated_at = NOW()
            WHERE id = $1
            """,
            post_id,
            status.value,
            published_at,
        )


async def create_post(
    pool: asyncpg.Pool,
    user_id: str,
    media_asset_id: str,
    destinations: List[Dict[str, Any]],
    title: Optional[str] = None,
    description: Optional[str] = None,
    hashtags: Optional[str] = None,
    visibility: Optional[str] = None,
    scheduled_at: Optional[datetime] = None,
) -> Tuple[Post, List[PostDestination]]:
    """Insert a DRAFT post and its destinations in one transaction."""
    async with pool.acquire() as conn:
        async with conn.transaction():
            row = await conn.fetchrow(
                """
                INSERT INTO posts (user_id, media_asset_id, title, description, hashtags,
                                   visibility, scheduled_at, status)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                RETURNING *
                """,
                user_id,
                media_asset_id,
                title,
                description,
                hashtags,
                visibility,
                scheduled_at,
                PostStatus.DRAFT.value,
            )
            post = Post.from_row(dict(row))

            created = []
            for d in destinations:
                drow = await conn.fetchrow(
                    """
                    INSERT INTO post_destinations (post_id, platform, platform_title,
                                                   platform_description, platform_visibility, status)
                    VALUES ($1, $2, $3, $4, $5, $6)
                    RETURNING *
                    """,
                    post.id,
                    d["platform"],
                    d.get("platform_title"),
                    d.get("platform_description"),
                    d.get("platform_visibility"),
                    DestinationStatus.QUEUED.value,
                )
                created.append(PostDestination.from_row(dict(drow)))

    return post, created


async def create_job(
    pool: asyncpg.Pool,
    user_id: str,
    post_id: str,
    payload: Dict[str, Any],
    max_attempts: int,
    scheduled_at: Optional[datetime] = None,
) -> Job:
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            """
            INSERT INTO jobs (user_id, post_id, type, status, payload, max_attempts, scheduled_at)
            VALUES ($1, $2, $3, $4, $5::jsonb, $6, $7)
            RETURNING *
            """,
            user_id,
            post_id,
            JobType.PUBLISH_POST.value,
            JobStatus.PENDING.value,
            json.dumps(payload),
            max_attempts,
            scheduled_at,
        )
        return Job.from_row(dict(row))


async def mark_post_queued(pool: asyncpg.Pool, post_id: str):
    await set_post_status(pool, post_id, PostStatus.QUEUED)


# ============================================================
# Connected Accounts (used by tokens / oauth)
# ============================================================

async def load_connected_account(
    pool: asyncpg.Pool, user_id: str, platform: Platform
) -> Optional[ConnectedAccount]:
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            "SELECT * FROM connected_accounts WHERE user_id = $1 AND platform = $2",
            user_id,
            platform.value,
        )
        return ConnectedAccount.from_row(dict(row)) if row else None


async def list_connected_accounts(pool: asyncpg.Pool, user_id: str) -> List[ConnectedAccount]:
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            "SELECT * FROM connected_accounts WHERE user_id = $1 ORDER BY platform",
            user_id,
        )
        return [ConnectedAccount.from_row(dict(r)) for r in rows]


async def save_refreshed_credentials(
    pool: asyncpg.Pool,
    account_id: str,
    access_token: str,
    refresh_token: Optional[str],
    expires_at: datetime,
    token_type: Optional[str],
    scope: Optional[str],
):
    """Persist a refresh result. A NULL refresh_token keeps the stored one."""
    async with pool.acquire() as conn:
        await conn.execute(
            """
            UPDATE connected_accounts
            SET access_token = $2,
                refresh_token = COALESCE($3, refresh_token),
                expires_at = $4,
                token_type = $5,
                scope = $6,
                is_active = TRUE,
                updated_at = NOW()
            WHERE id = $1
            """,
            account_id,
            access_token,
            refresh_token,
            expires_at,
            token_type,
            scope,
        )


async def upsert_connected_account(pool: asyncpg.Pool, account: ConnectedAccount) -> ConnectedAccount:
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            """
            INSERT INTO connected_accounts (
                id, user_id, platform, access_token, refresh_token, token_type, scope,
                expires_at, is_active, external_user_id, external_username,
                external_page_id, external_ig_account_id
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
            ON CONFLICT (user_id, platform) DO UPDATE SET
                access_token = EXCLUDED.access_token,
                refresh_token = COALESCE(EXCLUDED.refresh_token, connected_accounts.refresh_token),
                token_type = EXCLUDED.token_type,
                scope = EXCLUDED.scope,
                expires_at = EXCLUDED.expires_at,
                is_active = EXCLUDED.is_active,
                external_user_id = EXCLUDED.external_user_id,
                external_username = EXCLUDED.external_username,
                external_page_id = EXCLUDED.external_page_id,
                external_ig_account_id = EXCLUDED.external_ig_account_id,
                updated_at = NOW()
            RETURNING *
            """,
            account.id,
            account.user_id,
            account.platform.value,
            account.access_token,
            account.refresh_token,
            account.token_type,
            account.scope,
            account.expires_at or datetime.now(timezone.utc),
            account.is_active,
            account.external_user_id,
            account.external_username,
            account.external_page_id,
            account.external_ig_account_id,
        )
        return ConnectedAccount.from_row(dict(row))


# ============================================================
# Post Edits (used by PATCH /api/posts/{id})
# ============================================================

POST_EDITABLE_COLUMNS = ("title", "description", "hashtags", "visibility", "scheduled_at")
DESTINATION_OVERRIDE_COLUMNS = ("platform_title", "platform_description", "platform_visibility")


async def update_post(pool: asyncpg.Pool, post_id: str, fields: Dict[str, Any]):
    """Update only the editable columns present in fields."""
    updates = []
    params: List[Any] = [post_id]
    idx = 1

    for column in POST_EDITABLE_COLUMNS:
        if column not in fields:
            continue
        idx += 1
        updates.append(f"{column} = ${idx}")
        params.append(fields[column])

    if not updates:
        return

    async with pool.acquire() as conn:
        await conn.execute(
            f"UPDATE posts SET {', '.join(updates)}, updated_at = NOW() WHERE id = $1",
            *params,
        )


async def upsert_destination_overrides(
    pool: asyncpg.Pool, post_id: str, platform: Platform, fields: Dict[str, Any]
):
    """Set per-platform overrides, creating the destination if the post lacks it."""
    values = {c: fields[c] for c in DESTINATION_OVERRIDE_COLUMNS if c in fields}
    if not values:
        return

    columns = list(values)
    placeholders = ", ".join(f"${i + 3}" for i in range(len(columns)))
    assignments = ", ".join(f"{c} = EXCLUDED.{c}" for c in columns)

    async with pool.acquire() as conn:
        await conn.execute(
            f"""
            INSERT INTO post_destinations (post_id, platform, {', '.join(columns)})
            VALUES ($1, $2, {placeholders})
            ON CONFLICT (post_id, platform) DO UPDATE SET {assignments}, updated_at = NOW()
            """,
            post_id,
            platform.value,
            *[values[c] for c in columns],
        )
