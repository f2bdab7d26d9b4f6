"""
Multipost Records
=================
Plain records that flow between the database layer, the orchestrator and the
platform adapters.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any


class Platform(str, Enum):
    YOUTUBE = "YOUTUBE"
    INSTAGRAM = "INSTAGRAM"
    FACEBOOK = "FACEBOOK"
    TIKTOK = "TIKTOK"


class Visibility(str, Enum):
    PUBLIC = "PUBLIC"
    UNLISTED = "UNLISTED"
    PRIVATE = "PRIVATE"


class MediaType(str, Enum):
    IMAGE = "IMAGE"
    VIDEO = "VIDEO"


class PostStatus(str, Enum):
    DRAFT = "DRAFT"
    QUEUED = "QUEUED"
    PUBLISHED = "PUBLISHED"
    PARTIALLY_PUBLISHED = "PARTIALLY_PUBLISHED"
    FAILED = "FAILED"


class DestinationStatus(str, Enum):
    QUEUED = "QUEUED"
    UPLOADING = "UPLOADING"
    PROCESSING = "PROCESSING"
    PUBLISHED = "PUBLISHED"
    FAILED = "FAILED"


class JobStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class JobType(str, Enum):
    PUBLISH_POST = "PUBLISH_POST"


class LogLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


def _str_id(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def _json_value(value: Any) -> Any:
    # asyncpg hands jsonb back as text unless a codec is registered
    if isinstance(value, (str, bytes)):
        try:
            return json.loads(value)
        except ValueError:
            return None
    return value


def _enum_or_none(enum_cls, value):
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        return None


@dataclass
class MediaAsset:
    id: str
    user_id: str
    type: MediaType
    storage_key: str
    url: Optional[str] = None
    mime_type: Optional[str] = None
    size_bytes: Optional[int] = None
    original_filename: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "MediaAsset":
        return cls(
            id=_str_id(row["id"]),
            user_id=str(row["user_id"]),
            type=MediaType(row["type"]),
            storage_key=row["storage_key"],
            url=row.get("url"),
            mime_type=row.get("mime_type"),
            size_bytes=row.get("size_bytes"),
            original_filename=row.get("original_filename"),
            created_at=row.get("created_at"),
        )


@dataclass
class Post:
    id: str
    user_id: str
    media_asset_id: str
    title: Optional[str] = None
    description: Optional[str] = None
    hashtags: Optional[str] = None
    visibility: Optional[Visibility] = None
    scheduled_at: Optional[datetime] = None
    status: PostStatus = PostStatus.DRAFT
    published_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Post":
        return cls(
            id=_str_id(row["id"]),
            user_id=str(row["user_id"]),
            media_asset_id=_str_id(row["media_asset_id"]),
            title=row.get("title"),
            description=row.get("description"),
            hashtags=row.get("hashtags"),
            visibility=_enum_or_none(Visibility, row.get("visibility")),
            scheduled_at=row.get("scheduled_at"),
            status=PostStatus(row.get("status") or PostStatus.DRAFT.value),
            published_at=row.get("published_at"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )


@dataclass
class PostDestination:
    id: str
    post_id: str
    platform: Platform
    platform_title: Optional[str] = None
    platform_description: Optional[str] = None
    platform_visibility: Optional[Visibility] = None
    status: DestinationStatus = DestinationStatus.QUEUED
    attempts: int = 0
    external_post_id: Optional[str] = None
    external_media_id: Optional[str] = None
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PostDestination":
        return cls(
            id=_str_id(row["id"]),
            post_id=_str_id(row["post_id"]),
            platform=Platform(row["platform"]),
            platform_title=row.get("platform_title"),
            platform_description=row.get("platform_description"),
            platform_visibility=_enum_or_none(Visibility, row.get("platform_visibility")),
            status=DestinationStatus(row.get("status") or DestinationStatus.QUEUED.value),
            attempts=row.get("attempts") or 0,
            external_post_id=row.get("external_post_id"),
            external_media_id=row.get("external_media_id"),
            last_error=row.get("last_error"),
            last_error_at=row.get("last_error_at"),
        )


@dataclass
class Job:
    id: str
    user_id: str
    post_id: str
    type: JobType = JobType.PUBLISH_POST
    status: JobStatus = JobStatus.PENDING
    payload: Dict[str, Any] = field(default_factory=dict)
    attempts: int = 0
    max_attempts: int = 3
    scheduled_at: Optional[datetime] = None
    last_error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Job":
        return cls(
            id=_str_id(row["id"]),
            user_id=str(row["user_id"]),
            post_id=_str_id(row["post_id"]),
            type=JobType(row.get("type") or JobType.PUBLISH_POST.value),
            status=JobStatus(row.get("status") or JobStatus.PENDING.value),
            payload=_json_value(row.get("payload")) or {},
            attempts=row.get("attempts") or 0,
            max_attempts=row.get("max_attempts") or 1,
            scheduled_at=row.get("scheduled_at"),
            last_error=row.get("last_error"),
            started_at=row.get("started_at"),
            finished_at=row.get("finished_at"),
            created_at=row.get("created_at"),
        )

    def is_terminal(self) -> bool:
        return self.status in (JobStatus.SUCCESS, JobStatus.FAILED)

    def attempts_exhausted(self, attempts_made: Optional[int] = None) -> bool:
        made = max(self.attempts, attempts_made or 0)
        return made >= self.max_attempts


@dataclass
class ConnectedAccount:
    id: str
    user_id: str
    platform: Platform
    access_token: Optional[str] = None   # encrypted envelope
    refresh_token: Optional[str] = None  # encrypted envelope
    token_type: Optional[str] = None
    scope: Optional[str] = None
    expires_at: Optional[datetime] = None
    is_active: bool = True
    external_user_id: Optional[str] = None
    external_username: Optional[str] = None
    external_page_id: Optional[str] = None
    external_ig_account_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ConnectedAccount":
        return cls(
            id=_str_id(row["id"]),
            user_id=str(row["user_id"]),
            platform=Platform(row["platform"]),
            access_token=row.get("access_token"),
            refresh_token=row.get("refresh_token"),
            token_type=row.get("token_type"),
            scope=row.get("scope"),
            expires_at=row.get("expires_at"),
            is_active=bool(row.get("is_active", True)),
            external_user_id=row.get("external_user_id"),
            external_username=row.get("external_username"),
            external_page_id=row.get("external_page_id"),
            external_ig_account_id=row.get("external_ig_account_id"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def to_public_dict(self) -> dict:
        """Connection summary without any token material."""
        return {
            "id": self.id,
            "platform": self.platform.value,
            "external_user_id": self.external_user_id,
            "external_username": self.external_username,
            "external_page_id": self.external_page_id,
            "external_ig_account_id": self.external_ig_account_id,
            "token_type": self.token_type,
            "scope": self.scope,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class RefreshedTokens:
    """Result of a code or refresh-token exchange with an identity provider."""
    access_token: str
    expires_at: datetime
    refresh_token: Optional[str] = None
    token_type: Optional[str] = None
    scope: Optional[str] = None


@dataclass
class PublishResult:
    external_post_id: str
    external_media_id: Optional[str] = None


@dataclass
class JobLogEntry:
    job_id: str
    level: LogLevel
    message: str
    data: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None


def summarize_destinations(destinations: List[PostDestination]) -> Dict[str, List[str]]:
    """Group destination platforms by status for logs."""
    summary: Dict[str, List[str]] = {}
    for dest in destinations:
        summary.setdefault(dest.status.value, []).append(dest.platform.value)
    return summary
