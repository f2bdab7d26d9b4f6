"""
Platform adapter primitives.

Every platform is driven through the same two phases:

    upload(request)            -> UploadHandle   (destination is UPLOADING)
    finalize(request, handle)  -> PublishResult  (destination is PROCESSING)

publish(request) runs both back to back for callers that do not track the
intermediate state.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Dict, Any

from ..models import (
    MediaAsset,
    Platform,
    Post,
    PostDestination,
    PublishResult,
    Visibility,
)

DEFAULT_TITLE = "Untitled video"
DEFAULT_DESCRIPTION = ""
DEFAULT_VISIBILITY = Visibility.PUBLIC


@dataclass
class PublishRequest:
    post: Post
    destination: PostDestination
    media_asset: MediaAsset
    user_id: str


@dataclass
class UploadHandle:
    """What the upload phase hands to the finalize phase."""
    platform: Platform
    remote_id: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ResolvedMetadata:
    title: str
    description: str
    visibility: Visibility


def _first(*values):
    for v in values:
        if v is not None:
            return v
    return None


def resolve_metadata(post: Post, destination: PostDestination) -> ResolvedMetadata:
    """Destination override, then post value, then default."""
    return ResolvedMetadata(
        title=_first(destination.platform_title, post.title, DEFAULT_TITLE),
        description=_first(destination.platform_description, post.description, DEFAULT_DESCRIPTION),
        visibility=_first(destination.platform_visibility, post.visibility, DEFAULT_VISIBILITY),
    )


class PlatformAdapter(ABC):
    platform: Platform

    @abstractmethod
    async def upload(self, request: PublishRequest) -> UploadHandle:
        ...

    @abstractmethod
    async def finalize(self, request: PublishRequest, handle: UploadHandle) -> PublishResult:
        ...

    async def publish(self, request: PublishRequest) -> PublishResult:
        handle = await self.upload(request)
        return await self.finalize(request, handle)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} platform={self.platform.value}>"


def platform_name(platform: Optional[Platform]) -> str:
    """Display name used in user-facing messages, e.g. YOUTUBE -> YouTube."""
    names = {
        Platform.YOUTUBE: "YouTube",
        Platform.INSTAGRAM: "Instagram",
        Platform.FACEBOOK: "Facebook",
        Platform.TIKTOK: "TikTok",
    }
    return names.get(platform, str(platform))
