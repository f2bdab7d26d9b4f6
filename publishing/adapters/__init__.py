"""
Platform adapter registry.

The registry is a fixed Platform -> adapter mapping built once at startup by
build_registry(). Looking up a platform with no adapter raises
UnsupportedPlatform.
"""

from typing import Dict, Iterable, Optional, Union

import httpx

from ..errors import UnsupportedPlatform
from ..models import Platform
from .base import (
    PlatformAdapter,
    PublishRequest,
    ResolvedMetadata,
    UploadHandle,
    resolve_metadata,
)
from .unavailable import FacebookAdapter, InstagramAdapter, TikTokAdapter
from .youtube import YouTubeAdapter, map_youtube_visibility


class AdapterRegistry:
    def __init__(self, adapters: Iterable[PlatformAdapter]):
        self._adapters: Dict[Platform, PlatformAdapter] = {a.platform: a for a in adapters}

    def get(self, platform: Union[Platform, str]) -> PlatformAdapter:
        try:
            key = platform if isinstance(platform, Platform) else Platform(str(platform).upper())
        except ValueError:
            raise UnsupportedPlatform(f"Unsupported platform: {platform}", details={"platform": str(platform)})

        adapter = self._adapters.get(key)
        if adapter is None:
            raise UnsupportedPlatform(f"Unsupported platform: {key.value}", details={"platform": key.value})
        return adapter

    def platforms(self):
        return list(self._adapters)

    def __contains__(self, platform) -> bool:
        return platform in self._adapters


def build_registry(tokens, storage, transport: Optional[httpx.AsyncBaseTransport] = None) -> AdapterRegistry:
    return AdapterRegistry([
        YouTubeAdapter(tokens, storage, transport=transport),
        InstagramAdapter(),
        FacebookAdapter(),
        TikTokAdapter(),
    ])


__all__ = [
    "AdapterRegistry",
    "PlatformAdapter",
    "PublishRequest",
    "ResolvedMetadata",
    "UploadHandle",
    "build_registry",
    "map_youtube_visibility",
    "resolve_metadata",
]
