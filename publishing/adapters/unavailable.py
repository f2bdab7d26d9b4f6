"""
Adapters for platforms whose publish calls are not wired up yet.

They fail in the upload phase, before touching storage or the network, so the
destination ends FAILED with a stable message.
"""

from ..errors import PlatformNotImplemented
from ..models import Platform, PublishResult
from .base import PlatformAdapter, PublishRequest, UploadHandle, platform_name


class UnavailableAdapter(PlatformAdapter):
    async def upload(self, request: PublishRequest) -> UploadHandle:
        raise PlatformNotImplemented(
            f"{platform_name(self.platform)} publishing is not available yet.",
            details={"platform": self.platform.value},
        )

    async def finalize(self, request: PublishRequest, handle: UploadHandle) -> PublishResult:
        raise PlatformNotImplemented(
            f"{platform_name(self.platform)} publishing is not available yet.",
            details={"platform": self.platform.value},
        )


class InstagramAdapter(UnavailableAdapter):
    platform = Platform.INSTAGRAM


class FacebookAdapter(UnavailableAdapter):
    platform = Platform.FACEBOOK


class TikTokAdapter(UnavailableAdapter):
    platform = Platform.TIKTOK
