"""
YouTube adapter.

Upload phase:   resumable upload init (POST metadata, read Location header)
                -> PUT the media stream -> video id
Finalize phase: videos?part=status lookup; failed/rejected/deleted uploads
                fail the destination
"""

import logging
from typing import Optional

import httpx

from ..errors import ErrorCode, PlatformPublishError
from ..models import MediaType, Platform, PublishResult, Visibility
from .base import PlatformAdapter, PublishRequest, UploadHandle, resolve_metadata

logger = logging.getLogger("multipost-worker")

YOUTUBE_UPLOAD_URL = "https://www.googleapis.com/upload/youtube/v3/videos"
YOUTUBE_VIDEOS_URL = "https://www.googleapis.com/youtube/v3/videos"

UPLOAD_TIMEOUT = httpx.Timeout(connect=10.0, read=300.0, write=300.0, pool=10.0)
STATUS_TIMEOUT = httpx.Timeout(connect=10.0, read=20.0, write=20.0, pool=10.0)

REJECTED_UPLOAD_STATUSES = ("failed", "rejected", "deleted")

_PRIVACY = {
    Visibility.PUBLIC: "public",
    Visibility.UNLISTED: "unlisted",
    Visibility.PRIVATE: "private",
}


def map_youtube_visibility(visibility: Optional[Visibility]) -> str:
    """PUBLIC/UNLISTED/PRIVATE -> privacyStatus; anything else is public."""
    return _PRIVACY.get(visibility, "public")


class YouTubeAdapter(PlatformAdapter):
    platform = Platform.YOUTUBE

    def __init__(self, tokens, storage, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.tokens = tokens
        self.storage = storage
        self.transport = transport

    async def upload(self, request: PublishRequest) -> UploadHandle:
        media = request.media_asset
        if media.type != MediaType.VIDEO:
            raise PlatformPublishError("YouTube only supports video uploads")

        access_token = await self.tokens.get_valid_access_token(request.user_id, Platform.YOUTUBE)
        meta = resolve_metadata(request.post, request.destination)
        mime_type = media.mime_type or "video/mp4"
        size = media.size_bytes or await self.storage.size_of(media.storage_key)

        metadata = {
            "snippet": {
                "title": meta.title[:100],
                "description": meta.description[:5000],
            },
            "status": {
                "privacyStatus": map_youtube_visibility(meta.visibility),
                "selfDeclaredMadeForKids": False,
            },
        }

        async with httpx.AsyncClient(timeout=UPLOAD_TIMEOUT, transport=self.transport) as client:
            init_resp = await client.post(
                YOUTUBE_UPLOAD_URL,
                params={"uploadType": "resumable", "part": "snippet,status"},
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Content-Type": "application/json",
                    "X-Upload-Content-Type": mime_type,
                    "X-Upload-Content-Length": str(size),
                },
                json=metadata,
            )
            if init_resp.status_code != 200:
                raise PlatformPublishError(
                    f"YouTube upload init failed: HTTP {init_resp.status_code}",
                    details={"http_status": init_resp.status_code},
                )

            upload_url = init_resp.headers.get("Location")
            if not upload_url:
                raise PlatformPublishError("YouTube upload init returned no upload URL")

            upload_resp = await client.put(
                upload_url,
                content=self.storage.open_stream(media.storage_key),
                headers={"Content-Type": mime_type, "Content-Length": str(size)},
            )

        if upload_resp.status_code not in (200, 201):
            raise PlatformPublishError(
                f"YouTube upload failed: HTTP {upload_resp.status_code}",
                details={"http_status": upload_resp.status_code},
            )

        video_id = (upload_resp.json() or {}).get("id")
        if not video_id:
            raise PlatformPublishError("YouTube did not return a video id")

        logger.info(f"YouTube upload accepted: video_id={video_id}")
        return UploadHandle(platform=self.platform, remote_id=video_id)

    async def finalize(self, request: PublishRequest, handle: UploadHandle) -> PublishResult:
        video_id = handle.remote_id
        access_token = await self.tokens.get_valid_access_token(request.user_id, Platform.YOUTUBE)

        async with httpx.AsyncClient(timeout=STATUS_TIMEOUT, transport=self.transport) as client:
            resp = await client.get(
                YOUTUBE_VIDEOS_URL,
                params={"id": video_id, "part": "status"},
                headers={"Authorization": f"Bearer {access_token}"},
            )

        if resp.status_code != 200:
            # the upload itself was accepted; an unreadable status is not a rejection
            logger.warning(f"YouTube status lookup failed for {video_id}: HTTP {resp.status_code}")
            return PublishResult(external_post_id=video_id)

        items = (resp.json() or {}).get("items") or []
        upload_status = ""
        if items:
            upload_status = str((items[0].get("status") or {}).get("uploadStatus") or "").lower()

        if upload_status in REJECTED_UPLOAD_STATUSES:
            raise PlatformPublishError(
                f"YouTube rejected the upload (uploadStatus={upload_status})",
                code=ErrorCode.PLATFORM_REJECTED,
                details={"video_id": video_id, "upload_status": upload_status},
            )

        logger.info(f"YouTube publish confirmed: video_id={video_id} status={upload_status or 'pending'}")
        return PublishResult(external_post_id=video_id)
