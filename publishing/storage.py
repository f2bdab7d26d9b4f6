"""
Multipost Media Storage
=======================
Readable byte streams for stored media keys.

Two backends:
  - local directory (LOCAL_STORAGE=true, files under LOCAL_STORAGE_DIR)
  - S3-compatible bucket through boto3 (S3_BUCKET, AWS_REGION, S3_ENDPOINT)

Exports:
  - MediaStorage.open_stream(storage_key) -> async iterator of bytes
  - MediaStorage.read_bytes(storage_key)
  - MediaStorage.size_of(storage_key)
"""

import asyncio
import logging
from pathlib import Path
from typing import AsyncIterator, Optional

from . import config
from .errors import MediaNotFound, ConfigError

logger = logging.getLogger("multipost-worker")

CHUNK_SIZE = 1024 * 1024


class MediaStorage:
    def __init__(
        self,
        local: Optional[bool] = None,
        local_dir: Optional[str] = None,
        bucket: Optional[str] = None,
        region: Optional[str] = None,
        endpoint: Optional[str] = None,
        chunk_size: int = CHUNK_SIZE,
    ):
        self.local = config.LOCAL_STORAGE if local is None else local
        self.local_dir = Path(local_dir or config.LOCAL_STORAGE_DIR)
        self.bucket = bucket if bucket is not None else config.S3_BUCKET
        self.region = region if region is not None else config.AWS_REGION
        self.endpoint = endpoint if endpoint is not None else config.S3_ENDPOINT
        self.chunk_size = chunk_size
        self._s3_client = None

        if not self.local and not self.bucket:
            raise ConfigError("S3_BUCKET is required unless LOCAL_STORAGE is enabled")

    # ------------------------------------------------------------------
    # Backends
    # ------------------------------------------------------------------

    def _get_s3_client(self):
        """Get or create the boto3 S3 client. Credentials come from the environment."""
        if self._s3_client is not None:
            return self._s3_client

        import boto3
        from botocore.config import Config

        kwargs = {
            "config": Config(
                signature_version="s3v4",
                retries={"max_attempts": 3, "mode": "adaptive"},
            ),
        }
        if self.region:
            kwargs["region_name"] = self.region
        if self.endpoint:
            kwargs["endpoint_url"] = self.endpoint

        self._s3_client = boto3.client("s3", **kwargs)
        return self._s3_client

    def _local_path(self, storage_key: str) -> Path:
        root = self.local_dir.resolve()
        path = (root / storage_key.lstrip("/")).resolve()
        if root != path and root not in path.parents:
            raise MediaNotFound(f"Media not found: {storage_key}")
        return path

    async def _run(self, fn, *args):
        return await asyncio.get_running_loop().run_in_executor(None, fn, *args)

    def _is_missing(self, e: Exception) -> bool:
        from botocore.exceptions import ClientError

        if not isinstance(e, ClientError):
            return False
        code = str(e.response.get("Error", {}).get("Code", ""))
        return code in ("NoSuchKey", "404", "NotFound")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def size_of(self, storage_key: str) -> int:
        if self.local:
            path = self._local_path(storage_key)
            if not path.is_file():
                raise MediaNotFound(f"Media not found: {storage_key}")
            return path.stat().st_size

        from botocore.exceptions import ClientError

        def _head():
            return self._get_s3_client().head_object(Bucket=self.bucket, Key=storage_key)

        try:
            head = await self._run(_head)
        except ClientError as e:
            if self._is_missing(e):
                raise MediaNotFound(f"Media not found: {storage_key}")
            raise
        return int(head["ContentLength"])

    async def open_stream(self, storage_key: str) -> AsyncIterator[bytes]:
        """Yield the object's bytes in chunks."""
        if self.local:
            path = self._local_path(storage_key)
            if not path.is_file():
                raise MediaNotFound(f"Media not found: {storage_key}")
            logger.info(f"Storage read (local): {storage_key}")
            with path.open("rb") as f:
                while True:
                    chunk = await self._run(f.read, self.chunk_size)
                    if not chunk:
                        break
                    yield chunk
            return

        from botocore.exceptions import ClientError

        def _get():
            return self._get_s3_client().get_object(Bucket=self.bucket, Key=storage_key)

        try:
            obj = await self._run(_get)
        except ClientError as e:
            if self._is_missing(e):
                raise MediaNotFound(f"Media not found: {storage_key}")
            raise

        logger.info(f"Storage read (s3): {storage_key} ({obj.get('ContentLength')} bytes)")
        body = obj["Body"]
        try:
            while True:
                chunk = await self._run(body.read, self.chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            body.close()

    async def read_bytes(self, storage_key: str) -> bytes:
        parts = []
        async for chunk in self.open_stream(storage_key):
            parts.append(chunk)
        return b"".join(parts)
