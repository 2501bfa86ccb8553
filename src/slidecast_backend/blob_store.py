"""
Blob store client for publishing pipeline artifacts.

This module provides functionality for:
- Uploading byte buffers and local files to an S3-compatible object store
- Retrying failed uploads a fixed number of times
- Deriving the public URL of an object without touching the network

Uploads use ``put_object``, which replaces an existing object under the same
key, so re-uploading an artifact is idempotent. boto3 is synchronous; calls
are pushed to a worker thread so the event loop keeps serving requests.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable

import boto3
from omegaconf import DictConfig

from .errors import StorageUploadFailed

logger = logging.getLogger(__name__)

DEFAULT_URL_TEMPLATE = "{base_url}/storage/v1/object/public/{bucket}/{key}"


class BlobStoreClient:
    """
    Thin asynchronous wrapper around a boto3 S3 client.

    Attributes:
        public_base_url: Base URL under which objects are publicly readable
        attempts: Upload attempts before giving up
        delay: Fixed delay in seconds between attempts
    """

    def __init__(
        self,
        s3_client: Any,
        public_base_url: str,
        url_template: str = DEFAULT_URL_TEMPLATE,
        attempts: int = 3,
        delay: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = s3_client
        self.public_base_url = public_base_url.rstrip("/")
        self.url_template = url_template
        self.attempts = attempts
        self.delay = delay
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: DictConfig) -> "BlobStoreClient":
        """
        Build a client from the ``storage`` and ``retry`` config sections.

        Credentials are resolved by boto3 itself (environment, shared
        credentials file or instance profile).
        """
        storage = config.storage
        s3_client = boto3.client(
            "s3",
            endpoint_url=storage.endpoint_url or None,
            region_name=storage.region,
        )
        return cls(
            s3_client,
            public_base_url=storage.public_base_url,
            url_template=storage.public_url_template,
            attempts=config.retry.upload_attempts,
            delay=config.retry.upload_delay_seconds,
        )

    def public_url(self, bucket: str, key: str) -> str:
        """
        Get the public URL of an object.

        Pure string templating; never fails for a well-formed key.
        """
        return self.url_template.format(base_url=self.public_base_url, bucket=bucket, key=key.lstrip("/"))

    async def upload(self, bucket: str, key: str, data: bytes, content_type: str) -> str:
        """
        Upload a buffer, overwriting any existing object with the same key.

        Args:
            bucket: Target bucket
            key: Object key inside the bucket
            data: Object contents
            content_type: MIME type stored with the object

        Returns:
            The public URL of the uploaded object

        Raises:
            StorageUploadFailed: If every attempt failed; the last error is chained
        """
        attempts = self.attempts
        for attempt in range(1, attempts + 1):
            try:
                logger.info(f"Uploading to s3://{bucket}/{key} ({len(data)} bytes)")
                await asyncio.to_thread(
                    self._client.put_object,
                    Bucket=bucket,
                    Key=key,
                    Body=data,
                    ContentType=content_type,
                )
                url = self.public_url(bucket, key)
                logger.info(f"Upload successful: {url}")
                return url
            except Exception as exc:  # noqa: BLE001
                logger.error(f"Upload attempt {attempt}/{attempts} for {bucket}/{key} failed: {exc}")
                if attempt == attempts:
                    raise StorageUploadFailed(bucket, key, attempts, exc) from exc
                await self._sleep(self.delay)
        raise StorageUploadFailed(bucket, key, attempts, RuntimeError("no attempts were made"))

    async def upload_file(self, bucket: str, key: str, path: Path, content_type: str) -> str:
        """Read a local file and upload its contents."""
        data = await asyncio.to_thread(path.read_bytes)
        return await self.upload(bucket, key, data, content_type)
