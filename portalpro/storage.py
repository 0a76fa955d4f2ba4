"""Object store collaborator backed by an S3-compatible bucket."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import Settings
from .domain.errors import StorageError

logger = logging.getLogger(__name__)


class ObjectStore(Protocol):
    def put(self, path: str, data: bytes, content_type: str) -> None: ...

    def get(self, path: str) -> bytes: ...

    def delete(self, path: str) -> None: ...


class S3ObjectStore:
    """Blob storage keyed by the opaque storage path of a file row."""

    def __init__(self, client: Any, bucket: str) -> None:
        self._client = client
        self._bucket = bucket

    @classmethod
    def from_settings(cls, settings: Settings) -> "S3ObjectStore":
        """Build a boto3 S3 client honouring a custom endpoint (hosted backend, MinIO)."""
        kwargs: dict[str, Any] = {"region_name": settings.storage_region}
        if settings.storage_endpoint_url:
            kwargs["endpoint_url"] = settings.storage_endpoint_url
        return cls(boto3.client("s3", **kwargs), settings.storage_bucket)

    def put(self, path: str, data: bytes, content_type: str) -> None:
        try:
            self._client.put_object(
                Bucket=self._bucket, Key=path, Body=data, ContentType=content_type
            )
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"upload failed: {exc}", path=path) from exc
        logger.debug("stored blob %s (%d bytes)", path, len(data))

    def get(self, path: str) -> bytes:
        try:
            response = self._client.get_object(Bucket=self._bucket, Key=path)
            return response["Body"].read()
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"download failed: {exc}", path=path) from exc

    def delete(self, path: str) -> None:
        try:
            self._client.delete_object(Bucket=self._bucket, Key=path)
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"delete failed: {exc}", path=path) from exc
