"""
Object storage for prompt payloads: S3-compatible and in-memory.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from promptstore.app.core.config import settings
from promptstore.app.exceptions import BlobDeletionError


class BlobStore(ABC):
    """Defines the operations the deletion engine needs from object storage."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete the object at ``key``.

        Deleting an object that does not exist succeeds as a no-op.

        Raises:
            BlobDeletionError: If the object could not be deleted
        """


@dataclass
class InMemoryBlobStore(BlobStore):
    """Test double for storage interactions.

    ``failing_keys`` raise on delete; ``delays`` maps keys to seconds
    slept before the delete completes.
    """

    objects: dict = field(default_factory=dict)
    failing_keys: set = field(default_factory=set)
    delays: dict = field(default_factory=dict)
    delete_calls: list = field(default_factory=list)

    def put(self, key: str, data: bytes = b"") -> None:
        self.objects[key] = data

    async def delete(self, key: str) -> None:
        self.delete_calls.append(key)
        delay = self.delays.get(key)
        if delay:
            await asyncio.sleep(delay)
        if key in self.failing_keys:
            raise BlobDeletionError(key, "simulated storage failure")
        self.objects.pop(key, None)


# Error codes S3-compatible services return for an absent object
_MISSING_OBJECT_CODES = frozenset({"NoSuchKey", "NotFound", "404"})


@dataclass
class S3BlobStore(BlobStore):
    """
    S3-compatible blob store.

    boto3 is synchronous, so each call runs in a worker thread to keep the
    event loop free while many deletes are in flight.
    """

    bucket: str
    region: str = ""
    endpoint_url: str = ""
    access_key_id: str = ""
    secret_access_key: str = ""
    connect_timeout: float = 5.0
    read_timeout: float = 10.0
    client: Optional[Any] = None

    def __post_init__(self):
        if self.client is None:
            config = Config(
                signature_version="s3v4",
                connect_timeout=self.connect_timeout,
                read_timeout=self.read_timeout,
                retries={"max_attempts": 2, "mode": "standard"},
            )
            self.client = boto3.client(
                "s3",
                endpoint_url=self.endpoint_url or None,
                region_name=self.region or None,
                aws_access_key_id=self.access_key_id or None,
                aws_secret_access_key=self.secret_access_key or None,
                config=config,
            )

    async def delete(self, key: str) -> None:
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket, Key=key)
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code in _MISSING_OBJECT_CODES:
                return
            raise BlobDeletionError(key, code or str(e)) from e
        except BotoCoreError as e:
            raise BlobDeletionError(key, str(e)) from e


def build_blob_store() -> BlobStore:
    """Build the blob store described by settings.

    The in-memory store is only used when USE_IN_MEMORY_BACKENDS is set.

    Raises:
        RuntimeError: If no bucket is configured for the S3 store
    """
    if settings.use_in_memory_backends:
        return InMemoryBlobStore()
    if not settings.s3_bucket:
        raise RuntimeError(
            "S3_BUCKET is not configured; set it or enable USE_IN_MEMORY_BACKENDS"
        )
    return S3BlobStore(
        bucket=settings.s3_bucket,
        region=settings.s3_region,
        endpoint_url=settings.s3_endpoint_url,
        access_key_id=settings.aws_access_key_id,
        secret_access_key=settings.aws_secret_access_key,
        connect_timeout=settings.s3_connect_timeout,
        read_timeout=settings.s3_read_timeout,
    )
