"""Durable publisher.

Uploads an extracted artifact to object storage under the job's upload
identifier. The whole file is read into memory and sent with one
``put_object``; no multipart upload and no idempotency guarantee (a second
publish under the same identifier overwrites).

Stores:
    S3ObjectStore     boto3 client for any S3-compatible endpoint (R2 by default)
    MemoryObjectStore dict-backed store for tests and dry runs
"""

from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import boto3
import structlog
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from provisioner.core.errors import PublishError

if TYPE_CHECKING:
    from provisioner.core.settings import StorageSettings

logger = structlog.get_logger(__name__)

CONTENT_TYPES = {
    ".csv": "text/csv",
    ".json": "application/json",
}


@runtime_checkable
class ObjectStore(Protocol):
    """Minimal blocking object store used by the publisher."""

    bucket: str

    def put(
        self,
        key: str,
        body: bytes,
        *,
        content_type: str | None = None,
        content_disposition: str | None = None,
    ) -> str | None:
        """Store ``body`` under ``key``; returns the ETag if the store has one."""
        ...


class S3ObjectStore:
    """S3-compatible object store.

    Works with Cloudflare R2, AWS S3, MinIO and other S3-compatible services.
    """

    def __init__(
        self,
        bucket: str,
        endpoint_url: str | None = None,
        region: str = "auto",
        access_key: str | None = None,
        secret_key: str | None = None,
        client: Any = None,
    ):
        self.bucket = bucket
        self.endpoint_url = endpoint_url
        self.region = region

        if client is None:
            client_kwargs: dict[str, Any] = {
                "service_name": "s3",
                "region_name": region,
                "config": Config(signature_version="s3v4"),
            }
            if endpoint_url:
                client_kwargs["endpoint_url"] = endpoint_url
            if access_key and secret_key:
                client_kwargs["aws_access_key_id"] = access_key
                client_kwargs["aws_secret_access_key"] = secret_key
            client = boto3.client(**client_kwargs)
        self.client = client

        logger.debug("object_store.initialized", bucket=bucket, endpoint=endpoint_url, region=region)

    @classmethod
    def from_settings(cls, settings: StorageSettings) -> S3ObjectStore:
        secret = settings.secret_access_key.get_secret_value() if settings.secret_access_key else None
        return cls(
            bucket=settings.bucket,
            endpoint_url=settings.endpoint_url,
            region=settings.region,
            access_key=settings.access_key_id,
            secret_key=secret,
        )

    def put(
        self,
        key: str,
        body: bytes,
        *,
        content_type: str | None = None,
        content_disposition: str | None = None,
    ) -> str | None:
        extra_args: dict[str, str] = {}
        if content_type:
            extra_args["ContentType"] = content_type
        if content_disposition:
            extra_args["ContentDisposition"] = content_disposition

        response = self.client.put_object(
            Bucket=self.bucket,
            Key=key.lstrip("/"),
            Body=body,
            **extra_args,
        )
        return response.get("ETag")


@dataclass
class StoredObject:
    body: bytes
    content_type: str | None = None
    content_disposition: str | None = None


class MemoryObjectStore:
    """Object store that keeps uploads in a dict.

    ``fail`` makes every ``put`` raise it, for publish-failure tests.
    """

    def __init__(self, bucket: str = "memory", *, fail: Exception | None = None) -> None:
        self.bucket = bucket
        self.fail = fail
        self.objects: dict[str, StoredObject] = {}
        self.puts: list[str] = []

    def put(
        self,
        key: str,
        body: bytes,
        *,
        content_type: str | None = None,
        content_disposition: str | None = None,
    ) -> str | None:
        self.puts.append(key)
        if self.fail is not None:
            raise self.fail
        self.objects[key] = StoredObject(body, content_type, content_disposition)
        return f'"{hashlib.md5(body).hexdigest()}"'


@dataclass(frozen=True)
class PublishResult:
    """Record of one upload."""

    upload_identifier: str
    bucket: str
    size_bytes: int
    sha256: str
    content_type: str | None = None
    etag: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


class DurablePublisher:
    """Publishes local artifacts to an ``ObjectStore``."""

    def __init__(self, store: ObjectStore) -> None:
        self._store = store

    async def publish(self, local_path: Path | str, upload_identifier: str) -> PublishResult:
        """Upload ``local_path`` under ``upload_identifier``.

        Raises:
            PublishError: The file could not be read or the store rejected it.
        """
        path = Path(local_path)
        if not upload_identifier:
            raise PublishError("Upload identifier must not be empty").with_context(path=str(path))

        content_type = CONTENT_TYPES.get(path.suffix.lower(), "application/octet-stream")
        disposition = f'attachment; filename="{path.name}"'

        try:
            size, digest, etag = await asyncio.to_thread(
                self._read_and_put, path, upload_identifier, content_type, disposition,
            )
        except (ClientError, BotoCoreError, OSError) as exc:
            raise PublishError(
                f"Upload of {path.name} to {self._store.bucket}/{upload_identifier} failed: {exc}",
                cause=exc,
            ).with_context(path=str(path), upload_identifier=upload_identifier) from exc

        result = PublishResult(
            upload_identifier=upload_identifier,
            bucket=self._store.bucket,
            size_bytes=size,
            sha256=digest,
            content_type=content_type,
            etag=etag,
        )
        logger.info(
            "artifact.published",
            bucket=result.bucket,
            key=upload_identifier,
            size_bytes=result.size_bytes,
        )
        return result

    def _read_and_put(
        self,
        path: Path,
        upload_identifier: str,
        content_type: str,
        disposition: str,
    ) -> tuple[int, str, str | None]:
        """Blocking half of ``publish``; runs in a worker thread."""
        try:
            body = path.read_bytes()
        except OSError as exc:
            raise PublishError(f"Could not read artifact {path}: {exc}", cause=exc).with_context(
                path=str(path), upload_identifier=upload_identifier,
            ) from exc

        etag = self._store.put(
            upload_identifier,
            body,
            content_type=content_type,
            content_disposition=disposition,
        )
        return len(body), hashlib.sha256(body).hexdigest(), etag
