from __future__ import annotations

import logging
import posixpath
from typing import Protocol
from urllib.parse import urlparse

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from opentelemetry import trace

from app.core.config import get_settings
from app.core.errors import UpstreamError


logger = logging.getLogger("app.storage")
tracer = trace.get_tracer("app.storage")


class ObjectStorage(Protocol):
    def delete(self, key: str) -> None: ...


class InMemoryStorage:
    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.deleted_keys: list[str] = []

    def put(self, key: str, content: bytes) -> None:
        self.objects[key] = content

    def delete(self, key: str) -> None:
        self.objects.pop(key, None)
        self.deleted_keys.append(key)


class S3Storage:
    def __init__(self, bucket: str, region: str, endpoint_url: str | None = None) -> None:
        self.bucket = bucket
        self._client = boto3.client("s3", region_name=region, endpoint_url=endpoint_url)

    def delete(self, key: str) -> None:
        with tracer.start_as_current_span("storage.delete") as span:
            span.set_attribute("storage.key", key)
            try:
                self._client.delete_object(Bucket=self.bucket, Key=key)
            except (BotoCoreError, ClientError) as exc:
                raise UpstreamError("s3", f"failed to delete {key}", status_code=502) from exc


def key_from_url(url: str | None, prefix: str | None = None) -> str | None:
    """Derive an object key from a stored file URL, optionally re-rooted under ``prefix``."""
    if not url:
        return None
    path = urlparse(url).path or url
    basename = posixpath.basename(path.rstrip("/"))
    if not basename:
        return None
    if prefix is None:
        return path.lstrip("/")
    return f"{prefix}/{basename}"


_storage: ObjectStorage | None = None


def get_storage() -> ObjectStorage:
    global _storage
    if _storage is None:
        settings = get_settings()
        if settings.storage_bucket:
            _storage = S3Storage(settings.storage_bucket, settings.storage_region, settings.storage_endpoint_url)
        else:
            _storage = InMemoryStorage()
    return _storage


def set_storage(storage: ObjectStorage | None) -> None:
    global _storage
    _storage = storage
