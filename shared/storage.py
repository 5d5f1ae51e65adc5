"""Utilities for interacting with MinIO/S3 storage."""
from __future__ import annotations

import io
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Optional, Protocol

from minio import Minio
from minio.error import S3Error
from urllib3.exceptions import HTTPError

from .config import get_settings
from .errors import StorageError

DEFAULT_URL_TTL_SECONDS = 60 * 60 * 24


class BlobStore(Protocol):
    """Interface the localization core needs from blob storage."""

    def put(self, key: str, payload: bytes, content_type: str = ...) -> str: ...

    def get(self, key: str) -> bytes: ...

    def delete(self, key: str) -> None: ...

    def public_url(self, key: str) -> Optional[str]: ...

    def resolve_url(self, key: str) -> Optional[str]: ...


@dataclass
class SignedURL:
    """Represents a presigned GET URL for an object."""

    url: str
    expires_at: datetime


class MinioStorage:
    """Blob store backed by a MinIO bucket."""

    def __init__(
        self,
        client: Minio,
        bucket: str,
        *,
        public_base: Optional[str] = None,
    ) -> None:
        self.client = client
        self.bucket = bucket
        self.public_base = public_base.rstrip("/") if public_base else None
        self._bucket_ready = False

    def ensure_bucket(self) -> None:
        if self._bucket_ready:
            return
        if not self.client.bucket_exists(self.bucket):
            self.client.make_bucket(self.bucket)
        self._bucket_ready = True

    def put(self, key: str, payload: bytes, content_type: str = "application/octet-stream") -> str:
        try:
            self.ensure_bucket()
            self.client.put_object(
                self.bucket,
                key,
                io.BytesIO(payload),
                len(payload),
                content_type=content_type,
            )
        except (S3Error, HTTPError) as exc:
            raise StorageError(f"Failed to store object {key}") from exc
        return key

    def get(self, key: str) -> bytes:
        response = None
        try:
            response = self.client.get_object(self.bucket, key)
            return response.read()
        except (S3Error, HTTPError) as exc:
            raise StorageError(f"Failed to read object {key}") from exc
        finally:
            if response is not None:
                response.close()
                response.release_conn()

    def delete(self, key: str) -> None:
        try:
            self.client.remove_object(self.bucket, key)
        except (S3Error, HTTPError) as exc:
            raise StorageError(f"Failed to delete object {key}") from exc

    def public_url(self, key: str) -> Optional[str]:
        if self.public_base:
            return f"{self.public_base}/{key}"
        return None

    def presign_get_object(self, key: str, ttl_seconds: Optional[int] = None) -> SignedURL:
        """Generate a presigned download URL for an object stored in MinIO."""

        ttl = max(ttl_seconds or DEFAULT_URL_TTL_SECONDS, 1)
        expires_delta = timedelta(seconds=ttl)
        url = self.client.presigned_get_object(self.bucket, key, expires=expires_delta)
        return SignedURL(url=url, expires_at=datetime.now(timezone.utc) + expires_delta)

    def resolve_url(self, key: str) -> Optional[str]:
        """Public URL when a public base is configured, otherwise a presigned one."""

        public = self.public_url(key)
        if public:
            return public
        try:
            return self.presign_get_object(key).url
        except (S3Error, HTTPError, ValueError):
            return None


@lru_cache()
def get_storage() -> MinioStorage:
    settings = get_settings()
    client = Minio(
        endpoint=settings.minio_endpoint,
        access_key=settings.minio_access_key,
        secret_key=settings.minio_secret_key,
        secure=settings.minio_secure,
        region=settings.minio_region,
    )
    return MinioStorage(client, settings.minio_bucket, public_base=settings.public_asset_base)


def source_key(owner_id: object, asset_id: object) -> str:
    return f"{owner_id}/{asset_id}.jpg"


def output_key(owner_id: object, run_id: object, asset_id: object) -> str:
    return f"{owner_id}/outputs/{run_id}/{asset_id}.jpg"
