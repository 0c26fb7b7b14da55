"""
Attachment blob storage.

Two backends behind the same put/get/delete-by-locator surface:
    - LocalBlobStore: files under BLOB_STORAGE_PATH, locators ``local://<path>``
    - S3BlobStore:    AWS S3 or MinIO via boto3, locators ``s3://<bucket>/<key>``

Locators are opaque to callers; only the store that produced one can
resolve it. Every backend failure surfaces as ``BlobStoreError``.

Configuration (app.config):
    BLOB_BACKEND        "local" (default) or "s3"
    BLOB_STORAGE_PATH   root directory for the local backend
    S3_BUCKET           bucket for the s3 backend
    S3_ENDPOINT_URL     MinIO / custom endpoint (optional)
    S3_REGION           region name (optional)
"""

from __future__ import annotations

import logging
import os

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

LOCAL_SCHEME = "local://"
S3_SCHEME = "s3://"


class BlobStoreError(Exception):
    """Raised when a blob cannot be written, read or deleted."""


def _clean_path(path: str) -> str:
    parts = [p for p in path.replace("\\", "/").split("/") if p not in ("", ".", "..")]
    if not parts:
        raise BlobStoreError(f"Invalid blob path: {path!r}")
    return "/".join(parts)


# ═══════════════════════════════════════════════════════════════════════════
#  Local filesystem
# ═══════════════════════════════════════════════════════════════════════════

class LocalBlobStore:
    """Stores blobs as files below ``root``."""

    def __init__(self, root: str):
        self.root = os.path.abspath(root)

    def _full_path(self, locator: str) -> str:
        if not locator.startswith(LOCAL_SCHEME):
            raise BlobStoreError(f"Not a local blob locator: {locator}")
        return os.path.join(self.root, _clean_path(locator[len(LOCAL_SCHEME):]))

    def put(self, path: str, data: bytes, content_type: str | None = None) -> str:
        relative = _clean_path(path)
        full_path = os.path.join(self.root, relative)
        try:
            os.makedirs(os.path.dirname(full_path), exist_ok=True)
            with open(full_path, "wb") as fh:
                fh.write(data)
        except OSError as exc:
            raise BlobStoreError(f"Could not write {relative}: {exc}") from exc
        logger.debug("Blob stored: %s (%d bytes)", relative, len(data))
        return f"{LOCAL_SCHEME}{relative}"

    def get(self, locator: str) -> bytes:
        full_path = self._full_path(locator)
        try:
            with open(full_path, "rb") as fh:
                return fh.read()
        except OSError as exc:
            raise BlobStoreError(f"Could not read {locator}: {exc}") from exc

    def delete(self, locator: str) -> None:
        full_path = self._full_path(locator)
        try:
            os.remove(full_path)
        except OSError as exc:
            raise BlobStoreError(f"Could not delete {locator}: {exc}") from exc


# ═══════════════════════════════════════════════════════════════════════════
#  S3 / MinIO
# ═══════════════════════════════════════════════════════════════════════════

def _normalize_endpoint(url: str | None) -> str | None:
    """Ensure endpoints include a scheme so boto3 accepts them."""
    if not url:
        return url
    if url.startswith("http://") or url.startswith("https://"):
        return url
    return f"http://{url}"


class S3BlobStore:
    """Stores blobs as objects in a single bucket."""

    def __init__(self, bucket: str, client=None, *, endpoint_url: str | None = None,
                 region: str | None = None):
        if not bucket:
            raise BlobStoreError("S3_BUCKET is required for the s3 blob backend")
        self.bucket = bucket
        self.client = client or boto3.client(
            "s3",
            endpoint_url=_normalize_endpoint(endpoint_url),
            region_name=region,
            config=Config(signature_version="s3v4"),
        )

    def _key(self, locator: str) -> str:
        prefix = f"{S3_SCHEME}{self.bucket}/"
        if not locator.startswith(prefix):
            raise BlobStoreError(f"Locator {locator} does not belong to bucket {self.bucket}")
        return locator[len(prefix):]

    def put(self, path: str, data: bytes, content_type: str | None = None) -> str:
        key = _clean_path(path)
        kwargs = {"Bucket": self.bucket, "Key": key, "Body": data}
        if content_type:
            kwargs["ContentType"] = content_type
        try:
            self.client.put_object(**kwargs)
        except (ClientError, BotoCoreError) as exc:
            raise BlobStoreError(f"S3 put failed for {key}: {exc}") from exc
        logger.debug("Blob stored: s3://%s/%s (%d bytes)", self.bucket, key, len(data))
        return f"{S3_SCHEME}{self.bucket}/{key}"

    def get(self, locator: str) -> bytes:
        key = self._key(locator)
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except (ClientError, BotoCoreError) as exc:
            raise BlobStoreError(f"S3 get failed for {key}: {exc}") from exc

    def delete(self, locator: str) -> None:
        key = self._key(locator)
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            raise BlobStoreError(f"S3 delete failed for {key}: {exc}") from exc


def create_blob_store(config):
    """Build the blob store selected by ``BLOB_BACKEND``."""
    backend = (config.get("BLOB_BACKEND") or "local").lower()
    if backend == "local":
        return LocalBlobStore(config.get("BLOB_STORAGE_PATH") or "instance/blobs")
    if backend == "s3":
        return S3BlobStore(
            config.get("S3_BUCKET"),
            endpoint_url=config.get("S3_ENDPOINT_URL"),
            region=config.get("S3_REGION"),
        )
    raise ValueError(f"Unknown BLOB_BACKEND: {backend}")
