"""
Blob Store — department containers on S3

Each department owns a container, which maps to an S3 bucket. The
ingestion core only needs three things from it:

  upload_file(container, blob_name, data)  → URL of the stored object
  download_file(container, blob_name)      → raw bytes
  generate_read_url(container, blob_name)  → short-lived presigned GET URL

Deletion is hard. Soft deletion is tracked on the Document row, and the
object is removed once its index entries are gone.
"""

from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass

import aioboto3
from botocore.exceptions import ClientError, EndpointConnectionError

from app.core.config import settings

logger = logging.getLogger(__name__)


class BlobNotFoundError(FileNotFoundError):
    pass


class BlobStoreError(Exception):
    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


@dataclass(frozen=True)
class StoredBlob:
    container:    str
    blob_name:    str
    url:          str
    size_bytes:   int
    content_type: str
    etag:         str = ""


def _is_retryable(exc: ClientError) -> bool:
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0
    code   = exc.response.get("Error", {}).get("Code", "")
    return status >= 500 or status == 429 or code in ("SlowDown", "RequestTimeout", "ServiceUnavailable")


class S3BlobStore:
    """
    Async S3 operations. One instance is shared by the whole process;
    aioboto3 clients are opened per call.
    """

    def __init__(self, region: str | None = None, session: aioboto3.Session | None = None) -> None:
        self._region  = region or settings.aws_region
        self._session = session or aioboto3.Session()

    def _client(self):
        """Return a scoped async S3 client context manager."""
        return self._session.client(
            "s3",
            region_name=self._region,
            # In production: IAM role assumed via ECS task role / IRSA.
            # In local dev: reads AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY.
        )

    def object_url(self, container: str, blob_name: str) -> str:
        return f"s3://{container}/{blob_name}"

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def upload_file(
        self,
        container: str,
        blob_name: str,
        data: bytes,
        content_type: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> StoredBlob:
        ct = content_type or mimetypes.guess_type(blob_name)[0] or "application/octet-stream"
        async with self._client() as s3:
            try:
                resp = await s3.put_object(
                    Bucket=container,
                    Key=blob_name,
                    Body=data,
                    ContentType=ct,
                    Metadata=metadata or {},
                )
            except ClientError as exc:
                raise BlobStoreError(f"Upload failed: {exc}", retryable=_is_retryable(exc)) from exc
            except EndpointConnectionError as exc:
                raise BlobStoreError(f"Upload failed: {exc}", retryable=True) from exc

        logger.info("Blob upload ok | container=%s blob=%s size=%d", container, blob_name, len(data))
        return StoredBlob(
            container=container,
            blob_name=blob_name,
            url=self.object_url(container, blob_name),
            size_bytes=len(data),
            content_type=ct,
            etag=resp.get("ETag", "").strip('"'),
        )

    async def download_file(self, container: str, blob_name: str) -> bytes:
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=container, Key=blob_name)
                return await resp["Body"].read()
            except ClientError as exc:
                code = exc.response["Error"]["Code"]
                if code in ("NoSuchKey", "404", "NoSuchBucket"):
                    raise BlobNotFoundError(f"Blob not found: {container}/{blob_name}") from exc
                raise BlobStoreError(f"Download failed: {exc}", retryable=_is_retryable(exc)) from exc
            except EndpointConnectionError as exc:
                raise BlobStoreError(f"Download failed: {exc}", retryable=True) from exc

    async def delete_file(self, container: str, blob_name: str) -> None:
        async with self._client() as s3:
            try:
                await s3.delete_object(Bucket=container, Key=blob_name)
            except ClientError as exc:
                raise BlobStoreError(f"Delete failed: {exc}", retryable=_is_retryable(exc)) from exc
            except EndpointConnectionError as exc:
                raise BlobStoreError(f"Delete failed: {exc}", retryable=True) from exc
        logger.info("Blob deleted | container=%s blob=%s", container, blob_name)

    async def generate_read_url(
        self,
        container: str,
        blob_name: str,
        expires_in: int | None = None,
    ) -> str:
        """Presigned GET URL scoped to the exact object key."""
        async with self._client() as s3:
            return await s3.generate_presigned_url(
                "get_object",
                Params={"Bucket": container, "Key": blob_name},
                ExpiresIn=expires_in or settings.s3_presign_ttl_seconds,
            )
