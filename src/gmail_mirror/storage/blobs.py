"""S3-backed blob store for message bodies and attachment bytes.

Keys are derived from identifiers alone, so re-uploading the same message is
idempotent and a key can be rebuilt from metadata without a lookup table:

    {user_id}/bodies/{remote_message_id}
    {user_id}/attachments/{remote_message_id}/{remote_attachment_id}/{sanitized_filename}
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

import structlog

from gmail_mirror.config import Settings
from gmail_mirror.exceptions import BlobStoreError, ConfigurationError

logger = structlog.get_logger()

T = TypeVar("T")

# S3 object keys are limited to 1024 bytes of UTF-8.
MAX_KEY_LENGTH = 1024
MAX_FILENAME_LENGTH = 255
DEFAULT_FILENAME = "attachment"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")
_UNDERSCORE_RUNS = re.compile(r"_{2,}")

# delete_objects accepts at most 1000 keys per request.
_DELETE_BATCH = 1000


@dataclass(frozen=True)
class BlobUploadResult:
    """Where an object landed and how large it is."""

    key: str
    size: int


def sanitize_filename(filename: str, max_length: int = MAX_FILENAME_LENGTH) -> str:
    """Make a remote-supplied filename safe for use inside an object key.

    Characters outside [A-Za-z0-9._-] become underscores, runs of underscores
    collapse to one, and the result is truncated to `max_length`.
    """

    cleaned = _UNDERSCORE_RUNS.sub("_", _UNSAFE_CHARS.sub("_", filename or ""))
    cleaned = cleaned[:max_length]
    return cleaned or DEFAULT_FILENAME


def body_key(user_id: int, remote_message_id: str) -> str:
    return f"{user_id}/bodies/{remote_message_id}"


def attachment_key(user_id: int, remote_message_id: str, remote_attachment_id: str, filename: str) -> str:
    """Build the attachment key, shortening the filename if the key would be too long."""

    prefix = f"{user_id}/attachments/{remote_message_id}/{remote_attachment_id}/"
    room = MAX_KEY_LENGTH - len(prefix.encode("utf-8"))
    if room < 1:
        raise BlobStoreError(f"Attachment key prefix exceeds {MAX_KEY_LENGTH} bytes: {prefix!r}")
    return prefix + sanitize_filename(filename, max_length=min(MAX_FILENAME_LENGTH, room))


def user_prefix(user_id: int) -> str:
    return f"{user_id}/"


class BlobStore:
    """Async wrapper over a boto3 S3 client.

    boto3 is synchronous; calls run in a worker thread via `asyncio.to_thread`.
    """

    def __init__(self, settings: Settings | None = None, *, client: Any | None = None) -> None:
        """Create a blob store.

        Args:
            settings: Application settings. If None, uses default settings.
            client: Pre-built boto3 S3 client (tests); built from settings otherwise.
        """
        from gmail_mirror.config import get_settings

        self.settings = settings or get_settings()
        self.bucket = self.settings.s3_bucket_name
        if not self.bucket:
            raise ConfigurationError("GMAIL_MIRROR_S3_BUCKET_NAME must be set")
        self._client = client or self._build_client()

    async def put_body(self, user_id: int, remote_message_id: str, html: str) -> BlobUploadResult:
        key = body_key(user_id, remote_message_id)
        data = html.encode("utf-8")
        await self._run(
            "put_body",
            key,
            lambda: self._client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType="text/html; charset=utf-8",
                Metadata={
                    "user-id": str(user_id),
                    "message-id": remote_message_id,
                    "type": "email-body",
                },
            ),
        )
        logger.debug("blob_body_stored", key=key, size=len(data))
        return BlobUploadResult(key=key, size=len(data))

    async def put_attachment(
        self,
        user_id: int,
        remote_message_id: str,
        remote_attachment_id: str,
        filename: str,
        mime_type: str,
        data: bytes,
    ) -> BlobUploadResult:
        key = attachment_key(user_id, remote_message_id, remote_attachment_id, filename)
        safe_name = key.rsplit("/", 1)[-1]
        await self._run(
            "put_attachment",
            key,
            lambda: self._client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=mime_type or "application/octet-stream",
                ContentDisposition=f'attachment; filename="{safe_name}"',
                Metadata={
                    "user-id": str(user_id),
                    "message-id": remote_message_id,
                    "attachment-id": remote_attachment_id,
                    "type": "email-attachment",
                },
            ),
        )
        logger.debug("blob_attachment_stored", key=key, size=len(data))
        return BlobUploadResult(key=key, size=len(data))

    async def get_object(self, key: str) -> bytes:
        def _read() -> bytes:
            response = self._client.get_object(Bucket=self.bucket, Key=key)
            body = response.get("Body")
            if body is None:
                raise BlobStoreError(f"Empty response body for {key}")
            return body.read()

        return await self._run("get_object", key, _read)

    async def get_text(self, key: str) -> str:
        return (await self.get_object(key)).decode("utf-8", errors="replace")

    async def get_signed_url(self, key: str, ttl_seconds: int | None = None) -> str:
        expires = ttl_seconds or self.settings.signed_url_ttl_seconds
        return await self._run(
            "get_signed_url",
            key,
            lambda: self._client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expires,
            ),
        )

    async def delete(self, key: str) -> None:
        await self._run("delete", key, lambda: self._client.delete_object(Bucket=self.bucket, Key=key))

    async def delete_all_under_prefix(self, prefix: str) -> int:
        """Delete every object whose key starts with `prefix`; returns the count."""

        if not prefix or not prefix.endswith("/"):
            raise BlobStoreError(f"Refusing to delete under non-directory prefix {prefix!r}")

        def _delete_all() -> int:
            deleted = 0
            paginator = self._client.get_paginator("list_objects_v2")
            batch: list[dict[str, str]] = []
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for obj in page.get("Contents", []) or []:
                    batch.append({"Key": obj["Key"]})
                    if len(batch) == _DELETE_BATCH:
                        deleted += self._delete_batch(batch)
                        batch = []
            if batch:
                deleted += self._delete_batch(batch)
            return deleted

        deleted = await self._run("delete_all_under_prefix", prefix, _delete_all)
        logger.info("blob_prefix_deleted", prefix=prefix, deleted=deleted)
        return deleted

    def _delete_batch(self, batch: list[dict[str, str]]) -> int:
        response = self._client.delete_objects(
            Bucket=self.bucket,
            Delete={"Objects": batch, "Quiet": True},
        )
        errors = response.get("Errors") or []
        if errors:
            raise BlobStoreError(f"Failed to delete {len(errors)} objects, first: {errors[0]}")
        return len(batch)

    async def _run(self, operation: str, key: str, fn: Callable[[], T]) -> T:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            return await asyncio.to_thread(fn)
        except BlobStoreError:
            raise
        except (BotoCoreError, ClientError) as exc:
            logger.error("blob_operation_failed", operation=operation, key=key, error=str(exc))
            raise BlobStoreError(f"{operation} failed for {key}: {exc}") from exc

    def _build_client(self) -> Any:
        import boto3
        from botocore.config import Config

        timeout = self.settings.blob_timeout_seconds
        return boto3.client(
            "s3",
            region_name=self.settings.aws_region,
            endpoint_url=self.settings.s3_endpoint_url,
            aws_access_key_id=self.settings.aws_access_key_id,
            aws_secret_access_key=self.settings.aws_secret_access_key,
            config=Config(connect_timeout=timeout, read_timeout=timeout, retries={"mode": "standard"}),
        )
