"""Unit tests for the S3 blob store."""

from __future__ import annotations

import re
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from gmail_mirror.exceptions import BlobStoreError, ConfigurationError
from gmail_mirror.storage import BlobStore, attachment_key, body_key, sanitize_filename, user_prefix
from gmail_mirror.storage.blobs import MAX_KEY_LENGTH

SAFE_SEGMENT = re.compile(r"^[A-Za-z0-9._-]+$")


@pytest.fixture
def s3() -> MagicMock:
    return MagicMock()


@pytest.fixture
def blobs(s3, mock_settings) -> BlobStore:
    return BlobStore(mock_settings, client=s3)


class TestKeys:
    def test_body_key_layout(self) -> None:
        assert body_key(7, "18c2f") == "7/bodies/18c2f"
        assert user_prefix(7) == "7/"

    @pytest.mark.parametrize(
        "filename",
        [
            "quarterly report (final).pdf",
            "../../etc/passwd",
            "résumé – 2024.docx",
            "a" * 2000,
            "",
            "spaces   and\ttabs\n.txt",
        ],
    )
    def test_attachment_key_is_safe_bounded_and_deterministic(self, filename: str) -> None:
        key = attachment_key(7, "m1", "att-1", filename)

        assert key.startswith("7/attachments/m1/att-1/")
        assert SAFE_SEGMENT.match(key.rsplit("/", 1)[-1])
        assert len(key.encode("utf-8")) <= MAX_KEY_LENGTH
        assert key == attachment_key(7, "m1", "att-1", filename)

    def test_long_attachment_id_shortens_filename(self) -> None:
        key = attachment_key(7, "m1", "A" * 900, "b" * 300)

        assert len(key.encode("utf-8")) == MAX_KEY_LENGTH

    def test_sanitize_collapses_runs(self) -> None:
        assert sanitize_filename("my  file!!.txt") == "my_file_.txt"
        assert sanitize_filename("") == "attachment"


class TestBlobStore:
    """Test suite for BlobStore class."""

    @pytest.mark.asyncio
    async def test_put_body(self, blobs, s3, mock_settings) -> None:
        result = await blobs.put_body(7, "m1", "<p>héllo</p>")

        assert result.key == "7/bodies/m1"
        assert result.size == len("<p>héllo</p>".encode("utf-8"))
        kwargs = s3.put_object.call_args.kwargs
        assert kwargs["Bucket"] == mock_settings.s3_bucket_name
        assert kwargs["Key"] == "7/bodies/m1"
        assert kwargs["ContentType"] == "text/html; charset=utf-8"

    @pytest.mark.asyncio
    async def test_put_attachment(self, blobs, s3) -> None:
        result = await blobs.put_attachment(7, "m1", "att-1", "report v2.pdf", "application/pdf", b"%PDF")

        assert result.key == "7/attachments/m1/att-1/report_v2.pdf"
        assert result.size == 4
        kwargs = s3.put_object.call_args.kwargs
        assert kwargs["ContentType"] == "application/pdf"
        assert kwargs["ContentDisposition"] == 'attachment; filename="report_v2.pdf"'

    @pytest.mark.asyncio
    async def test_get_text(self, blobs, s3) -> None:
        body = MagicMock()
        body.read.return_value = b"<p>hi</p>"
        s3.get_object.return_value = {"Body": body}

        assert await blobs.get_text("7/bodies/m1") == "<p>hi</p>"

    @pytest.mark.asyncio
    async def test_signed_url_uses_ttl(self, blobs, s3) -> None:
        s3.generate_presigned_url.return_value = "https://signed"

        assert await blobs.get_signed_url("7/bodies/m1", 120) == "https://signed"
        assert s3.generate_presigned_url.call_args.kwargs["ExpiresIn"] == 120

    @pytest.mark.asyncio
    async def test_client_errors_are_wrapped(self, blobs, s3) -> None:
        s3.put_object.side_effect = ClientError({"Error": {"Code": "500", "Message": "boom"}}, "PutObject")

        with pytest.raises(BlobStoreError):
            await blobs.put_body(7, "m1", "<p/>")

    @pytest.mark.asyncio
    async def test_delete_all_under_prefix_batches(self, blobs, s3) -> None:
        paginator = MagicMock()
        paginator.paginate.return_value = [
            {"Contents": [{"Key": f"7/bodies/m{i}"} for i in range(1000)]},
            {"Contents": [{"Key": "7/attachments/m1/a/x.pdf"}]},
            {},
        ]
        s3.get_paginator.return_value = paginator
        s3.delete_objects.return_value = {}

        deleted = await blobs.delete_all_under_prefix("7/")

        assert deleted == 1001
        assert s3.delete_objects.call_count == 2
        paginator.paginate.assert_called_once_with(Bucket=blobs.bucket, Prefix="7/")

    @pytest.mark.asyncio
    async def test_delete_all_refuses_bare_prefix(self, blobs, s3) -> None:
        with pytest.raises(BlobStoreError):
            await blobs.delete_all_under_prefix("7")

        s3.get_paginator.assert_not_called()

    @pytest.mark.asyncio
    async def test_partial_delete_failure_raises(self, blobs, s3) -> None:
        paginator = MagicMock()
        paginator.paginate.return_value = [{"Contents": [{"Key": "7/bodies/m1"}]}]
        s3.get_paginator.return_value = paginator
        s3.delete_objects.return_value = {"Errors": [{"Key": "7/bodies/m1", "Code": "AccessDenied"}]}

        with pytest.raises(BlobStoreError):
            await blobs.delete_all_under_prefix("7/")


def test_missing_bucket_is_a_configuration_error(mock_settings) -> None:
    with pytest.raises(ConfigurationError):
        BlobStore(mock_settings.model_copy(update={"s3_bucket_name": ""}), client=MagicMock())
