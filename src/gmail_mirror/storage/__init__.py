"""Object storage for message bodies and attachment bytes."""

from .blobs import BlobStore, BlobUploadResult, attachment_key, body_key, sanitize_filename, user_prefix

__all__ = [
    "BlobStore",
    "BlobUploadResult",
    "attachment_key",
    "body_key",
    "sanitize_filename",
    "user_prefix",
]
