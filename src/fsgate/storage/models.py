"""Result types returned by the fsgate storage layer.

These dataclasses describe stored objects and the outcome of writes and
multipart completions. Handlers turn them into S3 headers and XML.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class ObjectInfo:
    """Metadata of a stored object, as reported by the filesystem.

    Attributes:
        key: The object key, ``/``-joined and bucket-relative.
        size: Size in bytes.
        last_modified: Modification time (UTC).
        content_type: MIME type guessed from the key's extension.
    """

    key: str
    size: int
    last_modified: datetime
    content_type: str = "application/octet-stream"


@dataclass(frozen=True)
class WriteResult:
    """Outcome of a published object or part write.

    Attributes:
        size: Number of bytes written.
        md5_hex: Hex MD5 of the written bytes (unquoted).
    """

    size: int
    md5_hex: str

    @property
    def etag(self) -> str:
        """The quoted S3 ETag for the written bytes."""
        return f'"{self.md5_hex}"'


@dataclass(frozen=True)
class CompletedUpload:
    """Outcome of a completed multipart upload.

    Attributes:
        size: Size of the merged object in bytes.
        etag: Quoted composite ETag, e.g. ``"abc123...-3"``.
        part_count: Number of parts merged.
    """

    size: int
    etag: str
    part_count: int
