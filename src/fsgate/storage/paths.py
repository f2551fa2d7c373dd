"""Path safety and atomic publish helpers for the filesystem stores.

Every bucket and key coming off the wire passes through here before it
touches the filesystem:

    - bucket names are a single, non-hidden path segment;
    - keys are split on ``/`` and may not contain empty, ``.`` or ``..``
      segments, so they can never escape the bucket directory;
    - directory segments ending in ``-temp`` are reserved for multipart
      session storage;
    - a final segment shaped like an in-flight temp file is refused, so
      startup cleanup never mistakes an object for one.

Writes go to a hidden temp file beside their destination and are published
with a single ``os.replace``. A failed or interrupted write removes the temp
file and leaves the destination untouched.
"""

import hashlib
import logging
import mimetypes
import os
import re
import stat
import uuid
from collections.abc import AsyncIterable
from datetime import datetime, timezone
from pathlib import Path

from fsgate.errors import (
    InternalError,
    InvalidBucketName,
    InvalidKey,
    MissingBucket,
    RequestTooLarge,
    S3Error,
)
from fsgate.storage.models import ObjectInfo, WriteResult

logger = logging.getLogger(__name__)

# Streaming chunk size: 64 KB
CHUNK_SIZE = 64 * 1024

# Suffix of the per-key directory holding multipart sessions.
RESERVED_SUFFIX = "-temp"

# Marker carried by in-flight temp file names.
TEMP_MARKER = ".tmp."

_TEMP_NAME_RE = re.compile(r"^\..+\.tmp\.[0-9a-f]{8}\Z", re.DOTALL)

_MAX_KEY_BYTES = 1024

_DEFAULT_CONTENT_TYPE = "application/octet-stream"


def validate_bucket_name(bucket: str) -> None:
    """Check that a bucket name maps to exactly one visible directory.

    Raises:
        MissingBucket: If the name is empty.
        InvalidBucketName: If the name is hidden, a traversal segment,
            or contains a path separator or NUL.
    """
    if not bucket:
        raise MissingBucket()
    if bucket.startswith(".") or "/" in bucket or "\x00" in bucket:
        raise InvalidBucketName(bucket)


def split_key(key: str) -> list[str]:
    """Split an object key into its path segments.

    Raises:
        InvalidKey: If the key is empty, too long, or has a segment that
            is empty, ``.`` or ``..``, or whose final segment
            has the shape of a temp file name.
    """
    if not key:
        raise InvalidKey("The object key must not be empty.")
    if "\x00" in key:
        raise InvalidKey()
    if len(key.encode("utf-8")) > _MAX_KEY_BYTES:
        raise InvalidKey("Your key is too long.")
    segments = key.split("/")
    for segment in segments:
        if segment in ("", ".", ".."):
            raise InvalidKey("The object key contains an empty or relative path segment.")
    if is_temp_name(segments[-1]):
        raise InvalidKey("The object key uses a reserved temporary file name.")
    return segments


def is_reserved(segments: list[str]) -> bool:
    """Return True if a key would live inside a multipart session namespace."""
    return any(segment.endswith(RESERVED_SUFFIX) for segment in segments[:-1])


def resolve_within(base: Path, segments: list[str]) -> Path:
    """Join ``segments`` onto ``base`` and verify the result stays inside it.

    Symlinks are followed for the check, so a link planted inside a bucket
    cannot be used to reach outside of it.

    Raises:
        InvalidKey: If the resolved path is not strictly below ``base``.
    """
    path = base.joinpath(*segments)
    resolved_base = base.resolve()
    resolved = path.resolve()
    if resolved == resolved_base or resolved_base not in resolved.parents:
        raise InvalidKey("The object key resolves outside of its bucket.")
    return path


def guess_content_type(key: str) -> str:
    """Guess a MIME type from the key's file extension."""
    content_type, _encoding = mimetypes.guess_type(key, strict=False)
    return content_type or _DEFAULT_CONTENT_TYPE


def object_info(key: str, st: os.stat_result) -> ObjectInfo | None:
    """Build the ObjectInfo for a stat result, or None if it is not a regular file."""
    if not stat.S_ISREG(st.st_mode):
        return None
    return ObjectInfo(
        key=key,
        size=st.st_size,
        last_modified=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
        content_type=guess_content_type(key),
    )


def temp_path_for(dest: Path) -> Path:
    """Return a hidden, unique temp file path next to ``dest``."""
    return dest.with_name(f".{dest.name}{TEMP_MARKER}{uuid.uuid4().hex[:8]}")


def is_temp_name(name: str) -> bool:
    """Return True for a file name produced by ``temp_path_for``."""
    return _TEMP_NAME_RE.match(name) is not None


def translate_os_error(exc: OSError, action: str) -> S3Error:
    """Map a filesystem error to the S3 error reported to the client.

    Structural conflicts (a key component is an existing file, or a key
    names an existing directory) are the caller's fault; anything else is
    logged and reported as an opaque InternalError.
    """
    if isinstance(exc, (NotADirectoryError, IsADirectoryError, FileExistsError)):
        return InvalidKey("The key conflicts with an existing object or prefix.")
    logger.error("Storage failure during %s: %s", action, exc, exc_info=exc)
    return InternalError()


async def write_atomic(
    dest: Path,
    stream: AsyncIterable[bytes],
    max_size: int | None = None,
    create_parents: bool = True,
) -> WriteResult:
    """Stream bytes into ``dest`` with the temp-fsync-replace pattern.

    The MD5 is computed as the bytes arrive. Nothing becomes visible at
    ``dest`` until every byte is on disk.

    Args:
        dest: Final path of the file.
        stream: Async iterable of byte chunks.
        max_size: Upper bound on the number of bytes accepted, or None.
        create_parents: Create missing parent directories first. When
            False, a missing parent surfaces as FileNotFoundError.

    Returns:
        The size and MD5 of the published bytes.

    Raises:
        RequestTooLarge: If the stream yields more than ``max_size`` bytes.
        OSError: On filesystem failure.
    """
    if create_parents:
        dest.parent.mkdir(parents=True, exist_ok=True)

    tmp = temp_path_for(dest)
    try:
        fh = open(tmp, "xb")
    except FileNotFoundError:
        if not create_parents:
            raise
        # A concurrent delete pruned the parent we just created.
        dest.parent.mkdir(parents=True, exist_ok=True)
        fh = open(tmp, "xb")

    md5 = hashlib.md5()
    size = 0
    try:
        with fh:
            async for chunk in stream:
                size += len(chunk)
                if max_size is not None and size > max_size:
                    raise RequestTooLarge()
                fh.write(chunk)
                md5.update(chunk)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, dest)
    except BaseException:
        # Also runs on task cancellation (client went away mid-body).
        try:
            tmp.unlink(missing_ok=True)
        except OSError:
            pass
        raise

    return WriteResult(size=size, md5_hex=md5.hexdigest())


def remove_empty_parents(start: Path, stop: Path) -> None:
    """Remove empty directories from ``start`` upward, stopping below ``stop``."""
    parent = start
    while parent != stop and stop in parent.parents:
        try:
            parent.rmdir()
        except OSError:
            break
        parent = parent.parent
