"""Filesystem object store for fsgate.

Objects are stored under ``{root}/{bucket}/{key}``. A bucket is a
directory: it is created lazily by the first write that needs it and
exists for as long as its directory does.

Crash-only design:
    - Atomic writes via temp-fsync-replace (see ``fsgate.storage.paths``).
    - Readers open the file before streaming, so a concurrent publish or
      delete never tears a response.
    - Startup removes orphan temp files left by interrupted writes.
"""

import logging
import os
import shutil
from collections.abc import AsyncIterable, AsyncIterator
from pathlib import Path
from typing import BinaryIO

from fsgate.errors import BucketNotEmpty, InvalidKey, NoSuchKey
from fsgate.storage.models import ObjectInfo, WriteResult
from fsgate.storage.paths import (
    CHUNK_SIZE,
    is_reserved,
    is_temp_name,
    object_info,
    remove_empty_parents,
    resolve_within,
    split_key,
    translate_os_error,
    validate_bucket_name,
    write_atomic,
)

logger = logging.getLogger(__name__)


async def _iter_file(fh: BinaryIO) -> AsyncIterator[bytes]:
    """Yield 64 KB chunks from an already-open file, closing it at the end."""
    try:
        while True:
            chunk = fh.read(CHUNK_SIZE)
            if not chunk:
                break
            yield chunk
    finally:
        fh.close()


class ObjectStore:
    """Maps ``(bucket, key)`` onto files below a root directory.

    Attributes:
        root: The root directory for all buckets.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    # -- paths -------------------------------------------------------------------

    def bucket_path(self, bucket: str) -> Path:
        """Return the directory backing ``bucket``.

        Raises:
            MissingBucket: If the name is empty.
            InvalidBucketName: If the name is not a single visible segment.
        """
        validate_bucket_name(bucket)
        return self.root / bucket

    def _object_path(self, bucket: str, key: str, for_write: bool) -> Path | None:
        """Return the path for an object, or None if the key is reserved.

        Reserved keys are invisible to readers and rejected for writers.
        """
        segments = split_key(key)
        if is_reserved(segments):
            if for_write:
                raise InvalidKey("The key uses a reserved multipart namespace.")
            return None
        return resolve_within(self.bucket_path(bucket), segments)

    # -- lifecycle ---------------------------------------------------------------

    async def init(self) -> None:
        """Create the root directory and clean up orphan temp files.

        Crash-only design: every startup is a recovery.
        """
        self.root.mkdir(parents=True, exist_ok=True)
        self._clean_temp_files()
        logger.info("Object store initialized at %s", self.root)

    def _clean_temp_files(self) -> None:
        """Remove orphan temp files left by interrupted atomic writes."""
        count = 0
        for dirpath, _dirnames, filenames in os.walk(self.root):
            for fname in filenames:
                if is_temp_name(fname):
                    try:
                        os.unlink(os.path.join(dirpath, fname))
                        count += 1
                    except OSError:
                        logger.warning("Could not remove orphan temp file %s", fname)
        if count > 0:
            logger.info("Cleaned %d orphan temp files on startup", count)

    # -- buckets -----------------------------------------------------------------

    def bucket_exists(self, bucket: str) -> bool:
        """A bucket exists if and only if its directory exists."""
        return self.bucket_path(bucket).is_dir()

    def ensure_bucket(self, bucket: str) -> Path:
        """Create the bucket directory if needed and return it."""
        path = self.bucket_path(bucket)
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise translate_os_error(exc, "create bucket") from exc
        return path

    def delete_bucket(self, bucket: str) -> None:
        """Remove an empty bucket. Absence is not an error.

        Directories holding no regular files (e.g. leftovers of pruned
        prefixes) count as empty and are removed with the bucket.

        Raises:
            BucketNotEmpty: If any file remains under the bucket.
        """
        path = self.bucket_path(bucket)
        if not path.is_dir():
            return
        for _dirpath, _dirnames, filenames in os.walk(path):
            if filenames:
                raise BucketNotEmpty(bucket)
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            return
        except OSError as exc:
            raise translate_os_error(exc, "delete bucket") from exc

    # -- objects -----------------------------------------------------------------

    async def put(
        self,
        bucket: str,
        key: str,
        stream: AsyncIterable[bytes],
        max_size: int | None = None,
    ) -> WriteResult:
        """Store an object, fully replacing any previous content.

        Args:
            bucket: The bucket name.
            key: The object key.
            stream: Async iterable of body chunks.
            max_size: Maximum accepted size in bytes, or None.

        Returns:
            The number of bytes written and their MD5.

        Raises:
            InvalidKey: For unsafe or conflicting keys.
            RequestTooLarge: If the body exceeds ``max_size``.
            InternalError: If the filesystem cannot be written.
        """
        path = self._object_path(bucket, key, for_write=True)
        try:
            return await write_atomic(path, stream, max_size=max_size)
        except OSError as exc:
            raise translate_os_error(exc, "put object") from exc

    async def get(self, bucket: str, key: str) -> tuple[AsyncIterator[bytes], ObjectInfo]:
        """Open an object for streaming.

        Returns:
            A chunk iterator over the content and the object's metadata.

        Raises:
            NoSuchKey: If the object does not exist.
        """
        path = self._object_path(bucket, key, for_write=False)
        if path is None:
            raise NoSuchKey(key)
        try:
            fh = open(path, "rb")
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
            raise NoSuchKey(key)
        except OSError as exc:
            raise translate_os_error(exc, "get object") from exc
        try:
            info = object_info(key, os.fstat(fh.fileno()))
        except OSError as exc:
            fh.close()
            raise translate_os_error(exc, "get object") from exc
        if info is None:
            fh.close()
            raise NoSuchKey(key)
        return _iter_file(fh), info

    async def head(self, bucket: str, key: str) -> ObjectInfo:
        """Return an object's metadata without reading its content.

        Raises:
            NoSuchKey: If the object does not exist.
        """
        path = self._object_path(bucket, key, for_write=False)
        if path is None:
            raise NoSuchKey(key)
        try:
            st = path.stat()
        except (FileNotFoundError, NotADirectoryError):
            raise NoSuchKey(key)
        except OSError as exc:
            raise translate_os_error(exc, "head object") from exc
        info = object_info(key, st)
        if info is None:
            raise NoSuchKey(key)
        return info

    async def delete(self, bucket: str, key: str) -> None:
        """Delete an object. Missing objects are silently ignored.

        Empty parent directories are pruned up to the bucket directory.
        """
        path = self._object_path(bucket, key, for_write=True)
        try:
            path.unlink()
        except (FileNotFoundError, NotADirectoryError):
            return
        except IsADirectoryError:
            # A prefix, not an object.
            return
        except OSError as exc:
            raise translate_os_error(exc, "delete object") from exc

        remove_empty_parents(path.parent, self.root / bucket)
