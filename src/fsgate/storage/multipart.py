"""Multipart upload sessions for fsgate.

A session for ``(bucket, key)`` lives in its own directory,
``{root}/{bucket}/{key}-temp/{upload_id}/``, holding one file per part
number. Only this module knows that layout.

Session lifecycle::

    Initiated --upload_part--> Initiated
    Initiated --complete-----> Completed   (merged object published)
    Initiated --abort--------> Aborted     (session discarded)

Completion and abort of the same session are serialized on a per-upload
lock. Whichever runs second finds the session gone and fails with
NoSuchUpload. Part uploads do not take the lock; a part that loses the race
against completion or abort is reported as NoSuchUpload as well.
"""

import asyncio
import binascii
import hashlib
import logging
import os
import re
import secrets
import shutil
import time
from collections.abc import AsyncIterable, AsyncIterator, Iterable, Iterator
from contextlib import asynccontextmanager
from pathlib import Path

from fsgate.errors import InvalidKey, InvalidPart, InvalidRequest, NoSuchUpload
from fsgate.storage.models import CompletedUpload, WriteResult
from fsgate.storage.objects import ObjectStore
from fsgate.storage.paths import (
    CHUNK_SIZE,
    RESERVED_SUFFIX,
    is_reserved,
    remove_empty_parents,
    resolve_within,
    split_key,
    temp_path_for,
    translate_os_error,
    write_atomic,
)

logger = logging.getLogger(__name__)

MIN_PART_NUMBER = 1
MAX_PART_NUMBER = 10000

# 128 bits of randomness, hex encoded.
_UPLOAD_ID_RE = re.compile(r"^[0-9a-f]{32}$")


def new_upload_id() -> str:
    """Allocate an unguessable upload identifier."""
    return secrets.token_hex(16)


def parse_part_number(value: str) -> int:
    """Parse and range-check a ``partNumber`` query value.

    Raises:
        InvalidRequest: If the value is not an integer in 1..10000.
    """
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise InvalidRequest(f"Invalid part number: {value}")
    if number < MIN_PART_NUMBER or number > MAX_PART_NUMBER:
        raise InvalidRequest(
            f"Part number must be an integer between {MIN_PART_NUMBER} and {MAX_PART_NUMBER}"
        )
    return number


def composite_etag(part_md5s: list[str]) -> str:
    """Compute the S3 composite ETag from the hex MD5s of the merged parts.

    MD5 over the concatenated binary part digests, followed by a dash and
    the part count.
    """
    digest = hashlib.md5(b"".join(binascii.unhexlify(m) for m in part_md5s)).hexdigest()
    return f'"{digest}-{len(part_md5s)}"'


class MultipartUploadManager:
    """Owns upload sessions: creation, parts, merge and cleanup.

    Attributes:
        objects: The object store that receives completed uploads.
    """

    def __init__(self, objects: ObjectStore) -> None:
        self.objects = objects
        self._locks: dict[str, asyncio.Lock] = {}

    # -- paths -------------------------------------------------------------------

    def _key_segments(self, key: str) -> list[str]:
        segments = split_key(key)
        if is_reserved(segments) or segments[-1].endswith(RESERVED_SUFFIX):
            raise InvalidKey("The key uses a reserved multipart namespace.")
        return segments

    def _scope_dir(self, bucket: str, key: str) -> Path:
        """Return ``{bucket}/{key}-temp``, the parent of all sessions for a key."""
        segments = self._key_segments(key)
        segments[-1] = segments[-1] + RESERVED_SUFFIX
        return resolve_within(self.objects.bucket_path(bucket), segments)

    def _session_dir(self, bucket: str, key: str, upload_id: str) -> Path | None:
        """Return the session directory, or None for a malformed upload id."""
        if not _UPLOAD_ID_RE.match(upload_id or ""):
            return None
        return self._scope_dir(bucket, key) / upload_id

    def require_session(self, bucket: str, key: str, upload_id: str) -> Path:
        """Return the session directory.

        Raises:
            NoSuchUpload: If the upload id is malformed or the session is gone.
        """
        session = self._session_dir(bucket, key, upload_id)
        if session is None or not session.is_dir():
            raise NoSuchUpload(upload_id)
        return session

    def _lock_for(self, upload_id: str) -> asyncio.Lock:
        lock = self._locks.get(upload_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[upload_id] = lock
        return lock

    @asynccontextmanager
    async def _locked_session(
        self, bucket: str, key: str, upload_id: str
    ) -> AsyncIterator[Path]:
        """Hold the session's exclusive lock and yield its directory.

        Raises:
            NoSuchUpload: If the session does not exist once the lock is held.
        """
        session = self._session_dir(bucket, key, upload_id)
        if session is None:
            raise NoSuchUpload(upload_id)
        async with self._lock_for(upload_id):
            if not session.is_dir():
                # Ids are never reused, so a vanished session stays gone.
                self._locks.pop(upload_id, None)
                raise NoSuchUpload(upload_id)
            yield session

    def _discard(self, session: Path, bucket: str) -> None:
        """Delete a session directory and its key scope if now empty."""
        shutil.rmtree(session)
        remove_empty_parents(session.parent, self.objects.bucket_path(bucket))

    # -- operations --------------------------------------------------------------

    async def initiate(self, bucket: str, key: str) -> str:
        """Start a new upload session and return its id.

        Raises:
            InvalidKey: For unsafe or reserved keys.
            InternalError: If the session directory cannot be created.
        """
        scope = self._scope_dir(bucket, key)
        upload_id = new_upload_id()
        try:
            (scope / upload_id).mkdir(parents=True)
        except OSError as exc:
            raise translate_os_error(exc, "initiate upload") from exc
        logger.info(
            "Initiated multipart upload %s for %s/%s",
            upload_id, bucket, key,
            extra={"bucket": bucket, "upload_id": upload_id},
        )
        return upload_id

    async def upload_part(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        part_number: int,
        stream: AsyncIterable[bytes],
        max_size: int | None = None,
    ) -> WriteResult:
        """Store one part, replacing any previous upload of the same number.

        Returns:
            The part's size and MD5.

        Raises:
            NoSuchUpload: If the session does not exist, or is completed or
                aborted while the part is being written.
            RequestTooLarge: If the body exceeds ``max_size``.
            InternalError: If the filesystem cannot be written.
        """
        session = self.require_session(bucket, key, upload_id)
        try:
            return await write_atomic(
                session / str(part_number), stream, max_size=max_size, create_parents=False
            )
        except FileNotFoundError:
            raise NoSuchUpload(upload_id)
        except OSError as exc:
            raise translate_os_error(exc, "upload part") from exc

    async def complete(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        parts: Iterable[tuple[int, str]],
    ) -> CompletedUpload:
        """Merge the referenced parts into the destination object.

        Parts are always merged in ascending part-number order, whatever
        order the caller lists them in. Duplicate part numbers are merged
        once. The ETags supplied by the caller are not compared against
        the stored parts.

        Args:
            bucket: The bucket name.
            key: The destination object key.
            upload_id: The upload session id.
            parts: ``(part_number, etag)`` pairs from the request body.

        Returns:
            The size and composite ETag of the published object.

        Raises:
            NoSuchUpload: If the session does not exist.
            InvalidPart: If a referenced part was never uploaded. The
                session and the destination are left untouched.
            InternalError: If the merge cannot be written.
        """
        part_numbers = sorted({number for number, _etag in parts})
        if not part_numbers:
            raise InvalidRequest("You must specify at least one part")

        async with self._locked_session(bucket, key, upload_id) as session:
            part_paths = [session / str(n) for n in part_numbers]
            for number, path in zip(part_numbers, part_paths):
                if not path.is_file():
                    raise InvalidPart(f"Part file missing: {number}")

            dest = resolve_within(
                self.objects.bucket_path(bucket), self._key_segments(key)
            )
            try:
                size, part_md5s = self._merge(part_paths, dest)
            except FileNotFoundError as exc:
                raise InvalidPart() from exc
            except OSError as exc:
                raise translate_os_error(exc, "complete upload") from exc

            try:
                self._discard(session, bucket)
            except OSError:
                logger.warning(
                    "Failed to clean up parts for upload %s after completion: %s/%s",
                    upload_id, bucket, key,
                    exc_info=True,
                )
            self._locks.pop(upload_id, None)

        logger.info(
            "Completed multipart upload %s for %s/%s (%d parts, %d bytes)",
            upload_id, bucket, key, len(part_numbers), size,
            extra={"bucket": bucket, "upload_id": upload_id},
        )
        return CompletedUpload(size=size, etag=composite_etag(part_md5s), part_count=len(part_md5s))

    @staticmethod
    def _merge(part_paths: list[Path], dest: Path) -> tuple[int, list[str]]:
        """Concatenate parts into a temp file and publish it at ``dest``.

        Returns:
            The merged size and the hex MD5 of every part, in merge order.
        """
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp = temp_path_for(dest)
        size = 0
        part_md5s: list[str] = []
        try:
            with open(tmp, "xb") as out:
                for path in part_paths:
                    md5 = hashlib.md5()
                    with open(path, "rb") as part:
                        while True:
                            chunk = part.read(CHUNK_SIZE)
                            if not chunk:
                                break
                            out.write(chunk)
                            md5.update(chunk)
                            size += len(chunk)
                    part_md5s.append(md5.hexdigest())
                out.flush()
                os.fsync(out.fileno())
            os.replace(tmp, dest)
        except BaseException:
            try:
                tmp.unlink(missing_ok=True)
            except OSError:
                pass
            raise
        return size, part_md5s

    async def abort(self, bucket: str, key: str, upload_id: str) -> None:
        """Discard a session and all of its parts.

        Raises:
            NoSuchUpload: If the session does not exist.
            InternalError: If the session cannot be removed.
        """
        async with self._locked_session(bucket, key, upload_id) as session:
            try:
                self._discard(session, bucket)
            except OSError as exc:
                raise translate_os_error(exc, "abort upload") from exc
            self._locks.pop(upload_id, None)

        logger.info(
            "Aborted multipart upload %s for %s/%s",
            upload_id, bucket, key,
            extra={"bucket": bucket, "upload_id": upload_id},
        )

    # -- housekeeping ------------------------------------------------------------

    def active_sessions(self) -> int:
        """Count session directories currently on disk."""
        return sum(1 for _session in self._iter_sessions())

    def _iter_sessions(self) -> Iterator[Path]:
        root = self.objects.root
        if not root.is_dir():
            return
        for dirpath, dirnames, _filenames in os.walk(root):
            scopes = [d for d in dirnames if d.endswith(RESERVED_SUFFIX)]
            for scope in scopes:
                scope_dir = Path(dirpath) / scope
                for entry in scope_dir.iterdir():
                    if entry.is_dir() and _UPLOAD_ID_RE.match(entry.name):
                        yield entry
            dirnames[:] = [d for d in dirnames if not d.endswith(RESERVED_SUFFIX)]

    async def reap_stale(self, max_age_seconds: int) -> int:
        """Remove sessions untouched for longer than ``max_age_seconds``.

        A session's age is measured from its directory's modification
        time, which moves forward with every uploaded part.

        Returns:
            The number of sessions removed.
        """
        cutoff = time.time() - max_age_seconds
        reaped = 0
        for session in list(self._iter_sessions()):
            try:
                if session.stat().st_mtime >= cutoff:
                    continue
            except FileNotFoundError:
                continue
            async with self._lock_for(session.name):
                try:
                    shutil.rmtree(session)
                except FileNotFoundError:
                    continue
                except OSError:
                    logger.warning("Failed to reap stale upload %s", session.name, exc_info=True)
                    continue
                self._locks.pop(session.name, None)
            bucket_dir = self.objects.root / session.relative_to(self.objects.root).parts[0]
            remove_empty_parents(session.parent, bucket_dir)
            reaped += 1
        if reaped:
            logger.info("Reaped %d stale multipart uploads", reaped)
        return reaped
