"""Prefix listing of a bucket's objects."""

import logging
import os
from pathlib import Path

from fsgate.storage.models import ObjectInfo
from fsgate.storage.objects import ObjectStore
from fsgate.storage.paths import RESERVED_SUFFIX, object_info

logger = logging.getLogger(__name__)


class ListingEngine:
    """Walks a bucket directory and reports the objects under a prefix.

    Hidden entries (any path segment starting with ``.``, which includes
    in-flight temp files) and multipart session directories are never
    reported.
    """

    def __init__(self, objects: ObjectStore) -> None:
        self.objects = objects

    async def list(self, bucket: str, prefix: str = "") -> list[ObjectInfo]:
        """List the objects of ``bucket`` whose key starts with ``prefix``.

        The prefix is a plain string prefix, not a glob. A bucket without
        a directory lists as empty.

        Returns:
            Matching objects, sorted by key.
        """
        bucket_dir = self.objects.bucket_path(bucket)
        if not bucket_dir.is_dir():
            return []

        entries: list[ObjectInfo] = []
        for dirpath, dirnames, filenames in os.walk(bucket_dir):
            dirnames[:] = [
                d for d in dirnames
                if not d.startswith(".") and not d.endswith(RESERVED_SUFFIX)
            ]
            rel_dir = Path(dirpath).relative_to(bucket_dir).as_posix()
            for fname in filenames:
                if fname.startswith("."):
                    continue
                key = fname if rel_dir == "." else f"{rel_dir}/{fname}"
                if not key.startswith(prefix):
                    continue
                try:
                    st = os.stat(os.path.join(dirpath, fname), follow_symlinks=False)
                except FileNotFoundError:
                    # Deleted while we were walking.
                    continue
                info = object_info(key, st)
                if info is not None:
                    entries.append(info)

        entries.sort(key=lambda info: info.key)
        logger.debug("Listed %d objects in %s with prefix %r", len(entries), bucket, prefix)
        return entries
