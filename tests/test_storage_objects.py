"""Unit tests for the filesystem object store and its path helpers.

Tests cover put+get round-trip, head, idempotent delete with parent
pruning, key safety and the reserved multipart namespace, atomic writes
under failure, bucket predicates, and temp file cleanup on startup.
"""

import hashlib
import os

import pytest

from fsgate.errors import (
    BucketNotEmpty,
    InvalidBucketName,
    InvalidKey,
    MissingBucket,
    NoSuchKey,
    RequestTooLarge,
)
from fsgate.storage.objects import ObjectStore
from fsgate.storage.paths import split_key, temp_path_for


async def _chunks(*parts: bytes):
    for part in parts:
        yield part


async def _broken_stream(first: bytes):
    yield first
    raise ConnectionError("client went away")


async def _read_all(chunks) -> bytes:
    return b"".join([chunk async for chunk in chunks])


@pytest.fixture
async def store(tmp_path):
    """Create and initialize an object store in a temp directory."""
    objects = ObjectStore(tmp_path / "root")
    await objects.init()
    return objects


class TestInit:
    """Tests for ObjectStore.init()."""

    async def test_creates_root_directory(self, tmp_path):
        root = tmp_path / "new-root"
        await ObjectStore(root).init()
        assert root.is_dir()

    async def test_idempotent_init(self, tmp_path):
        """init() can be called twice without error (crash-only)."""
        objects = ObjectStore(tmp_path / "again")
        await objects.init()
        await objects.init()
        assert objects.root.is_dir()

    async def test_cleans_temp_files(self, tmp_path):
        """init() removes orphan temp files left by interrupted writes."""
        root = tmp_path / "cleanup"
        orphan = temp_path_for(root / "bucket" / "dir" / "file.txt")
        orphan.parent.mkdir(parents=True)
        orphan.write_bytes(b"leftover")
        keeper = root / "bucket" / "dir" / "file.txt"
        keeper.write_bytes(b"real")

        await ObjectStore(root).init()

        assert not orphan.exists()
        assert keeper.read_bytes() == b"real"

    async def test_lookalike_objects_survive(self, store):
        """Only exact temp file names are removed on restart."""
        for key in (".cache.tmp.v1", "dir/.notes.tmp.0123ABCD", "report.tmp.0123abcd"):
            await store.put("bucket", key, _chunks(b"kept"))

        await ObjectStore(store.root).init()

        for key in (".cache.tmp.v1", "dir/.notes.tmp.0123ABCD", "report.tmp.0123abcd"):
            chunks, _info = await store.get("bucket", key)
            assert await _read_all(chunks) == b"kept"


class TestPutAndGet:
    """Tests for put() and get() round-trip."""

    async def test_round_trip(self, store):
        await store.put("bucket", "a/b/c.txt", _chunks(b"hello ", b"world"))
        chunks, info = await store.get("bucket", "a/b/c.txt")
        assert await _read_all(chunks) == b"hello world"
        assert info.size == 11
        assert info.content_type == "text/plain"

    async def test_put_returns_md5_etag(self, store):
        result = await store.put("bucket", "k", _chunks(b"hello world"))
        expected = hashlib.md5(b"hello world").hexdigest()
        assert result.md5_hex == expected
        assert result.etag == f'"{expected}"'
        assert result.size == 11

    async def test_put_creates_bucket_lazily(self, store):
        assert not store.bucket_exists("fresh")
        await store.put("fresh", "k", _chunks(b"x"))
        assert store.bucket_exists("fresh")

    async def test_overwrite_replaces_content(self, store):
        await store.put("bucket", "k", _chunks(b"first version, longer"))
        await store.put("bucket", "k", _chunks(b"second"))
        chunks, info = await store.get("bucket", "k")
        assert await _read_all(chunks) == b"second"
        assert info.size == 6

    async def test_empty_object(self, store):
        await store.put("bucket", "empty", _chunks())
        chunks, info = await store.get("bucket", "empty")
        assert await _read_all(chunks) == b""
        assert info.size == 0

    async def test_unknown_extension_is_octet_stream(self, store):
        await store.put("bucket", "blob.zzz-unknown", _chunks(b"x"))
        info = await store.head("bucket", "blob.zzz-unknown")
        assert info.content_type == "application/octet-stream"

    async def test_get_missing(self, store):
        with pytest.raises(NoSuchKey):
            await store.get("bucket", "nope")

    async def test_get_directory_is_missing(self, store):
        """A prefix that exists as a directory is not an object."""
        await store.put("bucket", "dir/file", _chunks(b"x"))
        with pytest.raises(NoSuchKey):
            await store.get("bucket", "dir")

    async def test_head(self, store):
        await store.put("bucket", "photo.png", _chunks(b"12345"))
        info = await store.head("bucket", "photo.png")
        assert info.key == "photo.png"
        assert info.size == 5
        assert info.content_type == "image/png"
        assert info.last_modified.tzinfo is not None

    async def test_head_missing(self, store):
        with pytest.raises(NoSuchKey):
            await store.head("bucket", "nope")


class TestAtomicWrite:
    """A failed or oversized write never publishes and never leaves temp files."""

    async def test_truncated_stream_keeps_previous_content(self, store):
        await store.put("bucket", "k", _chunks(b"original"))
        with pytest.raises(ConnectionError):
            await store.put("bucket", "k", _broken_stream(b"partial"))

        chunks, _info = await store.get("bucket", "k")
        assert await _read_all(chunks) == b"original"
        assert os.listdir(store.bucket_path("bucket")) == ["k"]

    async def test_truncated_stream_publishes_nothing(self, store):
        with pytest.raises(ConnectionError):
            await store.put("bucket", "new", _broken_stream(b"partial"))
        with pytest.raises(NoSuchKey):
            await store.head("bucket", "new")
        assert os.listdir(store.bucket_path("bucket")) == []

    async def test_max_size_enforced(self, store):
        with pytest.raises(RequestTooLarge):
            await store.put("bucket", "big", _chunks(b"x" * 10, b"y" * 10), max_size=15)
        with pytest.raises(NoSuchKey):
            await store.head("bucket", "big")
        assert os.listdir(store.bucket_path("bucket")) == []

    async def test_max_size_exact_fit(self, store):
        result = await store.put("bucket", "fits", _chunks(b"x" * 15), max_size=15)
        assert result.size == 15


class TestDelete:
    """Tests for delete()."""

    async def test_delete_existing(self, store):
        await store.put("bucket", "k", _chunks(b"x"))
        await store.delete("bucket", "k")
        with pytest.raises(NoSuchKey):
            await store.head("bucket", "k")

    async def test_delete_is_idempotent(self, store):
        await store.put("bucket", "k", _chunks(b"x"))
        await store.delete("bucket", "k")
        await store.delete("bucket", "k")
        await store.delete("other-bucket", "never-existed")

    async def test_delete_prunes_empty_parents(self, store):
        await store.put("bucket", "a/b/c.txt", _chunks(b"x"))
        await store.delete("bucket", "a/b/c.txt")
        bucket_dir = store.bucket_path("bucket")
        assert bucket_dir.is_dir()
        assert list(bucket_dir.iterdir()) == []

    async def test_delete_keeps_non_empty_parents(self, store):
        await store.put("bucket", "a/one", _chunks(b"1"))
        await store.put("bucket", "a/b/two", _chunks(b"2"))
        await store.delete("bucket", "a/b/two")
        assert (store.bucket_path("bucket") / "a" / "one").is_file()
        assert not (store.bucket_path("bucket") / "a" / "b").exists()

    async def test_delete_prefix_is_noop(self, store):
        await store.put("bucket", "dir/file", _chunks(b"x"))
        await store.delete("bucket", "dir")
        assert (await store.head("bucket", "dir/file")).size == 1


class TestKeySafety:
    """Keys can never address anything outside their bucket."""

    @pytest.mark.parametrize(
        "key",
        ["../escape", "a/../../escape", "a/./b", "a//b", "trailing/", "/leading", "", "nul\x00byte"],
    )
    async def test_unsafe_keys_rejected(self, store, key):
        with pytest.raises(InvalidKey):
            await store.put("bucket", key, _chunks(b"x"))

    @pytest.mark.parametrize("key", [".cache.tmp.0123abcd", "dir/.a.tmp.deadbeef"])
    async def test_temp_file_names_rejected(self, store, key):
        with pytest.raises(InvalidKey):
            await store.put("bucket", key, _chunks(b"x"))
        assert not store.bucket_path("bucket").exists()

    async def test_overlong_key_rejected(self, store):
        with pytest.raises(InvalidKey):
            split_key("k" * 1025)

    async def test_traversal_creates_nothing(self, store, tmp_path):
        with pytest.raises(InvalidKey):
            await store.put("bucket", "../../outside.txt", _chunks(b"x"))
        assert not (tmp_path / "outside.txt").exists()
        assert not store.bucket_path("bucket").exists()

    async def test_symlink_escape_rejected(self, store, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        bucket_dir = store.ensure_bucket("bucket")
        os.symlink(outside, bucket_dir / "link")
        with pytest.raises(InvalidKey):
            await store.put("bucket", "link/file", _chunks(b"x"))
        assert list(outside.iterdir()) == []

    async def test_key_under_existing_object_rejected(self, store):
        await store.put("bucket", "file", _chunks(b"x"))
        with pytest.raises(InvalidKey):
            await store.put("bucket", "file/child", _chunks(b"y"))

    async def test_key_naming_a_directory_rejected(self, store):
        await store.put("bucket", "dir/child", _chunks(b"x"))
        with pytest.raises(InvalidKey):
            await store.put("bucket", "dir", _chunks(b"y"))

    @pytest.mark.parametrize("bucket", [".hidden", "..", "."])
    async def test_bad_bucket_names(self, store, bucket):
        with pytest.raises(InvalidBucketName):
            await store.put(bucket, "k", _chunks(b"x"))

    async def test_empty_bucket_name(self, store):
        with pytest.raises(MissingBucket):
            store.bucket_path("")


class TestReservedNamespace:
    """Directory segments ending in -temp belong to multipart sessions."""

    async def test_write_into_reserved_directory_rejected(self, store):
        with pytest.raises(InvalidKey):
            await store.put("bucket", "video.mp4-temp/0123/1", _chunks(b"x"))

    async def test_read_from_reserved_directory_is_missing(self, store):
        session = store.bucket_path("bucket") / "video.mp4-temp" / "abc"
        session.mkdir(parents=True)
        (session / "1").write_bytes(b"part")
        with pytest.raises(NoSuchKey):
            await store.get("bucket", "video.mp4-temp/abc/1")
        with pytest.raises(NoSuchKey):
            await store.head("bucket", "video.mp4-temp/abc/1")

    async def test_final_segment_may_end_in_temp(self, store):
        await store.put("bucket", "notes-temp", _chunks(b"x"))
        assert (await store.head("bucket", "notes-temp")).size == 1


class TestBuckets:
    """Tests for the bucket predicates."""

    async def test_ensure_and_exists(self, store):
        assert not store.bucket_exists("b")
        store.ensure_bucket("b")
        store.ensure_bucket("b")
        assert store.bucket_exists("b")

    async def test_delete_empty_bucket(self, store):
        store.ensure_bucket("b")
        store.delete_bucket("b")
        assert not store.bucket_exists("b")

    async def test_delete_missing_bucket(self, store):
        store.delete_bucket("never")

    async def test_delete_bucket_with_objects(self, store):
        await store.put("b", "deep/key", _chunks(b"x"))
        with pytest.raises(BucketNotEmpty):
            store.delete_bucket("b")
        assert store.bucket_exists("b")

    async def test_delete_bucket_with_only_empty_dirs(self, store):
        (store.ensure_bucket("b") / "leftover" / "dirs").mkdir(parents=True)
        store.delete_bucket("b")
        assert not store.bucket_exists("b")
