"""Unit tests for the listing engine."""

import pytest

from fsgate.storage.listing import ListingEngine
from fsgate.storage.multipart import MultipartUploadManager
from fsgate.storage.objects import ObjectStore
from fsgate.storage.paths import temp_path_for


async def _chunks(*parts: bytes):
    for part in parts:
        yield part


@pytest.fixture
async def objects(tmp_path):
    store = ObjectStore(tmp_path / "root")
    await store.init()
    for key in ("a/1", "a/2", "b/1"):
        await store.put("bucket", key, _chunks(key.encode()))
    return store


@pytest.fixture
def listing(objects):
    return ListingEngine(objects)


def _keys(entries) -> list[str]:
    return [e.key for e in entries]


class TestList:
    """Tests for ListingEngine.list()."""

    async def test_prefix_filter(self, listing):
        assert _keys(await listing.list("bucket", "a/")) == ["a/1", "a/2"]

    async def test_empty_prefix_lists_everything(self, listing):
        assert _keys(await listing.list("bucket", "")) == ["a/1", "a/2", "b/1"]

    async def test_prefix_is_a_plain_string_prefix(self, listing):
        assert _keys(await listing.list("bucket", "a")) == ["a/1", "a/2"]
        assert _keys(await listing.list("bucket", "b/1")) == ["b/1"]
        assert await listing.list("bucket", "a/*") == []

    async def test_unknown_bucket_is_empty(self, listing):
        assert await listing.list("no-such-bucket", "") == []

    async def test_entries_carry_metadata(self, listing):
        entries = await listing.list("bucket", "b/")
        assert entries[0].size == 3
        assert entries[0].last_modified.tzinfo is not None

    async def test_sorted_by_key(self, objects, listing):
        for key in ("z", "m/x", "c"):
            await objects.put("bucket", key, _chunks(b"x"))
        assert _keys(await listing.list("bucket")) == ["a/1", "a/2", "b/1", "c", "m/x", "z"]

    async def test_skips_sessions_and_temp_files(self, objects, listing):
        uploads = MultipartUploadManager(objects)
        upload_id = await uploads.initiate("bucket", "a/big")
        await uploads.upload_part("bucket", "a/big", upload_id, 1, _chunks(b"part"))
        orphan = temp_path_for(objects.bucket_path("bucket") / "a" / "3")
        orphan.write_bytes(b"in flight")
        (objects.bucket_path("bucket") / ".hidden").mkdir()
        (objects.bucket_path("bucket") / ".hidden" / "f").write_bytes(b"x")

        assert _keys(await listing.list("bucket", "")) == ["a/1", "a/2", "b/1"]

    async def test_deleted_objects_disappear(self, objects, listing):
        await objects.delete("bucket", "a/1")
        assert _keys(await listing.list("bucket", "a/")) == ["a/2"]
