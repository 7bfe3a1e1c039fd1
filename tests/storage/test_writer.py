"""
Tests for streaming writes and staged commits.

Uses the fake cloud; the store fixture serves account 42 with containers
prefixed by "test".
"""
from __future__ import annotations

import asyncio
import io
import re
from datetime import timedelta

import pytest
from azure.core.exceptions import HttpResponseError

from contentaddr_azure.errors import BlobCommitError, CopyFailedError, StoreError
from contentaddr_azure.models import Hash
from contentaddr_azure.storage.writer import MAX_BLOCK_SIZE, BlockUploader

from .fakes.fake_azure import azure_error, server_busy


def persistent_blob(cloud, hash):
    return cloud.blob("primary", "test-persist", f"42/{hash}")


def staging_blobs(cloud):
    return cloud.accounts["primary"].containers["test-staging"]


class TestStreamingWriter:
    """Test writing and committing new content."""

    @pytest.mark.asyncio
    async def test_write_bytes(self, cloud, factory, store):
        data = b"some content"
        result = await store.write(data)

        assert result.hash == Hash.of(data)
        assert result.size == len(data)
        assert result.already_existed is False
        assert persistent_blob(cloud, result.hash).data == data

        await factory.background.drain()
        assert staging_blobs(cloud) == {}

    @pytest.mark.asyncio
    async def test_write_empty_blob(self, cloud, store):
        result = await store.write(b"")

        assert result.hash == Hash.parse("D41D8CD98F00B204E9800998ECF8427E")
        assert persistent_blob(cloud, result.hash).data == b""

    @pytest.mark.asyncio
    async def test_existing_content_is_not_overwritten(self, cloud, store):
        first = await store.write(b"duplicate")
        etag = persistent_blob(cloud, first.hash).etag

        second = await store.write(b"duplicate")

        assert second.hash == first.hash
        assert second.already_existed is True
        assert persistent_blob(cloud, first.hash).etag == etag

    @pytest.mark.asyncio
    async def test_concurrent_writers_of_same_content(self, store):
        results = await asyncio.gather(store.write(b"same bytes"), store.write(b"same bytes"))

        assert results[0].hash == results[1].hash
        assert sorted(r.already_existed for r in results) == [False, True]

    @pytest.mark.asyncio
    async def test_blocks_keep_write_order(self, cloud, store):
        # Earlier blocks finish uploading last
        cloud.stage_delays = [0.05, 0.02, 0.0]
        writer = store.start_writing()
        writer.write(b"first-")
        writer.write(b"second-")
        writer.write(b"third")

        assert writer.size == len(b"first-second-third")
        assert writer.hash == Hash.of(b"first-second-third")

        result = await writer.commit()
        assert persistent_blob(cloud, result.hash).data == b"first-second-third"

    @pytest.mark.asyncio
    async def test_write_sources(self, cloud, store):
        async def chunks():
            yield b"async-"
            yield b"chunks"

        from_file = await store.write(io.BytesIO(b"file contents"))
        from_list = await store.write([b"list-", b"chunks"])
        from_async = await store.write(chunks())

        assert persistent_blob(cloud, from_file.hash).data == b"file contents"
        assert persistent_blob(cloud, from_list.hash).data == b"list-chunks"
        assert persistent_blob(cloud, from_async.hash).data == b"async-chunks"

    @pytest.mark.asyncio
    async def test_write_after_commit_raises(self, store):
        writer = store.start_writing()
        writer.write(b"data")
        await writer.commit()

        with pytest.raises(StoreError, match="committed"):
            writer.write(b"more")
        with pytest.raises(StoreError, match="already committed"):
            await writer.commit()

    @pytest.mark.asyncio
    async def test_discard_removes_staged_blocks(self, cloud, factory, store):
        writer = store.start_writing()
        writer.write(b"never stored")

        await writer.discard()
        await factory.background.drain()

        assert staging_blobs(cloud) == {}
        assert cloud.accounts["primary"].uncommitted == {}
        assert persistent_blob(cloud, Hash.of(b"never stored")) is None
        with pytest.raises(StoreError, match="already committed"):
            await writer.commit()

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, cloud, store):
        cloud.fail("stage_block", server_busy())
        cloud.fail("commit_block_list", server_busy())

        result = await store.write(b"eventually stored")
        assert persistent_blob(cloud, result.hash).data == b"eventually stored"

    @pytest.mark.asyncio
    async def test_pending_copy_is_awaited(self, cloud, store):
        cloud.copy_mode = "pending"
        write = asyncio.ensure_future(store.write(b"slow copy"))
        await asyncio.sleep(0.05)
        assert not write.done()

        cloud.complete_copies()
        result = await write
        assert result.already_existed is False

    @pytest.mark.asyncio
    async def test_failed_copy_raises_commit_error(self, cloud, factory, store):
        cloud.copy_mode = "failed"

        with pytest.raises(BlobCommitError) as excinfo:
            await store.write(b"doomed")
        assert isinstance(excinfo.value.__cause__, CopyFailedError)
        assert excinfo.value.__cause__.status == "failed"

        # Staging blob is cleaned up even on failure
        await factory.background.drain()
        assert staging_blobs(cloud) == {}

    @pytest.mark.asyncio
    async def test_copy_error_raises_commit_error(self, cloud, store):
        cloud.fail("start_copy_from_url", azure_error(HttpResponseError, 400, "InvalidSourceBlobUrl"))

        with pytest.raises(BlobCommitError, match="Could not commit blob") as excinfo:
            await store.write(b"bad source")
        assert isinstance(excinfo.value.__cause__, HttpResponseError)
        assert excinfo.value.final.endswith(f"/test-persist/42/{Hash.of(b'bad source')}")

    @pytest.mark.asyncio
    async def test_on_commit_observer(self, factory):
        seen = []
        factory.on_commit = lambda *args: seen.append(args)
        store = factory.for_account(42)

        result = await store.write(b"observed")
        await store.write(b"observed")

        assert len(seen) == 2
        elapsed, realm, hash, size, already_existed = seen[0]
        assert isinstance(elapsed, timedelta)
        assert (realm, hash, size, already_existed) == ("42", result.hash, 8, False)
        assert seen[1][4] is True


class TestBlockUploader:
    """Test block splitting."""

    @pytest.mark.asyncio
    async def test_large_writes_are_split(self, cloud, factory):
        blob = factory.staging.get_blob_client("split-test")
        uploader = BlockUploader(blob, factory.retry)
        data = b"x" * (MAX_BLOCK_SIZE + 10)

        await uploader.stage(data)
        assert uploader.block_count == 2

        await uploader.commit()
        assert cloud.blob("primary", "test-staging", "split-test").data == data


class TestCommitStaged:
    """Test committing blobs uploaded through signed URLs."""

    @pytest.mark.asyncio
    async def test_staging_name_format(self, store):
        name = store.new_staging_name()
        assert re.fullmatch(r"\d{4}-\d{2}-\d{2}/42/[0-9a-f-]{36}", name)
        assert store.new_staging_name() != name

    @pytest.mark.asyncio
    async def test_signed_upload_url(self, store):
        name = store.new_staging_name()
        url = store.get_signed_upload_url(name, timedelta(hours=1))

        assert url.startswith(f"http://127.0.0.1:10000/primary/test-staging/{name}?")
        assert "sp=wd" in url
        assert "sig=" in url

    @pytest.mark.asyncio
    async def test_commit_uploaded_blob(self, cloud, factory, store):
        data = b"uploaded by a client" * 1000
        name = store.new_staging_name()
        cloud.put("primary", "test-staging", name, data)

        ref = await store.commit_staged(name)

        assert ref.hash == Hash.of(data)
        assert await ref.get_size() == len(data)
        assert persistent_blob(cloud, ref.hash).data == data

        await factory.background.drain()
        assert name not in staging_blobs(cloud)

    @pytest.mark.asyncio
    async def test_commit_missing_blob_raises(self, store):
        with pytest.raises(BlobCommitError, match="staged blob does not exist"):
            await store.commit_staged(store.new_staging_name())
