"""
Streaming writes into the content-addressable store.

Data is hashed as it arrives and uploaded as blocks of a staging blob, since
its final (content-addressed) name is only known once the last byte has been
written. Committing assembles the staging blob and copies it server-side to
its final location, unless content with the same hash is already stored.
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
import time
import uuid
from datetime import timedelta
from typing import Any, Awaitable, List, Optional

from azure.core import MatchConditions
from azure.core.exceptions import ResourceExistsError, ResourceModifiedError
from azure.storage.blob import BlobBlock

from ..errors import BlobCommitError, CopyFailedError, StoreError
from ..models import CommitObserver, Hash, WriteResult
from ..retry import RetryPolicy
from ..settings import Settings
from .background import BackgroundTasks
from .blob_ref import blob_name
from .signing import read_url

__all__ = [
    "BlockUploader",
    "StreamingWriter",
    "copy_to_persistent",
    "wait_for_copy",
    "commit_to_persistent",
    "MAX_BLOCK_SIZE",
]

logger = logging.getLogger(__name__)

# Largest block accepted by a single Put Block request
MAX_BLOCK_SIZE = 4 * 1024 * 1024


class BlockUploader:
    """
    Uploads data as blocks of a block blob, then commits the block list.

    Block ids are recorded in byte order as soon as :meth:`stage` is called,
    before any upload runs, so the assembled blob matches the write order
    whatever order the uploads complete in.
    """

    def __init__(self, blob: Any, retry: RetryPolicy) -> None:
        self.blob = blob
        self._retry = retry
        self._block_ids: List[str] = []
        self._pending: List[asyncio.Future] = []

    @property
    def block_count(self) -> int:
        return len(self._block_ids)

    def stage(self, data: bytes) -> Awaitable[List[None]]:
        """
        Schedule the upload of ``data``, split into blocks of at most 4 MiB.

        Must be called from a running event loop.

        Returns:
            Awaitable completing once every block of ``data`` is uploaded
        """
        uploads = []
        for start in range(0, len(data), MAX_BLOCK_SIZE):
            chunk = bytes(data[start:start + MAX_BLOCK_SIZE])
            block_id = uuid.uuid4().hex
            self._block_ids.append(block_id)
            uploads.append(asyncio.ensure_future(self._stage_block(block_id, chunk)))

        batch = asyncio.gather(*uploads)
        self._pending.append(batch)
        return batch

    async def commit(self) -> None:
        """Wait for every staged block, then commit the block list."""
        await asyncio.gather(*self._pending)
        self._pending.clear()

        blocks = [BlobBlock(block_id=block_id) for block_id in self._block_ids]
        await self._retry.run(lambda: self.blob.commit_block_list(blocks))
        logger.debug(f"Committed {len(blocks)} block(s) to {self.blob.blob_name}")

    async def _stage_block(self, block_id: str, chunk: bytes) -> None:
        await self._retry.run(lambda: self.blob.stage_block(block_id, chunk))


async def wait_for_copy(final: Any, retry: RetryPolicy, settings: Settings) -> None:
    """
    Poll the copy status of ``final`` until the copy completes.

    The polling delay starts at ``copy_poll_initial_s`` and doubles up to
    ``copy_poll_max_s``.

    Raises:
        CopyFailedError: If the copy is aborted, fails, or reports an unknown status
    """
    delay = settings.copy_poll_initial_s
    while True:
        props = await retry.run(final.get_blob_properties)
        status = props.copy.status if props.copy is not None else None
        if status == "success":
            return
        if status == "pending":
            await asyncio.sleep(delay)
            delay = min(delay * 2, settings.copy_poll_max_s)
            continue
        raise CopyFailedError(final.blob_name, status)


async def copy_to_persistent(
    source_url: str,
    final: Any,
    retry: RetryPolicy,
    settings: Settings,
) -> bool:
    """
    Copy ``source_url`` into ``final`` server-side and wait for completion.

    The copy only happens if ``final`` does not exist yet.

    Returns:
        True if the blob was copied, False if ``final`` already existed
        (for instance because a concurrent writer committed the same content)

    Raises:
        CopyFailedError: If the copy reaches a terminal state other than success
    """
    try:
        await retry.run(lambda: final.start_copy_from_url(
            source_url,
            etag="*",
            match_condition=MatchConditions.IfMissing,
        ))
    except (ResourceExistsError, ResourceModifiedError):
        logger.debug(f"{final.blob_name} appeared concurrently, skipping copy")
        return False

    await wait_for_copy(final, retry, settings)
    return True


class StreamingWriter:
    """
    Writes one blob to the store.

    Call :meth:`write` any number of times, then :meth:`commit` once.

    Args:
        realm: Blob name prefix of the store
        persistent: Container holding content-addressed blobs
        staging_blob: Block blob client in the staging container
        retry: Policy wrapping every remote call
        background: Runner for the delayed deletion of the staging blob
        settings: Copy polling and deletion delays
        on_commit: Optional observer called once the blob is committed
    """

    def __init__(
        self,
        realm: str,
        persistent: Any,
        staging_blob: Any,
        *,
        retry: RetryPolicy,
        background: BackgroundTasks,
        settings: Settings,
        on_commit: Optional[CommitObserver] = None,
    ) -> None:
        self.realm = realm
        self._persistent = persistent
        self._staging_blob = staging_blob
        self._retry = retry
        self._background = background
        self._settings = settings
        self._on_commit = on_commit
        self._uploader = BlockUploader(staging_blob, retry)
        self._md5 = hashlib.md5()
        self._size = 0
        self._committed = False
        self._started = time.monotonic()

    @property
    def size(self) -> int:
        """Number of bytes written so far."""
        return self._size

    @property
    def hash(self) -> Hash:
        """Hash of the bytes written so far."""
        return Hash(self._md5.copy().digest())

    def write(self, data: bytes) -> Awaitable[List[None]]:
        """
        Append ``data`` to the blob.

        Hashing happens immediately; uploads run concurrently in the
        background. Awaiting the result is optional, :meth:`commit` waits for
        every upload anyway.

        Raises:
            StoreError: If the writer was already committed
        """
        if self._committed:
            raise StoreError("Cannot write to a committed writer")
        self._md5.update(data)
        self._size += len(data)
        return self._uploader.stage(data)

    async def commit(self) -> WriteResult:
        """
        Finalize the blob and move it to its content-addressed location.

        Returns:
            WriteResult with the hash, size and whether the content was
            already stored

        Raises:
            BlobCommitError: If copying to the final location failed
        """
        if self._committed:
            raise StoreError("Writer already committed")
        self._committed = True

        hash = Hash(self._md5.digest())
        try:
            await self._uploader.commit()
            already_existed = await commit_to_persistent(
                self._staging_blob,
                self._persistent.get_blob_client(blob_name(self.realm, hash)),
                self._retry,
                self._settings,
            )
        finally:
            self._background.delete_later(self._staging_blob, self._settings.staging_delete_delay_s)

        elapsed = timedelta(seconds=time.monotonic() - self._started)
        logger.info(
            f"Committed {self.realm}/{hash} ({self._size} bytes, "
            f"already existed: {already_existed}) in {elapsed.total_seconds():.3f}s"
        )
        if self._on_commit is not None:
            self._on_commit(elapsed, self.realm, hash, self._size, already_existed)
        return WriteResult(hash=hash, size=self._size, already_existed=already_existed)

    async def discard(self) -> None:
        """
        Abandon the blob without adding it to the store.

        Uploaded blocks are committed to the staging blob, which is then
        deleted after ``staging_delete_delay_s`` like any other staged blob.
        """
        if self._committed:
            raise StoreError("Writer already committed")
        self._committed = True
        try:
            await self._uploader.commit()
        finally:
            self._background.delete_later(self._staging_blob, self._settings.staging_delete_delay_s)
        logger.debug(f"Discarded {self._size} bytes written to {self._staging_blob.blob_name}")


async def commit_to_persistent(staging_blob: Any, final: Any, retry: RetryPolicy, settings: Settings) -> bool:
    """
    Commit a complete staging blob to ``final`` unless it already exists.

    Returns:
        True if ``final`` already existed

    Raises:
        BlobCommitError: Wrapping any failure of the copy
    """
    if await retry.or_false(final.exists):
        return True

    try:
        copied = await copy_to_persistent(read_url(staging_blob), final, retry, settings)
    except Exception as e:
        raise BlobCommitError(staging_blob.url, final.url) from e
    return not copied
