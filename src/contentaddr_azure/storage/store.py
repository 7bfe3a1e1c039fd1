"""
Content-addressable stores backed by Azure Blob Storage containers.

A store serves one realm (account). Blobs live in the persistent container
under ``<realm>/<HASH>``. Writable stores additionally use:

- a staging container, for blobs whose hash is not known yet;
- an archive container, for gzip-compressed copies in the Archive tier;
- a deleted container, for records of blobs deleted with a reason.
"""
from __future__ import annotations

import hashlib
import logging
import time
import uuid
import zlib
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterable, BinaryIO, Iterable, Optional, Union

from azure.core.exceptions import HttpResponseError, ResourceNotFoundError
from azure.storage.blob import RehydratePriority, StandardBlobTier

from ..errors import BlobCommitError, HashMismatchError, StoreError
from ..models import ArchiveState, CommitObserver, DeletedBlobInfo, Hash, ListingCallback, WriteResult
from ..retry import RetryPolicy
from ..settings import Settings
from .background import BackgroundTasks
from .blob_ref import BlobRef, blob_name, read_deleted_blob
from .read_stream import RangeReader, RemoteReadStream
from .signing import read_url, upload_url
from .writer import MAX_BLOCK_SIZE, BlockUploader, StreamingWriter, commit_to_persistent

__all__ = ["ReadOnlyStore", "Store", "WriteSource", "deletion_record"]

logger = logging.getLogger(__name__)

WriteSource = Union[bytes, bytearray, memoryview, BinaryIO, Iterable[bytes], AsyncIterable[bytes]]


def deletion_record(props: Any, reason: str) -> DeletedBlobInfo:
    """Deletion record for a blob about to be deleted, from its properties."""
    return DeletedBlobInfo(
        created=props.creation_time or props.last_modified,
        deleted=datetime.now(timezone.utc),
        reason=reason,
        size=props.size,
    )


class ReadOnlyStore:
    """
    Read access to the blobs of one realm.

    Args:
        realm: Blob name prefix, usually the account id in decimal
        persistent: Azure aio container client holding the blobs
        deleted: Container holding deletion records, if available
        settings: Store settings
        retry: Policy wrapping every remote call
        reader: Shared range reader
        background: Shared background task runner
    """

    def __init__(
        self,
        realm: str,
        persistent: Any,
        deleted: Optional[Any] = None,
        *,
        settings: Settings,
        retry: RetryPolicy,
        reader: RangeReader,
        background: BackgroundTasks,
    ) -> None:
        self.realm = realm
        self.persistent = persistent
        self.deleted = deleted
        self._settings = settings
        self._retry = retry
        self._reader = reader
        self._background = background

    def __repr__(self) -> str:
        return f"{type(self).__name__}(realm={self.realm!r}, container={self.persistent.url!r})"

    def __getitem__(self, hash: Union[Hash, str]) -> BlobRef:
        if isinstance(hash, str):
            hash = Hash.parse(hash)
        return BlobRef(
            self.realm,
            hash,
            self.persistent.get_blob_client(blob_name(self.realm, hash)),
            self.deleted,
            retry=self._retry,
            reader=self._reader,
        )

    def is_same_store(self, other: object) -> bool:
        """True if ``other`` reads the same realm of the same container."""
        return (
            isinstance(other, ReadOnlyStore)
            and other.persistent.url == self.persistent.url
            and other.realm == self.realm
        )

    async def list_blobs(self, prefix: int, callback: ListingCallback) -> int:
        """
        List the blobs whose hash starts with byte ``prefix``.

        Blobs are reported in ascending hash order through
        ``callback(hash, size, last_modified)``. Names that do not end with a
        hash, and blobs without a modification date, are skipped.

        Returns:
            Number of blobs reported
        """
        if not 0 <= prefix <= 0xFF:
            raise ValueError(f"prefix must be a byte, got {prefix}")

        count = 0
        async for item in self.persistent.list_blobs(name_starts_with=f"{self.realm}/{prefix:02X}"):
            hash = Hash.try_parse(item.name[-32:])
            if hash is None or item.last_modified is None:
                continue
            count += 1
            callback(hash, item.size, item.last_modified)

        logger.debug(f"Listed {count} blob(s) for {self.realm}/{prefix:02X}")
        return count


class Store(ReadOnlyStore):
    """
    Read-write store for one realm.

    Supports streaming writes, committing blobs uploaded to the staging
    container, deletion with a reason, and the archive lifecycle.

    Args:
        staging: Container for blobs not yet content-addressed
        archive: Container for compressed archived blobs
        on_commit: Optional observer called after each commit

    See ReadOnlyStore for the other arguments.
    """

    def __init__(
        self,
        realm: str,
        persistent: Any,
        staging: Any,
        archive: Any,
        deleted: Any,
        *,
        settings: Settings,
        retry: RetryPolicy,
        reader: RangeReader,
        background: BackgroundTasks,
        on_commit: Optional[CommitObserver] = None,
    ) -> None:
        super().__init__(
            realm,
            persistent,
            deleted,
            settings=settings,
            retry=retry,
            reader=reader,
            background=background,
        )
        self.staging = staging
        self.archive = archive
        self._on_commit = on_commit

    # ---- Writing ----

    def new_staging_name(self) -> str:
        """
        Fresh staging blob name, ``yyyy-mm-dd/<realm>/<uuid>``.

        The date prefix eases cleanup of abandoned uploads.
        """
        return f"{datetime.now(timezone.utc):%Y-%m-%d}/{self.realm}/{uuid.uuid4()}"

    def start_writing(self) -> StreamingWriter:
        """Start writing a new blob; see StreamingWriter."""
        return StreamingWriter(
            self.realm,
            self.persistent,
            self.staging.get_blob_client(self.new_staging_name()),
            retry=self._retry,
            background=self._background,
            settings=self._settings,
            on_commit=self._on_commit,
        )

    async def write(self, source: WriteSource) -> WriteResult:
        """
        Write ``source`` to the store and commit it.

        Args:
            source: Bytes, a binary file object, or a (sync or async)
                iterable of byte chunks

        Returns:
            WriteResult of the commit
        """
        writer = self.start_writing()
        if isinstance(source, (bytes, bytearray, memoryview)):
            writer.write(source)
        elif hasattr(source, "read"):
            while True:
                chunk = source.read(MAX_BLOCK_SIZE)
                if not chunk:
                    break
                await writer.write(chunk)
        elif hasattr(source, "__aiter__"):
            async for chunk in source:
                await writer.write(chunk)
        else:
            for chunk in source:
                await writer.write(chunk)
        return await writer.commit()

    def get_signed_upload_url(self, name: str, life: timedelta) -> str:
        """
        Signed URL (write and delete permissions) for uploading a staging blob.

        Commit the uploaded blob with :meth:`commit_staged`. Names should
        follow :meth:`new_staging_name`.
        """
        return upload_url(self.staging.get_blob_client(name), life)

    async def commit_staged(self, name: str) -> BlobRef:
        """
        Commit a blob uploaded to the staging container.

        The blob is read back in 4 MiB chunks to compute its hash, then
        copied to its content-addressed location. The staged blob is deleted
        after ``uploaded_delete_delay_s``.

        Raises:
            BlobCommitError: If the staged blob does not exist or cannot be copied
        """
        started = time.monotonic()
        staged = self.staging.get_blob_client(name)
        try:
            props = await self._retry.run(staged.get_blob_properties)
        except ResourceNotFoundError as e:
            raise BlobCommitError(
                staged.url, None, f"Could not commit '{name}' in realm {self.realm}: staged blob does not exist."
            ) from e

        stream = RemoteReadStream(lambda: read_url(staged), props.size, reader=self._reader)
        md5 = hashlib.md5()
        while True:
            chunk = await stream.read_async(MAX_BLOCK_SIZE)
            if not chunk:
                break
            md5.update(chunk)
        hash = Hash(md5.digest())

        final = self.persistent.get_blob_client(blob_name(self.realm, hash))
        try:
            already_existed = await commit_to_persistent(staged, final, self._retry, self._settings)
        finally:
            self._background.delete_later(staged, self._settings.uploaded_delete_delay_s)

        elapsed = timedelta(seconds=time.monotonic() - started)
        logger.info(f"Committed staged {name} as {self.realm}/{hash} ({props.size} bytes)")
        if self._on_commit is not None:
            self._on_commit(elapsed, self.realm, hash, props.size, already_existed)
        return self[hash]

    # ---- Deletion ----

    async def delete_with_reason(self, hash: Hash, reason: str) -> DeletedBlobInfo:
        """
        Delete a blob, leaving a deletion record behind.

        Later reads of the blob fail with DeletedBlobError carrying ``reason``
        and the original size.

        Raises:
            NoSuchBlobError: If the blob does not exist
            DeletedBlobError: If the blob was already deleted with a reason
        """
        name = blob_name(self.realm, hash)
        blob = self.persistent.get_blob_client(name)
        try:
            props = await self._retry.run(blob.get_blob_properties)
        except ResourceNotFoundError:
            raise await read_deleted_blob(self.deleted, self.realm, hash, self._retry) from None

        info = deletion_record(props, reason)
        await self.write_deletion_record(name, info)

        try:
            await self._retry.run(blob.delete_blob)
        except ResourceNotFoundError:
            logger.debug(f"{name} disappeared before deletion")

        logger.info(f"Deleted {name} ({info.size} bytes): {reason}")
        return info

    async def write_deletion_record(self, name: str, info: DeletedBlobInfo) -> None:
        if self.deleted is None:
            raise StoreError(f"Store for realm {self.realm} has no container for deletion records")
        record = self.deleted.get_blob_client(name)
        await self._retry.run(lambda: record.upload_blob(info.to_json(), overwrite=True))

    # ---- Archive lifecycle ----

    async def archive_blob(self, ref: BlobRef) -> bool:
        """
        Compress a blob into the archive container and move it to the Archive tier.

        The persistent blob is kept. Nothing happens if an archived copy
        already exists.

        Returns:
            True if the blob was archived by this call
        """
        source = await ref.get_blob()
        target = self.archive.get_blob_client(source.blob_name)
        if await self._retry.run(target.exists):
            logger.debug(f"{source.blob_name} is already archived")
            return False

        stream = await ref.open()
        compressor = zlib.compressobj(wbits=31)
        uploader = BlockUploader(target, self._retry)
        pending = bytearray()
        while True:
            chunk = await stream.read_async(MAX_BLOCK_SIZE)
            if not chunk:
                break
            pending += compressor.compress(chunk)
            if len(pending) >= MAX_BLOCK_SIZE:
                await uploader.stage(bytes(pending))
                pending.clear()
        pending += compressor.flush()
        await uploader.stage(bytes(pending))
        await uploader.commit()

        await self._retry.run(lambda: target.set_standard_blob_tier(StandardBlobTier.ARCHIVE))
        logger.info(f"Archived {source.blob_name} ({stream.length} bytes)")
        return True

    async def try_unarchive_blob(self, hash: Hash) -> ArchiveState:
        """
        Advance the restoration of an archived blob by one step.

        Restoring takes hours, so this is meant to be called repeatedly until
        it returns DONE. The state is recomputed from what exists:

        1. persistent blob exists: DONE
        2. staging copy exists: REHYDRATING until it reaches the Hot tier,
           then it is decompressed into the persistent container: DONE
        3. archive blob exists: start a rehydrating copy into staging: REHYDRATING
        4. otherwise: DOES_NOT_EXIST

        Raises:
            HashMismatchError: If the decompressed content does not match ``hash``
        """
        name = blob_name(self.realm, hash)

        if await self._retry.run(self.persistent.get_blob_client(name).exists):
            return ArchiveState.DONE

        staged = self.staging.get_blob_client(name)
        if await self._retry.run(staged.exists):
            props = await self._retry.run(staged.get_blob_properties)
            copy_status = props.copy.status if props.copy is not None else None
            if props.blob_tier != StandardBlobTier.HOT or copy_status == "pending":
                return ArchiveState.REHYDRATING

            await self._restore_from_staging(staged, props.size, hash)
            return ArchiveState.DONE

        archived = self.archive.get_blob_client(name)
        if not await self._retry.run(archived.exists):
            return ArchiveState.DOES_NOT_EXIST

        try:
            await self._retry.run(lambda: staged.start_copy_from_url(
                read_url(archived),
                standard_blob_tier=StandardBlobTier.HOT,
                rehydrate_priority=RehydratePriority.HIGH,
            ))
        except HttpResponseError as e:
            # Another caller started the same rehydration
            if e.status_code != 409:
                raise
        logger.info(f"Started rehydration of {name}")
        return ArchiveState.REHYDRATING

    async def _restore_from_staging(self, staged: Any, size: int, hash: Hash) -> None:
        stream = RemoteReadStream(lambda: read_url(staged), size, reader=self._reader)
        decompressor = zlib.decompressobj(wbits=31)
        writer = self.start_writing()

        while True:
            chunk = await stream.read_async(MAX_BLOCK_SIZE)
            if not chunk:
                break
            data = decompressor.decompress(chunk, MAX_BLOCK_SIZE)
            while data:
                await writer.write(data)
                data = decompressor.decompress(decompressor.unconsumed_tail, MAX_BLOCK_SIZE)
        tail = decompressor.flush()
        if tail:
            await writer.write(tail)

        if writer.hash != hash:
            await writer.discard()
            raise HashMismatchError(
                f"Unarchiving {staged.blob_name} produces incorrect hash {writer.hash}",
                expected=hash,
                actual=writer.hash,
            )

        await writer.commit()
        self._background.delete_later(staged, self._settings.uploaded_delete_delay_s)
        logger.info(f"Restored {staged.blob_name} from archive")
