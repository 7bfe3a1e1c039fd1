"""
Dual stores, used while migrating from an old storage account to a new one.

Reads are served from whichever account holds the blob; blobs found only in
the old account are copied forward to the new one in the background. Writes
only ever go to the new account.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Union

from azure.core.exceptions import ResourceNotFoundError

from ..errors import CopyFailedError
from ..models import ArchiveState, DeletedBlobInfo, Hash, ListingCallback, WriteResult
from ..retry import RetryPolicy
from ..settings import Settings
from .background import BackgroundTasks, Once
from .blob_ref import BlobRef, blob_name, read_deleted_blob
from .read_stream import RemoteReadStream
from .signing import read_url
from .store import ReadOnlyStore, Store, WriteSource, deletion_record
from .writer import StreamingWriter, wait_for_copy

__all__ = ["DualBlobRef", "DualReadOnlyStore", "DualStore"]

logger = logging.getLogger(__name__)


class DualBlobRef:
    """
    Reference to a blob that may live in the old or the new account.

    The side serving reads is chosen once per instance, on first use:

    - new blob present, copy succeeded (or was never a copy): new
    - new blob present, copy aborted or failed: old if present (and the
      copy is started again), new otherwise
    - new blob present, copy pending: old if present, new otherwise
    - new blob absent: old if present (and the copy is started), new otherwise

    Not-found and deletion errors surface from the new side.
    """

    def __init__(
        self,
        old: BlobRef,
        new: BlobRef,
        *,
        retry: RetryPolicy,
        background: BackgroundTasks,
        settings: Settings,
    ) -> None:
        self.old = old
        self.new = new
        self._retry = retry
        self._background = background
        self._settings = settings
        self._chosen: Once[BlobRef] = Once(self._choose)

    @property
    def realm(self) -> str:
        return self.new.realm

    @property
    def hash(self) -> Hash:
        return self.new.hash

    def __repr__(self) -> str:
        return f"DualBlobRef(realm={self.realm!r}, hash={self.hash})"

    async def resolve(self) -> BlobRef:
        """The side serving reads for this reference."""
        return await self._chosen.get()

    async def _choose(self) -> BlobRef:
        name = self.new.blob.blob_name
        try:
            props = await self._retry.run(self.new.blob.get_blob_properties)
        except ResourceNotFoundError:
            if await self._old_exists():
                logger.warning(f"Blob {name} in account {self.realm} was not in new storage")
                self.start_copy()
                return self.old
            return self.new

        status = props.copy.status if props.copy is not None else None
        if status is None or status == "success":
            return self.new
        if status in ("aborted", "failed"):
            if await self._old_exists():
                logger.warning(f"Copy for blob {name} in account {self.realm} failed ({status})")
                self.start_copy()
                return self.old
            return self.new
        if status == "pending":
            if await self._old_exists():
                return self.old
            return self.new

        logger.error(f"Blob {name} in account {self.realm} cannot be copied to the new storage")
        raise CopyFailedError(name, status)

    async def _old_exists(self) -> bool:
        return await self._retry.run(self.old.blob.exists)

    def start_copy(self) -> None:
        """Copy the old blob to the new account in the background."""
        self._background.spawn(
            f"copy {self.realm}/{self.hash} to new storage",
            self.copy_forward,
            key=self.new.blob.url,
            bounded=True,
        )

    async def copy_forward(self) -> None:
        """
        Copy the old blob over the new one and wait for completion.

        The source is a signed URL when the old account key is available,
        otherwise the old blob's own URL (which carries its SAS, if any).
        """
        source = read_url(self.old.blob)
        await self._retry.run(lambda: self.new.blob.start_copy_from_url(source))
        await wait_for_copy(self.new.blob, self._retry, self._settings)
        logger.info(f"Copied {self.realm}/{self.hash} to new storage")

    async def get_blob(self) -> Any:
        return (await self.resolve()).blob

    async def exists(self) -> bool:
        return await (await self.resolve()).exists()

    async def get_size(self) -> int:
        return await (await self.resolve()).get_size()

    async def open(self) -> RemoteReadStream:
        return await (await self.resolve()).open()

    async def signed_download_url(
        self,
        now: datetime,
        life: timedelta,
        filename: str,
        content_type: str,
    ) -> str:
        chosen = await self.resolve()
        return await chosen.signed_download_url(now, life, filename, content_type)

    async def get_download_url(self, life: timedelta, filename: str, content_type: str) -> str:
        chosen = await self.resolve()
        return await chosen.get_download_url(life, filename, content_type)


class DualReadOnlyStore:
    """
    Read access to one realm across the old and new accounts.

    Args:
        old: Store reading the old account
        new: Store reading the new account (with its deletion records)
        retry: Policy wrapping every remote call
        background: Runner for copy-forward tasks
        settings: Copy polling settings
    """

    def __init__(
        self,
        old: ReadOnlyStore,
        new: ReadOnlyStore,
        *,
        retry: RetryPolicy,
        background: BackgroundTasks,
        settings: Settings,
    ) -> None:
        self.old = old
        self.new = new
        self._retry = retry
        self._background = background
        self._settings = settings

    @property
    def realm(self) -> str:
        return self.new.realm

    def __repr__(self) -> str:
        return f"{type(self).__name__}(realm={self.realm!r}, old={self.old.persistent.url!r}, new={self.new.persistent.url!r})"

    def __getitem__(self, hash: Union[Hash, str]) -> DualBlobRef:
        return DualBlobRef(
            self.old[hash],
            self.new[hash],
            retry=self._retry,
            background=self._background,
            settings=self._settings,
        )

    def is_same_store(self, other: object) -> bool:
        return (
            isinstance(other, DualReadOnlyStore)
            and self.old.is_same_store(other.old)
            and self.new.is_same_store(other.new)
        )

    async def list_blobs(self, prefix: int, callback: ListingCallback) -> int:
        """
        List blobs of both accounts, old first.

        Hashes are in ascending order within each account only, and a blob
        present in both accounts is reported twice.
        """
        count = await self.old.list_blobs(prefix, callback)
        count += await self.new.list_blobs(prefix, callback)
        return count


class DualStore(DualReadOnlyStore):
    """
    Read-write store during a migration: reads from both accounts, writes to
    the new one only.
    """

    def __init__(
        self,
        old: ReadOnlyStore,
        new: Store,
        *,
        retry: RetryPolicy,
        background: BackgroundTasks,
        settings: Settings,
    ) -> None:
        super().__init__(old, new, retry=retry, background=background, settings=settings)
        self.new: Store = new

    def new_staging_name(self) -> str:
        return self.new.new_staging_name()

    def start_writing(self) -> StreamingWriter:
        return self.new.start_writing()

    async def write(self, source: WriteSource) -> WriteResult:
        return await self.new.write(source)

    def get_signed_upload_url(self, name: str, life: timedelta) -> str:
        return self.new.get_signed_upload_url(name, life)

    async def commit_staged(self, name: str) -> BlobRef:
        return await self.new.commit_staged(name)

    async def delete_with_reason(self, hash: Hash, reason: str) -> DeletedBlobInfo:
        """
        Delete a blob from both accounts, recording the deletion in the new one.

        Both accounts are checked directly; nothing is copied forward.

        Raises:
            NoSuchBlobError: If neither account holds the blob
            DeletedBlobError: If the blob was already deleted with a reason
        """
        name = blob_name(self.realm, hash)
        props = None
        for store in (self.new, self.old):
            try:
                props = await self._retry.run(store.persistent.get_blob_client(name).get_blob_properties)
            except ResourceNotFoundError:
                continue
            break
        if props is None:
            raise await read_deleted_blob(self.new.deleted, self.realm, hash, self._retry)

        info = deletion_record(props, reason)
        await self.new.write_deletion_record(name, info)

        for store in (self.old, self.new):
            blob = store.persistent.get_blob_client(name)
            try:
                await self._retry.run(blob.delete_blob)
            except ResourceNotFoundError:
                continue

        logger.info(f"Deleted {name} from both accounts ({info.size} bytes): {reason}")
        return info

    async def archive_blob(self, ref: Union[BlobRef, DualBlobRef]) -> bool:
        return await self.new.archive_blob(ref)

    async def try_unarchive_blob(self, hash: Hash) -> ArchiveState:
        return await self.new.try_unarchive_blob(hash)
