"""
Handles to individual blobs of a content-addressable store.

A BlobRef does not guarantee existence: it names the location where content
with a given hash would live, and checks the backend lazily.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from azure.core.exceptions import ResourceNotFoundError
from azure.storage.blob import BlobSasPermissions

from ..errors import DeletedBlobError, NoSuchBlobError
from ..filenames import content_disposition
from ..models import DeletedBlobInfo, Hash
from ..retry import RetryPolicy
from .read_stream import RangeReader, RemoteReadStream
from .signing import read_url, signed_url

__all__ = ["BlobRef", "blob_name", "read_deleted_blob", "DOWNLOAD_CLOCK_SKEW"]

logger = logging.getLogger(__name__)

# Download URLs become valid slightly in the past to tolerate clock skew
DOWNLOAD_CLOCK_SKEW = timedelta(minutes=5)


def blob_name(realm: str, hash: Hash) -> str:
    """Name of the blob holding ``hash`` within ``realm``."""
    return f"{realm}/{hash}"


async def read_deleted_blob(
    deleted: Optional[Any],
    realm: str,
    hash: Hash,
    retry: RetryPolicy,
) -> Exception:
    """
    Build the error describing why ``hash`` is missing from ``realm``.

    Looks for a deletion record in the ``deleted`` container.

    Returns:
        DeletedBlobError carrying the deletion record if one exists,
        NoSuchBlobError otherwise
    """
    if deleted is None:
        return NoSuchBlobError(realm, hash)

    record = deleted.get_blob_client(blob_name(realm, hash))

    async def download() -> bytes:
        downloader = await record.download_blob()
        return await downloader.readall()

    try:
        data = await retry.run(download)
    except ResourceNotFoundError:
        return NoSuchBlobError(realm, hash)

    info = DeletedBlobInfo.from_json(data)
    logger.debug(f"Blob {hash} in realm {realm} was deleted: {info.reason}")
    return DeletedBlobError(info, realm, hash)


class BlobRef:
    """
    Reference to the persistent blob for ``(realm, hash)``.

    Args:
        realm: Blob name prefix separating the content of each account
        hash: Content hash of the blob
        blob: Azure aio blob client for the persistent location
        deleted: Container holding deletion records, if any
        retry: Policy wrapping every remote call
        reader: Shared range reader for streams opened from this reference
    """

    def __init__(
        self,
        realm: str,
        hash: Hash,
        blob: Any,
        deleted: Optional[Any] = None,
        *,
        retry: RetryPolicy,
        reader: RangeReader,
    ) -> None:
        self.realm = realm
        self.hash = hash
        self.blob = blob
        self.deleted = deleted
        self._retry = retry
        self._reader = reader

    def __repr__(self) -> str:
        return f"BlobRef(realm={self.realm!r}, hash={self.hash})"

    async def get_blob(self) -> Any:
        """The Azure blob client holding the data."""
        return self.blob

    async def exists(self) -> bool:
        return await self._retry.run(self.blob.exists)

    async def get_size(self) -> int:
        """
        Size of the blob in bytes.

        Raises:
            NoSuchBlobError: If the blob does not exist
            DeletedBlobError: If the blob was deleted with a reason
        """
        try:
            props = await self._retry.run(self.blob.get_blob_properties)
        except ResourceNotFoundError:
            raise await read_deleted_blob(self.deleted, self.realm, self.hash, self._retry) from None
        return props.size

    async def open(self) -> RemoteReadStream:
        """Open a seekable read stream over the blob."""
        size = await self.get_size()
        return RemoteReadStream(lambda: read_url(self.blob), size, reader=self._reader)

    async def signed_download_url(
        self,
        now: datetime,
        life: timedelta,
        filename: str,
        content_type: str,
    ) -> str:
        """
        Read-only URL valid from ``now - 5 min`` until ``now + life``.

        Azure returns the blob with an ``attachment`` Content-Disposition
        carrying the sanitized ``filename``, and with ``content_type``.
        Existence is not checked.
        """
        return signed_url(
            self.blob,
            BlobSasPermissions(read=True),
            now + life,
            start=now - DOWNLOAD_CLOCK_SKEW,
            content_disposition=content_disposition(filename),
            content_type=content_type or None,
        )

    async def get_download_url(self, life: timedelta, filename: str, content_type: str) -> str:
        """
        Signed download URL for an existing blob.

        Raises:
            NoSuchBlobError: If the blob does not exist
            DeletedBlobError: If the blob was deleted with a reason
        """
        if not await self.exists():
            # Raises the not-found or deleted error
            await self.get_size()
        return await self.signed_download_url(datetime.now(timezone.utc), life, filename, content_type)
