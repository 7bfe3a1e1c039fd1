"""
Shared access signature (SAS) helpers.

Signing a blob URL needs the storage account key. Clients created from a SAS
connection string carry no key, so they can only hand out their own URL.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from azure.storage.blob import BlobSasPermissions, generate_blob_sas

from ..errors import StoreError

__all__ = [
    "account_key",
    "can_sign",
    "signed_url",
    "read_url",
    "upload_url",
]

logger = logging.getLogger(__name__)

# Lifetime of URLs used internally by range reads and server-side copies
INTERNAL_URL_LIFE = timedelta(days=1)


def account_key(blob: Any) -> Optional[str]:
    """Account key of the credential behind ``blob``, if any."""
    return getattr(getattr(blob, "credential", None), "account_key", None)


def can_sign(blob: Any) -> bool:
    """True if SAS URLs can be generated for ``blob``."""
    return account_key(blob) is not None


def signed_url(
    blob: Any,
    permission: BlobSasPermissions,
    expiry: datetime,
    *,
    start: Optional[datetime] = None,
    content_disposition: Optional[str] = None,
    content_type: Optional[str] = None,
) -> str:
    """
    Sign ``blob``'s URL with the account key.

    Args:
        blob: Azure blob client (sync or aio)
        permission: Permissions granted by the signature
        expiry: End of the validity window
        start: Start of the validity window (defaults to immediately)
        content_disposition: Content-Disposition header Azure returns with the blob
        content_type: Content-Type header Azure returns with the blob

    Returns:
        Blob URL with the SAS query string appended

    Raises:
        StoreError: If the blob client holds no account key
    """
    key = account_key(blob)
    if key is None:
        raise StoreError(f"Cannot sign URL for '{blob.blob_name}': no account key available")

    sas = generate_blob_sas(
        account_name=blob.account_name,
        container_name=blob.container_name,
        blob_name=blob.blob_name,
        account_key=key,
        permission=permission,
        expiry=expiry,
        start=start,
        content_disposition=content_disposition,
        content_type=content_type,
    )
    return f"{blob.url}?{sas}"


def read_url(blob: Any, life: timedelta = INTERNAL_URL_LIFE) -> str:
    """
    URL from which ``blob`` can be read.

    Signed with read permission when possible; SAS-based clients already
    carry their signature in their own URL.
    """
    if not can_sign(blob):
        return blob.url
    expiry = datetime.now(timezone.utc) + life
    return signed_url(blob, BlobSasPermissions(read=True), expiry)


def upload_url(blob: Any, life: timedelta) -> str:
    """Signed URL allowing a client to upload (and delete) ``blob``."""
    expiry = datetime.now(timezone.utc) + life
    logger.debug(f"Signing upload URL for {blob.blob_name}, valid until {expiry.isoformat()}")
    return signed_url(blob, BlobSasPermissions(write=True, delete=True), expiry)
