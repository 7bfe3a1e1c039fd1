"""
Content-addressable blob store on Azure Blob Storage.

Blobs are identified by the MD5 hash of their content and partitioned by
realm (account). See :mod:`contentaddr_azure.storage` for stores and
factories.
"""
from .errors import (
    BlobCommitError,
    CopyFailedError,
    DeletedBlobError,
    HashMismatchError,
    NoSuchBlobError,
    RetriesExhaustedError,
    StoreError,
)
from .models import ArchiveState, DeletedBlobInfo, Hash, WriteResult
from .retry import RetryPolicy
from .settings import Settings, create_settings_from_env

__version__ = "0.1.0"

__all__ = [
    "BlobCommitError",
    "CopyFailedError",
    "DeletedBlobError",
    "HashMismatchError",
    "NoSuchBlobError",
    "RetriesExhaustedError",
    "StoreError",
    "ArchiveState",
    "DeletedBlobInfo",
    "Hash",
    "WriteResult",
    "RetryPolicy",
    "Settings",
    "create_settings_from_env",
]
