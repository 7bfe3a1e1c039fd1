"""
Store error classes.

Provides a clear taxonomy of errors that can occur during store operations.
Transient backend failures never show up here unless the retry budget is
exhausted; everything else propagates from the call that detected it.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .models import DeletedBlobInfo, Hash


class StoreError(Exception):
    """Base class for all content-addressable store errors."""
    pass


class NoSuchBlobError(StoreError):
    """
    The blob does not exist and no deletion record was found for it.

    Raised when:
    - Reading the size or contents of a blob that was never written
    - Requesting a download URL for such a blob
    """

    def __init__(self, realm: str, hash: Hash):
        super().__init__(f"Blob {hash} not found in realm '{realm}'.")
        self.realm = realm
        self.hash = hash


class DeletedBlobError(StoreError):
    """
    The blob does not exist because it was deliberately deleted.

    Carries the deletion record so callers can report why the content is gone.
    """

    def __init__(self, info: DeletedBlobInfo, realm: str, hash: Hash, location: Optional[str] = None):
        message = f"Blob {hash} not found in realm '{realm}' but was deleted ({info.reason})."
        if location is not None:
            message += f"\nAt: {location}"
        super().__init__(message)
        self.info = info
        self.realm = realm
        self.hash = hash


class BlobCommitError(StoreError):
    """
    A staged blob could not be committed to its content-addressed location.

    The underlying failure, if any, is available as ``__cause__``.
    """

    def __init__(self, staging: str, final: Optional[str], message: Optional[str] = None):
        if message is None:
            message = f"Could not commit blob from '{staging}' to '{final}'"
        super().__init__(message)
        self.staging = staging
        self.final = final


class CopyFailedError(StoreError):
    """A server-side copy reached a terminal state other than success."""

    def __init__(self, name: str, status: Optional[str]):
        super().__init__(f"Internal copy for '{name}' failed ({status})")
        self.name = name
        self.status = status


class HashMismatchError(StoreError):
    """
    Content does not hash to the expected value.

    Indicates data corruption, so it is never retried.
    """

    def __init__(self, message: str, expected: Optional[Hash] = None, actual: Optional[Hash] = None):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class RetriesExhaustedError(StoreError, TimeoutError):
    """A remote call kept failing transiently for longer than the retry budget."""
    pass


__all__ = [
    "StoreError",
    "NoSuchBlobError",
    "DeletedBlobError",
    "BlobCommitError",
    "CopyFailedError",
    "HashMismatchError",
    "RetriesExhaustedError",
]
