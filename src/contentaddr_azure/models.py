"""
Data models for the content-addressable store.

Value types shared by stores, writers and the archive lifecycle: content
hashes, write results, archive states and the JSON deletion record.
"""
from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "Hash",
    "WriteResult",
    "ArchiveState",
    "DeletedBlobInfo",
    "CommitObserver",
    "ListingCallback",
]

_HEX32 = re.compile(r"[0-9a-fA-F]{32}")


@dataclass(frozen=True, slots=True)
class Hash:
    """
    MD5 content hash, the identity of a stored blob.

    Rendered as 32 uppercase hex characters (this is also the blob name suffix);
    parsing accepts either case.
    """
    digest: bytes

    def __post_init__(self) -> None:
        if len(self.digest) != 16:
            raise ValueError(f"Hash digest must be 16 bytes, got {len(self.digest)}")

    @classmethod
    def of(cls, data: bytes) -> Hash:
        """Hash of the given bytes."""
        return cls(hashlib.md5(data).digest())

    @classmethod
    def parse(cls, text: str) -> Hash:
        """Parse 32 hex characters, raising ValueError when malformed."""
        if not _HEX32.fullmatch(text):
            raise ValueError(f"Invalid hash: {text!r}")
        return cls(bytes.fromhex(text))

    @classmethod
    def try_parse(cls, text: str) -> Optional[Hash]:
        """Parse 32 hex characters, or return None."""
        if not _HEX32.fullmatch(text):
            return None
        return cls(bytes.fromhex(text))

    @property
    def first_byte(self) -> int:
        """Leading byte, used to shard listings."""
        return self.digest[0]

    def __str__(self) -> str:
        return self.digest.hex().upper()

    def __repr__(self) -> str:
        return f"Hash('{self}')"


@dataclass(frozen=True, slots=True)
class WriteResult:
    """Outcome of committing a written blob."""
    hash: Hash
    size: int
    already_existed: bool = False


class ArchiveState(str, Enum):
    """
    State of an archived blob, recomputed on every call from what exists in
    the persistent, staging and archive containers.
    """
    DOES_NOT_EXIST = "does-not-exist"
    REHYDRATING = "rehydrating"
    DONE = "done"


class DeletedBlobInfo(BaseModel):
    """
    Deletion record stored in the "deleted" container when a blob is removed
    with a reason. Serialized with the field names ``Created``, ``Deleted``,
    ``Reason`` and ``Size``.
    """
    model_config = ConfigDict(populate_by_name=True)

    GDPR: ClassVar[str] = "GDPR"

    created: datetime = Field(..., alias="Created", description="When the blob was originally created")
    deleted: datetime = Field(..., alias="Deleted", description="When the blob was deleted")
    reason: str = Field(..., alias="Reason", description="Human-readable reason for the deletion")
    size: int = Field(..., alias="Size", description="Size of the deleted blob in bytes")

    def to_json(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")

    @classmethod
    def from_json(cls, data: bytes) -> DeletedBlobInfo:
        return cls.model_validate_json(data)


# Called after each commit with (elapsed, realm, hash, size, already_existed).
CommitObserver = Callable[[timedelta, str, Hash, int, bool], None]

# Called for each listed blob with (hash, size, last_modified).
ListingCallback = Callable[[Hash, int, datetime], None]
