"""
Storage package - Azure Blob Storage backend of the content-addressable store.

Stores and factories for single accounts and for migrations between two
accounts, with the streaming writer, read stream and archive lifecycle they
rely on.
"""
from .blob_ref import BlobRef
from .dual import DualBlobRef, DualReadOnlyStore, DualStore
from .factory import (
    DualStoreFactory,
    StoreFactory,
    create_factory_from_settings,
    parse_config,
    split_dual_config,
)
from .read_stream import RangeReader, RemoteReadStream
from .store import ReadOnlyStore, Store
from .writer import StreamingWriter

__all__ = [
    "BlobRef",
    "DualBlobRef",
    "DualReadOnlyStore",
    "DualStore",
    "DualStoreFactory",
    "StoreFactory",
    "create_factory_from_settings",
    "parse_config",
    "split_dual_config",
    "RangeReader",
    "RemoteReadStream",
    "ReadOnlyStore",
    "Store",
    "StreamingWriter",
]
