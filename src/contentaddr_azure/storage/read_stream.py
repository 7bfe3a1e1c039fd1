"""
Seekable read stream over an immutable Azure blob.

Blobs in the store never change once written, so reads need no ETag checks:
each read is a plain ranged GET against a freshly signed URL. The stream is
optimized for two access patterns:

- async bulk mode (:meth:`RemoteReadStream.read_async`), where every call
  issues one ranged request for exactly the requested bytes and nothing is
  buffered;
- sync mode (``read``/``readinto``/:meth:`RemoteReadStream.read_byte`), which
  assumes many small reads and serves them from a buffer of up to 4 MiB.
"""
from __future__ import annotations

import io
import logging
from typing import Callable, Optional

import httpx

from ..errors import StoreError
from ..retry import RetryPolicy

__all__ = ["RangeReader", "RemoteReadStream", "BUFFER_SIZE"]

logger = logging.getLogger(__name__)

BUFFER_SIZE = 4 * 1024 * 1024

UrlFactory = Callable[[], str]


def _range_headers(start: int, count: int) -> dict:
    return {"x-ms-range": f"bytes={start}-{start + count - 1}"}


def _check_body(data: bytes, start: int, count: int) -> bytes:
    if len(data) != count:
        raise StoreError(
            f"Range read at {start} returned {len(data)} bytes, expected {count}"
        )
    return data


class RangeReader:
    """
    Issues ranged GET requests through httpx, retrying transient failures.

    One reader (and its connection pools) is shared by every stream opened
    from the same factory.

    Args:
        retry: Policy applied to each request
        timeout: Per-request timeout in seconds
        transport: Optional httpx transport (used by tests to serve blobs in memory)
    """

    def __init__(
        self,
        retry: RetryPolicy,
        *,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._retry = retry
        self._client = httpx.Client(timeout=timeout, transport=transport)
        self._async_client = httpx.AsyncClient(timeout=timeout, transport=transport)

    def read(self, url_factory: UrlFactory, start: int, count: int) -> bytes:
        """Read ``count`` bytes starting at ``start``."""
        def attempt() -> bytes:
            response = self._client.get(url_factory(), headers=_range_headers(start, count))
            response.raise_for_status()
            return _check_body(response.content, start, count)

        logger.debug(f"Reading {count} bytes at {start}")
        return self._retry.run_sync(attempt)

    async def read_async(self, url_factory: UrlFactory, start: int, count: int) -> bytes:
        """Read ``count`` bytes starting at ``start`` without blocking the loop."""
        async def attempt() -> bytes:
            response = await self._async_client.get(url_factory(), headers=_range_headers(start, count))
            response.raise_for_status()
            return _check_body(response.content, start, count)

        logger.debug(f"Reading {count} bytes at {start} (async)")
        return await self._retry.run(attempt)

    def close(self) -> None:
        self._client.close()

    @property
    def closed(self) -> bool:
        return self._async_client.is_closed

    async def aclose(self) -> None:
        self._client.close()
        await self._async_client.aclose()


class RemoteReadStream(io.RawIOBase):
    """
    Read-only, seekable stream over an immutable blob of known length.

    The stream position only moves once a request has succeeded, so a read
    that fails (even after retries) can be repeated by the caller.

    Args:
        url_factory: Returns a readable URL for the blob; called once per request
        length: Total size of the blob in bytes
        reader: Shared RangeReader performing the requests
        buffer_size: Maximum size of the sync-mode buffer
    """

    def __init__(
        self,
        url_factory: UrlFactory,
        length: int,
        *,
        reader: RangeReader,
        buffer_size: int = BUFFER_SIZE,
    ) -> None:
        super().__init__()
        self._url_factory = url_factory
        self._length = length
        self._reader = reader
        self._buffer_size = buffer_size
        self._position = 0

        # Sync-mode buffer holds blob bytes starting at (position - buffer_offset)
        self._buffer: Optional[bytes] = None
        self._buffer_offset = 0
        self._buffer_end = 0

    @property
    def length(self) -> int:
        return self._length

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return True

    def tell(self) -> int:
        return self._position

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        """
        Move to a new position.

        Raises:
            ValueError: If the target falls outside ``[0, length]``
        """
        if whence == io.SEEK_CUR:
            offset += self._position
        elif whence == io.SEEK_END:
            offset += self._length
        elif whence != io.SEEK_SET:
            raise ValueError(f"Invalid whence: {whence}")

        if offset < 0 or offset > self._length:
            raise ValueError(f"Position {offset} should be in 0 .. {self._length}")

        if self._buffer is not None:
            buffer_start = self._position - self._buffer_offset
            buffer_end = buffer_start + self._buffer_end
            if buffer_start <= offset < buffer_end:
                self._buffer_offset = offset - buffer_start
            else:
                self._drop_buffer()

        self._position = offset
        return offset

    def readinto(self, b) -> int:
        if self.closed:
            raise ValueError("I/O operation on closed stream")

        view = memoryview(b).cast("B")
        count = min(len(view), self._length - self._position)
        if count <= 0:
            return 0

        if count >= self._buffer_size:
            # Large reads go straight to the blob
            self._drop_buffer()
            view[:count] = self._reader.read(self._url_factory, self._position, count)
            self._position += count
            return count

        available = self._buffer_end - self._buffer_offset
        if available >= count:
            start = self._buffer_offset
            view[:count] = self._buffer[start:start + count]
            self._buffer_offset += count
            self._position += count
            return count

        # Read spans the rest of the current buffer and the start of the next one
        fresh = self._fetch_buffer(self._position + available)
        if available > 0:
            view[:available] = self._buffer[self._buffer_offset:self._buffer_end]
        rest = count - available
        view[available:count] = fresh[:rest]

        self._buffer = fresh
        self._buffer_offset = rest
        self._buffer_end = len(fresh)
        self._position += count
        return count

    def read_byte(self) -> int:
        """Read a single byte, returning -1 at end of blob."""
        if self.closed:
            raise ValueError("I/O operation on closed stream")

        if self._buffer_offset == self._buffer_end:
            if self._position >= self._length:
                return -1
            self._buffer = self._fetch_buffer(self._position)
            self._buffer_offset = 0
            self._buffer_end = len(self._buffer)

        value = self._buffer[self._buffer_offset]
        self._buffer_offset += 1
        self._position += 1
        return value

    async def read_async(self, size: int = -1) -> bytes:
        """
        Read up to ``size`` bytes (all remaining bytes if negative) with a
        single ranged request.
        """
        if self.closed:
            raise ValueError("I/O operation on closed stream")

        remaining = self._length - self._position
        count = remaining if size < 0 else min(size, remaining)
        if count <= 0:
            return b""

        # The sync buffer would no longer line up with the position
        self._drop_buffer()
        data = await self._reader.read_async(self._url_factory, self._position, count)
        self._position += count
        return data

    async def readinto_async(self, b) -> int:
        """Async counterpart of ``readinto``, without buffering."""
        view = memoryview(b).cast("B")
        data = await self.read_async(len(view))
        view[:len(data)] = data
        return len(data)

    def close(self) -> None:
        self._drop_buffer()
        super().close()

    def _fetch_buffer(self, start: int) -> bytes:
        size = min(self._buffer_size, self._length - start)
        return self._reader.read(self._url_factory, start, size)

    def _drop_buffer(self) -> None:
        self._buffer = None
        self._buffer_offset = 0
        self._buffer_end = 0
