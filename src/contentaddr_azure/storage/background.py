"""
Background work that outlives the call that triggered it.

Copy-forward during migrations and delayed deletion of staged blobs are not
awaited by the operation that starts them. They run as tasks owned by
BackgroundTasks, whose failures are logged and dropped.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, Set, TypeVar

from azure.core.exceptions import ResourceNotFoundError

from ..retry import RetryPolicy

__all__ = ["BackgroundTasks", "Once"]

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BackgroundTasks:
    """
    Runner for fire-and-forget tasks.

    Keeps a strong reference to every task until it completes. Keyed tasks
    are deduplicated while in flight; bounded tasks are capped at
    ``max_in_flight`` and requests beyond the cap are skipped.

    Args:
        retry: Policy used by delayed deletions
        max_in_flight: Maximum number of bounded tasks running at once
    """

    def __init__(self, retry: RetryPolicy, *, max_in_flight: int = 64) -> None:
        self._retry = retry
        self._max_in_flight = max_in_flight
        self._tasks: Set[asyncio.Task] = set()
        self._bounded: Set[asyncio.Task] = set()
        self._keyed: Dict[str, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(
        self,
        description: str,
        factory: Callable[[], Awaitable[Any]],
        *,
        key: Optional[str] = None,
        bounded: bool = False,
    ) -> Optional[asyncio.Task]:
        """
        Start ``factory()`` as a background task.

        Args:
            description: Human-readable label used in log messages
            factory: Zero-argument callable returning the awaitable to run
            key: Deduplication key; a running task with the same key is reused
            bounded: Count the task against ``max_in_flight``

        Returns:
            The task, or None if it was skipped because the bound was reached
        """
        if key is not None and key in self._keyed:
            logger.debug(f"Background task already running: {description}")
            return self._keyed[key]

        if bounded and len(self._bounded) >= self._max_in_flight:
            logger.warning(
                f"Skipping background task, {len(self._bounded)} already in flight: {description}"
            )
            return None

        task = asyncio.get_running_loop().create_task(self._run(description, factory))
        self._tasks.add(task)
        if bounded:
            self._bounded.add(task)
        if key is not None:
            self._keyed[key] = task
        task.add_done_callback(lambda t: self._forget(t, key))
        return task

    def delete_later(self, blob: Any, delay: float) -> Optional[asyncio.Task]:
        """
        Delete ``blob`` after ``delay`` seconds.

        The grace delay leaves time to any concurrent reader or writer that
        still references the blob. A blob already gone is not an error.
        """
        async def delete() -> None:
            await asyncio.sleep(delay)
            try:
                await self._retry.run(blob.delete_blob)
            except ResourceNotFoundError:
                return
            logger.debug(f"Deleted {blob.blob_name}")

        return self.spawn(f"delete {blob.blob_name}", delete)

    async def drain(self) -> None:
        """Wait until every background task, including ones spawned meanwhile, completes."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel outstanding tasks and wait for them to stop."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            logger.debug(f"Cancelled {len(tasks)} background task(s)")
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(self, description: str, factory: Callable[[], Awaitable[Any]]) -> None:
        try:
            await factory()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Background task failed ({description}): {type(e).__name__}: {e}")

    def _forget(self, task: asyncio.Task, key: Optional[str]) -> None:
        self._tasks.discard(task)
        self._bounded.discard(task)
        if key is not None and self._keyed.get(key) is task:
            del self._keyed[key]


class Once(Generic[T]):
    """
    Compute-once cell for an async value.

    Concurrent callers share a single computation. A computation that fails
    is not cached: the next caller starts a new one.
    """

    def __init__(self, compute: Callable[[], Awaitable[T]]) -> None:
        self._compute = compute
        self._task: Optional[asyncio.Future] = None

    @property
    def is_resolved(self) -> bool:
        return (
            self._task is not None
            and self._task.done()
            and not self._task.cancelled()
            and self._task.exception() is None
        )

    async def get(self) -> T:
        task = self._task
        if task is None or (task.done() and (task.cancelled() or task.exception() is not None)):
            task = self._task = asyncio.ensure_future(self._compute())
        # A cancelled caller must not cancel the computation shared with others
        return await asyncio.shield(task)
