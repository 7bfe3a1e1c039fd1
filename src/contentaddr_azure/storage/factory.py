"""
Store factories.

A factory owns the Azure service client(s) and the resources shared by all
stores it hands out: the retry policy, the range reader and the background
task runner. A connection string with a single configuration yields a
StoreFactory; two configurations joined by "||" yield a DualStoreFactory
migrating from the first account to the second.
"""
from __future__ import annotations

import logging
from typing import Any, List, Optional, Union

import httpx
from azure.core.exceptions import ResourceExistsError, ResourceNotFoundError
from azure.storage.blob.aio import BlobServiceClient

from ..errors import StoreError
from ..models import CommitObserver
from ..retry import RetryPolicy
from ..settings import DUAL_SEPARATOR, Settings
from .background import BackgroundTasks
from .dual import DualReadOnlyStore, DualStore
from .read_stream import RangeReader
from .store import ReadOnlyStore, Store

__all__ = [
    "StoreFactory",
    "DualStoreFactory",
    "split_dual_config",
    "parse_config",
    "create_factory_from_settings",
    "CONTAINERS",
    "AnyStoreFactory",
]

logger = logging.getLogger(__name__)

# Base names of the containers used by a store
CONTAINERS = ("persist", "staging", "archive", "deleted")


def split_dual_config(config: str) -> List[str]:
    """Split a connection string into its one or two configurations."""
    return config.split(DUAL_SEPARATOR)


def container_name(name: str, prefix: Optional[str]) -> str:
    return name if prefix is None else f"{prefix}-{name}"


def _service_from_connection_string(connection_string: str) -> Any:
    # Retries are handled by RetryPolicy around every call
    return BlobServiceClient.from_connection_string(connection_string, retry_total=0)


class StoreFactory:
    """
    Creates stores for the accounts (realms) of one storage account.

    Args:
        service: Azure aio BlobServiceClient
        settings: Store settings (container prefix, read-only mode, retries)
        read_only: Overrides ``settings.read_only`` when given
        on_commit: Observer passed to every writable store
        retry: Shared retry policy (created from settings when omitted)
        reader: Shared range reader (created when omitted)
        background: Shared background task runner (created when omitted)
        transport: httpx transport for range reads (tests serve blobs in memory)

    Call :meth:`initialize` before handing out stores.
    """

    def __init__(
        self,
        service: Any,
        *,
        settings: Settings,
        read_only: Optional[bool] = None,
        on_commit: Optional[CommitObserver] = None,
        retry: Optional[RetryPolicy] = None,
        reader: Optional[RangeReader] = None,
        background: Optional[BackgroundTasks] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.service = service
        self.settings = settings
        self.read_only = settings.read_only if read_only is None else read_only
        self.test_prefix = settings.container_prefix
        self.on_commit = on_commit

        self._owns_reader = reader is None
        self._owns_background = background is None
        self.retry = retry or RetryPolicy(settings)
        self.reader = reader or RangeReader(
            self.retry, timeout=settings.retry_attempt_timeout_s, transport=transport
        )
        self.background = background or BackgroundTasks(
            self.retry, max_in_flight=settings.max_background_copies
        )

        self.persistent = self._container("persist")
        self.staging = self._container("staging")
        self.archive = self._container("archive")
        self.deleted = self._container("deleted")

    @classmethod
    def from_connection_string(cls, connection_string: str, **kwargs: Any) -> StoreFactory:
        return cls(_service_from_connection_string(connection_string), **kwargs)

    def _container(self, name: str) -> Any:
        return self.service.get_container_client(container_name(name, self.test_prefix))

    async def initialize(self) -> None:
        """
        Prepare the containers.

        In write mode, missing containers are created. In read-only mode the
        persistent container must already exist.

        Raises:
            StoreError: If the persistent container is missing in read-only mode
        """
        if self.read_only:
            if not await self.retry.run(self.persistent.exists):
                raise StoreError("Cannot create persistent container in read-only mode.")
            return

        for container in (self.persistent, self.staging, self.archive, self.deleted):
            try:
                await self.retry.run(container.create_container)
                logger.info(f"Created container {container.container_name}")
            except ResourceExistsError:
                logger.debug(f"Container {container.container_name} already exists")

    def for_account(self, account: int) -> Store:
        """
        Writable store for ``account``.

        Raises:
            StoreError: In read-only mode
        """
        if self.read_only:
            raise StoreError("Cannot use 'for_account' in read-only mode.")
        return Store(
            str(account),
            self.persistent,
            self.staging,
            self.archive,
            self.deleted,
            settings=self.settings,
            retry=self.retry,
            reader=self.reader,
            background=self.background,
            on_commit=self.on_commit,
        )

    def read_only_for_account(self, account: int) -> ReadOnlyStore:
        return ReadOnlyStore(
            str(account),
            self.persistent,
            self.deleted,
            settings=self.settings,
            retry=self.retry,
            reader=self.reader,
            background=self.background,
        )

    async def get_accounts(self) -> List[int]:
        """Sorted ids of the accounts holding at least one blob."""
        accounts = set()
        async for item in self.persistent.walk_blobs(delimiter="/"):
            name = item.name.strip("/")
            if name.isdigit():
                accounts.add(int(name))
        return sorted(accounts)

    async def delete(self) -> None:
        """
        Delete every container of this factory.

        Raises:
            StoreError: Unless a test prefix is configured
        """
        if self.test_prefix is None:
            raise StoreError("Cannot delete non-test persistent store.")
        for container in (self.persistent, self.staging, self.archive, self.deleted):
            try:
                await self.retry.run(container.delete_container)
            except ResourceNotFoundError:
                continue
            logger.info(f"Deleted container {container.container_name}")

    def describe(self) -> str:
        return f"[CAS] {self.service.url}"

    async def aclose(self) -> None:
        """Stop background tasks and release network resources."""
        if self._owns_background:
            await self.background.aclose()
        if self._owns_reader:
            await self.reader.aclose()
        await self.service.close()


class DualStoreFactory:
    """
    Creates dual stores migrating each account from ``old`` to ``new``.

    The old account is only ever read. Both sides share one retry policy,
    range reader and background task runner.
    """

    def __init__(
        self,
        old_service: Any,
        new_service: Any,
        *,
        settings: Settings,
        read_only: Optional[bool] = None,
        on_commit: Optional[CommitObserver] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.retry = RetryPolicy(settings)
        self.reader = RangeReader(
            self.retry, timeout=settings.retry_attempt_timeout_s, transport=transport
        )
        self.background = BackgroundTasks(self.retry, max_in_flight=settings.max_background_copies)

        shared = dict(retry=self.retry, reader=self.reader, background=self.background)
        self.old = StoreFactory(old_service, settings=settings, read_only=True, **shared)
        self.new = StoreFactory(
            new_service, settings=settings, read_only=read_only, on_commit=on_commit, **shared
        )

    @classmethod
    def from_connection_strings(cls, old: str, new: str, **kwargs: Any) -> DualStoreFactory:
        return cls(_service_from_connection_string(old), _service_from_connection_string(new), **kwargs)

    @property
    def read_only(self) -> bool:
        return self.new.read_only

    async def initialize(self) -> None:
        await self.old.initialize()
        await self.new.initialize()

    def for_account(self, account: int) -> DualStore:
        return DualStore(
            self.old.read_only_for_account(account),
            self.new.for_account(account),
            retry=self.retry,
            background=self.background,
            settings=self.settings,
        )

    def read_only_for_account(self, account: int) -> DualReadOnlyStore:
        return DualReadOnlyStore(
            self.old.read_only_for_account(account),
            self.new.read_only_for_account(account),
            retry=self.retry,
            background=self.background,
            settings=self.settings,
        )

    async def get_accounts(self) -> List[int]:
        accounts = set(await self.old.get_accounts())
        accounts.update(await self.new.get_accounts())
        return sorted(accounts)

    async def delete(self) -> None:
        await self.new.delete()
        await self.old.delete()

    def describe(self) -> str:
        return self.new.describe()

    async def aclose(self) -> None:
        await self.background.aclose()
        await self.reader.aclose()
        await self.old.aclose()
        await self.new.aclose()


AnyStoreFactory = Union[StoreFactory, DualStoreFactory]


def parse_config(
    config: str,
    *,
    settings: Settings,
    read_only: Optional[bool] = None,
    on_commit: Optional[CommitObserver] = None,
) -> AnyStoreFactory:
    """
    Create the factory described by a connection string.

    Args:
        config: One connection string, or "old||new" for a migration
        settings: Store settings
        read_only: Overrides ``settings.read_only`` when given
        on_commit: Observer passed to writable stores

    Returns:
        StoreFactory or DualStoreFactory

    Raises:
        ValueError: If the string holds more than two configurations
    """
    configs = split_dual_config(config)
    if len(configs) == 1:
        return StoreFactory.from_connection_string(
            config, settings=settings, read_only=read_only, on_commit=on_commit
        )
    if len(configs) == 2:
        logger.info("Using dual store configuration")
        return DualStoreFactory.from_connection_strings(
            configs[0], configs[1], settings=settings, read_only=read_only, on_commit=on_commit
        )
    raise ValueError(f"Expected at most 2 configurations, got {len(configs)}")


def create_factory_from_settings(
    settings: Settings,
    *,
    on_commit: Optional[CommitObserver] = None,
) -> AnyStoreFactory:
    """
    Create the factory for ``settings.connection_string``.

    Raises:
        ValueError: If no connection string is configured
    """
    if not settings.connection_string:
        raise ValueError("No connection string configured (set CONTENTADDR_CONNECTION_STRING)")
    return parse_config(settings.connection_string, settings=settings, on_commit=on_commit)
