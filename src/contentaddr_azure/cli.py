"""
contentaddr CLI

Maintenance commands for a content-addressable store:
- accounts: List the accounts present in the store
- archive: Compress blobs into the archive tier
- restore: Restore archived blobs, waiting for rehydration to complete

The store is configured from CONTENTADDR_* environment variables.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Tuple, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from .errors import DeletedBlobError, NoSuchBlobError, StoreError
from .models import ArchiveState, Hash
from .settings import create_settings_from_env
from .storage.factory import AnyStoreFactory, create_factory_from_settings

app = typer.Typer(name="contentaddr", help="Content-addressable Azure store CLI")

console = Console()

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Exit codes by error type, most specific first
EXIT_CODES = (
    (NoSuchBlobError, 1),
    (DeletedBlobError, 1),
    (ValueError, 2),
    (StoreError, 3),
)


def exit_code_for(exc: BaseException) -> int:
    """
    Map an exception to the CLI exit code.

    - 1: Blob not found or deleted
    - 2: Invalid input or configuration
    - 3: Store or network error (fallback for unknown exceptions)
    """
    for error_type, code in EXIT_CODES:
        if isinstance(exc, error_type):
            return code
    return 3


def run_and_exit(func: Callable[[], T]) -> T:
    """Run a command body, turning exceptions into an error message and exit code."""
    try:
        return func()
    except typer.Exit:
        raise
    except Exception as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(code=exit_code_for(e)) from e


def parse_target(text: str) -> Tuple[int, Hash]:
    """
    Parse an ``ACCOUNT/HASH`` argument.

    Raises:
        ValueError: If the value is malformed
    """
    parts = text.strip().split("/")
    if len(parts) != 2 or not parts[0].isdigit():
        raise ValueError(f"Malformed account/hash value: {text}")
    hash = Hash.try_parse(parts[1])
    if hash is None:
        raise ValueError(f"Malformed account/hash value: {text}")
    return int(parts[0]), hash


def _open_factory() -> AnyStoreFactory:
    return create_factory_from_settings(create_settings_from_env())


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def _list_accounts(factory: AnyStoreFactory) -> List[int]:
    try:
        await factory.initialize()
        return await factory.get_accounts()
    finally:
        await factory.aclose()


async def _restore_one(factory: AnyStoreFactory, account: int, hash: Hash, interval: float) -> bool:
    try:
        store = factory.for_account(account)
        while True:
            state = await store.try_unarchive_blob(hash)
            if state == ArchiveState.DOES_NOT_EXIST:
                console.print(f"[yellow]Cannot restore {account}/{hash}:[/] archive blob does not exist.")
                return False
            if state == ArchiveState.REHYDRATING:
                logger.debug(f"{account}/{hash} is rehydrating, checking again in {interval}s")
                await asyncio.sleep(interval)
                continue
            size = await store[hash].get_size()
            console.print(f"[green]Restored[/] {account}/{hash} ({size} bytes).")
            return True
    except Exception as e:
        logger.debug(f"Restoring {account}/{hash} failed", exc_info=True)
        console.print(f"[red]Cannot restore {account}/{hash}:[/] {e}")
        return False


async def _restore(factory: AnyStoreFactory, targets: List[Tuple[int, Hash]], interval: float) -> int:
    try:
        await factory.initialize()
        results = await asyncio.gather(
            *(_restore_one(factory, account, hash, interval) for account, hash in targets)
        )
        return sum(1 for ok in results if not ok)
    finally:
        await factory.aclose()


async def _archive(factory: AnyStoreFactory, targets: List[Tuple[int, Hash]]) -> None:
    try:
        await factory.initialize()
        for account, hash in targets:
            store = factory.for_account(account)
            if await store.archive_blob(store[hash]):
                console.print(f"[green]Archived[/] {account}/{hash}")
            else:
                console.print(f"[dim]Already archived[/] {account}/{hash}")
    finally:
        await factory.aclose()


@app.command()
def accounts(
    verbose: bool = typer.Option(False, "--verbose", help="Show debug logging"),
) -> None:
    """List the accounts present in the store."""
    _setup_logging(verbose)

    def _accounts() -> None:
        factory = _open_factory()
        found = asyncio.run(_list_accounts(factory))

        table = Table(title=factory.describe())
        table.add_column("Account", style="cyan", justify="right")
        for account in found:
            table.add_row(str(account))
        console.print(table)
        console.print(f"Found {len(found)} accounts in store")

    run_and_exit(_accounts)


@app.command()
def restore(
    targets: List[str] = typer.Argument(..., help="Blobs to restore, as ACCOUNT/HASH"),
    interval: float = typer.Option(10.0, "--interval", help="Seconds between rehydration checks"),
    verbose: bool = typer.Option(False, "--verbose", help="Show debug logging"),
) -> None:
    """Restore archived blobs, waiting until each one is readable again."""
    _setup_logging(verbose)

    def _run() -> None:
        parsed = [parse_target(target) for target in targets]
        factory = _open_factory()
        console.print(f"Restoring {len(parsed)} blob(s) from {factory.describe()}")
        failed = asyncio.run(_restore(factory, parsed, interval))
        if failed:
            raise typer.Exit(code=1)

    run_and_exit(_run)


@app.command()
def archive(
    targets: List[str] = typer.Argument(..., help="Blobs to archive, as ACCOUNT/HASH"),
    verbose: bool = typer.Option(False, "--verbose", help="Show debug logging"),
) -> None:
    """Compress blobs into the archive container (Archive tier)."""
    _setup_logging(verbose)

    def _run() -> None:
        parsed = [parse_target(target) for target in targets]
        asyncio.run(_archive(_open_factory(), parsed))

    run_and_exit(_run)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
