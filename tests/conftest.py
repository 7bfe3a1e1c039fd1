"""Root pytest configuration for contentaddr-azure tests."""
import pytest
import pytest_asyncio

from contentaddr_azure.settings import Settings
from contentaddr_azure.storage.factory import DualStoreFactory, StoreFactory

from .storage.fakes.fake_azure import FakeCloud


# Configure pytest markers
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers",
        "slow: mark test as slow (may take significant time)"
    )


@pytest.fixture(autouse=True)
def test_env(monkeypatch):
    """Keep the developer's environment out of settings-driven tests."""
    for name in (
        "CONTENTADDR_CONNECTION_STRING",
        "CONTENTADDR_READ_ONLY",
        "CONTENTADDR_CONTAINER_PREFIX",
        "CONTENTADDR_RETRY_MAX_TOTAL",
        "CONTENTADDR_RETRY_ATTEMPT_TIMEOUT",
        "CONTENTADDR_RETRY_DELAY",
        "CONTENTADDR_RETRY_ON_403",
        "CONTENTADDR_RETRY_ON_NO_SUCH_ADDRESS",
        "CONTENTADDR_MAX_BACKGROUND_COPIES",
    ):
        monkeypatch.delenv(name, raising=False)


# Standardized test fixtures
@pytest.fixture
def settings():
    """Test settings with short delays so retries and polling stay fast."""
    return Settings(
        container_prefix="test",
        retry_max_total_s=2.0,
        retry_attempt_timeout_s=1.0,
        retry_delay_s=0.01,
        copy_poll_initial_s=0.01,
        copy_poll_max_s=0.05,
        staging_delete_delay_s=0.0,
        uploaded_delete_delay_s=0.0,
    )


@pytest.fixture
def cloud():
    """In-memory fake of the Azure storage accounts."""
    return FakeCloud()


@pytest_asyncio.fixture
async def factory(cloud, settings):
    """Initialized single-account factory on the fake cloud."""
    factory = StoreFactory(cloud.service("primary"), settings=settings, transport=cloud.transport)
    await factory.initialize()
    yield factory
    await factory.aclose()


@pytest_asyncio.fixture
async def store(factory):
    """Writable store for account 42."""
    return factory.for_account(42)


@pytest_asyncio.fixture
async def old_factory(cloud, settings):
    """Writable factory on the account being migrated away from."""
    factory = StoreFactory(cloud.service("old"), settings=settings, transport=cloud.transport)
    await factory.initialize()
    yield factory
    await factory.aclose()


@pytest_asyncio.fixture
async def dual_factory(cloud, settings, old_factory):
    """Initialized dual factory migrating from "old" to "new"."""
    factory = DualStoreFactory(
        cloud.service("old"),
        cloud.service("new"),
        settings=settings,
        transport=cloud.transport,
    )
    await factory.initialize()
    yield factory
    await factory.aclose()
