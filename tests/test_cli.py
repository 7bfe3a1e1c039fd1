"""
CLI tests with a fake Azure backend.

The CLI builds its factory from CONTENTADDR_* variables; here the factory is
replaced by one on the in-memory fake cloud, pre-populated synchronously.
"""
from __future__ import annotations

import gzip

import pytest
from azure.core.exceptions import HttpResponseError
from rich.console import Console
from typer.testing import CliRunner

from contentaddr_azure import cli
from contentaddr_azure.cli import app, exit_code_for, parse_target
from contentaddr_azure.errors import DeletedBlobError, NoSuchBlobError, RetriesExhaustedError, StoreError
from contentaddr_azure.models import DeletedBlobInfo, Hash
from contentaddr_azure.storage.factory import StoreFactory

from .storage.fakes.fake_azure import azure_error

DATA = b"restorable content\n" * 100
HASH = Hash.of(DATA)


@pytest.fixture(autouse=True)
def wide_console(monkeypatch):
    """Keep messages on one line regardless of the terminal."""
    monkeypatch.setattr(cli, "console", Console(width=200))


@pytest.fixture
def use_cloud(cloud, settings, monkeypatch):
    """Point the CLI at the fake cloud."""
    def open_factory():
        return StoreFactory(cloud.service("primary"), settings=settings, transport=cloud.transport)

    monkeypatch.setattr(cli, "_open_factory", open_factory)
    return cloud


class TestParsing:
    """Test argument parsing and exit codes."""

    def test_parse_target(self):
        assert parse_target(f"42/{HASH}") == (42, HASH)
        assert parse_target(f" 7/{str(HASH).lower()} ") == (7, HASH)

    @pytest.mark.parametrize("text", ["42", f"x/{HASH}", "42/ABC", f"42/{HASH}/extra"])
    def test_parse_target_rejects_malformed(self, text):
        with pytest.raises(ValueError, match="Malformed"):
            parse_target(text)

    def test_exit_codes(self):
        info = DeletedBlobInfo(created="2020-01-01T00:00:00Z", deleted="2021-01-01T00:00:00Z", reason="GDPR", size=1)
        assert exit_code_for(NoSuchBlobError("42", HASH)) == 1
        assert exit_code_for(DeletedBlobError(info, "42", HASH)) == 1
        assert exit_code_for(ValueError("bad")) == 2
        assert exit_code_for(StoreError("broken")) == 3
        assert exit_code_for(RetriesExhaustedError("gave up")) == 3
        assert exit_code_for(RuntimeError("unexpected")) == 3


class TestCommands:
    """Test command wiring against the fake cloud."""

    def setup_method(self):
        """Set up test environment."""
        self.runner = CliRunner()

    def test_accounts(self, use_cloud):
        use_cloud.put("primary", "test-persist", f"42/{HASH}", DATA)
        use_cloud.put("primary", "test-persist", f"7/{HASH}", DATA)

        result = self.runner.invoke(app, ["accounts"])

        assert result.exit_code == 0, result.output
        assert "Found 2 accounts in store" in result.output
        assert "42" in result.output

    def test_archive(self, use_cloud):
        use_cloud.put("primary", "test-persist", f"42/{HASH}", DATA)

        result = self.runner.invoke(app, ["archive", f"42/{HASH}"])

        assert result.exit_code == 0, result.output
        assert f"Archived 42/{HASH}" in result.output
        archived = use_cloud.blob("primary", "test-archive", f"42/{HASH}")
        assert gzip.decompress(archived.data) == DATA

        result = self.runner.invoke(app, ["archive", f"42/{HASH}"])
        assert result.exit_code == 0
        assert "Already archived" in result.output

    def test_archive_missing_blob(self, use_cloud):
        result = self.runner.invoke(app, ["archive", f"42/{HASH}"])

        assert result.exit_code == 1
        assert "not found" in result.output

    def test_restore_waits_for_rehydration(self, use_cloud):
        use_cloud.put("primary", "test-archive", f"42/{HASH}", gzip.compress(DATA), blob_tier="Archive")
        use_cloud.auto_rehydrate = True

        result = self.runner.invoke(app, ["restore", f"42/{HASH}", "--interval", "0.01"])

        assert result.exit_code == 0, result.output
        assert f"Restored 42/{HASH} ({len(DATA)} bytes)" in result.output
        assert use_cloud.blob("primary", "test-persist", f"42/{HASH}").data == DATA

    def test_restore_continues_after_a_failed_target(self, use_cloud):
        other = Hash.of(b"other archived content")
        for hash, data in ((other, b"other archived content"), (HASH, DATA)):
            use_cloud.put("primary", "test-archive", f"42/{hash}", gzip.compress(data), blob_tier="Archive")
        use_cloud.auto_rehydrate = True
        use_cloud.fail("exists", azure_error(HttpResponseError, 403, "AuthorizationFailure"))

        result = self.runner.invoke(app, ["restore", f"42/{other}", f"42/{HASH}", "--interval", "0.01"])

        assert result.exit_code == 1, result.output
        assert result.output.count("Cannot restore") == 1
        assert "AuthorizationFailure" in result.output
        assert result.output.count("Restored 42/") == 1
        restored = [h for h in (other, HASH) if use_cloud.blob("primary", "test-persist", f"42/{h}") is not None]
        assert len(restored) == 1

    def test_restore_missing_archive(self, use_cloud):
        result = self.runner.invoke(app, ["restore", f"42/{HASH}", "--interval", "0.01"])

        assert result.exit_code == 1
        assert "archive blob does not exist" in result.output

    def test_malformed_target(self, use_cloud):
        result = self.runner.invoke(app, ["restore", "not-a-target"])

        assert result.exit_code == 2
        assert "Malformed" in result.output

    def test_missing_configuration(self):
        result = self.runner.invoke(app, ["accounts"])

        assert result.exit_code == 2
        assert "No connection string" in result.output
