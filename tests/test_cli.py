"""Tests for CLI commands - categories, platforms, deliver-webhooks, out-of-sync."""

from pathlib import Path

import pytest
from click.testing import CliRunner

from guardsync.cli import cli
from guardsync.rules import CATALOG_VERSION, RuleCategory
from guardsync.server.database import Database, hash_api_key


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    """Create an empty database file."""
    path = tmp_path / "guardsync.db"
    Database(path).close()
    return path


class TestCategoriesCommand:
    """Tests for 'guardsync categories' command."""

    def test_lists_every_category(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["categories"])
        assert result.exit_code == 0
        assert f"Catalog version {CATALOG_VERSION} ({len(RuleCategory)} categories)" in result.output
        assert "time_daily_limit" in result.output

    def test_family_filter(self, runner: CliRunner) -> None:
        """Should only list categories of the requested family."""
        result = runner.invoke(cli, ["categories", "--family", "web"])
        assert result.exit_code == 0
        assert "web_safesearch" in result.output
        assert "time_daily_limit" not in result.output

    def test_unknown_family(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["categories", "--family", "nope"])
        assert result.exit_code == 1
        assert "Unknown rule family" in result.output


class TestPlatformsCommand:
    """Tests for 'guardsync platforms' command."""

    def test_lists_platforms_and_sources(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["platforms"])
        assert result.exit_code == 0
        assert "Platforms:" in result.output
        assert "Source types:" in result.output


class TestDeliverWebhooksCommand:
    """Tests for 'guardsync deliver-webhooks' command."""

    def test_missing_database(self, runner: CliRunner, tmp_path: Path) -> None:
        """Should fail instead of creating a new database."""
        missing = tmp_path / "missing.db"
        result = runner.invoke(cli, ["deliver-webhooks", "--db-path", str(missing)])
        assert result.exit_code == 1
        assert "Database not found" in result.output
        assert not missing.exists()

    def test_nothing_due(self, runner: CliRunner, db_path: Path) -> None:
        result = runner.invoke(cli, ["deliver-webhooks", "--db-path", str(db_path)])
        assert result.exit_code == 0
        assert "Attempted 0 deliveries" in result.output


class TestOutOfSyncCommand:
    """Tests for 'guardsync out-of-sync' command."""

    def test_all_in_sync(self, runner: CliRunner, db_path: Path) -> None:
        result = runner.invoke(cli, ["out-of-sync", "--db-path", str(db_path)])
        assert result.exit_code == 0
        assert "All devices are in sync" in result.output

    def test_lists_stale_devices(self, runner: CliRunner, db_path: Path) -> None:
        """Should list a device that never acknowledged the latest snapshot."""
        db = Database(db_path)
        family = db.create_family("Smith")
        child = db.create_child(family.id, "Alex")
        db.create_compiled_policy(child.id, None, 1, "f1", [])
        device = db.create_device(child.id, family.id, "platform_a", "Tablet", hash_api_key("gsd_k"))
        db.close()

        result = runner.invoke(cli, ["out-of-sync", "--db-path", str(db_path), "--hours", "0"])

        assert result.exit_code == 0
        assert "1 devices out of sync" in result.output
        assert device.id in result.output
        assert "last ack never" in result.output
