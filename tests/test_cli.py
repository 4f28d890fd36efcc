"""Tests for the click CLI commands."""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from click.testing import CliRunner
from conftest import seed_thread

from inboxzero.cli import cli
from inboxzero.config import CONFIG_PATH_ENV
from inboxzero.core.errors import DatabaseError
from inboxzero.db.store import DatabaseStore


@pytest.fixture
def db_path(data_dir: Path) -> Path:
    return data_dir / "cli.db"


@pytest.fixture
def cli_config(temp_config_dir: Path, data_dir: Path, db_path: Path) -> Path:
    """Config with no linked accounts, so every user is database-only."""
    path = temp_config_dir / "config.yaml"
    path.write_text(
        "auth:\n"
        '  client_id: "test-client-id"\n'
        f'  token_cache_dir: "{data_dir / "tokens"}"\n'
        "database:\n"
        f'  path: "{db_path}"\n'
        "deferral:\n"
        "  sweep_enabled: false\n"
    )
    return path


@pytest.fixture
def runner(cli_config: Path) -> CliRunner:
    return CliRunner(env={CONFIG_PATH_ENV: str(cli_config)})


def _seed(db_path: Path, *thread_ids: str, user_id: str = "user-1") -> None:
    async def seed() -> None:
        store = DatabaseStore(db_path)
        await store.initialize()
        for thread_id in thread_ids:
            await seed_thread(store, thread_id, user_id=user_id)

    asyncio.run(seed())


class TestValidateConfig:
    def test_valid(self, runner: CliRunner, cli_config: Path) -> None:
        result = runner.invoke(cli, ["validate-config", "--config", str(cli_config)])

        assert result.exit_code == 0
        assert "Configuration valid" in result.output

    def test_missing_file(self, runner: CliRunner, temp_config_dir: Path) -> None:
        result = runner.invoke(
            cli, ["validate-config", "--config", str(temp_config_dir / "missing.yaml")]
        )

        assert result.exit_code == 1
        assert "Load error" in result.output


class TestReconcileOptions:
    @pytest.mark.parametrize("args", [[], ["--user", "user-1", "--all"]])
    def test_requires_exactly_one_target(self, runner: CliRunner, args: list[str]) -> None:
        result = runner.invoke(cli, ["reconcile", *args])

        assert result.exit_code == 2
        assert "exactly one of --user or --all" in result.output


class TestDeferralCommands:
    def test_defer_due_reconcile(self, runner: CliRunner, db_path: Path) -> None:
        _seed(db_path, "thread-1")

        deferred = runner.invoke(
            cli,
            ["defer", "--user", "user-1", "--thread", "thread-1", "--until", "2026-03-03T09:00:00Z"],
        )
        assert deferred.exit_code == 0, deferred.output
        assert "Deferred thread" in deferred.output

        not_due = runner.invoke(cli, ["due", "--user", "user-1", "--now", "2026-03-02T09:00:00Z"])
        assert "No deferrals due" in not_due.output

        due = runner.invoke(cli, ["due", "--user", "user-1", "--now", "2026-03-04T09:00:00Z"])
        assert due.exit_code == 0
        assert "Due deferrals for user-1" in due.output

        reconciled = runner.invoke(
            cli, ["reconcile", "--user", "user-1", "--now", "2026-03-04T09:00:00Z"]
        )
        assert reconciled.exit_code == 0
        assert "Returned 1 deferred thread(s)" in reconciled.output

    def test_defer_unknown_thread_fails(self, runner: CliRunner, db_path: Path) -> None:
        _seed(db_path)

        result = runner.invoke(
            cli,
            ["defer", "--user", "user-1", "--thread", "missing", "--until", "2026-03-03T09:00:00Z"],
        )

        assert result.exit_code == 1
        assert "not found" in result.output

    def test_reconcile_all(self, runner: CliRunner, db_path: Path) -> None:
        _seed(db_path, "a")
        _seed(db_path, "b", user_id="user-2")
        for user_id, thread_id in [("user-1", "a"), ("user-2", "b")]:
            runner.invoke(
                cli,
                ["defer", "--user", user_id, "--thread", thread_id, "--until", "2020-01-01T00:00:00Z"],
            )

        result = runner.invoke(cli, ["reconcile", "--all"])

        assert result.exit_code == 0
        assert "Sweep Summary" in result.output
        assert "Deferrals:   2" in result.output

    def test_reconcile_all_user_lookup_failure_exits_1(
        self, runner: CliRunner, db_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        _seed(db_path, "a")
        monkeypatch.setattr(
            DatabaseStore,
            "get_users_with_due_deferrals",
            AsyncMock(side_effect=DatabaseError("database is locked")),
        )

        result = runner.invoke(cli, ["reconcile", "--all"])

        assert result.exit_code == 1
        assert "Error" in result.output
        assert "Sweep Summary" not in result.output
