"""Pytest fixtures and configuration for inboxzero tests.

Provides common fixtures for configuration, database, and seed data.
"""

import os
from collections.abc import Generator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from inboxzero.config import CONFIG_PATH_ENV, reset_config
from inboxzero.config_schema import AppConfig
from inboxzero.db.store import DatabaseStore, Message, Thread

NOW = datetime(2026, 3, 2, 9, 0, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def reset_config_singleton() -> Generator[None, None, None]:
    """Reset the config singleton before each test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def temp_config_dir(tmp_path: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def sample_config_yaml() -> str:
    """Return a minimal valid config.yaml content."""
    return """
schema_version: 1

auth:
  client_id: "test-client-id"
  tenant_id: "test-tenant-id"

deferral:
  sweep_interval_minutes: 10
  snoozed_folder: "Snoozed"

accounts:
  - user_id: "user-1"
    email: "user1@example.com"
"""


@pytest.fixture
def sample_config_dict(data_dir: Path) -> dict[str, Any]:
    """Return a minimal valid config as a dictionary."""
    return {
        "schema_version": 1,
        "auth": {
            "client_id": "test-client-id",
            "tenant_id": "test-tenant-id",
            "token_cache_dir": str(data_dir / "tokens"),
        },
        "database": {"path": str(data_dir / "inboxzero.db")},
        "deferral": {"sweep_enabled": False, "snoozed_folder": "Snoozed"},
        "accounts": [{"user_id": "user-1", "email": "user1@example.com"}],
    }


@pytest.fixture
def sample_config(sample_config_dict: dict[str, Any]) -> AppConfig:
    """Return a minimal valid AppConfig instance."""
    return AppConfig(**sample_config_dict)


@pytest.fixture
def config_file(temp_config_dir: Path, sample_config_yaml: str) -> Path:
    """Create a temporary config file with valid content."""
    config_path = temp_config_dir / "config.yaml"
    config_path.write_text(sample_config_yaml)
    return config_path


@pytest.fixture
def set_config_env(config_file: Path) -> Generator[None, None, None]:
    """Point INBOXZERO_CONFIG_PATH at the temporary config file."""
    old_value = os.environ.get(CONFIG_PATH_ENV)
    os.environ[CONFIG_PATH_ENV] = str(config_file)
    yield
    if old_value is None:
        del os.environ[CONFIG_PATH_ENV]
    else:
        os.environ[CONFIG_PATH_ENV] = old_value


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory."""
    data = tmp_path / "data"
    data.mkdir()
    return data


@pytest.fixture
async def store(data_dir: Path) -> DatabaseStore:
    """Create and initialize a DatabaseStore on a temporary database."""
    s = DatabaseStore(data_dir / "test.db")
    await s.initialize()
    return s


@pytest.fixture
def now() -> datetime:
    return NOW


async def seed_thread(
    store: DatabaseStore,
    thread_id: str = "thread-1",
    user_id: str = "user-1",
    subject: str = "Quarterly report",
    last_message_at: datetime | None = None,
    message_ids: list[str | None] | None = None,
) -> Thread:
    """Insert a visible thread and, optionally, its messages.

    ``message_ids`` lists remote ids oldest first; None entries are
    local-only messages. Messages are spaced a minute apart.
    """
    last = last_message_at or NOW - timedelta(hours=1)
    thread = Thread(
        id=thread_id,
        user_id=user_id,
        conversation_id=f"conv-{thread_id}",
        subject=subject,
        participants=["alice@example.com", "bob@example.com"],
        last_message_at=last,
    )
    await store.save_thread(thread)

    ids = message_ids or []
    for i, remote_id in enumerate(ids):
        await store.save_message(
            Message(
                id=f"{thread_id}-msg-{i}",
                thread_id=thread_id,
                user_id=user_id,
                message_id=remote_id,
                subject=subject,
                from_email="alice@example.com",
                received_at=last - timedelta(minutes=len(ids) - 1 - i),
            )
        )
    return thread
