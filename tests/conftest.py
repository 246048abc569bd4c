"""Pytest fixtures and configuration for mailcrm tests.

Provides common fixtures for configuration, the database and a mocked
mail transport.
"""

import os
from collections.abc import Generator
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from mailcrm.config import CONFIG_PATH_ENV, reset_config
from mailcrm.config_schema import AppConfig
from mailcrm.db.store import DatabaseStore


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

timezone: "America/New_York"

self_addresses:
  - "me@mycompany.com"
"""


@pytest.fixture
def sample_config_dict() -> dict[str, Any]:
    """Return a minimal valid config as a dictionary."""
    return {
        "schema_version": 1,
        "auth": {
            "client_id": "test-client-id",
            "tenant_id": "test-tenant-id",
        },
        "timezone": "America/New_York",
        "self_addresses": ["me@mycompany.com"],
        "llm_logging": {"enabled": True},
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
    """Point MAILCRM_CONFIG_PATH at the temporary config file."""
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
    """Return an initialized DatabaseStore on a temporary database."""
    s = DatabaseStore(data_dir / "test.db")
    await s.initialize()
    return s


@pytest.fixture
def mock_mailbox() -> MagicMock:
    """Return a mock MailTransport with harmless defaults."""
    mailbox = MagicMock()
    mailbox.fetch_recent = MagicMock(return_value=[])
    mailbox.search = MagicMock(return_value=[])
    mailbox.archive = MagicMock(return_value=None)
    mailbox.create_draft = MagicMock(return_value="draft-001")
    mailbox.get_busy_intervals = MagicMock(return_value=[])
    return mailbox

