"""Pytest configuration and shared fixtures.

Nothing here talks to a real master, SMTP or IMAP server: HTTP calls are
patched on ``httpx.AsyncClient`` and mail sessions on ``smtplib``/``imaplib``.
"""

from __future__ import annotations

import pytest

from emailloop.core.settings import clear_settings_cache
from emailloop.core.state import AgentConfig, ConfigStore
from emailloop.services.task_queue import TaskQueue
from tests.factories import FakeClock


@pytest.fixture(autouse=True)
def clean_settings_cache():
    """Clear settings cache before and after each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> ConfigStore:
    """Store holding a token and the default tunables."""
    config_store = ConfigStore(AgentConfig())
    config_store.set_token("test-token")
    return config_store


@pytest.fixture
def queue() -> TaskQueue:
    return TaskQueue()
