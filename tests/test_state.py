"""Tests for the token and runtime config store.

Tests cover:
- Token lifecycle (set, invalidate, re-set)
- Shallow merge of config updates from the master
- Clamping of nonsensical values
"""

from __future__ import annotations

import logging

import pytest

from emailloop.core.config import AgentSettings
from emailloop.core.state import (
    MIN_BATCH_SIZE,
    MIN_HEALTH_CHECK_INTERVAL_MS,
    MIN_POLL_INTERVAL_MS,
    AgentConfig,
    ConfigStore,
)


class TestAgentConfig:
    """Tests for the AgentConfig dataclass."""

    def test_defaults(self):
        config = AgentConfig()

        assert config.poll_interval == 60000
        assert config.send_interval == 2000
        assert config.batch_size == 10
        assert config.health_check_interval == 10000

    def test_seconds_helpers(self):
        config = AgentConfig(poll_interval=1500, send_interval=250, health_check_interval=3000)

        assert config.poll_interval_seconds == 1.5
        assert config.send_interval_seconds == 0.25
        assert config.health_check_interval_seconds == 3.0

    def test_from_settings(self):
        settings = AgentSettings(
            poll_interval_ms=30000,
            send_interval_ms=100,
            batch_size=3,
            health_check_interval_ms=5000,
        )

        config = AgentConfig.from_settings(settings)

        assert config == AgentConfig(
            poll_interval=30000, send_interval=100, batch_size=3, health_check_interval=5000
        )


class TestToken:
    """Tests for token handling."""

    def test_no_token_initially(self):
        store = ConfigStore()

        assert store.get_token() is None
        assert store.has_token is False

    def test_set_and_invalidate(self):
        store = ConfigStore()
        store.set_token("abc")

        assert store.get_token() == "abc"
        assert store.has_token is True

        store.invalidate_token()

        assert store.get_token() is None
        assert store.has_token is False

    def test_empty_token_counts_as_missing(self):
        store = ConfigStore()
        store.set_token("")

        assert store.get_token() is None
        assert store.has_token is False

    def test_invalidate_is_idempotent(self):
        store = ConfigStore()
        store.invalidate_token()
        store.invalidate_token()

        assert store.get_token() is None


class TestUpdateConfig:
    """Tests for config updates pushed by the master."""

    def test_wire_keys(self):
        store = ConfigStore()

        config = store.update_config({"pollInterval": 30000, "sendInterval": 500})

        assert config.poll_interval == 30000
        assert config.send_interval == 500
        assert store.config is config

    def test_attribute_names(self):
        store = ConfigStore()

        store.update_config({"batch_size": 25, "health_check_interval": 20000})

        assert store.config.batch_size == 25
        assert store.config.health_check_interval == 20000

    def test_shallow_merge_keeps_other_fields(self):
        store = ConfigStore(AgentConfig(poll_interval=5000, batch_size=4))

        store.update_config({"sendInterval": 100})

        assert store.config.poll_interval == 5000
        assert store.config.batch_size == 4
        assert store.config.send_interval == 100

    def test_last_write_wins(self):
        store = ConfigStore()
        store.update_config({"pollInterval": 20000})
        store.update_config({"poll_interval": 40000})

        assert store.config.poll_interval == 40000

    def test_unknown_and_null_keys_ignored(self):
        store = ConfigStore()
        before = store.config

        after = store.update_config({"maxRetries": 3, "pollInterval": None})

        assert after == before

    def test_non_numeric_value_ignored(self, caplog):
        store = ConfigStore()

        with caplog.at_level(logging.WARNING):
            store.update_config({"batchSize": "lots"})

        assert store.config.batch_size == 10
        assert "non-numeric" in caplog.text

    def test_fractional_value_truncated(self):
        store = ConfigStore()

        store.update_config({"sendInterval": 1500.5, "pollInterval": "2500.9"})

        assert store.config.send_interval == 1500
        assert store.config.poll_interval == 2500

    def test_none_or_empty_update(self):
        store = ConfigStore()
        before = store.config

        assert store.update_config(None) is before
        assert store.update_config({}) is before

    @pytest.mark.parametrize(
        ("key", "value", "attribute", "expected"),
        [
            ("pollInterval", 0, "poll_interval", MIN_POLL_INTERVAL_MS),
            ("pollInterval", -5, "poll_interval", MIN_POLL_INTERVAL_MS),
            ("sendInterval", -1, "send_interval", 0),
            ("batchSize", 0, "batch_size", MIN_BATCH_SIZE),
            ("healthCheckInterval", 10, "health_check_interval", MIN_HEALTH_CHECK_INTERVAL_MS),
        ],
    )
    def test_values_clamped(self, key, value, attribute, expected, caplog):
        store = ConfigStore()

        with caplog.at_level(logging.WARNING):
            store.update_config({key: value})

        assert getattr(store.config, attribute) == expected
        assert "clamped" in caplog.text
