"""Config/identity store: the agent token and the runtime tunables.

The store is the single owner of the two pieces of process-wide mutable
state besides the task queue. It is created once at startup and passed to
every collaborator that needs it (client, scheduler, heartbeat, uploader).

The master pushes tunables on registration and on each poll. Updates are a
shallow merge, last write wins per field. Nonsensical values are clamped
to a floor so that a bad server response cannot turn the loop into a tight
request storm.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields, replace
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Mapping

    from emailloop.core.config import AgentSettings

logger = logging.getLogger(__name__)

# Lower bounds applied to every config update
MIN_POLL_INTERVAL_MS = 1000
MIN_SEND_INTERVAL_MS = 0
MIN_BATCH_SIZE = 1
MIN_HEALTH_CHECK_INTERVAL_MS = 1000

# Wire names used by the master for each attribute
_WIRE_NAMES = {
    "pollInterval": "poll_interval",
    "sendInterval": "send_interval",
    "batchSize": "batch_size",
    "healthCheckInterval": "health_check_interval",
}


@dataclass(frozen=True)
class AgentConfig:
    """Runtime tunables. Intervals are in milliseconds.

    Attributes:
        poll_interval: Delay between two polls.
        send_interval: Delay between two sends of the same batch.
        batch_size: Number of tasks the master hands out per poll.
        health_check_interval: Delay between two heartbeats.
    """

    poll_interval: int = 60000
    send_interval: int = 2000
    batch_size: int = 10
    health_check_interval: int = 10000

    @classmethod
    def from_settings(cls, settings: AgentSettings) -> AgentConfig:
        """Build the initial config from environment settings."""
        return cls(
            poll_interval=settings.poll_interval_ms,
            send_interval=settings.send_interval_ms,
            batch_size=settings.batch_size,
            health_check_interval=settings.health_check_interval_ms,
        )

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval / 1000

    @property
    def send_interval_seconds(self) -> float:
        return self.send_interval / 1000

    @property
    def health_check_interval_seconds(self) -> float:
        return self.health_check_interval / 1000


_FLOORS = {
    "poll_interval": MIN_POLL_INTERVAL_MS,
    "send_interval": MIN_SEND_INTERVAL_MS,
    "batch_size": MIN_BATCH_SIZE,
    "health_check_interval": MIN_HEALTH_CHECK_INTERVAL_MS,
}
_FIELD_NAMES = frozenset(f.name for f in fields(AgentConfig))


class ConfigStore:
    """Holds the agent token and the current AgentConfig.

    Example:
        store = ConfigStore(AgentConfig())
        store.set_token("abc")
        store.update_config({"pollInterval": 30000})
        assert store.config.poll_interval == 30000
    """

    def __init__(self, config: AgentConfig | None = None) -> None:
        """Initialize the store.

        Args:
            config: Initial tunables (defaults to AgentConfig()).
        """
        self._config = config or AgentConfig()
        self._token: str | None = None

    # ------------------------------------------------------------------ token

    def get_token(self) -> str | None:
        """Return the current token, or None when not registered."""
        return self._token

    def set_token(self, token: str) -> None:
        """Store the token received on registration."""
        self._token = token or None

    def invalidate_token(self) -> None:
        """Drop the token so the next cycle re-registers."""
        if self._token is not None:
            logger.warning("Agent token invalidated, re-registration required")
        self._token = None

    @property
    def has_token(self) -> bool:
        return bool(self._token)

    # ----------------------------------------------------------------- config

    @property
    def config(self) -> AgentConfig:
        """Snapshot of the current tunables."""
        return self._config

    def update_config(self, partial: Mapping[str, Any] | None) -> AgentConfig:
        """Shallow-merge ``partial`` over the current config.

        Keys may be wire names (``pollInterval``) or attribute names
        (``poll_interval``). Unknown keys and non-numeric values are ignored;
        fractional values are truncated.

        Args:
            partial: Subset of tunables pushed by the master.

        Returns:
            The new config snapshot.
        """
        if not partial:
            return self._config

        changes: dict[str, int] = {}
        for key, value in partial.items():
            name = _WIRE_NAMES.get(key, key)
            if name not in _FIELD_NAMES or value is None:
                continue
            try:
                number = int(float(value))
            except (TypeError, ValueError, OverflowError):
                logger.warning("Ignoring non-numeric config value %s=%r", key, value)
                continue

            floor = _FLOORS[name]
            if number < floor:
                logger.warning(
                    "Config value %s=%d below minimum, clamped to %d", name, number, floor
                )
                number = floor
            changes[name] = number

        if changes:
            self._config = replace(self._config, **changes)
            logger.debug("Config updated: %s", changes)
        return self._config
