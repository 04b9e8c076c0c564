"""Periodic liveness heartbeat.

The heartbeat is failure-silent: a missed beat only shows up in DEBUG logs.
The one side effect that matters is handled by the master client itself,
which drops the token on a 401 so the scheduler re-registers.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING

from emailloop.services.master_client import MasterError

if TYPE_CHECKING:
    from collections.abc import Callable

    from emailloop.core.state import ConfigStore
    from emailloop.services.master_client import MasterClient

logger = logging.getLogger(__name__)


class HeartbeatLoop:
    """Sends ``POST /api/agents/health`` every health-check interval."""

    def __init__(
        self,
        client: MasterClient,
        store: ConfigStore,
        queue_size: Callable[[], int],
    ) -> None:
        self._client = client
        self._store = store
        self._queue_size = queue_size

    async def beat(self) -> bool:
        """Send one heartbeat. Returns True if the master acknowledged it."""
        if not self._store.has_token:
            return False
        try:
            await self._client.health(self._queue_size())
        except MasterError as e:
            logger.debug("Heartbeat failed: %s", e)
            return False
        return True

    async def run(self, stop_event: asyncio.Event) -> None:
        """Beat until ``stop_event`` is set.

        The interval is read from the store before each wait, so a new value
        pushed by the master applies from the next beat.
        """
        logger.info("Heartbeat started")
        while not stop_event.is_set():
            await self.beat()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(
                    stop_event.wait(),
                    timeout=self._store.config.health_check_interval_seconds,
                )
        logger.info("Heartbeat stopped")
