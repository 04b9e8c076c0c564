"""Reporting of task results to the master, with bounded retry.

Results are removed from the queue before they are reported, so a report
that exhausts its attempts is lost for good. The batch is then logged as
JSON at ERROR level so it can be replayed by hand.

Policy:
- Empty batches succeed without any request.
- Up to MAX_ATTEMPTS attempts, RETRY_DELAY_SECONDS apart (fixed delay).
- A 401 is retried like any other failure. The client has already dropped
  the token, so the agent re-registers before the next attempt.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import TYPE_CHECKING, TypeVar

from emailloop.schemas.tasks import WireModel
from emailloop.services.master_client import MasterAuthError, MasterError

if TYPE_CHECKING:
    from emailloop.schemas import ImapTaskResult, TaskResult
    from emailloop.services.delivery import Sleep
    from emailloop.services.master_client import MasterClient

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5
RETRY_DELAY_SECONDS = 30.0

R = TypeVar("R", bound=WireModel)


class ResultReporter:
    """Sends result batches through the master client.

    Example:
        reporter = ResultReporter(client)
        if not await reporter.report(results):
            ...  # results are lost, keep going
    """

    def __init__(
        self,
        client: MasterClient,
        *,
        max_attempts: int = MAX_ATTEMPTS,
        retry_delay: float = RETRY_DELAY_SECONDS,
        reregister: bool = True,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._client = client
        self._reregister = reregister
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay
        self._sleep = sleep

    async def report(self, results: Sequence[TaskResult]) -> bool:
        """Report email results. Returns False when the batch is lost."""
        return await self._deliver("email", results, self._client.report)

    async def report_imap(self, results: Sequence[ImapTaskResult]) -> bool:
        """Report mailbox check results. Returns False when the batch is lost."""
        return await self._deliver("IMAP", results, self._client.report_imap)

    async def _deliver(
        self,
        kind: str,
        results: Sequence[R],
        send: Callable[[Sequence[R]], Awaitable[None]],
    ) -> bool:
        if not results:
            return True

        for attempt in range(1, self._max_attempts + 1):
            logger.info(
                "Reporting %d %s result(s) (attempt %d/%d)",
                len(results),
                kind,
                attempt,
                self._max_attempts,
            )
            try:
                await send(results)
            except MasterError as e:
                logger.error(
                    "%s report failed (attempt %d/%d): %s",
                    kind,
                    attempt,
                    self._max_attempts,
                    e,
                )
                if attempt < self._max_attempts:
                    logger.warning("Retrying in %.0f seconds", self._retry_delay)
                    await self._sleep(self._retry_delay)
                    if isinstance(e, MasterAuthError) and self._reregister:
                        await self._register_again()
                continue

            logger.info("Reported %d %s result(s)", len(results), kind)
            return True

        logger.error("%s report failed after %d attempts", kind, self._max_attempts)
        self._log_lost(kind, results)
        return False

    async def _register_again(self) -> None:
        logger.warning("Agent not authorized, re-registering before the next attempt")
        try:
            await self._client.register()
        except MasterError as e:
            logger.error("Re-registration failed: %s", e)

    @staticmethod
    def _log_lost(kind: str, results: Sequence[R]) -> None:
        batch = json.dumps([r.to_wire() for r in results])
        logger.error("Lost %d %s result(s): %s", len(results), kind, batch)
