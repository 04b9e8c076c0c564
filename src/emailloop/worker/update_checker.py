"""Self-update watcher.

The agent runs from a git checkout. Every check interval the watcher fetches
the tracked branch and compares ``HEAD`` with ``origin/<branch>``. When a new
commit is available and auto-update is on, it hands over to the agent's
drain protocol:

1. ``stop_polling()``: no new tasks are accepted.
2. Wait until ``get_queue_size()`` is 0, checking every 5 seconds for at
   most 30 minutes. If the queue is still busy after that, the update is
   abandoned.
3. Run the update script from the working directory.
4. ``request_restart()``: graceful shutdown with exit code 0, after which
   the service manager starts the new version.

The watcher never touches the queue itself.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from emailloop.core.config import UpdateSettings
    from emailloop.services.delivery import Sleep

logger = logging.getLogger(__name__)

DEFAULT_CHECK_INTERVAL = 300.0
QUEUE_CHECK_INTERVAL = 5.0
MAX_QUEUE_WAIT = 30 * 60.0


class UpdateError(Exception):
    """Raised when a git or update command fails."""

    pass


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Exit status and output of a finished command."""

    returncode: int
    stdout: str
    stderr: str


Runner = Callable[[Sequence[str], Path], Awaitable[CommandResult]]


async def run_command(args: Sequence[str], cwd: Path) -> CommandResult:
    """Run ``args`` in ``cwd`` and capture its output."""
    process = await asyncio.create_subprocess_exec(
        *args,
        cwd=cwd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await process.communicate()
    return CommandResult(
        returncode=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )


class UpdateChecker:
    """Periodic git-based update check wired to the agent's drain hooks."""

    def __init__(
        self,
        *,
        get_queue_size: Callable[[], int],
        stop_polling: Callable[[], None],
        request_restart: Callable[[], None],
        branch: str = "master",
        auto_update: bool = True,
        check_interval: float = DEFAULT_CHECK_INTERVAL,
        script: str = "scripts/auto-update.sh",
        workdir: Path | None = None,
        runner: Runner = run_command,
        sleep: Sleep = asyncio.sleep,
        queue_check_interval: float = QUEUE_CHECK_INTERVAL,
        max_queue_wait: float = MAX_QUEUE_WAIT,
    ) -> None:
        self._get_queue_size = get_queue_size
        self._stop_polling = stop_polling
        self._request_restart = request_restart
        self.branch = branch
        self.auto_update = auto_update
        self.check_interval = check_interval
        self._script = script
        self._workdir = workdir or Path.cwd()
        self._runner = runner
        self._sleep = sleep
        self._queue_check_interval = queue_check_interval
        self._max_queue_wait = max_queue_wait

        self._is_checking = False
        self._last_check_time: datetime | None = None
        self._current_commit: str | None = None

    @classmethod
    def from_settings(
        cls,
        settings: UpdateSettings,
        *,
        get_queue_size: Callable[[], int],
        stop_polling: Callable[[], None],
        request_restart: Callable[[], None],
    ) -> UpdateChecker:
        return cls(
            get_queue_size=get_queue_size,
            stop_polling=stop_polling,
            request_restart=request_restart,
            branch=settings.branch,
            auto_update=settings.auto_update,
            check_interval=settings.check_interval_ms / 1000,
            script=settings.script,
        )

    async def _git(self, *args: str) -> str:
        result = await self._runner(["git", *args], self._workdir)
        if result.returncode != 0:
            msg = f"git {' '.join(args)} failed: {result.stderr.strip()}"
            raise UpdateError(msg)
        return result.stdout.strip()

    async def check_for_updates(self) -> bool:
        """Run one check, updating when a new commit is available.

        Returns:
            True if an update was installed and a restart requested.
        """
        if self._is_checking:
            logger.info("Update check already in progress, skipping")
            return False

        self._is_checking = True
        self._last_check_time = datetime.now(UTC)
        try:
            local = await self._git("rev-parse", "HEAD")
            if self._current_commit is None:
                self._current_commit = local
                logger.info("Current version: %s", local[:7])

            await self._git("fetch", "origin", self.branch)
            remote = await self._git("rev-parse", f"origin/{self.branch}")
            logger.debug("Local %s, remote %s", local[:7], remote[:7])

            if local == remote:
                logger.info("Already up to date (%s)", local[:7])
                return False

            logger.info("New version available: %s -> %s", local[:7], remote[:7])
            if not self.auto_update:
                logger.info("Auto-update disabled, run ./%s to update", self._script)
                return False
            return await self._perform_update()

        except (UpdateError, OSError) as e:
            logger.error("Update check failed: %s", e)
            return False
        finally:
            self._is_checking = False

    async def _wait_for_empty_queue(self) -> bool:
        waited = 0.0
        size = self._get_queue_size()
        while size > 0 and waited < self._max_queue_wait:
            logger.info("Queue size: %d, waiting before update", size)
            await self._sleep(self._queue_check_interval)
            waited += self._queue_check_interval
            size = self._get_queue_size()
        return size == 0

    async def _perform_update(self) -> bool:
        logger.info("Starting auto-update, polling stopped")
        self._stop_polling()

        if not await self._wait_for_empty_queue():
            logger.error(
                "Queue still has %d task(s) after %.0f minutes, update aborted. "
                "Run ./%s manually once the queue is empty.",
                self._get_queue_size(),
                self._max_queue_wait / 60,
                self._script,
            )
            return False

        script = self._workdir / self._script
        if not script.exists():
            logger.error("Update script %s not found", script)
            return False
        script.chmod(script.stat().st_mode | 0o111)

        logger.info("Queue empty, running %s", self._script)
        result = await self._runner([str(script)], self._workdir)
        if result.stdout:
            logger.info("%s", result.stdout.strip())
        if result.returncode != 0:
            logger.error("Update script failed (%d): %s", result.returncode, result.stderr.strip())
            return False

        logger.info("Update installed, restarting")
        self._request_restart()
        return True

    async def run(self, stop_event: asyncio.Event) -> None:
        """Check on every interval until ``stop_event`` is set."""
        logger.info(
            "Update checker started (interval: %.0fs, auto-update: %s, branch: %s)",
            self.check_interval,
            self.auto_update,
            self.branch,
        )
        while not stop_event.is_set():
            await self.check_for_updates()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(stop_event.wait(), timeout=self.check_interval)
        logger.info("Update checker stopped")

    async def check_now(self) -> bool:
        """Run a check immediately."""
        logger.info("Manual update check triggered")
        return await self.check_for_updates()

    def get_status(self) -> dict[str, Any]:
        return {
            "is_checking": self._is_checking,
            "last_check_time": self._last_check_time,
            "current_commit": self._current_commit,
            "check_interval": self.check_interval,
            "auto_update": self.auto_update,
            "branch": self.branch,
        }
