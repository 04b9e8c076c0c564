"""Email Loop agent entry point.

This module provides the main Agent class that:
- Registers with the master and re-registers whenever the token is dropped
- Polls for email tasks, sends them one by one and reports each batch
- Runs mailbox checks alongside the email flow
- Drains the queue before stopping, on SIGTERM/SIGINT or before a self-update

States:
    UNREGISTERED -> POLLING         registration succeeded
    POLLING -> UNREGISTERED         token dropped (401)
    POLLING -> DRAINING             stop_polling() (self-update)
    * -> SHUTTING_DOWN              termination signal
    DRAINING/SHUTTING_DOWN -> TERMINATED
                                    queue empty and no task executing

A task leaves the queue the moment its result exists, before the result is
reported. A batch whose report exhausts its retries is logged and dropped.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, NoReturn

from emailloop.core.logs import LOG_FORMAT, configure_logging, shutdown_logging
from emailloop.core.settings import get_settings
from emailloop.core.state import AgentConfig, ConfigStore
from emailloop.schemas import TaskResult
from emailloop.services.delivery import DeliveryExecutor, PacingPolicy
from emailloop.services.mailbox import MailboxChecker
from emailloop.services.master_client import (
    MasterAuthError,
    MasterClient,
    MasterConfig,
    MasterError,
)
from emailloop.services.oauth import OAuth2TokenProvider
from emailloop.services.reporter import ResultReporter
from emailloop.services.task_queue import TaskQueue
from emailloop.worker.heartbeat import HeartbeatLoop
from emailloop.worker.log_uploader import LogUploader
from emailloop.worker.update_checker import UpdateChecker

if TYPE_CHECKING:
    from emailloop.core.config import Settings
    from emailloop.schemas import ImapTaskResult, Task
    from emailloop.services.delivery import Sleep

logger = logging.getLogger(__name__)

REGISTER_RETRY_DELAY = 10.0
LOOP_ERROR_COOLDOWN = 10.0
SHUTDOWN_CHECK_INTERVAL = 1.0
SIDE_LOOP_STOP_TIMEOUT = 120.0


class AgentState(str, Enum):
    """Lifecycle state of the agent scheduler."""

    UNREGISTERED = "unregistered"
    POLLING = "polling"
    DRAINING = "draining"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


class Agent:
    """Poll/process/report scheduler.

    Every collaborator is injected; ``Agent.from_settings()`` wires the
    production ones.

    Example:
        agent = Agent.from_settings(get_settings())
        await agent.start()  # returns once drained and stopped
    """

    def __init__(
        self,
        *,
        store: ConfigStore,
        queue: TaskQueue,
        client: MasterClient,
        executor: DeliveryExecutor,
        reporter: ResultReporter,
        mailbox: MailboxChecker | None = None,
        heartbeat: HeartbeatLoop | None = None,
        log_uploader: LogUploader | None = None,
        update_checker: UpdateChecker | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """Initialize the agent.

        Args:
            store: Token and tunables store.
            queue: Pending email tasks.
            client: Master API client.
            executor: SMTP delivery.
            reporter: Result reporting with retry.
            mailbox: IMAP checker; mailbox checks are skipped when None.
            heartbeat: Liveness loop, run alongside polling.
            log_uploader: Log shipping loop, run alongside polling.
            update_checker: Self-update watcher, run alongside polling.
            sleep: Coroutine used for every delay.
        """
        self.store = store
        self.queue = queue
        self.client = client
        self.executor = executor
        self.reporter = reporter
        self.mailbox = mailbox
        self.heartbeat = heartbeat
        self.log_uploader = log_uploader
        self.update_checker = update_checker
        self._sleep = sleep

        self._state = AgentState.UNREGISTERED
        self._processing = False
        self._current_task: Task | None = None
        self._polling_enabled = True
        self._shutdown_requested = False
        self._restart_requested = False
        self._running = False
        self._released = False

        # Set on shutdown only
        self._shutdown_event = asyncio.Event()
        # Set on shutdown or stop_polling
        self._wake_event = asyncio.Event()
        self._side_stop = asyncio.Event()
        self._side_tasks: list[asyncio.Task[None]] = []

        self._started_at: datetime | None = None
        self._tasks_processed = 0
        self._tasks_failed = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> Agent:
        """Wire the production collaborators from settings."""
        store = ConfigStore(AgentConfig.from_settings(settings.agent))
        queue = TaskQueue()
        client = MasterClient(MasterConfig.from_settings(settings), store)
        tokens = OAuth2TokenProvider()
        timeout = settings.delivery.smtp_timeout_seconds

        agent = cls(
            store=store,
            queue=queue,
            client=client,
            executor=DeliveryExecutor(
                PacingPolicy.from_settings(settings.delivery), tokens, timeout=timeout
            ),
            reporter=ResultReporter(client),
            mailbox=MailboxChecker(timeout=timeout),
            heartbeat=HeartbeatLoop(client, store, queue.size),
            log_uploader=(
                LogUploader(
                    client,
                    store,
                    settings.logs.directory,
                    interval=settings.logs.upload_interval_ms / 1000,
                )
                if settings.logs.upload_enabled
                else None
            ),
        )
        if settings.updates.enabled:
            agent.update_checker = UpdateChecker.from_settings(
                settings.updates,
                get_queue_size=agent.get_queue_size,
                stop_polling=agent.stop_polling,
                request_restart=agent.request_restart,
            )
        return agent

    # ------------------------------------------------------------------ hooks

    @property
    def state(self) -> AgentState:
        return self._state

    @property
    def is_processing(self) -> bool:
        return self._processing

    @property
    def restart_requested(self) -> bool:
        return self._restart_requested

    def get_queue_size(self) -> int:
        """Number of tasks still queued."""
        return self.queue.size()

    def stop_polling(self) -> None:
        """Stop accepting new work and drain what is queued. Idempotent."""
        if self._polling_enabled:
            logger.info("Polling stopped, draining %d queued task(s)", self.queue.size())
        self._polling_enabled = False
        self._wake_event.set()

    def request_shutdown(self) -> None:
        """Ask the scheduler to drain and stop. Safe to call repeatedly."""
        if not self._shutdown_requested:
            logger.info(
                "Shutdown requested (queue size: %d, processing: %s)",
                self.queue.size(),
                self._processing,
            )
        self._shutdown_requested = True
        self._shutdown_event.set()
        self._wake_event.set()

    def request_restart(self) -> None:
        """Graceful shutdown so the service manager starts a new version."""
        logger.info("Restart requested")
        self._restart_requested = True
        self.request_shutdown()

    def _stop_requested(self) -> bool:
        return self._shutdown_requested or not self._polling_enabled

    # -------------------------------------------------------------- lifecycle

    async def start(self) -> None:
        """Run the scheduler until it has drained and terminated."""
        self._started_at = datetime.now(UTC)
        self._running = True
        self.client.open()
        self._start_side_loops()
        logger.info("Agent starting: master=%s", self.client.base_url)

        try:
            await self._run_loop()
        finally:
            self._running = False
            await self.shutdown()

    def _start_side_loops(self) -> None:
        if self.heartbeat is not None:
            self._side_tasks.append(asyncio.create_task(self.heartbeat.run(self._side_stop)))
        if self.log_uploader is not None:
            self._side_tasks.append(asyncio.create_task(self.log_uploader.run()))
        if self.update_checker is not None:
            self._side_tasks.append(
                asyncio.create_task(self.update_checker.run(self._side_stop))
            )

    async def _run_loop(self) -> None:
        while self._state is not AgentState.TERMINATED:
            if self._shutdown_requested and self._state in (
                AgentState.UNREGISTERED,
                AgentState.POLLING,
                AgentState.DRAINING,
            ):
                self._set_state(AgentState.SHUTTING_DOWN)

            if self._state is AgentState.UNREGISTERED:
                if not self._polling_enabled:
                    self._set_state(AgentState.DRAINING)
                elif await self._register():
                    self._set_state(AgentState.POLLING)

            elif self._state is AgentState.POLLING:
                if not self._polling_enabled:
                    self._set_state(AgentState.DRAINING)
                    continue
                try:
                    await self._poll_iteration()
                except Exception as e:
                    # Keep polling whatever happens
                    logger.exception("Error in agent loop: %s", e)
                    self._processing = False
                    self._current_task = None
                    await self._sleep(LOOP_ERROR_COOLDOWN)

            else:
                try:
                    pending = await self._drain_step()
                except Exception as e:
                    logger.exception("Error while draining: %s", e)
                    self._processing = False
                    self._current_task = None
                    await self._sleep(LOOP_ERROR_COOLDOWN)
                    continue
                if not pending:
                    self._set_state(AgentState.TERMINATED)

    def _set_state(self, state: AgentState) -> None:
        if state is not self._state:
            logger.info("Agent state: %s -> %s", self._state.value, state.value)
            self._state = state

    async def _wait(self, seconds: float, event: asyncio.Event) -> None:
        """Sleep ``seconds`` or until ``event`` is set, whichever comes first."""
        if seconds <= 0 or event.is_set():
            return
        sleeper = asyncio.ensure_future(self._sleep(seconds))
        waker = asyncio.ensure_future(event.wait())
        try:
            await asyncio.wait({sleeper, waker}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            waker.cancel()

    # ----------------------------------------------------------- registration

    async def _register(self) -> bool:
        """Register, retrying every 10 seconds until it works or shutdown."""
        while not self._shutdown_requested:
            try:
                await self.client.register()
            except MasterError as e:
                logger.error("Registration failed: %s", e)
            else:
                config = self.store.config
                logger.info(
                    "Config: poll=%dms, send=%dms, batch=%d, health=%dms",
                    config.poll_interval,
                    config.send_interval,
                    config.batch_size,
                    config.health_check_interval,
                )
                return True

            logger.info("Retrying registration in %.0f seconds", REGISTER_RETRY_DELAY)
            await self._wait(REGISTER_RETRY_DELAY, self._shutdown_event)
        return False

    # ---------------------------------------------------------------- polling

    async def _poll_iteration(self) -> None:
        if not self.store.has_token:
            logger.warning("No agent token, re-registering")
            self._set_state(AgentState.UNREGISTERED)
            return

        try:
            tasks = await self.client.poll()
        except MasterAuthError as e:
            logger.warning("Poll rejected (%s), re-registering", e)
            return
        except MasterError as e:
            logger.error("Poll failed: %s", e)
            tasks = []

        if tasks:
            await self._process_batch(tasks)

        if not self._stop_requested():
            await self._check_mailboxes()

        await self._wait(self.store.config.poll_interval_seconds, self._wake_event)

    async def _process_batch(self, tasks: list[Task]) -> None:
        config = self.store.config
        logger.info("Received %d task(s)", len(tasks))
        if len(tasks) > config.batch_size:
            logger.warning(
                "Master sent %d task(s), more than the batch size of %d",
                len(tasks),
                config.batch_size,
            )

        accepted = self.queue.enqueue(tasks)
        results: list[TaskResult] = []
        for index, task in enumerate(accepted):
            if self._stop_requested():
                logger.info(
                    "Stop requested mid-batch, %d task(s) left for draining",
                    len(accepted) - index,
                )
                break
            results.append(await self._execute(task))

            if index < len(accepted) - 1 and not self._stop_requested():
                await self._sleep(self.store.config.send_interval_seconds)

        await self.reporter.report(results)
        logger.info(
            "Completed %d task(s), %d successful",
            len(results),
            sum(1 for r in results if r.success),
        )
        logger.debug("Queue stats: %s", self.queue.memory_stats())

    async def _execute(self, task: Task) -> TaskResult:
        """Execute one task and drop it from the queue as soon as it is done."""
        self._processing = True
        self._current_task = task
        try:
            try:
                result = await self.executor.execute(task)
            except Exception as e:
                logger.exception("Executor raised on task %s", task.queue_id)
                result = TaskResult.failed(task, str(e) or type(e).__name__)

            self.queue.remove_by_identity(task.queue_id)
            self._tasks_processed += 1
            if not result.success:
                self._tasks_failed += 1
            return result
        finally:
            self._processing = False
            self._current_task = None

    async def _check_mailboxes(self) -> None:
        if self.mailbox is None:
            return
        try:
            imap_tasks = await self.client.poll_imap()
        except MasterError as e:
            logger.warning("IMAP poll failed: %s", e)
            return
        if not imap_tasks:
            return

        logger.info("Received %d IMAP task(s)", len(imap_tasks))
        results: list[ImapTaskResult] = []
        for imap_task in imap_tasks:
            if self._stop_requested():
                break
            results.append(await self.mailbox.check(imap_task))
        await self.reporter.report_imap(results)

    # --------------------------------------------------------------- draining

    async def _drain_step(self) -> bool:
        """Process one queued task. Returns False once there is nothing left."""
        if self.queue.size() == 0:
            return self._processing

        if not self.store.has_token and not self._shutdown_requested:
            await self._register_once()

        task = self.queue.dequeue_front()
        if task is None:
            return self._processing

        result = await self._execute(task)
        await self.reporter.report([result])
        if self.queue.size() > 0:
            await self._sleep(self.store.config.send_interval_seconds)
        return True

    async def _register_once(self) -> None:
        try:
            await self.client.register()
        except MasterError as e:
            logger.error("Registration during drain failed: %s", e)

    async def shutdown(self) -> None:
        """Drain, then release every held resource.

        Waits, checking once per second, until the queue is empty and no task
        is executing. The queue is only discarded if the scheduler loop is no
        longer running to drain it.
        """
        self.request_shutdown()
        while self.queue.size() > 0 or self._processing:
            if not self._running:
                self.queue.drain_all()
                break
            logger.info(
                "Waiting for %d queued task(s) before stopping (processing: %s)",
                self.queue.size(),
                self._processing,
            )
            await self._sleep(SHUTDOWN_CHECK_INTERVAL)
        await self._release()

    async def _release(self) -> None:
        if self._released:
            return
        self._released = True

        self._side_stop.set()
        if self.log_uploader is not None:
            await self.log_uploader.stop()
        if self._side_tasks:
            _, pending = await asyncio.wait(self._side_tasks, timeout=SIDE_LOOP_STOP_TIMEOUT)
            for task in pending:
                task.cancel()
            self._side_tasks.clear()

        await self.client.aclose()
        self._state = AgentState.TERMINATED
        logger.info(
            "Agent stopped: processed=%d, failed=%d, uptime=%s",
            self._tasks_processed,
            self._tasks_failed,
            self._get_uptime(),
        )

    def _get_uptime(self) -> str:
        """Calculate agent uptime as a human-readable string."""
        if self._started_at is None:
            return "0s"
        delta = datetime.now(UTC) - self._started_at
        hours, remainder = divmod(int(delta.total_seconds()), 3600)
        minutes, seconds = divmod(remainder, 60)
        if hours > 0:
            return f"{hours}h {minutes}m {seconds}s"
        elif minutes > 0:
            return f"{minutes}m {seconds}s"
        else:
            return f"{seconds}s"


# Running agent and its loop, for signal handlers
_agent: Agent | None = None
_loop: asyncio.AbstractEventLoop | None = None


def _handle_shutdown(signum: int, _frame: object) -> None:
    """Handle shutdown signals gracefully."""
    logger.info("Shutdown signal received (signal=%d)", signum)
    if _agent is not None and _loop is not None:
        _loop.call_soon_threadsafe(_agent.request_shutdown)


async def _async_main(settings: Settings) -> None:
    """Async entry point for the agent."""
    global _agent, _loop
    _loop = asyncio.get_running_loop()
    _agent = Agent.from_settings(settings)
    try:
        await _agent.start()
    finally:
        _agent = None


def run() -> NoReturn:
    """Run the agent process.

    This is the main entry point for the agent. It:
    - Loads and validates settings (exits 1 if invalid)
    - Sets up console and per-run file logging
    - Registers signal handlers for graceful shutdown
    - Runs the agent until it has drained and stopped
    """
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    settings = get_settings()
    configure_logging(settings)
    logger.info("Email Loop agent v%s starting: %s", settings.app_version, settings.get_snapshot())

    # Register signal handlers for graceful shutdown
    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    try:
        asyncio.run(_async_main(settings))
    except KeyboardInterrupt:
        logger.info("Agent interrupted")
    except Exception as e:
        logger.exception("Agent failed: %s", e)
        shutdown_logging()
        sys.exit(1)

    logger.info("Email Loop agent shutdown complete")
    shutdown_logging()
    sys.exit(0)


if __name__ == "__main__":
    run()
