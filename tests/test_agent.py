"""Tests for the agent scheduler.

Tests cover:
- Happy path: register, poll, send, report once per batch
- 401 handling and re-registration
- Partial failures reported together
- Shutdown and stop_polling mid-batch, then one-by-one draining
- Loop error cooldown and registration retry
- Mailbox checks and side loops

The master client, executor and reporter are mocks; every delay goes
through a FakeClock so nothing actually sleeps. Loops are ended by calling
request_shutdown()/stop_polling() from inside a mock's side effect.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from emailloop.schemas import ImapTaskResult, TaskResult
from emailloop.services.delivery import DeliveryExecutor
from emailloop.services.mailbox import MailboxChecker
from emailloop.services.master_client import (
    MasterAuthError,
    MasterClient,
    MasterConnectionError,
)
from emailloop.services.reporter import ResultReporter
from emailloop.worker.main import (
    LOOP_ERROR_COOLDOWN,
    REGISTER_RETRY_DELAY,
    Agent,
    AgentState,
)
from tests.factories import make_imap_task, make_task


@pytest.fixture
def client() -> MagicMock:
    client = MagicMock(spec=MasterClient)
    client.base_url = "http://master.test"
    client.open = MagicMock()
    client.aclose = AsyncMock()
    client.register = AsyncMock(return_value=None)
    client.poll = AsyncMock(return_value=[])
    client.poll_imap = AsyncMock(return_value=[])
    return client


@pytest.fixture
def executor() -> MagicMock:
    executor = MagicMock(spec=DeliveryExecutor)
    executor.execute = AsyncMock(side_effect=TaskResult.ok)
    return executor


@pytest.fixture
def reporter() -> MagicMock:
    reporter = MagicMock(spec=ResultReporter)
    reporter.report = AsyncMock(return_value=True)
    reporter.report_imap = AsyncMock(return_value=True)
    return reporter


@pytest.fixture
def agent(store, queue, client, executor, reporter, clock) -> Agent:
    return Agent(
        store=store,
        queue=queue,
        client=client,
        executor=executor,
        reporter=reporter,
        sleep=clock.sleep,
    )


def _polls_then_shutdown(agent: Agent, *batches):
    """Poll side effect serving ``batches`` in order, then requesting shutdown."""
    remaining = list(batches)

    async def poll():
        if remaining:
            batch = remaining.pop(0)
            if isinstance(batch, Exception):
                raise batch
            return batch
        agent.request_shutdown()
        return []

    return poll


def _reported_ids(reporter: MagicMock) -> list[list[int]]:
    return [[r.queue_id for r in c.args[0]] for c in reporter.report.call_args_list]


async def _run(agent: Agent) -> None:
    await asyncio.wait_for(agent.start(), timeout=5)


class TestHappyPath:
    """Register, poll, process, report."""

    @pytest.mark.asyncio
    async def test_batch_sent_in_order_and_reported_once(
        self, agent, client, executor, reporter, queue, clock
    ):
        """Three tasks are sent in order with the send interval between them."""
        tasks = [make_task(1), make_task(2), make_task(3)]
        client.poll.side_effect = _polls_then_shutdown(agent, tasks)

        await _run(agent)

        assert [c.args[0].queue_id for c in executor.execute.call_args_list] == [1, 2, 3]
        assert _reported_ids(reporter) == [[1, 2, 3]]
        assert all(r.success for r in reporter.report.call_args.args[0])
        assert queue.size() == 0
        # Two send intervals, then one poll interval
        assert clock.sleeps == [2.0, 2.0, 60.0]
        assert agent.state is AgentState.TERMINATED
        client.open.assert_called_once()
        client.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_send_interval_from_master_config(self, agent, client, store, clock):
        """A config pushed by the master applies to the next batch."""
        store.update_config({"sendInterval": 500, "pollInterval": 5000})
        client.poll.side_effect = _polls_then_shutdown(agent, [make_task(1), make_task(2)])

        await _run(agent)

        assert clock.sleeps == [0.5, 5.0]

    @pytest.mark.asyncio
    async def test_empty_poll_waits_poll_interval(self, agent, client, reporter, clock):
        client.poll.side_effect = _polls_then_shutdown(agent, [])

        await _run(agent)

        reporter.report.assert_not_called()
        assert clock.sleeps == [60.0]

    @pytest.mark.asyncio
    async def test_oversized_batch_processed_with_warning(
        self, agent, client, store, reporter, caplog
    ):
        store.update_config({"batchSize": 2})
        client.poll.side_effect = _polls_then_shutdown(
            agent, [make_task(1), make_task(2), make_task(3)]
        )

        with caplog.at_level(logging.WARNING):
            await _run(agent)

        assert _reported_ids(reporter) == [[1, 2, 3]]
        assert "more than the batch size" in caplog.text


class TestFailures:
    """Failed tasks and master errors."""

    @pytest.mark.asyncio
    async def test_partial_failure_reported_together(self, agent, client, executor, reporter):
        """A failed send does not stop the batch and shares its report."""

        async def execute(task):
            if task.queue_id == 2:
                return TaskResult.failed(task, "Connection error: refused")
            return TaskResult.ok(task)

        executor.execute.side_effect = execute
        client.poll.side_effect = _polls_then_shutdown(agent, [make_task(1), make_task(2)])

        await _run(agent)

        reporter.report.assert_awaited_once()
        first, second = reporter.report.call_args.args[0]
        assert first.queue_id == 1
        assert first.success is True
        assert second.queue_id == 2
        assert second.success is False
        assert second.error == "Connection error: refused"

    @pytest.mark.asyncio
    async def test_executor_exception_becomes_failed_result(
        self, agent, client, executor, reporter, queue
    ):
        executor.execute.side_effect = RuntimeError("kaboom")
        client.poll.side_effect = _polls_then_shutdown(agent, [make_task(1)])

        await _run(agent)

        (result,) = reporter.report.call_args.args[0]
        assert result.success is False
        assert result.error == "kaboom"
        assert queue.size() == 0

    @pytest.mark.asyncio
    async def test_unauthorized_poll_reregisters_before_next_poll(
        self, agent, client, store, clock
    ):
        """A 401 drops the token and the agent registers again without sleeping."""
        calls: list[str] = []

        async def register():
            calls.append("register")
            store.set_token("fresh-token")

        async def rejected():
            store.invalidate_token()
            raise MasterAuthError("Unauthorized", status_code=401)

        polls = _polls_then_shutdown(agent)

        async def poll():
            calls.append("poll")
            if calls.count("poll") == 1:
                await rejected()
            return await polls()

        client.register.side_effect = register
        client.poll.side_effect = poll

        await _run(agent)

        assert calls == ["register", "poll", "register", "poll"]
        assert store.get_token() == "fresh-token"
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_poll_error_still_waits_and_checks_mailboxes(
        self, agent, client, clock
    ):
        agent.mailbox = MagicMock(spec=MailboxChecker)
        client.poll.side_effect = _polls_then_shutdown(agent, MasterConnectionError("down"))

        await _run(agent)

        client.poll_imap.assert_awaited_once()
        assert clock.sleeps == [60.0]

    @pytest.mark.asyncio
    async def test_loop_error_cools_down(self, agent, client, clock, caplog):
        """An unexpected error is logged and followed by a 10 second pause."""
        client.poll.side_effect = _polls_then_shutdown(agent, RuntimeError("boom"))

        with caplog.at_level(logging.ERROR):
            await _run(agent)

        assert clock.sleeps == [LOOP_ERROR_COOLDOWN]
        assert "Error in agent loop" in caplog.text
        assert agent.is_processing is False


class TestRegistration:
    """Registration retry."""

    @pytest.mark.asyncio
    async def test_retries_every_ten_seconds(self, agent, client, clock):
        client.register.side_effect = [
            MasterConnectionError("down"),
            MasterConnectionError("down"),
            None,
        ]
        client.poll.side_effect = _polls_then_shutdown(agent)

        await _run(agent)

        assert client.register.await_count == 3
        assert clock.sleeps == [REGISTER_RETRY_DELAY, REGISTER_RETRY_DELAY]
        client.poll.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_shutdown_while_registering(self, agent, client):
        """Shutdown ends the registration retries."""

        async def register():
            if client.register.await_count >= 2:
                agent.request_shutdown()
            raise MasterConnectionError("down")

        client.register.side_effect = register

        await _run(agent)

        assert client.register.await_count == 2
        client.poll.assert_not_called()
        assert agent.state is AgentState.TERMINATED


class TestDraining:
    """Shutdown and stop_polling mid-batch."""

    @pytest.mark.asyncio
    async def test_shutdown_mid_batch_drains_one_by_one(
        self, agent, client, executor, reporter, queue, clock
    ):
        """The in-flight result is reported, then each remaining task alone."""

        async def execute(task):
            if task.queue_id == 1:
                agent.request_shutdown()
            return TaskResult.ok(task)

        executor.execute.side_effect = execute
        client.poll.side_effect = _polls_then_shutdown(
            agent, [make_task(1), make_task(2), make_task(3)]
        )

        await _run(agent)

        assert _reported_ids(reporter) == [[1], [2], [3]]
        assert queue.size() == 0
        # Only the pause between the two drained tasks
        assert clock.sleeps == [2.0]
        assert client.poll.await_count == 1
        assert agent.state is AgentState.TERMINATED

    @pytest.mark.asyncio
    async def test_stop_polling_drains_then_terminates(
        self, agent, client, executor, reporter, queue
    ):
        async def execute(task):
            if task.queue_id == 1:
                agent.stop_polling()
            return TaskResult.ok(task)

        executor.execute.side_effect = execute
        client.poll.return_value = [make_task(1), make_task(2)]

        await _run(agent)

        assert _reported_ids(reporter) == [[1], [2]]
        client.poll.assert_awaited_once()
        client.poll_imap.assert_not_called()
        assert queue.size() == 0
        assert agent.state is AgentState.TERMINATED

    @pytest.mark.asyncio
    async def test_drain_reregisters_when_token_missing(
        self, agent, client, executor, store, reporter
    ):
        async def execute(task):
            if task.queue_id == 1:
                store.invalidate_token()
                agent.stop_polling()
            return TaskResult.ok(task)

        executor.execute.side_effect = execute
        client.poll.return_value = [make_task(1), make_task(2)]

        await _run(agent)

        assert client.register.await_count == 2
        assert _reported_ids(reporter) == [[1], [2]]

    @pytest.mark.asyncio
    async def test_drain_continues_after_unexpected_error(
        self, agent, client, executor, reporter, queue, clock, caplog
    ):
        """An error while draining one task never costs the tasks behind it."""

        async def execute(task):
            if task.queue_id == 1:
                agent.request_shutdown()
            return TaskResult.ok(task)

        async def report(results):
            if [r.queue_id for r in results] == [2]:
                raise RuntimeError("bad gzip body")
            return True

        executor.execute.side_effect = execute
        reporter.report.side_effect = report
        client.poll.side_effect = _polls_then_shutdown(
            agent, [make_task(1), make_task(2), make_task(3)]
        )

        with caplog.at_level(logging.WARNING):
            await _run(agent)

        assert [c.args[0].queue_id for c in executor.execute.call_args_list] == [1, 2, 3]
        assert _reported_ids(reporter) == [[1], [2], [3]]
        assert queue.size() == 0
        assert "Error while draining" in caplog.text
        assert "Discarded" not in caplog.text
        assert clock.sleeps == [LOOP_ERROR_COOLDOWN]
        assert agent.state is AgentState.TERMINATED

    @pytest.mark.asyncio
    async def test_restart_requested_before_start(self, agent, client):
        agent.request_restart()

        await _run(agent)

        assert agent.restart_requested is True
        client.register.assert_not_called()
        assert agent.state is AgentState.TERMINATED

    @pytest.mark.asyncio
    async def test_shutdown_without_loop_discards_queue(self, agent, client, queue, caplog):
        """With no loop left to drain it, shutdown drops the queue and logs it."""
        queue.enqueue([make_task(1), make_task(2)])

        with caplog.at_level(logging.WARNING):
            await agent.shutdown()

        assert queue.size() == 0
        assert "Discarded 2" in caplog.text
        client.aclose.assert_awaited_once()
        assert agent.state is AgentState.TERMINATED

    @pytest.mark.asyncio
    async def test_stop_polling_is_idempotent(self, agent, client, caplog):
        with caplog.at_level(logging.INFO):
            agent.stop_polling()
            agent.stop_polling()
            await _run(agent)

        assert caplog.text.count("Polling stopped") == 1
        assert "unregistered -> draining" in caplog.text
        client.register.assert_not_called()
        client.poll.assert_not_called()
        assert agent.state is AgentState.TERMINATED


class TestMailboxesAndSideLoops:
    """IMAP checks, heartbeat, log uploads."""

    @pytest.mark.asyncio
    async def test_mailbox_checks_reported(self, agent, client, reporter):
        mailbox = MagicMock(spec=MailboxChecker)
        result = ImapTaskResult(account_id=1, success=True)
        mailbox.check = AsyncMock(return_value=result)
        agent.mailbox = mailbox
        client.poll_imap.return_value = [make_imap_task(1)]
        client.poll.side_effect = _polls_then_shutdown(agent, [])

        await _run(agent)

        mailbox.check.assert_awaited_once()
        reporter.report_imap.assert_awaited_once_with([result])

    @pytest.mark.asyncio
    async def test_imap_poll_failure_ignored(self, agent, client, reporter):
        agent.mailbox = MagicMock(spec=MailboxChecker)
        client.poll_imap.side_effect = MasterConnectionError("down")
        client.poll.side_effect = _polls_then_shutdown(agent, [])

        await _run(agent)

        reporter.report_imap.assert_not_called()

    @pytest.mark.asyncio
    async def test_side_loops_started_and_stopped(self, agent, client):
        heartbeat = MagicMock()
        heartbeat.run = AsyncMock()
        uploader = MagicMock()
        uploader.run = AsyncMock()
        uploader.stop = AsyncMock()
        agent.heartbeat = heartbeat
        agent.log_uploader = uploader
        client.poll.side_effect = _polls_then_shutdown(agent)

        await _run(agent)

        heartbeat.run.assert_awaited_once()
        uploader.run.assert_awaited_once()
        uploader.stop.assert_awaited_once()

    def test_queue_size_hook(self, agent, queue):
        queue.enqueue([make_task(1)])

        assert agent.get_queue_size() == 1


class TestUptime:
    """Tests for Agent uptime calculation."""

    def test_uptime_not_started(self, agent):
        assert agent._get_uptime() == "0s"

    def test_uptime_minutes(self, agent):
        agent._started_at = datetime.now(UTC) - timedelta(minutes=5, seconds=30)

        uptime = agent._get_uptime()

        assert "5m" in uptime
        assert "30s" in uptime or "31s" in uptime

    def test_uptime_hours(self, agent):
        agent._started_at = datetime.now(UTC) - timedelta(hours=2, minutes=30)

        assert agent._get_uptime().startswith("2h 30m")
