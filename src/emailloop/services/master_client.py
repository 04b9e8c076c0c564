"""HTTP client for the Email Loop master server.

This module wraps every endpoint the agent talks to:
- Registration (exchanges the shared secret for an agent token)
- Task polling for email sends and mailbox checks
- Result reporting for both task kinds
- Heartbeats and log shipping

Every request carries the ``X-Custom-Agent`` header. Authenticated requests
add ``X-Agent-Token`` and poll requests add ``X-Agent-Version``.

A 401 on an authenticated call clears the token held by the ConfigStore so
that the scheduler re-registers on its next cycle, then raises
MasterAuthError. Retry policy is left to the callers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx
from pydantic import ValidationError

from emailloop.schemas import (
    ImapTask,
    LogUploadResponse,
    PollResponse,
    RegisterRequest,
    RegisterResponse,
    Task,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from emailloop.core.config import Settings
    from emailloop.core.state import ConfigStore
    from emailloop.schemas import ImapTaskResult, TaskResult

logger = logging.getLogger(__name__)

# Identifies agent traffic to the master
AGENT_HEADER = "X-Custom-Agent"
AGENT_HEADER_VALUE = "RankScaleAIEmailAgent"
TOKEN_HEADER = "X-Agent-Token"
VERSION_HEADER = "X-Agent-Version"

# Default timeout for master API requests (seconds)
DEFAULT_TIMEOUT = 30.0


@dataclass(frozen=True)
class MasterConfig:
    """Configuration for the master client."""

    base_url: str
    secret: str
    nickname: str
    version: str
    timeout: float = DEFAULT_TIMEOUT

    @classmethod
    def from_settings(cls, settings: Settings) -> MasterConfig:
        """Create config from the agent settings."""
        return cls(
            base_url=settings.master_url,
            secret=settings.agent_secret.get_secret_value(),
            nickname=settings.agent_nickname,
            version=settings.app_version,
            timeout=settings.http.timeout_seconds,
        )


class MasterError(Exception):
    """Base exception for master client errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class MasterConnectionError(MasterError):
    """Failed to reach the master (network fault or timeout)."""

    pass


class MasterAuthError(MasterError):
    """The master rejected our credentials (401) or we hold no token."""

    pass


class MasterResponseError(MasterError):
    """The master answered with an error status or an unreadable body."""

    pass


def _error_message(response: httpx.Response) -> str:
    """Extract the ``{"error": "..."}`` message from an error response."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return response.text or response.reason_phrase or f"HTTP {response.status_code}"


class MasterClient:
    """Client for the master's agent API.

    Example usage:
        store = ConfigStore()
        async with MasterClient(MasterConfig.from_settings(settings), store) as client:
            await client.register()
            tasks = await client.poll()
            await client.report(results)
    """

    def __init__(self, config: MasterConfig, store: ConfigStore) -> None:
        """Initialize the client.

        Args:
            config: Connection settings.
            store: Token and tunables store updated from responses.
        """
        self._config = config
        self._store = store
        self._client: httpx.AsyncClient | None = None

    @property
    def base_url(self) -> str:
        return self._config.base_url

    async def __aenter__(self) -> MasterClient:
        """Enter async context manager."""
        self.open()
        return self

    async def __aexit__(self, *args: object) -> None:
        """Exit async context manager."""
        await self.aclose()

    def open(self) -> None:
        """Create the underlying HTTP client if needed."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._config.base_url,
                timeout=self._config.timeout,
            )

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get the HTTP client, raising if not opened."""
        if self._client is None:
            msg = "MasterClient must be opened before use"
            raise RuntimeError(msg)
        return self._client

    def _headers(self, *, authenticated: bool, versioned: bool = False) -> dict[str, str]:
        headers = {AGENT_HEADER: AGENT_HEADER_VALUE}
        if authenticated:
            token = self._store.get_token()
            if not token:
                msg = "Agent is not registered"
                raise MasterAuthError(msg)
            headers[TOKEN_HEADER] = token
        if versioned:
            headers[VERSION_HEADER] = self._config.version
        return headers

    async def _send(
        self,
        method: str,
        path: str,
        *,
        authenticated: bool = True,
        versioned: bool = False,
        payload: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Send one request and map failures onto the MasterError hierarchy.

        Raises:
            MasterConnectionError: Network fault, timeout or any other
                httpx error (bad encoding, redirect loop).
            MasterAuthError: 401 (the token is invalidated first).
            MasterResponseError: Any other non-2xx status.
        """
        client = self._get_client()
        headers = self._headers(authenticated=authenticated, versioned=versioned)

        try:
            if method == "GET":
                response = await client.get(path, headers=headers)
            else:
                response = await client.post(path, json=payload, headers=headers)
        except httpx.TransportError as e:
            msg = f"Cannot reach master at {self._config.base_url}: {e}"
            raise MasterConnectionError(msg) from e
        except httpx.HTTPError as e:
            msg = f"Request to master failed: {type(e).__name__}: {e}"
            raise MasterConnectionError(msg) from e

        if response.status_code == 401:
            if authenticated:
                self._store.invalidate_token()
            raise MasterAuthError(_error_message(response), status_code=401)
        if response.is_error:
            raise MasterResponseError(_error_message(response), status_code=response.status_code)
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            msg = f"Invalid JSON from master: {e}"
            raise MasterResponseError(msg, status_code=response.status_code) from e

    # ------------------------------------------------------------- endpoints

    async def register(self) -> RegisterResponse:
        """Register with the master and store the returned token and config.

        Returns:
            The parsed registration response.

        Raises:
            MasterError: If registration fails for any reason.
        """
        request = RegisterRequest(
            secret=self._config.secret,
            nickname=self._config.nickname,
            version=self._config.version,
        )
        logger.info(
            "Registering as %r with master at %s (version %s)",
            self._config.nickname,
            self._config.base_url,
            self._config.version,
        )
        response = await self._send(
            "POST", "/api/agents/register", authenticated=False, payload=request.to_wire()
        )

        try:
            registration = RegisterResponse.model_validate(self._json(response))
        except ValidationError as e:
            msg = f"Malformed registration response: {e.error_count()} error(s)"
            raise MasterResponseError(msg, status_code=response.status_code) from e

        self._store.set_token(registration.token)
        if registration.config is not None:
            self._store.update_config(registration.config)
        logger.info("Registered successfully")
        return registration

    async def _poll(self, path: str) -> PollResponse:
        response = await self._send("GET", path, versioned=True)
        try:
            polled = PollResponse.model_validate(self._json(response))
        except ValidationError as e:
            msg = f"Malformed poll response: {e.error_count()} error(s)"
            raise MasterResponseError(msg, status_code=response.status_code) from e

        if polled.config is not None:
            self._store.update_config(polled.config)
        return polled

    async def poll(self) -> list[Task]:
        """Fetch pending email tasks.

        Tasks that fail validation are logged and skipped; the rest of the
        batch is returned.
        """
        polled = await self._poll("/api/agents/poll")
        tasks: list[Task] = []
        for raw in polled.tasks:
            try:
                tasks.append(Task.model_validate(raw))
            except ValidationError as e:
                logger.error(
                    "Skipping malformed task %s: %s",
                    raw.get("queueId", raw.get("queue_id", "?")),
                    e,
                )
        return tasks

    async def poll_imap(self) -> list[ImapTask]:
        """Fetch pending mailbox checks."""
        polled = await self._poll("/api/agents/poll-imap")
        tasks: list[ImapTask] = []
        for raw in polled.tasks:
            try:
                tasks.append(ImapTask.model_validate(raw))
            except ValidationError as e:
                logger.error(
                    "Skipping malformed IMAP task for account %s: %s",
                    raw.get("accountId", "?"),
                    e,
                )
        return tasks

    async def report(self, results: Sequence[TaskResult]) -> None:
        """Send one batch of email results."""
        await self._send(
            "POST",
            "/api/agents/report",
            payload={"results": [r.to_wire() for r in results]},
        )

    async def report_imap(self, results: Sequence[ImapTaskResult]) -> None:
        """Send one batch of mailbox check results."""
        await self._send(
            "POST",
            "/api/agents/report-imap",
            payload={"results": [r.to_wire() for r in results]},
        )

    async def health(self, queue_size: int) -> None:
        """Send a heartbeat carrying the current queue size."""
        await self._send("POST", "/api/agents/health", payload={"queueSize": queue_size})

    async def upload_log(
        self,
        *,
        filename: str,
        content: str,
        offset: int,
        length: int,
        timestamp: str,
    ) -> LogUploadResponse:
        """Append a chunk of a log file on the master."""
        response = await self._send(
            "POST",
            "/api/agents/logs",
            payload={
                "filename": filename,
                "content": content,
                "offset": offset,
                "length": length,
                "timestamp": timestamp,
            },
        )
        try:
            return LogUploadResponse.model_validate(self._json(response))
        except ValidationError as e:
            msg = f"Malformed log upload response: {e.error_count()} error(s)"
            raise MasterResponseError(msg, status_code=response.status_code) from e
