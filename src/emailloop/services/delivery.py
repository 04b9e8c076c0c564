"""SMTP delivery of pre-rendered campaign emails.

The executor turns one Task into exactly one TaskResult. Every fault along
the way (missing content, OAuth2 refresh, authentication, connection or
SMTP rejection) is converted into a failed result carrying a readable
message; nothing raises past ``execute()``.

Each call opens its own SMTP session (connect, TLS, authenticate, send,
quit). The blocking smtplib calls run in a worker thread so the agent's
event loop keeps serving heartbeats and log uploads meanwhile.

Usage:
    executor = DeliveryExecutor(PacingPolicy.from_settings(settings.delivery))
    result = await executor.execute(task)
    if not result.success:
        print(result.error)
"""

from __future__ import annotations

import asyncio
import logging
import random
import smtplib
import ssl
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate, make_msgid
from typing import TYPE_CHECKING

from emailloop.schemas import TaskResult
from emailloop.services.oauth import OAuth2RefreshError, OAuth2TokenProvider, xoauth2_string

if TYPE_CHECKING:
    from emailloop.core.config import DeliverySettings
    from emailloop.schemas import SmtpCredentials, Task

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

MISSING_CONTENT_ERROR = "Missing pre-generated email content"
DEFAULT_SMTP_TIMEOUT = 60


class DeliveryError(Exception):
    """Base exception for delivery failures."""

    pass


class DeliveryContentError(DeliveryError):
    """The task cannot be sent as is (no subject or body)."""

    pass


class DeliveryAuthError(DeliveryError):
    """The SMTP server rejected the credentials, or none could be obtained."""

    pass


class DeliveryTransportError(DeliveryError):
    """Connection, TLS or SMTP protocol failure."""

    pass


@dataclass(frozen=True)
class PacingPolicy:
    """Randomized delays around each send.

    Attributes:
        enabled: When False both delays are zero.
        connection_delay_ms: (min, max) pause before opening the session.
        post_send_delay_ms: (min, max) pause after a successful send.
    """

    enabled: bool = True
    connection_delay_ms: tuple[int, int] = (1000, 3000)
    post_send_delay_ms: tuple[int, int] = (500, 1500)

    @classmethod
    def from_settings(cls, settings: DeliverySettings) -> PacingPolicy:
        return cls(
            enabled=settings.pacing_enabled,
            connection_delay_ms=(
                settings.connection_delay_min_ms,
                settings.connection_delay_max_ms,
            ),
            post_send_delay_ms=(
                settings.post_send_delay_min_ms,
                settings.post_send_delay_max_ms,
            ),
        )

    @classmethod
    def disabled(cls) -> PacingPolicy:
        return cls(enabled=False)

    def _pick(self, bounds: tuple[int, int], rng: random.Random) -> float:
        if not self.enabled:
            return 0.0
        low, high = bounds
        return rng.uniform(low, high) / 1000

    def connection_delay(self, rng: random.Random) -> float:
        """Seconds to wait before connecting."""
        return self._pick(self.connection_delay_ms, rng)

    def post_send_delay(self, rng: random.Random) -> float:
        """Seconds to wait after a send."""
        return self._pick(self.post_send_delay_ms, rng)


def build_message(task: Task) -> MIMEText:
    """Build the HTML message for ``task``."""
    smtp = task.smtp
    contact = task.contact
    reply_to = (task.campaign.reply_to if task.campaign else None) or smtp.email
    domain = smtp.email.rpartition("@")[2] or None

    msg = MIMEText(task.body, "html", "utf-8")
    msg["From"] = smtp.email
    msg["To"] = formataddr((contact.display_name or "", contact.email))
    msg["Subject"] = task.subject
    msg["Reply-To"] = reply_to
    msg["Message-ID"] = make_msgid(domain=domain)
    msg["Date"] = formatdate(usegmt=True)
    return msg


def _tls_context(*, verify: bool) -> ssl.SSLContext:
    context = ssl.create_default_context()
    if not verify:
        # STARTTLS relays commonly present self-signed certificates
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


class DeliveryExecutor:
    """Sends one task per call and reports the outcome as a TaskResult."""

    def __init__(
        self,
        pacing: PacingPolicy | None = None,
        tokens: OAuth2TokenProvider | None = None,
        *,
        timeout: int = DEFAULT_SMTP_TIMEOUT,
        sleep: Sleep = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            pacing: Delay policy (defaults to the standard randomized one).
            tokens: OAuth2 token provider, shared with the mailbox checker.
            timeout: SMTP socket timeout in seconds.
            sleep: Coroutine used for pacing delays.
            rng: Random source for pacing delays.
        """
        self._pacing = pacing or PacingPolicy()
        self._tokens = tokens or OAuth2TokenProvider()
        self._timeout = timeout
        self._sleep = sleep
        self._rng = rng or random.Random()

    async def execute(self, task: Task) -> TaskResult:
        """Send ``task`` and return its result. Never raises."""
        try:
            if not task.subject or not task.body:
                raise DeliveryContentError(MISSING_CONTENT_ERROR)

            await self._pause(self._pacing.connection_delay(self._rng))
            secret = await self._credential(task.smtp)
            message = build_message(task)
            await asyncio.to_thread(self._send, task, message, secret)

        except DeliveryError as e:
            logger.error(
                "Failed to send task %s to %s: %s", task.queue_id, task.contact.email, e
            )
            return TaskResult.failed(task, str(e))
        except Exception as e:
            logger.exception("Unexpected error sending task %s", task.queue_id)
            return TaskResult.failed(task, str(e) or type(e).__name__)

        logger.info(
            "Sent task %s to %s via %s", task.queue_id, task.contact.email, task.smtp.email
        )
        await self._pause(self._pacing.post_send_delay(self._rng))
        return TaskResult.ok(task)

    async def _pause(self, seconds: float) -> None:
        if seconds > 0:
            await self._sleep(seconds)

    async def _credential(self, smtp: SmtpCredentials) -> str:
        """Password for basic auth, access token for OAuth2."""
        if not smtp.uses_oauth2:
            return smtp.password
        try:
            return await self._tokens.get_access_token(smtp)
        except OAuth2RefreshError as e:
            raise DeliveryAuthError(f"OAuth2 token refresh failed: {e}") from e

    def _send(self, task: Task, message: MIMEText, secret: str) -> None:
        """Run one blocking SMTP session. Called in a worker thread.

        Raises:
            DeliveryAuthError: Credentials rejected.
            DeliveryTransportError: Connection, TLS or protocol failure.
        """
        smtp = task.smtp
        try:
            if smtp.secure:
                # Implicit TLS (port 465)
                server = smtplib.SMTP_SSL(
                    smtp.host,
                    smtp.port,
                    timeout=self._timeout,
                    context=_tls_context(verify=True),
                )
            else:
                server = smtplib.SMTP(smtp.host, smtp.port, timeout=self._timeout)

            with server:
                if not smtp.secure:
                    server.ehlo()
                    if not server.has_extn("starttls"):
                        msg = f"{smtp.host} does not offer STARTTLS"
                        raise DeliveryTransportError(msg)
                    server.starttls(context=_tls_context(verify=False))
                    server.ehlo()

                if smtp.uses_oauth2:
                    server.ehlo_or_helo_if_needed()
                    server.auth(
                        "XOAUTH2",
                        lambda challenge=None: xoauth2_string(smtp.email, secret),
                    )
                else:
                    server.login(smtp.email, secret)

                server.sendmail(smtp.email, [task.contact.email], message.as_string())

        except smtplib.SMTPAuthenticationError as e:
            detail = e.smtp_error
            if isinstance(detail, bytes):
                detail = detail.decode(errors="replace")
            msg = f"SMTP authentication failed: {e.smtp_code} {detail}"
            raise DeliveryAuthError(msg) from e
        except smtplib.SMTPException as e:
            msg = f"SMTP error: {e}"
            raise DeliveryTransportError(msg) from e
        except OSError as e:
            msg = f"Connection error: {e}"
            raise DeliveryTransportError(msg) from e
