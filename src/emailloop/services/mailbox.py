"""IMAP mailbox checks.

A check logs into one account, reads the unseen messages of INBOX without
marking them (read-only select) and returns them parsed. Replies and
bounces are matched to campaigns on the master side, so the agent only
ships headers and a text body.
"""

from __future__ import annotations

import asyncio
import email
import imaplib
import logging
from email.header import decode_header, make_header
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING

from emailloop.schemas import ImapTaskResult, ReceivedEmail

if TYPE_CHECKING:
    from datetime import datetime
    from email.message import Message

    from emailloop.schemas import ImapConfig, ImapTask
    from emailloop.services.delivery import Sleep

logger = logging.getLogger(__name__)

MAX_MESSAGES = 50
DEFAULT_IMAP_TIMEOUT = 60


class MailboxError(Exception):
    """Raised when an IMAP session fails."""

    pass


def _decode(value: str | None) -> str:
    if not value:
        return ""
    try:
        return str(make_header(decode_header(value)))
    except (UnicodeDecodeError, LookupError):
        return value


def _parse_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None


def _part_text(part: Message) -> str:
    payload = part.get_payload(decode=True)
    if not isinstance(payload, bytes):
        return ""
    charset = part.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset, errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


def extract_body(message: Message) -> str:
    """Plain-text body, falling back to the HTML part."""
    if not message.is_multipart():
        return _part_text(message)

    html = ""
    for part in message.walk():
        if part.is_multipart() or part.get_content_disposition() == "attachment":
            continue
        content_type = part.get_content_type()
        if content_type == "text/plain":
            return _part_text(part)
        if content_type == "text/html" and not html:
            html = _part_text(part)
    return html


def parse_message(raw: bytes) -> ReceivedEmail:
    """Parse an RFC 822 message into a ReceivedEmail."""
    message = email.message_from_bytes(raw)
    references = message.get("References")
    return ReceivedEmail(
        from_=_decode(message.get("From")),
        subject=_decode(message.get("Subject")),
        date=_parse_date(message.get("Date")),
        message_id=(message.get("Message-ID") or "").strip(),
        in_reply_to=(message.get("In-Reply-To") or "").strip() or None,
        references=references.split() if references else None,
        body=extract_body(message),
    )


class MailboxChecker:
    """Runs ImapTask checks and turns them into ImapTaskResult."""

    def __init__(
        self,
        *,
        timeout: int = DEFAULT_IMAP_TIMEOUT,
        sleep: Sleep = asyncio.sleep,
        max_messages: int = MAX_MESSAGES,
    ) -> None:
        self._timeout = timeout
        self._sleep = sleep
        self._max_messages = max_messages

    async def check(self, task: ImapTask) -> ImapTaskResult:
        """Fetch unseen mail for ``task``. Never raises."""
        if task.delay_seconds > 0:
            await self._sleep(task.delay_seconds)

        try:
            emails = await asyncio.to_thread(self._fetch, task.imap_config)
        except MailboxError as e:
            logger.error("IMAP check failed for %s: %s", task.email, e)
            return ImapTaskResult(account_id=task.account_id, success=False, error=str(e))
        except Exception as e:
            logger.exception("Unexpected error checking %s", task.email)
            return ImapTaskResult(
                account_id=task.account_id, success=False, error=str(e) or type(e).__name__
            )

        logger.info("IMAP check for %s found %d new email(s)", task.email, len(emails))
        return ImapTaskResult(account_id=task.account_id, success=True, emails=emails)

    def _connect(self, config: ImapConfig) -> imaplib.IMAP4:
        if config.secure:
            return imaplib.IMAP4_SSL(config.host, config.port, timeout=self._timeout)
        return imaplib.IMAP4(config.host, config.port, timeout=self._timeout)

    def _fetch(self, config: ImapConfig) -> list[ReceivedEmail]:
        """Blocking IMAP session. Called in a worker thread."""
        try:
            conn = self._connect(config)
        except (imaplib.IMAP4.error, OSError) as e:
            raise MailboxError(f"Connection error: {e}") from e

        try:
            conn.login(config.user, config.password)
            status, _ = conn.select("INBOX", readonly=True)
            if status != "OK":
                raise MailboxError("Cannot open INBOX")

            status, data = conn.search(None, "UNSEEN")
            if status != "OK":
                raise MailboxError("UNSEEN search failed")

            ids = data[0].split() if data and data[0] else []
            emails: list[ReceivedEmail] = []
            for msg_id in ids[: self._max_messages]:
                status, parts = conn.fetch(msg_id, "(BODY.PEEK[])")
                if status != "OK":
                    logger.warning("Could not fetch message %s", msg_id.decode())
                    continue
                for part in parts:
                    if isinstance(part, tuple):
                        emails.append(parse_message(part[1]))
            return emails

        except imaplib.IMAP4.error as e:
            raise MailboxError(f"IMAP error: {e}") from e
        except OSError as e:
            raise MailboxError(f"Connection error: {e}") from e
        finally:
            try:
                conn.logout()
            except (imaplib.IMAP4.error, OSError):
                logger.debug("IMAP logout failed", exc_info=True)
