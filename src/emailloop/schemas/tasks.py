"""Pydantic schemas for the work exchanged with the master.

The master speaks camelCase JSON (``queueId``, ``smtpEmail``...). Models use
snake_case attributes with camelCase aliases, accept either form on input
and always serialize by alias.

Tasks are frozen: once a task has been enqueued nothing may change it.
"""

from __future__ import annotations

# NOTE: datetime must remain at runtime for Pydantic validation
from datetime import datetime  # noqa: TC003
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

DEFAULT_SMTP_HOST = "smtp.gmail.com"
DEFAULT_SMTP_PORT = 587


class WireModel(BaseModel):
    """Base for every model that crosses the HTTP boundary."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )

    def to_wire(self) -> dict:
        """Serialize to the JSON-ready camelCase form the master expects."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# -----------------------------------------------------------------------------
# Email sending
# -----------------------------------------------------------------------------


class Contact(WireModel):
    """Recipient of a campaign email."""

    id: int
    email: str
    first_name: str | None = None
    last_name: str | None = None
    company: str | None = None
    website: str | None = None

    @property
    def display_name(self) -> str | None:
        """Full name when the master knows it."""
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) or None


class Campaign(WireModel):
    """Campaign the email belongs to."""

    name: str
    reply_to: str | None = None


class SmtpCredentials(WireModel):
    """Sending account, with either a password or OAuth2 refresh material."""

    id: int
    email: str
    password: str = ""
    host: str = DEFAULT_SMTP_HOST
    port: int = DEFAULT_SMTP_PORT
    secure: bool = False
    auth_type: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    refresh_token: str | None = None
    tenant_id: str | None = None
    access_token: str | None = None
    token_expires_at: datetime | None = None

    @property
    def uses_oauth2(self) -> bool:
        """True when the account authenticates with an OAuth2 bearer token."""
        return (self.auth_type or "").lower() == "oauth2"


class Task(WireModel):
    """One email to send, with pre-rendered content.

    Subject and body may be empty here; the executor turns that into a
    failed result rather than rejecting the whole poll.
    """

    queue_id: int
    campaign_id: int | None = None
    subject: str = ""
    body: str = ""
    tracking_id: str = ""
    contact: Contact
    campaign: Campaign | None = None
    smtp: SmtpCredentials


class TaskResult(WireModel):
    """Outcome of one task, correlated by ``queue_id``."""

    queue_id: int
    success: bool
    smtp_email: str
    error: str | None = None

    @classmethod
    def ok(cls, task: Task) -> TaskResult:
        """Successful delivery of ``task``."""
        return cls(queue_id=task.queue_id, success=True, smtp_email=task.smtp.email)

    @classmethod
    def failed(cls, task: Task, error: str) -> TaskResult:
        """Failed delivery of ``task`` with a human-readable reason."""
        return cls(
            queue_id=task.queue_id,
            success=False,
            smtp_email=task.smtp.email,
            error=error or "Unknown error",
        )


# -----------------------------------------------------------------------------
# Mailbox checks
# -----------------------------------------------------------------------------


class ImapConfig(WireModel):
    """IMAP connection details for a mailbox check."""

    host: str
    port: int = 993
    secure: bool = True
    user: str
    password: str


class ImapTask(WireModel):
    """Request to fetch new mail from one account."""

    type: Literal["imap_check"] = "imap_check"
    account_id: int
    email: str
    delay_seconds: float = Field(default=0, ge=0)
    imap_config: ImapConfig


class ReceivedEmail(WireModel):
    """A message found during a mailbox check."""

    from_: str = Field(alias="from")
    subject: str = ""
    date: datetime | None = None
    message_id: str = ""
    in_reply_to: str | None = None
    references: list[str] | None = None
    body: str = ""


class ImapTaskResult(WireModel):
    """Outcome of one mailbox check."""

    account_id: int
    success: bool
    emails: list[ReceivedEmail] = Field(default_factory=list)
    error: str | None = None
