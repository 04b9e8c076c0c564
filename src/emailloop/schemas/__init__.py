"""Wire schemas for the master API."""

from emailloop.schemas.agent import (
    LogUploadResponse,
    PollResponse,
    RegisterRequest,
    RegisterResponse,
)
from emailloop.schemas.tasks import (
    Campaign,
    Contact,
    ImapConfig,
    ImapTask,
    ImapTaskResult,
    ReceivedEmail,
    SmtpCredentials,
    Task,
    TaskResult,
)

__all__ = [
    "Campaign",
    "Contact",
    "ImapConfig",
    "ImapTask",
    "ImapTaskResult",
    "LogUploadResponse",
    "PollResponse",
    "ReceivedEmail",
    "RegisterRequest",
    "RegisterResponse",
    "SmtpCredentials",
    "Task",
    "TaskResult",
]
