"""Email Loop service layer.

This package contains the collaborators driven by the agent scheduler:
- TaskQueue: in-memory queue of pending email tasks
- MasterClient: HTTP client for the master's agent API
- OAuth2TokenProvider: access tokens for OAuth2 sending accounts
- DeliveryExecutor: SMTP delivery of one task per call
- MailboxChecker: IMAP checks for new mail
- ResultReporter: result reporting with bounded retry
"""

from emailloop.services.delivery import (
    DeliveryAuthError,
    DeliveryContentError,
    DeliveryError,
    DeliveryExecutor,
    DeliveryTransportError,
    PacingPolicy,
)
from emailloop.services.mailbox import MailboxChecker, MailboxError
from emailloop.services.master_client import (
    MasterAuthError,
    MasterClient,
    MasterConfig,
    MasterConnectionError,
    MasterError,
    MasterResponseError,
)
from emailloop.services.oauth import OAuth2RefreshError, OAuth2TokenProvider
from emailloop.services.reporter import ResultReporter
from emailloop.services.task_queue import TaskQueue

__all__ = [
    "DeliveryAuthError",
    "DeliveryContentError",
    "DeliveryError",
    "DeliveryExecutor",
    "DeliveryTransportError",
    "MailboxChecker",
    "MailboxError",
    "MasterAuthError",
    "MasterClient",
    "MasterConfig",
    "MasterConnectionError",
    "MasterError",
    "MasterResponseError",
    "OAuth2RefreshError",
    "OAuth2TokenProvider",
    "PacingPolicy",
    "ResultReporter",
    "TaskQueue",
]
