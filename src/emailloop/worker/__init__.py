"""Email Loop agent worker.

Long-running process that:
- Registers with the master and keeps its token fresh
- Polls for email tasks and sends them over SMTP
- Checks mailboxes over IMAP
- Sends heartbeats and ships its log files
- Installs updates from git once the queue has drained

Usage:
    # Run as module
    python -m emailloop.worker

    # Or through the console script
    emailloop-agent
"""

from emailloop.worker.main import Agent, AgentState, run

__all__ = ["Agent", "AgentState", "run"]
