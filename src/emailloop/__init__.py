"""Email Loop Agent - distributed email sending worker.

The agent registers with a master server, polls it for email-sending and
mailbox-check tasks, executes them via SMTP/IMAP and reports the results
back. All work is held in a small in-memory queue that is drained before
the process exits.
"""

__version__ = "1.0.0"
__all__ = ["__version__"]
