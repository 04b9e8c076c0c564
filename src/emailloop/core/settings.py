"""Process-wide access to the agent settings.

The agent reads its environment once, at startup. ``get_settings()``
returns that snapshot on every call; tests reset it with
``clear_settings_cache()``.

A bad environment is fatal: the problem is logged at CRITICAL and the
process exits with status 1 before anything talks to the master.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from pydantic import ValidationError

from emailloop.core.config import ConfigValidationError, Settings, validate_settings

logger = logging.getLogger(__name__)


def _describe(error: ValidationError) -> str:
    """One line per invalid field, keyed by its environment-style path."""
    lines = []
    for detail in error.errors():
        path = "__".join(str(part) for part in detail["loc"]).upper()
        lines.append(f"  - EMAILLOOP_{path}: {detail['msg']}")
    return "\n".join(lines)


def load_settings() -> Settings:
    """Read and validate the environment, without caching.

    Raises:
        ValidationError: A variable has the wrong type or range.
        ConfigValidationError: Values are individually valid but inconsistent.
    """
    settings = Settings()  # type: ignore[call-arg]
    validate_settings(settings)
    return settings


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the validated settings, loading them on first use.

    Raises:
        SystemExit: With status 1 if the environment is invalid.
    """
    try:
        settings = load_settings()
    except ValidationError as e:
        logger.critical("Invalid agent configuration:\n%s", _describe(e))
        raise SystemExit(1) from e
    except ConfigValidationError as e:
        logger.critical("Invalid agent configuration: %s (%s)", e.message, e.field or "?")
        raise SystemExit(1) from e

    logger.info(
        "Agent %s configured for master %s",
        settings.agent_nickname,
        settings.master_url,
    )
    return settings


def clear_settings_cache() -> None:
    """Forget the cached settings so the next call re-reads the environment."""
    get_settings.cache_clear()


def get_settings_safe() -> Settings | None:
    """Like get_settings(), but None instead of exiting on bad config."""
    try:
        return get_settings()
    except SystemExit:
        return None
