"""Pydantic schemas for agent registration and polling."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import Field, field_validator

from emailloop.schemas.tasks import WireModel

logger = logging.getLogger(__name__)


class RegisterRequest(WireModel):
    """Body of ``POST /api/agents/register``."""

    secret: str
    nickname: str
    version: str


class _ConfigCarrier(WireModel):
    """Response carrying tunables pushed by the master.

    The tunables stay a raw mapping: the store coerces and clamps each
    field on its own, so one odd value never rejects the whole response.
    """

    config: dict[str, Any] | None = None

    @field_validator("config", mode="before")
    @classmethod
    def drop_non_mapping_config(cls, v: Any) -> Any:
        if v is not None and not isinstance(v, dict):
            logger.warning("Ignoring config pushed by master: not an object (%r)", v)
            return None
        return v


class RegisterResponse(_ConfigCarrier):
    """Body returned by a successful registration."""

    token: str = Field(min_length=1)


class PollResponse(_ConfigCarrier):
    """Body returned by ``GET /api/agents/poll`` and ``/poll-imap``.

    Tasks are kept as raw mappings here; the client validates them one by
    one so that a single malformed task cannot hide the rest of the batch.
    """

    tasks: list[dict[str, Any]] = Field(default_factory=list)


class LogUploadResponse(WireModel):
    """Body returned by ``POST /api/agents/logs``."""

    appended: bool = True
    file_size: int | None = None
    reason: str | None = None
