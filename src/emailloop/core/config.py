"""Configuration management for the Email Loop agent.

This module provides centralized configuration using Pydantic Settings.
All configuration is loaded from environment variables with the EMAILLOOP_
prefix. Nested settings use double underscore as delimiter
(e.g., EMAILLOOP_AGENT__POLL_INTERVAL_MS).

The values under ``agent`` are only the initial tunables: the master server
sends its own values on registration and on every poll, and those replace
the local ones at runtime (see ``emailloop.core.state``).

Example:
    export EMAILLOOP_MASTER_URL=https://master.example.com
    export EMAILLOOP_AGENT_SECRET=s3cret
    export EMAILLOOP_AGENT__POLL_INTERVAL_MS=30000
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Annotated, Any, Self

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from emailloop import __version__

logger = logging.getLogger(__name__)


def _default_nickname() -> str:
    return f"agent-{int(time.time() * 1000)}"


class AgentSettings(BaseSettings):
    """Initial agent tunables, all intervals in milliseconds.

    The master overrides these after registration.
    """

    model_config = SettingsConfigDict(
        env_prefix="EMAILLOOP_AGENT__",
        extra="ignore",
    )

    poll_interval_ms: Annotated[int, Field(ge=1000)] = Field(
        default=60000,
        description="Delay between two polls of the master",
    )
    send_interval_ms: Annotated[int, Field(ge=0)] = Field(
        default=2000,
        description="Delay between two sends of the same batch",
    )
    batch_size: Annotated[int, Field(ge=1)] = Field(
        default=10,
        description="Expected maximum number of tasks per poll",
    )
    health_check_interval_ms: Annotated[int, Field(ge=1000)] = Field(
        default=10000,
        description="Delay between two heartbeats",
    )


class HTTPSettings(BaseSettings):
    """HTTP client settings for talking to the master."""

    model_config = SettingsConfigDict(
        env_prefix="EMAILLOOP_HTTP__",
        extra="ignore",
    )

    timeout_seconds: Annotated[float, Field(gt=0, le=300)] = Field(
        default=30.0,
        description="Request timeout for master API calls",
    )


class DeliverySettings(BaseSettings):
    """SMTP delivery and pacing settings.

    The two randomized delays spread sends over time so that an agent never
    produces a perfectly regular traffic signature.
    """

    model_config = SettingsConfigDict(
        env_prefix="EMAILLOOP_DELIVERY__",
        extra="ignore",
    )

    pacing_enabled: bool = Field(
        default=True,
        description="Apply the randomized connection and post-send delays",
    )
    connection_delay_min_ms: Annotated[int, Field(ge=0)] = Field(default=1000)
    connection_delay_max_ms: Annotated[int, Field(ge=0)] = Field(default=3000)
    post_send_delay_min_ms: Annotated[int, Field(ge=0)] = Field(default=500)
    post_send_delay_max_ms: Annotated[int, Field(ge=0)] = Field(default=1500)
    smtp_timeout_seconds: Annotated[int, Field(ge=1, le=600)] = Field(
        default=60,
        description="Socket timeout for SMTP and IMAP sessions",
    )


class LogSettings(BaseSettings):
    """Local log files and log shipping."""

    model_config = SettingsConfigDict(
        env_prefix="EMAILLOOP_LOGS__",
        extra="ignore",
    )

    directory: Path = Field(
        default=Path("logs"),
        description="Directory holding the per-run log files",
    )
    retention_days: Annotated[int, Field(ge=1)] = Field(
        default=7,
        description="Log files older than this are removed at startup",
    )
    upload_enabled: bool = Field(
        default=True,
        description="Ship log files to the master",
    )
    upload_interval_ms: Annotated[int, Field(ge=1000)] = Field(default=30000)


class UpdateSettings(BaseSettings):
    """Self-update watcher settings."""

    model_config = SettingsConfigDict(
        env_prefix="EMAILLOOP_UPDATES__",
        extra="ignore",
    )

    enabled: bool = Field(
        default=True,
        description="Run the update watcher at all",
    )
    auto_update: bool = Field(
        default=True,
        description="Install updates automatically (otherwise only log them)",
    )
    check_interval_ms: Annotated[int, Field(ge=10000)] = Field(default=300000)
    branch: str = Field(default="master")
    script: str = Field(
        default="scripts/auto-update.sh",
        description="Update script, relative to the working directory",
    )


class Settings(BaseSettings):
    """Main agent configuration container.

    Example environment variables:
        EMAILLOOP_MASTER_URL=https://master.example.com
        EMAILLOOP_AGENT_SECRET=s3cret
        EMAILLOOP_AGENT_NICKNAME=eu-west-1
        EMAILLOOP_DELIVERY__PACING_ENABLED=false
    """

    model_config = SettingsConfigDict(
        env_prefix="EMAILLOOP_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        validate_default=True,
    )

    master_url: str = Field(
        default="http://localhost:3000",
        description="Base URL of the master server",
    )
    agent_secret: SecretStr = Field(
        default=SecretStr("change-me-in-production"),
        description="Shared registration secret",
    )
    agent_nickname: str = Field(
        default_factory=_default_nickname,
        description="Human-readable name shown on the master",
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    agent: AgentSettings = Field(default_factory=AgentSettings)
    http: HTTPSettings = Field(default_factory=HTTPSettings)
    delivery: DeliverySettings = Field(default_factory=DeliverySettings)
    logs: LogSettings = Field(default_factory=LogSettings)
    updates: UpdateSettings = Field(default_factory=UpdateSettings)

    app_version: str = Field(
        default=__version__,
        description="Version reported to the master on registration",
    )

    @field_validator("master_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Avoid double slashes when joining API paths."""
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            msg = "master_url must start with http:// or https://"
            raise ValueError(msg)
        return v.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure the log level is one the logging module knows."""
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            msg = f"Log level must be one of: {', '.join(sorted(allowed))}"
            raise ValueError(msg)
        return v.upper()

    @model_validator(mode="after")
    def warn_default_secret(self) -> Self:
        """Registering with the placeholder secret is almost always a mistake."""
        if self.agent_secret.get_secret_value() == "change-me-in-production":
            logger.warning(
                "Agent secret is the default placeholder. "
                "Set EMAILLOOP_AGENT_SECRET before running against a real master."
            )
        return self

    def get_snapshot(self) -> dict[str, Any]:
        """Return the non-sensitive configuration for startup logging."""
        return {
            "master_url": self.master_url,
            "nickname": self.agent_nickname,
            "version": self.app_version,
            "agent": self.agent.model_dump(),
            "pacing_enabled": self.delivery.pacing_enabled,
            "log_directory": str(self.logs.directory),
            "log_upload": self.logs.upload_enabled,
            "updates": {
                "enabled": self.updates.enabled,
                "auto_update": self.updates.auto_update,
                "branch": self.updates.branch,
            },
        }


class ConfigValidationError(Exception):
    """Raised when configuration validation fails.

    This exception should cause fast failure at startup to prevent
    running with invalid configuration.
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        """Initialize with error details.

        Args:
            message: Human-readable error description.
            field: Optional field name that failed validation.
        """
        self.message = message
        self.field = field
        super().__init__(message)


def validate_settings(settings: Settings) -> None:
    """Perform additional runtime validation of settings.

    This function performs validations that cannot be expressed
    declaratively in Pydantic models.

    Args:
        settings: Settings instance to validate.

    Raises:
        ConfigValidationError: If validation fails.
    """
    if not settings.agent_secret.get_secret_value():
        raise ConfigValidationError(
            "Agent secret is required. Set EMAILLOOP_AGENT_SECRET.",
            field="agent_secret",
        )

    if not settings.agent_nickname.strip():
        raise ConfigValidationError(
            "Agent nickname cannot be blank.",
            field="agent_nickname",
        )

    delivery = settings.delivery
    if delivery.connection_delay_min_ms > delivery.connection_delay_max_ms:
        raise ConfigValidationError(
            "connection_delay_min_ms must not exceed connection_delay_max_ms.",
            field="delivery.connection_delay_min_ms",
        )
    if delivery.post_send_delay_min_ms > delivery.post_send_delay_max_ms:
        raise ConfigValidationError(
            "post_send_delay_min_ms must not exceed post_send_delay_max_ms.",
            field="delivery.post_send_delay_min_ms",
        )

    logger.info("Configuration validated for agent %s", settings.agent_nickname)
