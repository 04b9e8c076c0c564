"""Email Loop core module.

Shared components used across the agent:
- Configuration management
- Logging setup
- Token and runtime config store
"""

from emailloop.core.config import (
    AgentSettings,
    ConfigValidationError,
    DeliverySettings,
    HTTPSettings,
    LogSettings,
    Settings,
    UpdateSettings,
)
from emailloop.core.settings import (
    clear_settings_cache,
    get_settings,
    get_settings_safe,
)
from emailloop.core.state import AgentConfig, ConfigStore

__all__ = [
    "AgentConfig",
    "AgentSettings",
    "ConfigStore",
    "ConfigValidationError",
    "DeliverySettings",
    "HTTPSettings",
    "LogSettings",
    "Settings",
    "UpdateSettings",
    "clear_settings_cache",
    "get_settings",
    "get_settings_safe",
]
