"""Card delivery core module.

Shared components used across all services:
- Configuration management
- Logging setup
"""

from carddelivery.core.config import (
    BulkFailurePolicy,
    ConfigValidationError,
    DatabaseSettings,
    DeliverySettings,
    Environment,
    Settings,
)
from carddelivery.core.settings import (
    clear_settings_cache,
    configure_logging,
    get_settings,
    get_settings_safe,
)

__all__ = [
    "BulkFailurePolicy",
    "ConfigValidationError",
    "DatabaseSettings",
    "DeliverySettings",
    "Environment",
    "Settings",
    "clear_settings_cache",
    "configure_logging",
    "get_settings",
    "get_settings_safe",
]
