"""Utility modules for the metrics collector."""

from .config import (
    Settings,
    ServiceConfig,
    DEFAULT_SERVICES,
    get_settings,
    load_services_config,
)

__all__ = [
    "Settings",
    "ServiceConfig",
    "DEFAULT_SERVICES",
    "get_settings",
    "load_services_config",
]
