"""GenoFlow configuration."""

from .settings import (
    REFERENCE_VERSIONS,
    ReferenceSettings,
    ReferenceVersion,
    RunConfig,
    Settings,
    ToolSettings,
    get_settings,
)

__all__ = [
    "REFERENCE_VERSIONS",
    "ReferenceSettings",
    "ReferenceVersion",
    "RunConfig",
    "Settings",
    "ToolSettings",
    "get_settings",
]
