"""NETFORGE Configuration package.

Centralized configuration management using Pydantic Settings, plus the
local cluster reference mapping file.
"""

from netforge.config.local import DeploymentEntry, LocalConfig
from netforge.config.settings import Settings, get_settings, reload_settings

__all__: list[str] = [
    "DeploymentEntry",
    "LocalConfig",
    "Settings",
    "get_settings",
    "reload_settings",
]
