"""
Quarry Plugin Runtime
Installs, isolates and exposes extension points for document viewer plugins
"""

__version__ = "0.1.0"
__author__ = "Quarry Team"

from quarry.core import (
    ConfigManager,
    get_config,
    get_logger,
    setup_logging,
)

from quarry.plugins import (
    PluginManager,
    ExtensionRegistry,
    PluginAPI,
)

__all__ = [
    "ConfigManager",
    "get_config",
    "get_logger",
    "setup_logging",
    "PluginManager",
    "ExtensionRegistry",
    "PluginAPI",
]
