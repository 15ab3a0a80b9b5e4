"""Capability-scoped API handles handed to plugin code.

A handle is created fresh for each render or invocation and is bound to one
plugin id. Every host capability is gated behind a permission token the
plugin's manifest must declare; undeclared use raises ``PermissionDenied``.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, Optional


from quarry.core.exceptions import PermissionDenied
from quarry.core.logger import get_logger
from quarry.plugins.manifest import Capability

logger = get_logger("quarry.capabilities")

SettingsGetter = Callable[[], Dict[str, Any]]


def _log_navigate(path: str) -> None:
    logger.info("Navigation requested", path=path)


def _log_notify(message: str, level: str) -> None:
    logger.info("Notification requested", message=message, level=level)


def _no_document() -> Optional[Dict[str, Any]]:
    return None


@dataclass
class HostServices:
    """Host-side collaborators a plugin may reach through its API handle"""
    navigate: Callable[[str], None] = _log_navigate
    notify: Callable[[str, str], None] = _log_notify
    current_document: Callable[[], Optional[Dict[str, Any]]] = _no_document


class PluginAPI:
    """The only surface plugin code gets onto the host"""

    def __init__(self, plugin_id: str, capabilities: FrozenSet[str],
                 settings_getter: SettingsGetter,
                 settings_writer: Callable[[str, str, Any], None],
                 host: HostServices):
        self._plugin_id = plugin_id
        self._capabilities = frozenset(capabilities)
        self._settings_getter = settings_getter
        self._settings_writer = settings_writer
        self._host = host
        self.logger = get_logger("quarry.plugin").bind(plugin_id=plugin_id)

    @property
    def plugin_id(self) -> str:
        return self._plugin_id

    @property
    def capabilities(self) -> FrozenSet[str]:
        return self._capabilities

    def has_capability(self, capability: str) -> bool:
        return str(getattr(capability, "value", capability)) in self._capabilities

    def _require(self, capability: Capability) -> None:
        if capability.value not in self._capabilities:
            logger.warning("Undeclared capability used", plugin_id=self._plugin_id, capability=capability.value)
            raise PermissionDenied(self._plugin_id, capability.value)

    # settings:read / settings:write

    def get_settings(self) -> Dict[str, Any]:
        self._require(Capability.SETTINGS_READ)
        return dict(self._settings_getter())

    def get_setting(self, key: str, default: Any = None) -> Any:
        self._require(Capability.SETTINGS_READ)
        return self._settings_getter().get(key, default)

    def set_setting(self, key: str, value: Any) -> None:
        self._require(Capability.SETTINGS_WRITE)
        self._settings_writer(self._plugin_id, key, value)

    # navigation

    def navigate(self, path: str) -> None:
        self._require(Capability.NAVIGATION)
        self._host.navigate(path)

    # notifications

    def notify(self, message: str, level: str = "info") -> None:
        self._require(Capability.NOTIFICATIONS)
        self._host.notify(message, level)

    # content:read

    def get_current_document(self) -> Optional[Dict[str, Any]]:
        self._require(Capability.CONTENT_READ)
        return self._host.current_document()

    def __repr__(self) -> str:
        return f"PluginAPI(plugin_id={self._plugin_id!r}, capabilities={sorted(self._capabilities)!r})"


class CapabilityAPIFactory:

    def __init__(self,
                 capabilities_for: Callable[[str], FrozenSet[str]],
                 settings_writer: Callable[[str, str, Any], None],
                 host: Optional[HostServices] = None):
        self._capabilities_for = capabilities_for
        self._settings_writer = settings_writer
        self.host = host or HostServices()

    def create_plugin_api(self, plugin_id: str, settings_getter: SettingsGetter) -> PluginAPI:
        """Build a handle exposing only the capabilities the plugin declared"""
        return PluginAPI(
            plugin_id,
            self._capabilities_for(plugin_id),
            settings_getter,
            self._settings_writer,
            self.host,
        )
