"""Typed publish/subscribe directory of plugin-contributed UI extension points.

Host surfaces (sidebar, toolbar, widget panel) read snapshots from the
registry and subscribe to changes; they never branch on plugin identity, only
on the extension kind. Only the plugin manager mutates the registry.
"""

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union


from quarry.core.logger import get_logger
from quarry.plugins.manifest import ExtensionKind

logger = get_logger("quarry.extensions")


@dataclass(frozen=True)
class SidebarModeOptions:
    id: str
    name: str
    render: Callable[..., Any]
    icon: Optional[str] = None
    order: int = 0

    @property
    def label(self) -> str:
        return self.name


@dataclass(frozen=True)
class ToolbarButtonOptions:
    id: str
    label: str
    on_click: Callable[..., Any]
    icon: Optional[str] = None
    shortcut: Optional[str] = None
    is_active: Optional[Callable[..., bool]] = None
    order: int = 0

    @property
    def name(self) -> str:
        return self.label


@dataclass(frozen=True)
class WidgetOptions:
    id: str
    name: str
    render: Callable[..., Any]
    icon: Optional[str] = None
    order: int = 0

    @property
    def label(self) -> str:
        return self.name


ExtensionOptions = Union[SidebarModeOptions, ToolbarButtonOptions, WidgetOptions]

_OPTION_TYPES = {
    ExtensionKind.SIDEBAR_MODE: SidebarModeOptions,
    ExtensionKind.TOOLBAR_BUTTON: ToolbarButtonOptions,
    ExtensionKind.WIDGET: WidgetOptions,
}


@dataclass(frozen=True)
class Contribution:
    """A live extension point owned by one installed and enabled plugin"""
    plugin_id: str
    kind: ExtensionKind
    options: ExtensionOptions

    @property
    def key(self) -> Tuple[str, str]:
        return self.plugin_id, self.options.id


class ExtensionRegistry:

    def __init__(self):
        self._entries: Dict[ExtensionKind, Dict[Tuple[str, str], Contribution]] = {
            kind: {} for kind in ExtensionKind
        }
        self._listeners: List[Callable[[], None]] = []
        self._lock = threading.RLock()
        self._batch_depth = 0
        self._dirty = False

    # Registration

    def register_sidebar_mode(self, plugin_id: str, options: SidebarModeOptions) -> Contribution:
        return self.register(ExtensionKind.SIDEBAR_MODE, plugin_id, options)

    def register_toolbar_button(self, plugin_id: str, options: ToolbarButtonOptions) -> Contribution:
        return self.register(ExtensionKind.TOOLBAR_BUTTON, plugin_id, options)

    def register_widget(self, plugin_id: str, options: WidgetOptions) -> Contribution:
        return self.register(ExtensionKind.WIDGET, plugin_id, options)

    def register(self, kind: ExtensionKind, plugin_id: str, options: ExtensionOptions) -> Contribution:
        expected = _OPTION_TYPES[kind]
        if not isinstance(options, expected):
            raise TypeError(f"{kind.value} expects {expected.__name__}, got {type(options).__name__}")

        contribution = Contribution(plugin_id, kind, options)
        with self.batch():
            with self._lock:
                self._entries[kind][contribution.key] = contribution
                self._dirty = True

        logger.debug("Registered extension point", plugin_id=plugin_id, kind=kind.value, options_id=options.id)
        return contribution

    def withdraw_all(self, plugin_id: str) -> int:
        """Remove every contribution of a plugin; returns how many were removed"""
        removed = 0
        with self.batch():
            with self._lock:
                for entries in self._entries.values():
                    for key in [k for k in entries if k[0] == plugin_id]:
                        del entries[key]
                        removed += 1
                if removed:
                    self._dirty = True

        if removed:
            logger.debug(f"Withdrew {removed} extension points", plugin_id=plugin_id)
        return removed

    def clear(self) -> None:
        with self.batch():
            with self._lock:
                if any(self._entries.values()):
                    self._dirty = True
                for entries in self._entries.values():
                    entries.clear()

    # Snapshots

    def _snapshot(self, kind: ExtensionKind) -> List[Contribution]:
        with self._lock:
            return sorted(self._entries[kind].values(), key=lambda c: c.options.order)

    @property
    def all_sidebar_modes(self) -> List[Contribution]:
        return self._snapshot(ExtensionKind.SIDEBAR_MODE)

    @property
    def all_toolbar_buttons(self) -> List[Contribution]:
        return self._snapshot(ExtensionKind.TOOLBAR_BUTTON)

    @property
    def all_widgets(self) -> List[Contribution]:
        return self._snapshot(ExtensionKind.WIDGET)

    def contributions_for(self, plugin_id: str) -> List[Contribution]:
        with self._lock:
            return [c for entries in self._entries.values() for c in entries.values()
                    if c.plugin_id == plugin_id]

    def find(self, kind: ExtensionKind, plugin_id: str, options_id: str) -> Optional[Contribution]:
        with self._lock:
            return self._entries[kind].get((plugin_id, options_id))

    # Change notification

    def on_change(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Subscribe to registry changes; returns the unsubscribe function"""
        with self._lock:
            self._listeners.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return unsubscribe

    @contextmanager
    def batch(self) -> Iterator["ExtensionRegistry"]:
        """Coalesce the mutations inside the block into a single notification"""
        with self._lock:
            self._batch_depth += 1
        try:
            yield self
        finally:
            with self._lock:
                self._batch_depth -= 1
                fire = self._batch_depth == 0 and self._dirty
                if fire:
                    self._dirty = False
                listeners = list(self._listeners) if fire else []

            for listener in listeners:
                try:
                    listener()
                except Exception as e:
                    logger.error(f"Extension registry listener failed: {e}", exc_info=True)
