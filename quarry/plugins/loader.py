"""Binding of manifest entry strings to plugin callables.

Plugin modules are compiled straight from the stored package files into
module objects that are never registered in ``sys.modules`` and never
reached through ``sys.path``, so two plugins may ship a ``plugin.py``
without colliding.
"""

import importlib.util
import re
import threading
from pathlib import PurePosixPath
from types import ModuleType
from typing import Any, Callable, Dict, List, Mapping, Tuple


from quarry.core.exceptions import ValidationError
from quarry.core.logger import get_logger
from quarry.plugins.extensions import (
    ExtensionOptions, SidebarModeOptions, ToolbarButtonOptions, WidgetOptions,
)
from quarry.plugins.manifest import ExtensionKind, ExtensionPointDecl, Manifest

logger = get_logger("quarry.loader")

BoundPoint = Tuple[ExtensionKind, ExtensionOptions]

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_]")


def module_name_for(plugin_id: str, module_path: str) -> str:
    stem = str(PurePosixPath(module_path).with_suffix(""))
    return f"quarry_plugin_{_UNSAFE_CHARS.sub('_', plugin_id)}_{_UNSAFE_CHARS.sub('_', stem)}"


class PluginLoader:

    def __init__(self):
        self._modules: Dict[Tuple[str, str], ModuleType] = {}
        self._lock = threading.RLock()

    def bind(self, manifest: Manifest, files: Mapping[str, bytes]) -> List[BoundPoint]:
        """Resolve every declared extension point to typed options.

        All binding problems are collected and raised together as a
        :class:`ValidationError`; nothing is cached unless every point binds.
        """
        errors: List[str] = []
        modules: Dict[str, ModuleType] = {}

        for module_path in manifest.entry_modules():
            try:
                modules[module_path] = self._compile(manifest.id, module_path, files)
            except ValidationError as e:
                errors.extend(e.errors)

        bound: List[BoundPoint] = []
        for point in manifest.extension_points:
            module = modules.get(point.module_path)
            if module is None:
                continue

            target = getattr(module, point.attribute, None)
            if target is None:
                errors.append(f"{point.entry}: '{point.attribute}' is not defined")
                continue
            if not callable(target):
                errors.append(f"{point.entry}: '{point.attribute}' is not callable")
                continue

            bound.append((point.kind, self._options(point, target)))

        if errors:
            raise ValidationError(errors, manifest.id)

        with self._lock:
            for module_path, module in modules.items():
                self._modules[(manifest.id, module_path)] = module

        logger.debug(f"Bound {len(bound)} extension points", plugin_id=manifest.id)
        return bound

    def forget(self, plugin_id: str) -> None:
        """Drop compiled modules of a plugin"""
        with self._lock:
            for key in [k for k in self._modules if k[0] == plugin_id]:
                del self._modules[key]

    def loaded_modules(self, plugin_id: str) -> List[str]:
        with self._lock:
            return sorted(path for pid, path in self._modules if pid == plugin_id)

    def _compile(self, plugin_id: str, module_path: str, files: Mapping[str, bytes]) -> ModuleType:
        source = files.get(module_path)
        if source is None:
            raise ValidationError([f"entry module '{module_path}' is not in the package"], plugin_id)

        module_name = module_name_for(plugin_id, module_path)
        origin = f"<plugin {plugin_id}>/{module_path}"

        spec = importlib.util.spec_from_loader(module_name, loader=None, origin=origin)
        module = importlib.util.module_from_spec(spec)
        module.__file__ = origin

        try:
            code = compile(source, origin, "exec")
            exec(code, module.__dict__)
        except SyntaxError as e:
            raise ValidationError([f"{module_path}: syntax error at line {e.lineno}: {e.msg}"], plugin_id)
        except Exception as e:
            logger.warning("Plugin module failed to import", plugin_id=plugin_id, module=module_path,
                           error=str(e))
            raise ValidationError([f"{module_path}: import failed: {type(e).__name__}: {e}"], plugin_id)

        return module

    @staticmethod
    def _options(point: ExtensionPointDecl, target: Callable[..., Any]) -> ExtensionOptions:
        if point.kind == ExtensionKind.SIDEBAR_MODE:
            return SidebarModeOptions(id=point.options_id, name=point.label, render=target,
                                      icon=point.icon, order=point.order)
        if point.kind == ExtensionKind.TOOLBAR_BUTTON:
            return ToolbarButtonOptions(id=point.options_id, label=point.label, on_click=target,
                                        icon=point.icon, shortcut=point.shortcut, order=point.order)
        return WidgetOptions(id=point.options_id, name=point.label, render=target,
                             icon=point.icon, order=point.order)
