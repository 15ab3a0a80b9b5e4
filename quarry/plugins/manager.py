"""Plugin lifecycle orchestration.

The manager is the only component that drives transitions between
``Uninstalled``, ``Installed(enabled)`` and ``Installed(disabled)``. It owns
the store writes and the extension registry publication that follow each
transition, and tells subscribers about a change only after it is committed.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

import requests

from quarry import __version__
from quarry.core.config import ConfigManager
from quarry.core.exceptions import (
    AcquisitionError, Forbidden, NotFound, PublicAccessError, StoreError, ValidationError,
)
from quarry.core.logger import get_logger
from quarry.plugins.acquirer import (
    PackageAcquirer, PluginPackage, PluginSource, RegistryClient, RegistryPlugin, load_directory,
)
from quarry.plugins.boundary import IsolationBoundary, RenderProps
from quarry.plugins.capabilities import CapabilityAPIFactory, HostServices, PluginAPI
from quarry.plugins.extensions import Contribution, ExtensionRegistry
from quarry.plugins.loader import BoundPoint, PluginLoader
from quarry.plugins.manifest import MANIFEST_NAMES, Manifest, ManifestValidator
from quarry.plugins.store import PluginState, PluginStore

logger = get_logger("quarry.manager")

TRIGGER_USER = "user"
TRIGGER_ERROR = "error"
TRIGGER_SYSTEM = "system"


@dataclass
class InstallResult:
    success: bool
    errors: List[str] = field(default_factory=list)
    plugin_id: Optional[str] = None
    version: Optional[str] = None
    kind: Optional[str] = None  # "validation", "acquisition", "storage" or "forbidden"
    updated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.success}
        if self.errors:
            data["errors"] = list(self.errors)
        return data


@dataclass
class OperationResult:
    success: bool
    reason: Optional[str] = None
    kind: Optional[str] = None


@dataclass(frozen=True)
class PluginEvent:
    action: str
    plugin_id: str
    at: datetime = field(default_factory=datetime.now, compare=False)


class PluginManager:
    """Installs, toggles and removes plugins and publishes their contributions"""

    def __init__(self,
                 config: Optional[ConfigManager] = None,
                 host: Optional[HostServices] = None,
                 session: Optional[requests.Session] = None,
                 host_version: str = __version__):
        self.config = config or ConfigManager(load_env=False)
        self.host_version = host_version

        self._executor = ThreadPoolExecutor(
            max_workers=int(self.config.get("plugins.fetch_workers", 4)),
            thread_name_prefix="quarry-fetch",
        )
        self._session = session or requests.Session()
        self._owns_session = session is None

        self.store = PluginStore(self.config.get_path("plugins.store_dir"))
        self.extensions = ExtensionRegistry()
        self.validator = ManifestValidator(host_version)
        self.loader = PluginLoader()
        self.registry = RegistryClient(
            self.config.get("plugins.registry_url"),
            session=self._session,
            cache_ttl=self.config.get("plugins.registry_cache_ttl", 300),
            timeout=self.config.get("plugins.fetch_timeout", 30.0),
            executor=self._executor,
        )
        self.acquirer = PackageAcquirer(
            self.registry,
            session=self._session,
            timeout=self.config.get("plugins.fetch_timeout", 30.0),
            max_package_bytes=self.config.get("plugins.max_package_bytes"),
            max_unpacked_bytes=self.config.get("plugins.max_unpacked_bytes"),
            max_archive_entries=self.config.get("plugins.max_archive_entries"),
            allowed_content_types=self.config.get("plugins.allowed_content_types"),
            executor=self._executor,
        )
        self.api_factory = CapabilityAPIFactory(self._capabilities_for, self._write_setting, host)

        self._bindings: Dict[str, List[BoundPoint]] = {}
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._listeners: List[Callable[[PluginEvent], None]] = []
        self._initialized = False

    @property
    def public_access(self) -> bool:
        return self.config.public_access

    # Startup and teardown

    def initialize(self) -> None:
        """Load the store, refresh bundled plugins and publish enabled ones"""
        if self._initialized:
            return

        self.store.load()

        for bundled_dir in self.config.get("plugins.bundled_dirs", []):
            self._install_bundled_dir(Path(bundled_dir).expanduser())

        published = 0
        with self.extensions.batch():
            for state in self.store.get_all():
                with self._lock_for(state.id):
                    if self._revalidate(state) and state.enabled:
                        self._publish(state.id)
                        published += 1

        self._initialized = True
        logger.info(f"Plugin manager initialized with {len(self.store.ids())} plugins",
                    enabled=published, host_version=self.host_version)

    def shutdown(self) -> None:
        self.extensions.clear()
        self._bindings.clear()
        self._executor.shutdown(wait=False)
        if self._owns_session:
            self._session.close()
        logger.info("Plugin manager shutdown complete")

    def _install_bundled_dir(self, bundled_dir: Path) -> None:
        if not bundled_dir.is_dir():
            logger.debug(f"Bundled plugin directory not found: {bundled_dir}")
            return

        for plugin_dir in sorted(p for p in bundled_dir.iterdir() if p.is_dir()):
            if not any((plugin_dir / name).exists() for name in MANIFEST_NAMES):
                continue
            try:
                self._install_bundled(load_directory(plugin_dir))
            except (AcquisitionError, ValidationError, StoreError) as e:
                logger.error(f"Failed to install bundled plugin from {plugin_dir}: {e}")

    def _install_bundled(self, package: PluginPackage) -> None:
        manifest = self.validator.validate(package.manifest_bytes, package.manifest_name, package.file_names)

        with self._lock_for(manifest.id):
            existing = self.store.find(manifest.id)
            if existing is not None and existing.is_bundled and existing.manifest == manifest \
                    and existing.files == package.files:
                return
            if existing is not None and self._supersedes_bundled(existing, manifest):
                logger.info(f"Keeping installed {manifest.id} v{existing.manifest.version} "
                            f"over bundled v{manifest.version}", source=existing.source)
                return

            state = self._next_state(existing, manifest, package)
            state.is_bundled = True
            state.record("update" if existing else "install", TRIGGER_SYSTEM, "bundled with host")
            self.store.put(state)
            self._bindings.pop(manifest.id, None)

        logger.info(f"Bundled plugin ready: {manifest.id} v{manifest.version}")

    @staticmethod
    def _supersedes_bundled(existing: PluginState, bundled: Manifest) -> bool:
        """A newer stored version, or a user install no older than the bundled copy, wins"""
        stored = existing.manifest.parsed_version
        if stored > bundled.parsed_version:
            return True
        return existing.source != PluginSource.BUNDLED.value and stored >= bundled.parsed_version

    def _revalidate(self, state: PluginState) -> bool:
        """Check a stored record against the running host; disable it on failure"""
        try:
            manifest = self.validator.validate_data(state.manifest.to_dict(), state.files.keys())
            self._bindings[state.id] = self.loader.bind(manifest, state.files)
            return True
        except ValidationError as e:
            logger.warning(f"Stored plugin failed re-validation: {e}", plugin_id=state.id)
            if state.enabled or state.last_error != str(e):
                state.enabled = False
                state.last_error = str(e)
                state.record("disable", TRIGGER_SYSTEM, f"re-validation failed: {'; '.join(e.errors)}")
                try:
                    self.store.put(state)
                except StoreError as store_error:
                    logger.error(f"Could not persist disabled state: {store_error}", plugin_id=state.id)
            return False

    # Installation

    async def install_from_url(self, url: str, timeout: Optional[float] = None) -> InstallResult:
        return await self._install(PluginSource.URL, url, lambda: self.acquirer.fetch_from_url(url, timeout))

    async def install_from_archive(self, data: bytes, name: Optional[str] = None) -> InstallResult:
        return await self._install(PluginSource.ARCHIVE, name or "archive",
                                   lambda: self.acquirer.fetch_from_archive(data, name))

    async def install_from_registry(self, plugin_id: str, timeout: Optional[float] = None) -> InstallResult:
        return await self._install(PluginSource.REGISTRY, plugin_id,
                                   lambda: self.acquirer.fetch_from_registry(plugin_id, timeout))

    async def _install(self, source: PluginSource, ref: str, acquire) -> InstallResult:
        if self.public_access:
            logger.warning("Install rejected in public access mode", source=source.value, ref=ref)
            return InstallResult(False, [PublicAccessError.MESSAGE], kind="forbidden")

        logger.info(f"Installing plugin from {source.value}: {ref}")

        try:
            package = await acquire()
        except AcquisitionError as e:
            logger.error(f"Plugin acquisition failed: {e}", source=source.value)
            return InstallResult(False, [e.message], kind="acquisition")

        try:
            manifest = self.validator.validate(package.manifest_bytes, package.manifest_name, package.file_names)
            bound = self.loader.bind(manifest, package.files)
        except ValidationError as e:
            logger.error(f"Plugin validation failed: {e}", plugin_id=e.plugin_id)
            return InstallResult(False, e.errors, plugin_id=e.plugin_id, kind="validation")

        try:
            updated = self._commit_install(manifest, package, bound)
        except StoreError as e:
            logger.error(f"Plugin store write failed: {e}", plugin_id=manifest.id)
            return InstallResult(False, [e.message], plugin_id=manifest.id, version=manifest.version,
                                 kind="storage")

        self._notify("update" if updated else "install", manifest.id)
        logger.info(f"Successfully {'updated' if updated else 'installed'} plugin: {manifest.id} v{manifest.version}")
        return InstallResult(True, plugin_id=manifest.id, version=manifest.version, updated=updated)

    def _commit_install(self, manifest: Manifest, package: PluginPackage, bound: List[BoundPoint]) -> bool:
        with self._lock_for(manifest.id):
            existing = self.store.find(manifest.id)
            state = self._next_state(existing, manifest, package)
            state.enabled = True
            state.last_error = None
            state.record("update" if existing else "install", TRIGGER_USER, package.source_ref)

            self.store.put(state)
            self._bindings[manifest.id] = bound
            self._publish(manifest.id)

        return existing is not None

    @staticmethod
    def _next_state(existing: Optional[PluginState], manifest: Manifest, package: PluginPackage) -> PluginState:
        if existing is None:
            return PluginState(
                manifest=manifest,
                settings=dict(manifest.default_settings),
                files=dict(package.files),
                source=package.source.value,
                source_ref=package.source_ref,
            )

        # Updates keep user settings; only keys new to this version get defaults
        settings = dict(manifest.default_settings)
        settings.update(existing.settings)

        existing.manifest = manifest
        existing.settings = settings
        existing.files = dict(package.files)
        existing.source = package.source.value
        existing.source_ref = package.source_ref
        existing.updated_at = datetime.now()
        return existing

    # Transitions

    def toggle_plugin(self, plugin_id: str) -> OperationResult:
        with self._lock_for(plugin_id):
            state = self.store.find(plugin_id)
            if state is None:
                return OperationResult(False, f"Plugin '{plugin_id}' is not installed", kind="not_found")
            if state.enabled:
                return self.disable_plugin(plugin_id, trigger=TRIGGER_USER)
            return self.enable_plugin(plugin_id)

    def enable_plugin(self, plugin_id: str) -> OperationResult:
        with self._lock_for(plugin_id):
            state = self.store.find(plugin_id)
            if state is None:
                return OperationResult(False, f"Plugin '{plugin_id}' is not installed", kind="not_found")
            if state.enabled:
                return OperationResult(True)

            if plugin_id not in self._bindings:
                try:
                    self._bindings[plugin_id] = self.loader.bind(state.manifest, state.files)
                except ValidationError as e:
                    return OperationResult(False, str(e), kind="validation")

            state.enabled = True
            state.last_error = None
            state.record("enable", TRIGGER_USER)
            try:
                self.store.put(state)
            except StoreError as e:
                return OperationResult(False, e.message, kind="storage")
            self._publish(plugin_id)

        self._notify("enable", plugin_id)
        logger.info(f"Enabled plugin: {plugin_id}")
        return OperationResult(True)

    def disable_plugin(self, plugin_id: str, reason: Optional[str] = None,
                       trigger: str = TRIGGER_ERROR) -> OperationResult:
        """Force a plugin to disabled; contributions vanish before this returns"""
        with self._lock_for(plugin_id):
            state = self.store.find(plugin_id)
            if state is None:
                return OperationResult(False, f"Plugin '{plugin_id}' is not installed", kind="not_found")
            if not state.enabled:
                return OperationResult(True)

            self.extensions.withdraw_all(plugin_id)

            state.enabled = False
            if trigger == TRIGGER_ERROR:
                state.last_error = reason or "disabled after a plugin failure"
            state.record("disable", trigger, reason)
            try:
                self.store.put(state)
            except StoreError as e:
                self._publish(plugin_id)
                return OperationResult(False, e.message, kind="storage")

        self._notify("disable", plugin_id)
        logger.info(f"Disabled plugin: {plugin_id}", trigger=trigger, reason=reason)
        return OperationResult(True)

    def uninstall_plugin(self, plugin_id: str) -> OperationResult:
        if self.public_access:
            return OperationResult(False, PublicAccessError.MESSAGE, kind="forbidden")

        with self._lock_for(plugin_id):
            state = self.store.find(plugin_id)
            if state is None:
                logger.warning(f"Plugin {plugin_id} not installed")
                return OperationResult(False, f"Plugin '{plugin_id}' is not installed", kind="not_found")
            if state.is_bundled:
                return OperationResult(False, Forbidden(plugin_id, "bundled plugins cannot be uninstalled").message,
                                       kind="forbidden")

            self.extensions.withdraw_all(plugin_id)
            self._bindings.pop(plugin_id, None)
            self.loader.forget(plugin_id)

            try:
                self.store.remove(plugin_id)
            except (StoreError, NotFound, Forbidden) as e:
                logger.error(f"Failed to remove plugin record: {e}", plugin_id=plugin_id)
                return OperationResult(False, e.message, kind="storage")

        self._notify("uninstall", plugin_id)
        logger.info(f"Successfully uninstalled plugin: {plugin_id}")
        return OperationResult(True)

    # Settings

    def update_settings(self, plugin_id: str, settings: Dict[str, Any]) -> Dict[str, Any]:
        """Replace a plugin's settings map"""
        with self._lock_for(plugin_id):
            state = self.store.get(plugin_id)
            state.settings = dict(settings)
            state.updated_at = datetime.now()
            stored = self.store.put(state)

        self._notify("settings", plugin_id)
        return stored.settings

    def set_setting(self, plugin_id: str, key: str, value: Any) -> Dict[str, Any]:
        with self._lock_for(plugin_id):
            state = self.store.get(plugin_id)
            state.settings[key] = value
            state.updated_at = datetime.now()
            stored = self.store.put(state)

        self._notify("settings", plugin_id)
        return stored.settings

    def get_settings(self, plugin_id: str) -> Dict[str, Any]:
        state = self.store.find(plugin_id)
        return state.settings if state is not None else {}

    def _write_setting(self, plugin_id: str, key: str, value: Any) -> None:
        self.set_setting(plugin_id, key, value)

    # Queries

    def get_plugin(self, plugin_id: str) -> Optional[PluginState]:
        return self.store.find(plugin_id)

    def get_all(self) -> List[PluginState]:
        return self.store.get_all()

    def is_installed(self, plugin_id: str) -> bool:
        return self.store.contains(plugin_id)

    def is_enabled(self, plugin_id: str) -> bool:
        state = self.store.find(plugin_id)
        return state is not None and state.enabled

    async def fetch_registry(self, force: bool = False) -> List[RegistryPlugin]:
        feed = await self.registry.fetch(force)
        return list(feed.plugins)

    async def search_registry(self, query: str, force: bool = False) -> List[RegistryPlugin]:
        return await self.registry.search(query, force)

    # Rendering

    def create_plugin_api(self, plugin_id: str) -> PluginAPI:
        """Fresh capability handle whose settings view is always live"""
        return self.api_factory.create_plugin_api(plugin_id, lambda: self.get_settings(plugin_id))

    def boundary_for(self, contribution: Contribution, theme: str = "light",
                     is_dark: bool = False) -> IsolationBoundary:
        plugin_id = contribution.plugin_id

        def props() -> RenderProps:
            return RenderProps(
                api=self.create_plugin_api(plugin_id),
                settings=self.get_settings(plugin_id),
                theme=theme,
                is_dark=is_dark,
            )

        return IsolationBoundary(
            contribution,
            props,
            on_disable=lambda pid, reason: self.disable_plugin(pid, reason),
            auto_disable_after=int(self.config.get("plugins.auto_disable_threshold", 0) or 0),
        )

    def _capabilities_for(self, plugin_id: str):
        state = self.store.find(plugin_id)
        return state.manifest.capabilities if state is not None else frozenset()

    # Events

    def on_change(self, callback: Callable[[PluginEvent], None]) -> Callable[[], None]:
        """Subscribe to committed lifecycle changes; returns the unsubscribe function"""
        with self._locks_guard:
            self._listeners.append(callback)

        def unsubscribe() -> None:
            with self._locks_guard:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return unsubscribe

    def _notify(self, action: str, plugin_id: str) -> None:
        event = PluginEvent(action, plugin_id)
        with self._locks_guard:
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Plugin change listener failed: {e}", plugin_id=plugin_id, action=action)

    # Internals

    @contextmanager
    def _lock_for(self, plugin_id: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.setdefault(plugin_id, threading.RLock())
        with lock:
            yield

    def _publish(self, plugin_id: str) -> None:
        bound = self._bindings.get(plugin_id, [])
        with self.extensions.batch():
            self.extensions.withdraw_all(plugin_id)
            for kind, options in bound:
                self.extensions.register(kind, plugin_id, options)
