"""Plugin runtime for the Quarry document viewer"""

from quarry.plugins.manifest import (
    Capability,
    ExtensionKind,
    ExtensionPointDecl,
    Manifest,
    ManifestValidator,
    validate,
)
from quarry.plugins.acquirer import (
    PackageAcquirer,
    PluginPackage,
    PluginSource,
    RegistryClient,
    RegistryFeed,
    RegistryPlugin,
)
from quarry.plugins.store import AuditEntry, PluginState, PluginStore
from quarry.plugins.extensions import (
    Contribution,
    ExtensionRegistry,
    SidebarModeOptions,
    ToolbarButtonOptions,
    WidgetOptions,
)
from quarry.plugins.capabilities import CapabilityAPIFactory, HostServices, PluginAPI
from quarry.plugins.boundary import FallbackView, IsolationBoundary, RenderOutcome, RenderProps
from quarry.plugins.loader import PluginLoader
from quarry.plugins.manager import InstallResult, OperationResult, PluginEvent, PluginManager

__all__ = [
    # Manifest
    "Capability",
    "ExtensionKind",
    "ExtensionPointDecl",
    "Manifest",
    "ManifestValidator",
    "validate",

    # Acquisition
    "PackageAcquirer",
    "PluginPackage",
    "PluginSource",
    "RegistryClient",
    "RegistryFeed",
    "RegistryPlugin",

    # Store
    "AuditEntry",
    "PluginState",
    "PluginStore",

    # Extension points
    "Contribution",
    "ExtensionRegistry",
    "SidebarModeOptions",
    "ToolbarButtonOptions",
    "WidgetOptions",

    # Runtime
    "CapabilityAPIFactory",
    "HostServices",
    "PluginAPI",
    "FallbackView",
    "IsolationBoundary",
    "RenderOutcome",
    "RenderProps",
    "PluginLoader",
    "InstallResult",
    "OperationResult",
    "PluginEvent",
    "PluginManager",
]
