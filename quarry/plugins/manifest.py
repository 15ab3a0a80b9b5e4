"""Plugin manifest parsing and validation.

A manifest is the plugin's self-declared identity: id, version, the
capabilities it needs from the host, and the extension points it contributes.
Validation is pure; it only parses the bytes it is handed.
"""

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

import toml
import yaml
from packaging.version import InvalidVersion, Version

from quarry.core.exceptions import ValidationError


MANIFEST_NAMES = (
    "manifest.json", "manifest.yaml", "manifest.yml", "manifest.toml",
    "plugin.json", "plugin.yaml", "plugin.yml", "plugin.toml",
)

PLUGIN_ID_PATTERN = re.compile(r"^[a-z0-9][a-z0-9._-]{1,63}$")
OPTIONS_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,63}$")
ENTRY_PATTERN = re.compile(r"^(?P<module>[A-Za-z0-9_./-]+\.py):(?P<attr>[A-Za-z_][A-Za-z0-9_]*)$")


class Capability(str, Enum):
    SETTINGS_READ = "settings:read"
    SETTINGS_WRITE = "settings:write"
    NAVIGATION = "navigation"
    NOTIFICATIONS = "notifications"
    CONTENT_READ = "content:read"


KNOWN_CAPABILITIES: FrozenSet[str] = frozenset(c.value for c in Capability)


class ExtensionKind(str, Enum):
    SIDEBAR_MODE = "sidebar_mode"
    TOOLBAR_BUTTON = "toolbar_button"
    WIDGET = "widget"


# Manifest section name -> kind; camelCase as authored by plugin developers,
# snake_case accepted for Python-side tooling.
_SECTION_KINDS = {
    "sidebarModes": ExtensionKind.SIDEBAR_MODE,
    "sidebar_modes": ExtensionKind.SIDEBAR_MODE,
    "toolbarButtons": ExtensionKind.TOOLBAR_BUTTON,
    "toolbar_buttons": ExtensionKind.TOOLBAR_BUTTON,
    "widgets": ExtensionKind.WIDGET,
}

_SECTION_NAMES = {
    ExtensionKind.SIDEBAR_MODE: "sidebarModes",
    ExtensionKind.TOOLBAR_BUTTON: "toolbarButtons",
    ExtensionKind.WIDGET: "widgets",
}

_ALIASES = {
    "extensionPoints": "extension_points",
    "minHostVersion": "min_host_version",
    "maxHostVersion": "max_host_version",
    "defaultSettings": "default_settings",
}


@dataclass(frozen=True)
class ExtensionPointDecl:
    """One declared extension point, e.g. a widget with its render entry"""
    kind: ExtensionKind
    options_id: str
    label: str
    entry: str
    icon: Optional[str] = None
    shortcut: Optional[str] = None
    order: int = 0

    @property
    def module_path(self) -> str:
        return self.entry.split(":", 1)[0]

    @property
    def attribute(self) -> str:
        return self.entry.split(":", 1)[1]

    def to_dict(self) -> Dict[str, Any]:
        data = {"id": self.options_id, "label": self.label, "entry": self.entry, "order": self.order}
        if self.icon is not None:
            data["icon"] = self.icon
        if self.shortcut is not None:
            data["shortcut"] = self.shortcut
        return data


@dataclass(frozen=True)
class Manifest:
    """Immutable, author-supplied plugin metadata"""
    id: str
    name: str
    version: str
    description: str = ""
    author: Optional[str] = None
    homepage: Optional[str] = None
    license: Optional[str] = None
    tags: Tuple[str, ...] = ()
    capabilities: FrozenSet[str] = frozenset()
    extension_points: Tuple[ExtensionPointDecl, ...] = ()
    min_host_version: Optional[str] = None
    max_host_version: Optional[str] = None
    default_settings: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    @property
    def parsed_version(self) -> Version:
        return Version(self.version)

    def points_of(self, kind: ExtensionKind) -> List[ExtensionPointDecl]:
        return [p for p in self.extension_points if p.kind == kind]

    def entry_modules(self) -> List[str]:
        return sorted({p.module_path for p in self.extension_points})

    def to_dict(self) -> Dict[str, Any]:
        """Serialize back to the manifest's authored (camelCase) shape"""
        points: Dict[str, List[Dict[str, Any]]] = {}
        for point in self.extension_points:
            points.setdefault(_SECTION_NAMES[point.kind], []).append(point.to_dict())

        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "author": self.author,
            "homepage": self.homepage,
            "license": self.license,
            "tags": list(self.tags),
            "capabilities": sorted(self.capabilities),
            "extensionPoints": points,
            "minHostVersion": self.min_host_version,
            "maxHostVersion": self.max_host_version,
            "defaultSettings": dict(self.default_settings),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], provided_files: Optional[Iterable[str]] = None,
                  host_version: Optional[str] = None) -> "Manifest":
        return ManifestValidator(host_version).validate_data(data, provided_files)


class ManifestValidator:
    """Validates raw manifest bytes into a :class:`Manifest`.

    Every problem found is collected so the installer can show the author the
    full list rather than the first failure.
    """

    REQUIRED_FIELDS = ("id", "name", "version")

    def __init__(self, host_version: Optional[str] = None,
                 known_capabilities: FrozenSet[str] = KNOWN_CAPABILITIES):
        self.host_version = host_version
        self.known_capabilities = known_capabilities

    def validate(self, raw: bytes, filename: str = "manifest.json",
                 provided_files: Optional[Iterable[str]] = None) -> Manifest:
        data = parse_manifest_bytes(raw, filename)
        return self.validate_data(data, provided_files)

    def validate_data(self, data: Any, provided_files: Optional[Iterable[str]] = None) -> Manifest:
        if not isinstance(data, dict):
            raise ValidationError(["Manifest must be a mapping"])

        data = {_ALIASES.get(k, k): v for k, v in data.items()}
        errors: List[str] = []

        for name in self.REQUIRED_FIELDS:
            value = data.get(name)
            if value is None or (isinstance(value, str) and not value.strip()):
                errors.append(f"Missing required field: {name}")

        plugin_id = data.get("id")
        if isinstance(plugin_id, str) and plugin_id and not PLUGIN_ID_PATTERN.match(plugin_id):
            errors.append(f"Invalid plugin id '{plugin_id}': use lower-case letters, digits, '.', '_' or '-'")
        elif plugin_id is not None and not isinstance(plugin_id, str):
            errors.append("Field 'id' must be a string")

        version = data.get("version")
        if version is not None:
            version = str(version)
            if not _is_valid_version(version):
                errors.append(f"Invalid version '{version}'")

        capabilities = self._check_capabilities(data.get("capabilities", []), errors)
        files = None if provided_files is None else {_normalize_path(p) for p in provided_files}
        points = self._check_extension_points(data.get("extension_points") or {}, files, errors)
        self._check_host_bounds(data, errors)

        default_settings = data.get("default_settings") or {}
        if not isinstance(default_settings, dict):
            errors.append("Field 'defaultSettings' must be a mapping")
            default_settings = {}

        tags = data.get("tags") or []
        if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
            errors.append("Field 'tags' must be a list of strings")
            tags = []

        if errors:
            raise ValidationError(errors, plugin_id if isinstance(plugin_id, str) else None)

        return Manifest(
            id=plugin_id,
            name=str(data["name"]).strip(),
            version=version,
            description=str(data.get("description") or ""),
            author=data.get("author"),
            homepage=data.get("homepage"),
            license=data.get("license"),
            tags=tuple(tags),
            capabilities=capabilities,
            extension_points=points,
            min_host_version=_optional_str(data.get("min_host_version")),
            max_host_version=_optional_str(data.get("max_host_version")),
            default_settings=dict(default_settings),
        )

    def _check_capabilities(self, raw: Any, errors: List[str]) -> FrozenSet[str]:
        if not isinstance(raw, (list, tuple)):
            errors.append("Field 'capabilities' must be a list")
            return frozenset()

        non_strings = [c for c in raw if not isinstance(c, str)]
        if non_strings:
            errors.append(f"Capabilities must be strings, got: {', '.join(repr(c) for c in non_strings)}")

        tokens = [c for c in raw if isinstance(c, str)]
        unknown = [c for c in tokens if c not in self.known_capabilities]
        if unknown:
            errors.append(f"Unknown capabilities: {', '.join(map(str, unknown))}")
        return frozenset(c for c in tokens if c in self.known_capabilities)

    def _check_extension_points(self, raw: Any, files: Optional[set],
                                errors: List[str]) -> Tuple[ExtensionPointDecl, ...]:
        if not isinstance(raw, dict):
            errors.append("Field 'extensionPoints' must be a mapping")
            return ()

        points: List[ExtensionPointDecl] = []
        seen = set()

        for section, entries in raw.items():
            kind = _SECTION_KINDS.get(section)
            if kind is None:
                errors.append(f"Unknown extension point kind: {section}")
                continue
            if not isinstance(entries, list):
                errors.append(f"extensionPoints.{section} must be a list")
                continue

            for index, entry in enumerate(entries):
                where = f"extensionPoints.{section}[{index}]"
                if not isinstance(entry, dict):
                    errors.append(f"{where} must be a mapping")
                    continue

                options_id = entry.get("id")
                if not isinstance(options_id, str) or not OPTIONS_ID_PATTERN.match(options_id):
                    errors.append(f"{where}: invalid or missing id")
                    continue
                if (kind, options_id) in seen:
                    errors.append(f"{where}: duplicate id '{options_id}'")
                    continue
                seen.add((kind, options_id))

                label = entry.get("label") or entry.get("name")
                if not label:
                    errors.append(f"{where}: missing label")
                    continue

                target = entry.get("entry")
                match = ENTRY_PATTERN.match(target) if isinstance(target, str) else None
                if match is None:
                    errors.append(f"{where}: entry must look like 'module.py:callable'")
                    continue
                if files is not None and _normalize_path(match.group("module")) not in files:
                    errors.append(f"{where}: entry module '{match.group('module')}' is not in the package")
                    continue

                order = entry.get("order", 0)
                if order is None:
                    order = 0
                if isinstance(order, bool) or not isinstance(order, int):
                    errors.append(f"{where}: order must be an integer")
                    continue

                points.append(ExtensionPointDecl(
                    kind=kind,
                    options_id=options_id,
                    label=str(label),
                    entry=target,
                    icon=_optional_str(entry.get("icon")),
                    shortcut=_optional_str(entry.get("shortcut")),
                    order=order,
                ))

        return tuple(points)

    def _check_host_bounds(self, data: Dict[str, Any], errors: List[str]) -> None:
        bounds = {}
        for key in ("min_host_version", "max_host_version"):
            value = data.get(key)
            if value is None:
                continue
            if not _is_valid_version(str(value)):
                errors.append(f"Invalid {key} '{value}'")
                continue
            bounds[key] = Version(str(value))

        if self.host_version is None:
            return

        host = Version(self.host_version)
        if "min_host_version" in bounds and host < bounds["min_host_version"]:
            errors.append(f"Plugin requires host >= {bounds['min_host_version']} (running {host})")
        if "max_host_version" in bounds and host > bounds["max_host_version"]:
            errors.append(f"Plugin requires host <= {bounds['max_host_version']} (running {host})")


def parse_manifest_bytes(raw: bytes, filename: str = "manifest.json") -> Any:
    """Decode manifest bytes according to the file name's suffix"""
    try:
        text = raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise ValidationError(["Manifest is not valid UTF-8"])

    suffix = PurePosixPath(filename).suffix.lower()
    try:
        if suffix in (".yaml", ".yml"):
            return yaml.safe_load(text)
        if suffix == ".toml":
            return toml.loads(text)
        return json.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError, toml.TomlDecodeError) as e:
        raise ValidationError([f"Could not parse {filename}: {e}"])


def validate(raw: bytes, filename: str = "manifest.json",
             provided_files: Optional[Iterable[str]] = None,
             host_version: Optional[str] = None) -> Manifest:
    """Validate manifest bytes, raising :class:`ValidationError` on failure"""
    return ManifestValidator(host_version).validate(raw, filename, provided_files)


def _is_valid_version(value: str) -> bool:
    try:
        Version(value)
    except InvalidVersion:
        return False
    return True


def _optional_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _normalize_path(path: str) -> str:
    return str(PurePosixPath(path.replace("\\", "/")))
