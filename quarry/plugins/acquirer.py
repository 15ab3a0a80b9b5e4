"""Plugin package acquisition: remote URL, uploaded archive, curated registry"""

import asyncio
import io
import threading
import time
import zipfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import requests

from quarry.core.exceptions import AcquisitionError
from quarry.core.logger import get_logger
from quarry.plugins.manifest import MANIFEST_NAMES

logger = get_logger("quarry.acquirer")

ZIP_MAGIC = b"PK\x03\x04"
CHUNK_SIZE = 8192


class PluginSource(Enum):
    """Plugin installation sources"""
    URL = "url"
    ARCHIVE = "archive"
    REGISTRY = "registry"
    BUNDLED = "bundled"


@dataclass
class PluginPackage:
    """An unpacked, not yet validated plugin bundle"""
    manifest_name: str
    manifest_bytes: bytes
    files: Dict[str, bytes]
    source: PluginSource
    source_ref: Optional[str] = None

    @property
    def file_names(self) -> List[str]:
        return sorted(self.files)

    @property
    def size(self) -> int:
        return sum(len(data) for data in self.files.values())


@dataclass(frozen=True)
class RegistryPlugin:
    """A plugin advertised by the curated registry feed"""
    id: str
    name: str
    description: str
    download_url: str
    version: Optional[str] = None
    author: Optional[str] = None
    tags: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Dict[str, Any], plugin_id: Optional[str] = None) -> "RegistryPlugin":
        download_url = data.get("downloadUrl") or data.get("download_url") or data.get("url")
        pid = data.get("id") or plugin_id
        if not pid or not download_url:
            raise ValueError("registry entry needs an id and a download URL")
        return cls(
            id=str(pid),
            name=str(data.get("name") or pid),
            description=str(data.get("description") or ""),
            download_url=str(download_url),
            version=data.get("version"),
            author=data.get("author"),
            tags=tuple(data.get("tags") or ()),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "downloadUrl": self.download_url,
            "version": self.version,
            "author": self.author,
            "tags": list(self.tags),
        }


@dataclass
class RegistryFeed:
    plugins: List[RegistryPlugin] = field(default_factory=list)
    fetched_at: float = 0.0

    def get(self, plugin_id: str) -> Optional[RegistryPlugin]:
        for plugin in self.plugins:
            if plugin.id == plugin_id:
                return plugin
        return None


def _strip_content_type(value: Optional[str]) -> str:
    return (value or "").split(";", 1)[0].strip().lower()


def _check_http_url(url: str) -> None:
    parsed = urlparse(url or "")
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise AcquisitionError(url or "<empty>", "URL must be an absolute http(s) URL")


class RegistryClient:
    """Fetches and caches the curated plugin registry feed for the session"""

    def __init__(self, registry_url: str, session: Optional[requests.Session] = None,
                 cache_ttl: float = 300, timeout: float = 10.0,
                 executor: Optional[ThreadPoolExecutor] = None):
        self.registry_url = registry_url
        self.session = session or requests.Session()
        self.cache_ttl = cache_ttl
        self.timeout = timeout
        self._executor = executor
        self._cache: Optional[RegistryFeed] = None
        self._lock = asyncio.Lock()

    @property
    def cached(self) -> Optional[RegistryFeed]:
        return self._cache

    def _is_fresh(self) -> bool:
        return (self._cache is not None
                and time.monotonic() - self._cache.fetched_at < self.cache_ttl)

    async def fetch(self, force: bool = False) -> RegistryFeed:
        """Fetch plugin registry"""
        async with self._lock:
            if not force and self._is_fresh():
                return self._cache

            _check_http_url(self.registry_url)
            loop = asyncio.get_running_loop()

            try:
                payload = await asyncio.wait_for(
                    loop.run_in_executor(self._executor, self._download),
                    self.timeout,
                )
            except (asyncio.TimeoutError, AcquisitionError) as e:
                if self._cache is not None:
                    logger.warning(f"Failed to refresh registry, using cached feed: {e}")
                    return self._cache
                if isinstance(e, AcquisitionError):
                    raise
                raise AcquisitionError(self.registry_url, f"timed out after {self.timeout}s")

            self._cache = self._parse(payload)
            logger.info("Registry fetched", url=self.registry_url, plugins=len(self._cache.plugins))
            return self._cache

    def _download(self) -> Any:
        try:
            response = self.session.get(self.registry_url, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.RequestException as e:
            raise AcquisitionError(self.registry_url, str(e))
        except ValueError as e:
            raise AcquisitionError(self.registry_url, f"registry is not valid JSON: {e}")

    def _parse(self, payload: Any) -> RegistryFeed:
        raw = payload.get("plugins", []) if isinstance(payload, dict) else []
        if isinstance(raw, dict):
            items = [(pid, info) for pid, info in raw.items()]
        else:
            items = [(None, info) for info in raw]

        plugins = []
        for plugin_id, info in items:
            if not isinstance(info, dict):
                continue
            try:
                plugins.append(RegistryPlugin.from_dict(info, plugin_id))
            except ValueError as e:
                logger.warning(f"Skipping registry entry: {e}", entry=plugin_id or info.get("id"))

        return RegistryFeed(plugins=plugins, fetched_at=time.monotonic())

    async def get(self, plugin_id: str, force: bool = False) -> Optional[RegistryPlugin]:
        """Get registry information for one plugin"""
        feed = await self.fetch(force)
        return feed.get(plugin_id)

    async def search(self, query: str, force: bool = False) -> List[RegistryPlugin]:
        """Search for plugins in registry"""
        feed = await self.fetch(force)
        needle = query.lower().strip()
        if not needle:
            return list(feed.plugins)

        return [
            plugin for plugin in feed.plugins
            if needle in plugin.id.lower()
            or needle in plugin.name.lower()
            or needle in plugin.description.lower()
            or any(needle == tag.lower() for tag in plugin.tags)
        ]


class PackageAcquirer:
    """Turns a URL, an uploaded archive, or a registry id into a :class:`PluginPackage`.

    Acquisition never touches the plugin store; the caller validates and commits.
    """

    def __init__(self,
                 registry: RegistryClient,
                 session: Optional[requests.Session] = None,
                 timeout: float = 30.0,
                 max_package_bytes: int = 10 * 1024 * 1024,
                 max_unpacked_bytes: int = 50 * 1024 * 1024,
                 max_archive_entries: int = 500,
                 allowed_content_types: Optional[List[str]] = None,
                 executor: Optional[ThreadPoolExecutor] = None):
        self.registry = registry
        self.session = session or registry.session
        self.timeout = timeout
        self.max_package_bytes = max_package_bytes
        self.max_unpacked_bytes = max_unpacked_bytes
        self.max_archive_entries = max_archive_entries
        self.allowed_content_types = [t.lower() for t in (allowed_content_types or [])]
        self._executor = executor

    async def fetch_from_url(self, url: str, timeout: Optional[float] = None,
                             source: PluginSource = PluginSource.URL) -> PluginPackage:
        """Download a plugin archive (or bare manifest) from an absolute URL"""
        _check_http_url(url)
        timeout = timeout or self.timeout
        cancelled = threading.Event()
        loop = asyncio.get_running_loop()

        logger.info("Fetching plugin package", url=url)
        try:
            body, content_type = await asyncio.wait_for(
                loop.run_in_executor(self._executor, self._download, url, timeout, cancelled),
                timeout,
            )
        except asyncio.TimeoutError:
            cancelled.set()
            raise AcquisitionError(url, f"timed out after {timeout}s")
        except asyncio.CancelledError:
            cancelled.set()
            logger.info("Plugin download cancelled", url=url)
            raise

        if content_type in ("application/zip", "application/x-zip-compressed") or body.startswith(ZIP_MAGIC):
            return await self._unpack_async(body, source, url)

        return self._bare_manifest(body, content_type, url, source)

    async def fetch_from_archive(self, data: bytes, name: Optional[str] = None) -> PluginPackage:
        """Unpack an uploaded zip archive in memory"""
        if len(data) > self.max_package_bytes:
            raise AcquisitionError(name or "archive", f"archive exceeds {self.max_package_bytes} bytes")
        return await self._unpack_async(data, PluginSource.ARCHIVE, name)

    async def fetch_from_registry(self, plugin_id: str, timeout: Optional[float] = None) -> PluginPackage:
        """Resolve a plugin id against the registry feed and download it"""
        entry = await self.registry.get(plugin_id)
        if entry is None:
            raise AcquisitionError("registry", f"plugin '{plugin_id}' not found in registry")

        return await self.fetch_from_url(entry.download_url, timeout, source=PluginSource.REGISTRY)

    def _download(self, url: str, timeout: float, cancelled: threading.Event) -> Tuple[bytes, str]:
        try:
            with self.session.get(url, stream=True, timeout=timeout) as response:
                if not 200 <= response.status_code < 300:
                    raise AcquisitionError(url, f"HTTP {response.status_code}")

                content_type = _strip_content_type(response.headers.get("Content-Type"))
                if self.allowed_content_types and content_type not in self.allowed_content_types:
                    raise AcquisitionError(url, f"unexpected content type '{content_type or 'none'}'")

                declared = response.headers.get("Content-Length")
                if declared and declared.isdigit() and int(declared) > self.max_package_bytes:
                    raise AcquisitionError(url, f"package exceeds {self.max_package_bytes} bytes")

                buffer = io.BytesIO()
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if cancelled.is_set():
                        raise AcquisitionError(url, "download cancelled")
                    buffer.write(chunk)
                    if buffer.tell() > self.max_package_bytes:
                        raise AcquisitionError(url, f"package exceeds {self.max_package_bytes} bytes")

                return buffer.getvalue(), content_type

        except requests.RequestException as e:
            raise AcquisitionError(url, str(e))

    async def _unpack_async(self, data: bytes, source: PluginSource, ref: Optional[str]) -> PluginPackage:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self.unpack_archive, data, source, ref)

    def unpack_archive(self, data: bytes, source: PluginSource = PluginSource.ARCHIVE,
                       ref: Optional[str] = None) -> PluginPackage:
        """Extract archive file contents into memory"""
        label = ref or "archive"
        try:
            archive = zipfile.ZipFile(io.BytesIO(data))
        except (zipfile.BadZipFile, ValueError) as e:
            raise AcquisitionError(label, f"corrupt archive: {e}")

        with archive:
            members = [info for info in archive.infolist() if not info.is_dir()]
            if not members:
                raise AcquisitionError(label, "archive is empty")
            if len(members) > self.max_archive_entries:
                raise AcquisitionError(label, f"archive has more than {self.max_archive_entries} entries")
            if sum(info.file_size for info in members) > self.max_unpacked_bytes:
                raise AcquisitionError(label, f"archive expands beyond {self.max_unpacked_bytes} bytes")

            paths = [self._safe_member_path(info.filename, label) for info in members]
            prefix = self._common_root(paths)

            files: Dict[str, bytes] = {}
            for info, path in zip(members, paths):
                relative = PurePosixPath(*path.parts[1:]) if prefix else path
                if relative.parts and relative.parts[0] == "__MACOSX":
                    continue
                try:
                    files[str(relative)] = archive.read(info)
                except (zipfile.BadZipFile, RuntimeError, OSError) as e:
                    raise AcquisitionError(label, f"corrupt archive entry '{info.filename}': {e}")

        return self._package(files, source, ref, label)

    @staticmethod
    def _safe_member_path(name: str, label: str) -> PurePosixPath:
        normalized = name.replace("\\", "/")
        path = PurePosixPath(normalized)
        if path.is_absolute() or normalized.startswith("/") or ":" in path.parts[0] or ".." in path.parts:
            raise AcquisitionError(label, f"unsafe path in archive: '{name}'")
        return path

    @staticmethod
    def _common_root(paths: List[PurePosixPath]) -> Optional[str]:
        tops = {p.parts[0] for p in paths}
        if len(tops) == 1 and all(len(p.parts) > 1 for p in paths):
            return tops.pop()
        return None

    def _bare_manifest(self, body: bytes, content_type: str, url: str, source: PluginSource) -> PluginPackage:
        suffix = PurePosixPath(urlparse(url).path).suffix.lower()
        if suffix in (".yaml", ".yml", ".toml"):
            name = f"manifest{suffix}"
        elif "yaml" in content_type:
            name = "manifest.yaml"
        else:
            name = "manifest.json"
        return self._package({name: body}, source, url, url)

    @staticmethod
    def _package(files: Dict[str, bytes], source: PluginSource, ref: Optional[str], label: str) -> PluginPackage:
        for manifest_name in MANIFEST_NAMES:
            if manifest_name in files:
                return PluginPackage(
                    manifest_name=manifest_name,
                    manifest_bytes=files[manifest_name],
                    files=files,
                    source=source,
                    source_ref=ref,
                )
        raise AcquisitionError(label, "package has no manifest file")


def load_directory(plugin_dir: Path) -> PluginPackage:
    """Read a plugin shipped as a directory (bundled with the host)"""
    files: Dict[str, bytes] = {}
    for path in sorted(plugin_dir.rglob("*")):
        if not path.is_file():
            continue
        relative = path.relative_to(plugin_dir)
        if any(part.startswith(".") or part == "__pycache__" for part in relative.parts):
            continue
        files[relative.as_posix()] = path.read_bytes()

    return PackageAcquirer._package(files, PluginSource.BUNDLED, str(plugin_dir), str(plugin_dir))
