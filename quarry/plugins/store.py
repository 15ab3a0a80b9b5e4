"""Durable record of installed plugins.

One JSON record per plugin id lives under the store directory. Records are
written to a temporary file and atomically swapped into place, so a reader
(in this process or after a restart) never sees a half-written record.
"""

import base64
import copy
import json
import os
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional


from quarry.core.exceptions import Forbidden, NotFound, QuarryError, StoreError
from quarry.core.logger import get_logger
from quarry.plugins.manifest import Manifest

logger = get_logger("quarry.store")

RECORD_SCHEMA = 1
MAX_AUDIT_ENTRIES = 50


@dataclass
class AuditEntry:
    """Why a lifecycle transition happened"""
    action: str
    trigger: str  # "user", "error" or "system"
    reason: Optional[str] = None
    at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {"action": self.action, "trigger": self.trigger,
                "reason": self.reason, "at": self.at.isoformat()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEntry":
        return cls(
            action=data["action"],
            trigger=data.get("trigger", "system"),
            reason=data.get("reason"),
            at=datetime.fromisoformat(data["at"]),
        )


@dataclass
class PluginState:
    """Mutable lifecycle state of one installed plugin"""
    manifest: Manifest
    enabled: bool = True
    is_bundled: bool = False
    settings: Dict[str, Any] = field(default_factory=dict)
    files: Dict[str, bytes] = field(default_factory=dict)
    source: str = "archive"
    source_ref: Optional[str] = None
    installed_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    install_seq: int = 0
    last_error: Optional[str] = None
    audit: List[AuditEntry] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.manifest.id

    def record(self, action: str, trigger: str, reason: Optional[str] = None) -> None:
        self.audit.append(AuditEntry(action, trigger, reason))
        del self.audit[:-MAX_AUDIT_ENTRIES]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the persisted record layout"""
        return {
            "schema": RECORD_SCHEMA,
            "id": self.id,
            "manifest": self.manifest.to_dict(),
            "enabled": self.enabled,
            "isBundled": self.is_bundled,
            "settings": self.settings,
            "files": {name: base64.b64encode(data).decode("ascii") for name, data in self.files.items()},
            "source": self.source,
            "sourceRef": self.source_ref,
            "installedAt": self.installed_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "installSeq": self.install_seq,
            "lastError": self.last_error,
            "audit": [entry.to_dict() for entry in self.audit],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PluginState":
        manifest = Manifest.from_dict(data["manifest"])
        if data.get("id", manifest.id) != manifest.id:
            raise ValueError(f"record id '{data.get('id')}' does not match manifest id '{manifest.id}'")

        return cls(
            manifest=manifest,
            enabled=bool(data.get("enabled", False)),
            is_bundled=bool(data.get("isBundled", False)),
            settings=dict(data.get("settings") or {}),
            files={name: base64.b64decode(blob) for name, blob in (data.get("files") or {}).items()},
            source=data.get("source", "archive"),
            source_ref=data.get("sourceRef"),
            installed_at=datetime.fromisoformat(data["installedAt"]),
            updated_at=datetime.fromisoformat(data.get("updatedAt") or data["installedAt"]),
            install_seq=int(data.get("installSeq", 0)),
            last_error=data.get("lastError"),
            audit=[AuditEntry.from_dict(entry) for entry in data.get("audit") or []],
        )


class PluginStore:
    """Single writer of :class:`PluginState`; source of truth for lifecycle queries"""

    def __init__(self, store_dir: Path):
        self.store_dir = Path(store_dir)
        self._states: Dict[str, PluginState] = {}
        self._seq = 0
        self._lock = threading.RLock()

    def _record_path(self, plugin_id: str) -> Path:
        return self.store_dir / f"{plugin_id}.json"

    def load(self) -> List[str]:
        """Load every record from disk, skipping corrupt ones"""
        self.store_dir.mkdir(parents=True, exist_ok=True)
        loaded: Dict[str, PluginState] = {}

        for record_path in sorted(self.store_dir.glob("*.json")):
            try:
                with open(record_path, "r", encoding="utf-8") as f:
                    state = PluginState.from_dict(json.load(f))
            except (OSError, ValueError, KeyError, TypeError, QuarryError) as e:
                logger.warning(f"Skipping corrupt plugin record {record_path.name}: {e}")
                continue

            if record_path.stem != state.id:
                logger.warning(f"Skipping plugin record {record_path.name}: file name does not match id '{state.id}'")
                continue
            loaded[state.id] = state

        with self._lock:
            self._states = loaded
            self._seq = max((s.install_seq for s in loaded.values()), default=0)

        logger.info(f"Loaded {len(loaded)} plugin records", store_dir=str(self.store_dir))
        return list(loaded)

    def put(self, state: PluginState) -> PluginState:
        """Persist a plugin record, then publish it to readers"""
        with self._lock:
            state = copy.deepcopy(state)
            if state.install_seq <= 0:
                state.install_seq = self._seq + 1
            self._write(state)
            self._states[state.id] = state
            self._seq = max(self._seq, state.install_seq)
            return copy.deepcopy(state)

    def _write(self, state: PluginState) -> None:
        try:
            self.store_dir.mkdir(parents=True, exist_ok=True)
            payload = json.dumps(state.to_dict(), indent=2)

            fd, tmp_name = tempfile.mkstemp(prefix=f".{state.id}.", suffix=".tmp", dir=self.store_dir)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, self._record_path(state.id))
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise

        except (OSError, TypeError, ValueError) as e:
            raise StoreError(state.id, str(e))

    def get(self, plugin_id: str) -> PluginState:
        with self._lock:
            state = self._states.get(plugin_id)
            if state is None:
                raise NotFound(plugin_id)
            return copy.deepcopy(state)

    def find(self, plugin_id: str) -> Optional[PluginState]:
        with self._lock:
            state = self._states.get(plugin_id)
            return copy.deepcopy(state) if state is not None else None

    def contains(self, plugin_id: str) -> bool:
        with self._lock:
            return plugin_id in self._states

    def get_all(self) -> List[PluginState]:
        """All plugins, oldest install first"""
        with self._lock:
            states = sorted(self._states.values(), key=lambda s: (s.install_seq, s.installed_at))
            return copy.deepcopy(states)

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._states)

    def remove(self, plugin_id: str) -> None:
        with self._lock:
            state = self._states.get(plugin_id)
            if state is None:
                raise NotFound(plugin_id)
            if state.is_bundled:
                raise Forbidden(plugin_id, "bundled plugins cannot be uninstalled")

            try:
                self._record_path(plugin_id).unlink(missing_ok=True)
            except OSError as e:
                raise StoreError(plugin_id, str(e))

            del self._states[plugin_id]
