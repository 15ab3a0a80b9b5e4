"""Pytest configuration and fixtures"""

import copy
import io
import json
import os
import shutil
import tempfile
import zipfile
from pathlib import Path
from typing import Any, Dict, Optional
from unittest.mock import MagicMock

import pytest
import requests
import yaml

from quarry.core import ConfigManager, get_logger
from quarry.plugins import PluginManager
from quarry.tests import TEST_CONFIG

logger = get_logger("test")


PLUGIN_SOURCE = '''
def render_panel(props):
    return {"greeting": props.settings.get("greeting", "hello"), "theme": props.theme}


def on_click(api):
    api.notify("clicked")
    return "clicked"


def render_mode(props):
    return "mode"
'''


def make_manifest(plugin_id: str = "foo", version: str = "1.0.0", **overrides) -> Dict[str, Any]:
    manifest = {
        "id": plugin_id,
        "name": plugin_id.title(),
        "version": version,
        "description": f"Test plugin {plugin_id}",
        "capabilities": ["settings:read", "notifications"],
        "extensionPoints": {
            "widgets": [{"id": "panel", "label": "Panel", "entry": "plugin.py:render_panel"}],
            "toolbarButtons": [{"id": "click", "label": "Click", "entry": "plugin.py:on_click"}],
            "sidebarModes": [{"id": "mode", "label": "Mode", "entry": "plugin.py:render_mode"}],
        },
    }
    manifest.update(overrides)
    return manifest


def make_archive(files: Dict[str, Any], root: Optional[str] = None) -> bytes:
    """Zip ``files`` in memory; dict values are written as JSON"""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, content in files.items():
            if isinstance(content, dict):
                content = json.dumps(content)
            archive.writestr(f"{root}/{name}" if root else name, content)
    return buffer.getvalue()


def make_plugin_archive(plugin_id: str = "foo", version: str = "1.0.0",
                        source: str = PLUGIN_SOURCE, **overrides) -> bytes:
    return make_archive({
        "manifest.json": make_manifest(plugin_id, version, **overrides),
        "plugin.py": source,
    })


def make_response(body: bytes = b"", status: int = 200,
                  content_type: Optional[str] = "application/zip",
                  content_length: Optional[int] = None) -> MagicMock:
    """A streaming ``requests.Response`` stand-in usable as a context manager"""
    response = MagicMock(spec=requests.Response)
    response.status_code = status
    response.headers = {}
    if content_type is not None:
        response.headers["Content-Type"] = content_type
    if content_length is not None:
        response.headers["Content-Length"] = str(content_length)
    response.iter_content.side_effect = lambda chunk_size=8192: (
        body[i:i + chunk_size] for i in range(0, len(body), chunk_size)
    )
    response.json.side_effect = lambda: json.loads(body)
    response.__enter__.return_value = response
    response.__exit__.return_value = False
    return response


@pytest.fixture
def test_config():
    """Provide test configuration"""
    return copy.deepcopy(TEST_CONFIG)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests"""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path

    # Cleanup
    if temp_path.exists():
        shutil.rmtree(temp_path)


@pytest.fixture
def config_manager(test_config, temp_dir):
    """Create a ConfigManager with test configuration and a private store"""
    test_config["plugins"]["store_dir"] = str(temp_dir / "store")

    config_path = temp_dir / "config.yaml"
    with open(config_path, 'w') as f:
        yaml.dump(test_config, f)

    config = ConfigManager(config_path, auto_reload=False, load_env=False)
    yield config
    config.cleanup()


@pytest.fixture
def session():
    """Mocked HTTP session; tests queue responses on ``session.get``"""
    return MagicMock(spec=requests.Session)


@pytest.fixture
def manager(config_manager, session):
    """An initialized PluginManager backed by a temporary store"""
    plugin_manager = PluginManager(config_manager, session=session)
    plugin_manager.initialize()
    yield plugin_manager
    plugin_manager.shutdown()


@pytest.fixture
def bundled_dir(temp_dir):
    """A bundled plugin directory holding plugin ``core-tools``"""
    plugin_dir = temp_dir / "bundled" / "core_tools"
    plugin_dir.mkdir(parents=True)

    with open(plugin_dir / "manifest.yaml", 'w') as f:
        yaml.dump(make_manifest("core-tools", defaultSettings={"greeting": "hi"}), f)
    (plugin_dir / "plugin.py").write_text(PLUGIN_SOURCE)

    return plugin_dir.parent


@pytest.fixture(autouse=True)
def setup_test_logging():
    """Setup logging for tests"""
    import structlog

    # Configure structlog for testing
    structlog.configure(
        processors=[
            structlog.dev.ConsoleRenderer()
        ],
        wrapper_class=structlog.make_filtering_bound_logger(20),  # INFO level
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


def pytest_configure(config):
    """Pytest configuration"""
    os.environ["QUARRY_TESTING"] = "1"
    config.addinivalue_line("markers", "integration: end-to-end runtime tests against a real store")


def pytest_unconfigure(config):
    """Cleanup after tests"""
    os.environ.pop("QUARRY_TESTING", None)
