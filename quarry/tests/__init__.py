"""Test suite for the Quarry plugin runtime"""

# Test configuration
TEST_CONFIG = {
    "quarry": {
        "debug": True,
        "version": "0.1.0",
    },
    "plugins": {
        "bundled_dirs": [],  # Bundled plugins are installed explicitly per test
        "registry_url": "https://registry.quarry.test/registry.json",
        "registry_cache_ttl": 300,
        "fetch_timeout": 5.0,
        "public_access": False,
        "auto_disable_threshold": 0,
    },
    "logging": {
        "level": "DEBUG",
        "console": True,
    },
}
