"""Integration suite configuration"""

from quarry.tests.conftest import pytest_configure  # noqa: F401
