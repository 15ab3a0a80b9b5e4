from quarry.core.config import ConfigManager, get_config, set_config
from quarry.core.logger import get_logger, setup_logging, log_context
from quarry.core.exceptions import (
    QuarryError, ValidationError, AcquisitionError, PermissionDenied,
    Forbidden, PublicAccessError, NotFound, StoreError, RenderFailure, ConfigError,
    handle_exception
)

__all__ = [
    "ConfigManager",
    "get_config",
    "set_config",
    "get_logger",
    "setup_logging",
    "log_context",
    # Exceptions
    "QuarryError", "ValidationError", "AcquisitionError", "PermissionDenied",
    "Forbidden", "PublicAccessError", "NotFound", "StoreError", "RenderFailure", "ConfigError",
    "handle_exception"
]
