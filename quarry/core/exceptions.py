"""Custom exception classes for the Quarry plugin runtime"""

from typing import Any, Optional, Dict, List
import traceback


class QuarryError(Exception):
    """Base exception for all Quarry-related errors"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.traceback_info = traceback.format_exc()


class ValidationError(QuarryError):
    """Exception raised when a plugin manifest is malformed or incompatible.

    Terminal for the install attempt: the package itself must be corrected.
    """

    def __init__(self, errors: List[str], plugin_id: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        self.errors = list(errors) or ["Invalid manifest"]
        self.plugin_id = plugin_id
        prefix = f"Plugin '{plugin_id}': " if plugin_id else ""
        super().__init__(f"{prefix}invalid manifest: {'; '.join(self.errors)}", details)


class AcquisitionError(QuarryError):
    """Exception raised when plugin bytes cannot be fetched or unpacked (retriable)"""

    def __init__(self, source: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.source = source
        super().__init__(f"Acquisition from '{source}' failed: {message}", details)


class PermissionDenied(QuarryError):
    """Exception raised when a plugin uses a capability it did not declare"""

    def __init__(self, plugin_id: str, capability: str, details: Optional[Dict[str, Any]] = None):
        self.plugin_id = plugin_id
        self.capability = capability
        super().__init__(
            f"Plugin '{plugin_id}' did not declare capability '{capability}'", details
        )


class Forbidden(QuarryError):
    """Exception raised when a lifecycle operation violates host policy"""

    def __init__(self, plugin_id: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.plugin_id = plugin_id
        super().__init__(f"Plugin '{plugin_id}': {message}", details)


class PublicAccessError(Forbidden):
    """Exception raised when plugin management is locked by public access mode"""

    MESSAGE = ("This action is disabled in public access mode. "
               "Contact the administrator to modify plugin configuration.")

    def __init__(self, plugin_id: str = "*", details: Optional[Dict[str, Any]] = None):
        super().__init__(plugin_id, self.MESSAGE, details)


class NotFound(QuarryError):
    """Exception raised when a plugin id is not installed"""

    def __init__(self, plugin_id: str, details: Optional[Dict[str, Any]] = None):
        self.plugin_id = plugin_id
        super().__init__(f"Plugin '{plugin_id}' is not installed", details)


class StoreError(QuarryError):
    """Exception raised when the plugin store cannot persist a record"""

    def __init__(self, plugin_id: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.plugin_id = plugin_id
        super().__init__(f"Store write for '{plugin_id}' failed: {message}", details)


class RenderFailure(QuarryError):
    """Failure of a single plugin contribution, contained by the isolation boundary"""

    def __init__(self, plugin_id: str, options_id: str, cause: BaseException,
                 details: Optional[Dict[str, Any]] = None):
        self.plugin_id = plugin_id
        self.options_id = options_id
        self.cause = cause
        super().__init__(
            f"Contribution '{options_id}' of plugin '{plugin_id}' failed: {cause}", details
        )


class ConfigError(QuarryError):
    """Exception raised when configuration is invalid"""

    def __init__(self, key: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.key = key
        super().__init__(f"Config '{key}': {message}", details)


# Utility functions for error handling

def handle_exception(exception: Exception, logger, context: str = "") -> QuarryError:
    """Convert generic exceptions to Quarry exceptions with proper logging"""

    if isinstance(exception, QuarryError):
        logger.error(f"{context}: {exception}")
        return exception

    if isinstance(exception, (TimeoutError, ConnectionError)):
        quarry_error = AcquisitionError("network", str(exception), {"original_error": str(exception)})
    elif isinstance(exception, OSError):
        quarry_error = StoreError("unknown", str(exception), {"original_error": str(exception)})
    elif isinstance(exception, ValueError):
        quarry_error = ValidationError([str(exception)], details={"original_error": str(exception)})
    else:
        quarry_error = QuarryError(f"Unexpected error: {exception}",
                                   {"original_error": str(exception), "type": type(exception).__name__})

    logger.error(f"{context}: Converted exception to QuarryError: {quarry_error}")
    return quarry_error

