import sys
import time
import logging
import logging.handlers
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional
import structlog
from structlog.stdlib import LoggerFactory

ROOT_LOGGER = "quarry"
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5

_loggers: Dict[str, Any] = {}


class PluginContextProcessor:
    """Lift a bound ``plugin_id`` to the front of the event for readable logs."""

    def __call__(self, logger, log_method, event_dict):
        plugin_id = event_dict.pop("plugin_id", None)
        if plugin_id is not None:
            event_dict = {"plugin_id": plugin_id, **event_dict}
        return event_dict


def _processors(json_format: bool) -> List[Any]:
    renderer = structlog.processors.JSONRenderer() if json_format else structlog.dev.ConsoleRenderer()
    return [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        PluginContextProcessor(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        renderer,
    ]


def _handlers(level: int, console: bool, file: Optional[str]) -> List[logging.Handler]:
    handlers: List[logging.Handler] = []
    if console:
        handlers.append(logging.StreamHandler(sys.stderr))
    if file:
        path = Path(file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.handlers.RotatingFileHandler(
            path, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS
        ))
    for handler in handlers:
        handler.setLevel(level)
    return handlers


def setup_logging(config=None,
                  level: Optional[str] = None,
                  console: Optional[bool] = None,
                  file: Optional[str] = None,
                  json_format: Optional[bool] = None) -> None:
    """Configure structlog and the ``quarry`` logger tree.

    Values come from the ``logging.*`` keys of ``config`` when one is given;
    explicit arguments win over the config.
    """
    def pick(value, key, default):
        if value is not None:
            return value
        if config is not None:
            configured = config.get(f"logging.{key}")
            if configured is not None:
                return configured
        return default

    level_name = str(pick(level, "level", "INFO")).upper()
    numeric_level = getattr(logging, level_name, logging.INFO)
    if json_format is None:
        json_format = str(pick(None, "format", "json")).lower() == "json"

    structlog.configure(
        processors=_processors(json_format),
        context_class=dict,
        logger_factory=LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(numeric_level)
    root.handlers = _handlers(numeric_level, bool(pick(console, "console", True)), pick(file, "file", None))
    root.propagate = False


def get_logger(name: str = ROOT_LOGGER) -> Any:
    """Named structlog logger; runtime modules use ``quarry.<module>``"""
    if name not in _loggers:
        _loggers[name] = structlog.get_logger(name)
    return _loggers[name]


@contextmanager
def log_context(logger, **context) -> Iterator[Any]:
    """Bind ``context`` for the block and log its outcome with the elapsed time"""
    bound = logger.bind(**context)
    started = time.monotonic()
    try:
        yield bound
    except Exception as e:
        bound.error("Operation failed", duration_ms=(time.monotonic() - started) * 1000, exception=str(e))
        raise
    bound.info("Operation completed", duration_ms=(time.monotonic() - started) * 1000)
