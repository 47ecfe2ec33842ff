from __future__ import annotations

import logging
import os
from pathlib import Path

from concurrent_log_handler import ConcurrentRotatingFileHandler

DEFAULT_LOG_LEVEL_NAME = "INFO"
ALLOWED_LOG_LEVELS = frozenset({"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"})
LOG_RELATIVE_PATH = Path("logs") / "debug.log"
LOG_ROTATE_BYTES = 25 * 1024 * 1024
LOG_ROTATE_BACKUPS = 4
_LOG_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S"
_LOGGER_NAME_COLUMN = 33

_file_handlers: dict[str, ConcurrentRotatingFileHandler] = {}


def normalize_log_level_name(log_level: str | None) -> str:
    candidate = str(log_level or "").strip().upper()
    return candidate if candidate in ALLOWED_LOG_LEVELS else DEFAULT_LOG_LEVEL_NAME


def coerce_log_level(log_level: str | None) -> int:
    resolved = logging.getLevelName(normalize_log_level_name(log_level))
    return resolved if isinstance(resolved, int) else logging.INFO


def log_file_path(home_dir: str | Path) -> Path:
    return (Path(home_dir).expanduser() / LOG_RELATIVE_PATH).resolve()


def _service_formatter(service_name: str) -> logging.Formatter:
    # Keeps messages aligned across services sharing one file.
    pad = max(8, _LOGGER_NAME_COLUMN - len(service_name))
    return logging.Formatter(
        fmt=f"%(asctime)s.%(msecs)03d {service_name} %(name)-{pad}s: %(levelname)-8s %(message)s",
        datefmt=_LOG_TIME_FORMAT,
    )


def create_rotating_file_handler(
    *, service_name: str, home_dir: str | Path
) -> ConcurrentRotatingFileHandler:
    target = log_file_path(home_dir)
    target.parent.mkdir(parents=True, exist_ok=True)
    handler = ConcurrentRotatingFileHandler(
        os.fspath(target),
        "a",
        maxBytes=LOG_ROTATE_BYTES,
        backupCount=LOG_ROTATE_BACKUPS,
        use_gzip=False,
    )
    handler.setFormatter(_service_formatter(service_name))
    return handler


def initialize_file_logging(
    *, service_name: str, home_dir: str | Path, log_level: str | None, logger: logging.Logger
) -> ConcurrentRotatingFileHandler:
    """Attach one rotating file handler per service to the root logger.

    Calling it again for the same service only re-applies the level.
    """
    root_logger = logging.getLogger()
    handler = _file_handlers.get(service_name)
    if handler is None:
        handler = create_rotating_file_handler(service_name=service_name, home_dir=home_dir)
        root_logger.addHandler(handler)
        _file_handlers[service_name] = handler
    level = coerce_log_level(log_level)
    for target in (handler, root_logger, logger):
        target.setLevel(level)
    return handler


def shutdown_file_logging() -> None:
    root_logger = logging.getLogger()
    while _file_handlers:
        _service, handler = _file_handlers.popitem()
        root_logger.removeHandler(handler)
        handler.close()
