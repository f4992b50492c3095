"""Logging setup for the server and the sync tool.

Console output uses the glog prefix, colored by cadre module when the stream
is a terminal. With a log directory configured, everything also goes to a
rotating cadre.log, and sync activity gets its own sync.log so the download
history survives rotation of the main log.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import Dict, Optional

LOG_FORMAT = "%(levelname).1s%(asctime)s %(threadName)s %(filename)s:%(lineno)d] %(message)s"
LOG_DATEFMT = "%m%d %H:%M:%S"

COLOR_CODES = (
    "\033[32m",
    "\033[33m",
    "\033[34m",
    "\033[35m",
    "\033[36m",
    "\033[92m",
    "\033[94m",
    "\033[96m",
)
RESET = "\033[0m"

# Pillow logs every decoded chunk at DEBUG, watchdog every inotify event.
THIRD_PARTY_LEVELS = {
    "PIL": "INFO",
    "watchdog": "INFO",
    "urllib3": "WARNING",
}

SYNC_LOGGER = "cadre.sync"
SYNC_LOG_FILE = "sync.log"


class ModuleColorFormatter(logging.Formatter):
    """Colors the prefix of records from cadre modules, one color per module.

    Submodule loggers share the color of their cadre module, so
    cadre.watcher and cadre.watcher.x look alike.
    """

    def __init__(self, fmt: str = LOG_FORMAT, datefmt: str = LOG_DATEFMT):
        super().__init__(fmt, datefmt=datefmt)
        self.colors: Dict[str, str] = {}

    def color_for(self, logger_name: str) -> str:
        parts = logger_name.split(".")
        if parts[0] != "cadre" or len(parts) < 2:
            return ""
        module = parts[1]
        if module not in self.colors:
            self.colors[module] = COLOR_CODES[len(self.colors) % len(COLOR_CODES)]
        return self.colors[module]

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        base = super().format(record)
        color = self.color_for(record.name)
        if not color:
            return base
        prefix, sep, rest = base.partition("]")
        return f"{color}{prefix}{sep}{RESET}{rest}"


def _level(name, default: Optional[int] = None) -> Optional[int]:
    level = logging.getLevelName(str(name).upper())
    return level if isinstance(level, int) else default


def _rotating_handler(path: str, logging_config: Dict) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        path,
        maxBytes=logging_config.get("logMaxBytes", 10_000_000),
        backupCount=logging_config.get("logBackupCount", 5),
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
    return handler


def setup_logging(logging_config: Optional[Dict] = None, stream=None) -> None:
    """Installs the handlers and levels described by the `logging` config section."""
    logging_config = logging_config or {}
    stream = stream or sys.stderr

    root = logging.getLogger()
    root.handlers = []

    stream_handler = logging.StreamHandler(stream)
    if hasattr(stream, "isatty") and stream.isatty():
        stream_handler.setFormatter(ModuleColorFormatter())
    else:
        stream_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
    root.addHandler(stream_handler)
    root.setLevel(_level(logging_config.get("level") or "INFO", logging.INFO))

    sync_logger = logging.getLogger(SYNC_LOGGER)
    for handler in sync_logger.handlers[:]:
        sync_logger.removeHandler(handler)
        handler.close()

    log_dir = logging_config.get("logDir")
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        root.addHandler(_rotating_handler(os.path.join(log_dir, "cadre.log"), logging_config))
        sync_logger.addHandler(
            _rotating_handler(os.path.join(log_dir, SYNC_LOG_FILE), logging_config)
        )

    levels = dict(THIRD_PARTY_LEVELS)
    levels.update(logging_config.get("levels") or {})
    for name, level_name in levels.items():
        level = _level(level_name)
        if level is None:
            logging.getLogger(__name__).warning(
                f"Ignoring unknown log level '{level_name}' for logger '{name}'"
            )
            continue
        logging.getLogger(name).setLevel(level)
