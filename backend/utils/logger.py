"""
Codex Engine Logging

Centralized logging configuration for the execution engine.
Structured key=value context, optional colours on the console and a
rotating log file.

Usage:
    from backend.utils.logger import get_logger
    logger = get_logger(__name__)

    logger.info("Thread resumed", session_id="abc", thread_id="th_1")
    logger.error("Config write failed", exc_info=True, path="/tmp/x")
"""

import logging
import logging.handlers
import os
import sys
from typing import Optional, Any, Dict


# =============================================================================
# Log Level Constants
# =============================================================================

LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

ROOT_LOGGER_NAME = "codex_engine"


# =============================================================================
# Formatter
# =============================================================================

class EngineFormatter(logging.Formatter):
    """
    Formatter that renders:
    - the emitting file/function/line
    - structured context as a trailing ``| key=value ...`` segment
    - coloured level names on terminals
    """

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
        "RESET": "\033[0m",
    }

    def __init__(self, fmt: str, datefmt: Optional[str] = None, use_colors: bool = False):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        filename = os.path.basename(record.pathname) if record.pathname else "unknown"
        record.location = f"{filename}:{record.funcName}:{record.lineno}"

        context = getattr(record, "context", None) or {}
        parts = [f"{key}={value}" for key, value in context.items()]
        record.context_str = " | " + " ".join(parts) if parts else ""

        if self.use_colors and record.levelname in self.COLORS:
            record.levelname_colored = (
                f"{self.COLORS[record.levelname]}{record.levelname:8}{self.COLORS['RESET']}"
            )
        else:
            record.levelname_colored = f"{record.levelname:8}"

        return super().format(record)


# =============================================================================
# Context-Aware Logger
# =============================================================================

class EngineLogger(logging.LoggerAdapter):
    """
    Logger adapter that turns extra keyword arguments into structured context.

    Example:
        logger.info("Config written", path="/home/u/.codex/config.toml", servers=2)
        # 2025-01-04 12:00:00 | INFO | config_synthesizer.py:ensure_config:88 | Config written | path=... servers=2
    """

    _STANDARD_KEYS = {"exc_info", "stack_info", "stacklevel", "extra"}

    def __init__(self, logger: logging.Logger, extra: Optional[Dict[str, Any]] = None):
        super().__init__(logger, extra or {})

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        context: Dict[str, Any] = {}
        for key in list(kwargs.keys()):
            if key not in self._STANDARD_KEYS:
                context[key] = kwargs.pop(key)
        context.update(self.extra)

        extra = dict(kwargs.get("extra") or {})
        extra["context"] = context
        kwargs["extra"] = extra
        return msg, kwargs


# =============================================================================
# Logger Factory
# =============================================================================

_initialized = False


def configure_logging(
    log_level: str = "INFO",
    log_dir: Optional[str] = None,
    log_to_console: bool = True,
    use_colors: bool = True,
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 7,
) -> None:
    """
    Configure the ``codex_engine`` logger tree.

    Safe to call again; handlers are replaced. ``get_logger`` applies the
    defaults if nothing configured logging first.

    Args:
        log_level: Minimum console level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir: Directory for ``codex_engine.log``; file logging is off when None
        log_to_console: Whether to log to stderr
        use_colors: Whether to colour console level names
        max_bytes: Size of each log file before rotation
        backup_count: Number of rotated files to keep
    """
    global _initialized

    level = LOG_LEVELS.get(log_level.upper(), logging.INFO)

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(logging.DEBUG)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.propagate = False

    console_format = "%(asctime)s | %(levelname_colored)s | %(location)s | %(message)s%(context_str)s"
    file_format = "%(asctime)s | %(levelname)-8s | %(name)s | %(location)s | %(message)s%(context_str)s"

    if log_to_console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(
            EngineFormatter(
                console_format,
                datefmt="%Y-%m-%d %H:%M:%S",
                use_colors=use_colors and sys.stderr.isatty(),
            )
        )
        root.addHandler(console_handler)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, "codex_engine.log"),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(EngineFormatter(file_format, datefmt="%Y-%m-%d %H:%M:%S"))
        root.addHandler(file_handler)

    for module_name in ["aiohttp", "sqlalchemy", "asyncio"]:
        logging.getLogger(module_name).setLevel(logging.WARNING)

    _initialized = True


def get_logger(name: Optional[str] = None) -> EngineLogger:
    """
    Get a structured logger for a module.

    ``backend.codex_engine.runtime.translator`` becomes
    ``codex_engine.runtime.translator``.

    Args:
        name: Module name (usually ``__name__``)

    Returns:
        EngineLogger instance
    """
    if not _initialized:
        configure_logging()

    if name:
        if name.startswith("backend."):
            name = name[len("backend."):]
        logger_name = name if name.startswith(ROOT_LOGGER_NAME) else f"{ROOT_LOGGER_NAME}.{name}"
    else:
        logger_name = ROOT_LOGGER_NAME

    return EngineLogger(logging.getLogger(logger_name))


__all__ = [
    "configure_logging",
    "get_logger",
    "EngineLogger",
    "EngineFormatter",
    "LOG_LEVELS",
]
