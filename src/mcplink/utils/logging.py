"""Logging setup for processes embedding the agent engine.

Library modules only create loggers (``logging.getLogger(__name__)``);
:func:`setup_logging` is for applications that want mcplink's file and console
output configured in one call.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path

__all__ = ["setup_logging", "get_logger", "get_log_path"]

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_DEFAULT_LOG_DIR = Path("~/.mcplink/logs")
_LOG_FILE_NAME = "mcplink.log"
_LEVEL_ENV = "MCPLINK_LOG_LEVEL"
_DIR_ENV = "MCPLINK_LOG_DIR"
# Chatty at DEBUG; held at WARNING unless the root level is stricter.
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")

_CONFIGURED = False
_LOG_PATH: Path | None = None


def setup_logging(
    level: int | str | None = None,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Install a rotating file handler (and optionally stderr) on the root logger.

    Args:
        level: Numeric level or level name. Defaults to ``MCPLINK_LOG_LEVEL``,
            then ``INFO``.
        log_dir: Directory for ``mcplink.log``. Defaults to ``MCPLINK_LOG_DIR``,
            then ``~/.mcplink/logs``.
        console: Also log to stderr.
        max_bytes: Size at which the log file rotates.
        backup_count: Rotated files to keep.
        force: Replace an earlier configuration instead of returning it.

    Returns:
        Path of the active log file.

    Raises:
        ValueError: ``level`` names no logging level.
    """

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and _LOG_PATH is not None and not force:
        return _LOG_PATH

    numeric_level = _resolve_level(level)
    directory = Path(log_dir or os.environ.get(_DIR_ENV) or _DEFAULT_LOG_DIR).expanduser()
    directory.mkdir(parents=True, exist_ok=True)
    log_path = directory / _LOG_FILE_NAME

    handlers = _build_handlers(log_path, numeric_level, console, max_bytes, backup_count)
    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    quiet_level = max(numeric_level, logging.WARNING)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)

    _CONFIGURED, _LOG_PATH = True, log_path
    return log_path


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def get_log_path() -> Path | None:
    """Log file chosen by the last :func:`setup_logging` call, if any."""

    return _LOG_PATH


def _build_handlers(
    log_path: Path,
    level: int,
    console: bool,
    max_bytes: int,
    backup_count: int,
) -> list[logging.Handler]:
    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    ]
    if console:
        handlers.append(logging.StreamHandler())
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
    return handlers


def _resolve_level(level: int | str | None) -> int:
    if level is None:
        level = os.environ.get(_LEVEL_ENV) or logging.INFO
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return resolved
