from __future__ import annotations

import logging
import os
import sys
import traceback
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

_LOGGER = logging.getLogger("xformed.logging")
_ROOT_LOGGER = "xformed"
_LOG_DIR_ENV = "XFORMED_LOG_DIR"
_DEBUG_ENV = "XFORMED_DEBUG"
_LOG_FILE = "xformed.log"
_CONSOLE_FORMAT = "%(level_tag)-7s %(name)s: %(message)s"
_FILE_FORMAT = "%(asctime)s %(levelname)-8s %(name)s [%(module)s:%(lineno)d] %(message)s"
_FILE_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"
# Marks handlers installed here so a forced reconfigure leaves foreign ones alone.
_HANDLER_TAG = "_xformed_handler"


@dataclass
class _LoggingState:
    configured: bool = False
    log_path: Path | None = None


_STATE = _LoggingState()


class _LevelTagFormatter(logging.Formatter):
    """Console lines start with a short bracketed level, e.g. ``[warn]``."""

    _TAGS = {"WARNING": "warn", "CRITICAL": "fatal"}

    def format(self, record: logging.LogRecord) -> str:
        name = record.levelname
        record.level_tag = f"[{self._TAGS.get(name, name.lower())}]"
        return super().format(record)


def debug_enabled() -> bool:
    return bool(os.environ.get(_DEBUG_ENV))


def get_log_dir() -> Path:
    """Directory for the log file; ``XFORMED_LOG_DIR`` overrides the cache default."""
    configured = os.environ.get(_LOG_DIR_ENV)
    if configured:
        return Path(configured).expanduser()
    return Path.home() / ".cache" / "xformed" / "logs"


def get_log_path() -> Path:
    return get_log_dir() / _LOG_FILE


def _tag(handler: logging.Handler) -> logging.Handler:
    setattr(handler, _HANDLER_TAG, True)
    return handler


def _console_handler() -> logging.Handler:
    handler = logging.StreamHandler(stream=sys.__stderr__)
    handler.setLevel(logging.DEBUG if debug_enabled() else logging.WARNING)
    handler.setFormatter(_LevelTagFormatter(_CONSOLE_FORMAT))
    return _tag(handler)


def _file_handler(path: Path) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt=_FILE_DATE_FORMAT))
    return _tag(handler)


def _drop_own_handlers(logger: logging.Logger) -> None:
    for handler in [h for h in logger.handlers if getattr(h, _HANDLER_TAG, False)]:
        logger.removeHandler(handler)
        handler.close()


def configure_logging(*, force: bool = False) -> None:
    """Attach console and file handlers to the ``xformed`` logger once.

    The console handler is skipped when the host application already
    configured the root logger, unless ``force`` is set. A log directory
    that cannot be created only costs the file handler.
    """
    if _STATE.configured and not force:
        return

    logger = logging.getLogger(_ROOT_LOGGER)
    logger.setLevel(logging.DEBUG)
    if force:
        _drop_own_handlers(logger)

    if force or not logging.getLogger().handlers:
        logger.addHandler(_console_handler())

    path = get_log_path()
    try:
        logger.addHandler(_file_handler(path))
        _STATE.log_path = path
    except OSError as exc:
        _STATE.log_path = None
        _LOGGER.warning("File logging disabled (%s): %s", path, exc)

    # Records still reach root so pytest's caplog and host apps see them.
    logger.propagate = True
    _STATE.configured = True


def log_exception(context: str, exc: BaseException) -> Path | None:
    """Append a timestamped traceback block for ``exc`` to the log file."""
    path = get_log_path()
    lines = traceback.format_exception(type(exc), exc, exc.__traceback__)
    block = (
        f"[{datetime.now().isoformat(timespec='seconds')}] "
        f"{context} failed: {type(exc).__name__}: {exc}\n" + "".join(lines) + "\n"
    )
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(block)
    except OSError as log_exc:
        _LOGGER.warning("Could not write exception log %s: %s", path, log_exc)
        return None
    return path
