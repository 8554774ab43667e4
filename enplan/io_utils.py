from __future__ import annotations

import logging


LOGGER_NAME = "enplan"
_DEBUG_MODE = False

_root_logger = logging.getLogger(LOGGER_NAME)
_root_logger.addHandler(logging.NullHandler())


def get_logger(name: str | None = None) -> logging.Logger:
    """Return the package logger or one of its children."""
    if not name:
        return _root_logger
    if name.startswith(LOGGER_NAME + ".") or name == LOGGER_NAME:
        return logging.getLogger(name)
    return logging.getLogger(f"{LOGGER_NAME}.{name}")


def configure_logging(level: int = logging.INFO) -> None:
    """Attach a stream handler to the package logger (CLI entry points only)."""
    if not any(isinstance(h, logging.StreamHandler) and not isinstance(h, logging.NullHandler) for h in _root_logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        _root_logger.addHandler(handler)
    _root_logger.setLevel(level)


def set_debug_mode(enabled: bool) -> None:
    """Set global debug mode for helper logging."""
    global _DEBUG_MODE
    _DEBUG_MODE = enabled
    _root_logger.setLevel(logging.DEBUG if enabled else logging.INFO)


def set_quiet(enabled: bool) -> None:
    if enabled:
        _root_logger.setLevel(logging.WARNING)
    else:
        _root_logger.setLevel(logging.DEBUG if _DEBUG_MODE else logging.INFO)
