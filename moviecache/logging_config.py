"""Process-wide logging setup for the catalog service.

Everything goes to stdout in ``event.name key=value`` style, plus an optional
``WatchedFileHandler`` at ``LOG_FILE_PATH``. ``LOG_LEVEL`` sets the root and
service loggers; ``LOG_LEVELS`` tunes individual loggers, e.g.
``LOG_LEVELS="moviecache.cache=DEBUG,httpx=INFO"``.
"""

import os
import logging
import logging.config
from pathlib import Path
from typing import Dict, Any


_configured = False  # idempotency guard

# Follow LOG_LEVEL unless overridden in LOG_LEVELS
_SERVICE_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi", "moviecache")

# httpx logs the full request URL (api_key included) at INFO
_QUIET_DEFAULTS = {"httpx": "WARNING", "httpcore": "WARNING"}


def parse_levels(spec: str | None) -> Dict[str, str]:
    """Parse ``name=LEVEL`` pairs separated by commas; blank or malformed pairs are skipped."""
    levels: Dict[str, str] = {}
    for item in (spec or "").split(","):
        name, sep, level = item.partition("=")
        name, level = name.strip(), level.strip().upper()
        if sep and name and level:
            levels[name] = level
    return levels


def _logger_levels(level: str, overrides: Dict[str, str]) -> Dict[str, Dict[str, str]]:
    levels = {name: level for name in _SERVICE_LOGGERS}
    levels.update(_QUIET_DEFAULTS)
    levels.update(overrides)
    return {name: {"level": lvl} for name, lvl in levels.items()}


def _build_dict_config(
    log_file: str | None, level: str, overrides: Dict[str, str] | None = None
) -> Dict[str, Any]:
    handlers: Dict[str, Any] = {
        "console": {
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stdout",
            "formatter": "std",
        }
    }
    root_handlers = ["console"]

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.WatchedFileHandler",
            "filename": log_file,
            "formatter": "std",
        }
        root_handlers.append("file")

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "std": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"}
        },
        "handlers": handlers,
        "loggers": _logger_levels(level, overrides or {}),
        "root": {"level": level, "handlers": root_handlers},
    }


def configure_logging() -> None:
    """Apply LOG_LEVEL / LOG_LEVELS / LOG_FILE_PATH once per process."""
    global _configured
    if _configured:
        return

    level = os.getenv("LOG_LEVEL", "INFO").upper()
    cfg = _build_dict_config(
        os.getenv("LOG_FILE_PATH") or None,
        level,
        parse_levels(os.getenv("LOG_LEVELS")),
    )
    logging.config.dictConfig(cfg)
    _configured = True
