"""Logging helpers for the addonsync runtime."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
import os
from pathlib import Path
import sys
from typing import Any, Mapping, Optional, Tuple, Union

LOG_SUBPATH = Path("logs") / "addonsync.log"
STRUCTURED_LOG_SUBPATH = Path("logs") / "addonsync.jsonl"
MAX_BYTES = 5 * 1024 * 1024  # 5 MB per log segment
BACKUP_COUNT = 3
REPO_ROOT = Path(__file__).resolve().parent.parent
FALLBACK_ROOT = REPO_ROOT / ".addonsync_runtime"


class JSONFormatter(logging.Formatter):
    """Format log records as JSON lines for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def resolve_log_settings(
    logging_config: Mapping[str, Any],
    env: Optional[Mapping[str, str]] = None,
) -> Tuple[str, bool]:
    """Return ``(level_name, console_enabled)`` from config and environment.

    ``ADDONSYNC_LOG_LEVEL`` overrides the configured level; ``QUIET`` turns
    the console handler off for scheduled deployments that only keep files.
    """
    env_source = env if env is not None else os.environ
    level = env_source.get("ADDONSYNC_LOG_LEVEL") or logging_config.get("level") or "WARNING"
    quiet = str(env_source.get("QUIET", "")).strip().lower() in {"1", "true", "yes", "on"}
    return str(level).upper(), not quiet


def setup_logging(
    data_dir: Path,
    level: Union[str, int] = logging.WARNING,
    structured: bool = True,
    console: bool = True,
) -> Path:
    """Configure addonsync logging with optional structured JSON output.

    Args:
        data_dir: Path to the data directory for log storage.
        level: Logging level (string name or int constant).
        structured: Whether to enable structured JSON logging.
        console: Whether to also log to stderr.

    Returns:
        Path to the primary (text) log file.
    """
    log_path = _prepare_log_path(data_dir, LOG_SUBPATH)

    resolved_level = _resolve_level(level)
    text_formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=MAX_BYTES,
        backupCount=BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setFormatter(text_formatter)

    logger = logging.getLogger("addonsync")
    _reset_handlers(logger)
    logger.setLevel(resolved_level)
    logger.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(text_formatter)
        logger.addHandler(console_handler)

    if structured:
        json_path = _prepare_log_path(data_dir, STRUCTURED_LOG_SUBPATH)
        json_handler = RotatingFileHandler(
            json_path,
            maxBytes=MAX_BYTES,
            backupCount=BACKUP_COUNT,
            encoding="utf-8",
        )
        json_handler.setFormatter(JSONFormatter())
        logger.addHandler(json_handler)

    logger.propagate = False

    return log_path


def _resolve_level(level: Union[str, int]) -> int:
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.WARNING)
    return int(level)


def _prepare_log_path(data_dir: Path, subpath: Path) -> Path:
    primary = data_dir / subpath
    try:
        primary.parent.mkdir(parents=True, exist_ok=True)
        return primary
    except PermissionError:
        fallback = FALLBACK_ROOT / subpath
        fallback.parent.mkdir(parents=True, exist_ok=True)
        print(
            f"[config] Unable to write {subpath.name} under '{data_dir}'; "
            f"falling back to '{fallback.parent}'.",
            file=sys.stderr,
        )
        return fallback


def _reset_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


__all__ = ["setup_logging", "resolve_log_settings", "JSONFormatter", "LOG_SUBPATH", "STRUCTURED_LOG_SUBPATH", "FALLBACK_ROOT"]
