"""
RAG Logging
===========

Log setup shared by the CLI, the migration script and the API.

Records are written either as human-readable lines or as JSON lines. JSON
lines carry the migration context fields (run_id, experience_id,
processed, backup, duration) whenever a record has them; migration code
logs through RunLogger so every record of one run shares its run_id.

Usage:
    from src.rag.logging_config import setup_logging

    setup_logging(json_output=True, log_file="logs/migration.log")
"""

import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

# Record attributes copied into JSON lines
CONTEXT_FIELDS = ("run_id", "experience_id", "processed", "backup", "duration")

HUMAN_FORMAT = "%(asctime)s [%(levelname)-8s] %(name)-24s | %(message)s"
HUMAN_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Client libraries held at WARNING
QUIET_LOGGERS = ("urllib3", "httpx", "openai")


class JSONFormatter(logging.Formatter):
    """One JSON object per record: ts, level, logger, msg, then context fields."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        entry.update({
            key: getattr(record, key)
            for key in CONTEXT_FIELDS
            if getattr(record, key, None) is not None
        })
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class RunLogger(logging.LoggerAdapter):
    """
    Logger adapter stamping ``run_id`` on every record of one run.

    ``extra`` passed to a single call is merged on top.
    """

    def __init__(self, logger: logging.Logger, run_id: str):
        super().__init__(logger, {"run_id": run_id})

    @property
    def run_id(self) -> str:
        return self.extra["run_id"]

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs


def build_handlers(
    json_output: bool = False,
    log_file: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> List[logging.Handler]:
    """Console handler, plus a rotating file handler when log_file is set."""
    if json_output:
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(HUMAN_FORMAT, datefmt=HUMAN_DATEFMT)

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
        handlers.append(logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
        ))

    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    """
    Replace the root handlers with console (and optional file) output.

    Args:
        level: Root log level name; unknown names mean INFO
        json_output: JSON lines instead of human-readable lines
        log_file: Rotating log file path
        max_bytes: Size at which the file rotates
        backup_count: Rotated files kept
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in build_handlers(json_output, log_file, max_bytes, backup_count):
        root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    root.debug(f"Logging configured: level={level} json={json_output} file={log_file or 'none'}")


def setup_logging_from_settings(settings) -> None:
    """Configure logging from a Settings.logging section."""
    cfg = settings.logging
    setup_logging(level=cfg.level, json_output=cfg.json_logs, log_file=cfg.log_file)
