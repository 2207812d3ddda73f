"""
Centralized Logging Configuration

Configures the ``charflow`` logger for console and file output, in plain
text or as structured JSON lines carrying the current run id.

Usage:
    from charflow.logging_config import configure_logging, run_id_var

    configure_logging(log_level="DEBUG", log_dir=Path("runs/lib_v2/logs"))
    run_id_var.set("lib_v2")

Environment Variables:
    CHARFLOW_LOG_DIR - Override default log directory
    CHARFLOW_LOG_LEVEL - Set log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
"""

from __future__ import annotations

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime
from pathlib import Path
from typing import Optional

# Run identifier attached to structured log records
run_id_var: ContextVar[Optional[str]] = ContextVar("run_id", default=None)

_STANDARD_ATTRS = {
    "name", "msg", "args", "created", "filename", "funcName", "levelname",
    "levelno", "lineno", "module", "msecs", "pathname", "process",
    "processName", "relativeCreated", "thread", "threadName", "exc_info",
    "exc_text", "stack_info", "message", "taskName",
}


class StructuredFormatter(logging.Formatter):
    """JSON formatter: one object per record, with the run id and any
    ``extra=`` fields."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "run_id": run_id_var.get(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


def get_default_log_dir(workspace: Optional[Path] = None) -> Path:
    """
    Get the default log directory.

    Args:
        workspace: Run directory (defaults to current working directory)
    """
    if "CHARFLOW_LOG_DIR" in os.environ:
        return Path(os.environ["CHARFLOW_LOG_DIR"])
    if workspace is None:
        workspace = Path.cwd()
    return workspace / "logs"


def configure_logging(
    run_id: Optional[str] = None,
    log_dir: Optional[Path] = None,
    log_level: Optional[str] = None,
    log_to_console: bool = True,
    log_to_file: bool = False,
    structured: bool = False,
) -> logging.Logger:
    """
    Configure the ``charflow`` logger.

    Args:
        run_id: Run identifier (used in the log filename and structured records)
        log_dir: Log directory (overrides default)
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_to_console: Whether to log to stderr
        log_to_file: Whether to log to a file under log_dir
        structured: Emit JSON lines instead of text

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger("charflow")

    # Clear existing handlers to avoid duplicates
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if log_level is None:
        log_level = os.environ.get("CHARFLOW_LOG_LEVEL", "INFO")
    level = getattr(logging, log_level.upper())
    logger.setLevel(level)
    logger.propagate = False

    if run_id:
        run_id_var.set(run_id)

    if structured:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    if log_to_console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if log_to_file:
        if log_dir is None:
            log_dir = get_default_log_dir()
        log_dir.mkdir(parents=True, exist_ok=True)

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_path = log_dir / f"{run_id or 'charflow'}_{timestamp}.log"

        file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

        logger.info(f"Logging to: {log_path}")

    return logger
