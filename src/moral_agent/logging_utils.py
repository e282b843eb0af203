# logging_utils.py
# One-time logging setup for the supervisor process.
#
# Console: rich.logging.RichHandler on the display console.
# File:    one JSON object per record, appended to the agent-private log.
# Structured fields travel as `extra={"data": {...}}`.

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from rich.logging import RichHandler

from moral_agent import display

LOG_FILE = "/self/logs/agent.log"
NOISY_LOGGERS = ("httpx", "httpcore", "openai")

_CONFIGURED = False


def _resolve_level(name: str | None) -> int:
    if not name:
        return logging.INFO
    return getattr(logging, name.strip().upper(), logging.INFO)


class JsonLineFormatter(logging.Formatter):
    """Render a record as a single JSON line, merging its `data` extra."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        data = getattr(record, "data", None)
        if isinstance(data, dict):
            entry.update(data)
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class DataRichHandler(RichHandler):
    """RichHandler that appends the `data` extra to the console message."""

    def render_message(self, record: logging.LogRecord, message: str):
        data = getattr(record, "data", None)
        if isinstance(data, dict) and data:
            message = f"{message} " + " ".join(f"{key}={value}" for key, value in data.items())
        return super().render_message(record, message)


def configure_logging(level: str | None = "INFO", log_file: Path | None = None, *, force: bool = False) -> None:
    """
    Configure the root logger.

    Args:
        level:    level name, e.g. "DEBUG".
        log_file: physical path of the JSON-lines file; omitted → console only.
        force:    clear existing handlers first.
    """
    global _CONFIGURED
    if _CONFIGURED and not force:
        return

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    resolved = _resolve_level(level)
    root_logger.setLevel(resolved)

    console_handler = DataRichHandler(console=display.console, show_path=False, markup=False, rich_tracebacks=True)
    root_logger.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(JsonLineFormatter())
        root_logger.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, resolved))

    _CONFIGURED = True
