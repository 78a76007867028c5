"""Structured JSON logging for transcription runs.

Each record becomes one JSON object per line carrying severity, timestamp,
logger name and message, plus whatever run context the pipeline attaches
through ``extra`` (run id, stage, chunk index, durations, error class).
"""

import json
import logging
import sys
from datetime import UTC, datetime
from typing import TextIO

EXTRA_FIELDS = ("run_id", "stage", "chunk_index", "duration_seconds", "error")


class StructuredJsonFormatter(logging.Formatter):
    """Render log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        """Serialize ``record`` with its run context fields.

        Args:
            record: The log record to format.

        Returns:
            JSON string; non-ASCII transcript text is kept readable.
        """
        created = datetime.fromtimestamp(record.created, UTC)
        entry: dict[str, object] = {
            "timestamp": created.strftime("%Y-%m-%dT%H:%M:%S.") + f"{created.microsecond // 1000:03d}Z",
            "severity": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(
            (key, getattr(record, key))
            for key in EXTRA_FIELDS
            if getattr(record, key, None) is not None
        )
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = str(record.exc_info[1])
        return json.dumps(entry, ensure_ascii=False, default=str)


def _json_handler(stream: TextIO | None) -> logging.Handler:
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(StructuredJsonFormatter())
    return handler


def setup_logging(level: int = logging.INFO, stream: TextIO | None = None) -> None:
    """Route the root logger through the JSON formatter.

    Calling it again only updates the level.
    """
    root = logging.getLogger()
    root.setLevel(level)
    if not any(isinstance(h.formatter, StructuredJsonFormatter) for h in root.handlers):
        root.addHandler(_json_handler(stream))
