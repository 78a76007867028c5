"""Transcription run metrics collection and reporting.

Provides the RunMetrics dataclass, a StageTimer context manager for
measuring pipeline stage durations, and log_run_metrics() for emitting
metrics as a single structured JSON line on stderr, keeping stdout
free for the transcript itself.
"""

from __future__ import annotations

import json
import sys
import time
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime


@dataclass
class RunMetrics:
    """All metrics collected for a single transcription run."""

    run_id: str
    status: str
    backend: str
    audio_duration_seconds: float = 0.0
    file_size_bytes: int = 0
    chunk_count: int = 0
    segment_count: int = 0
    processing_wall_time_seconds: float = 0.0
    stage_timings: dict[str, float] = field(default_factory=dict)
    error_stage: str | None = None
    error_message: str | None = None


class StageTimer:
    """Times one pipeline stage and files the result under its name.

    A stage that raises is filed as ``_<stage>_failed`` so failed and
    completed durations never mix.

    Usage:
        timings = {}
        with StageTimer("chunking", timings) as timer:
            await split()
        timer.duration_seconds
    """

    def __init__(self, stage_name: str, timings: dict[str, float] | None = None) -> None:
        self.stage_name = stage_name
        self.started_at: datetime | None = None
        self.failed = False
        self.duration_seconds = 0.0
        self._timings = timings
        self._t0 = 0.0

    def __enter__(self) -> StageTimer:
        self.started_at = datetime.now(UTC)
        self._t0 = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        self.duration_seconds = time.perf_counter() - self._t0
        self.failed = exc_type is not None
        if self._timings is not None:
            key = f"_{self.stage_name}_failed" if self.failed else self.stage_name
            self._timings[key] = self.duration_seconds


def log_run_metrics(metrics: RunMetrics) -> None:
    """Emit run metrics as a single structured JSON line to stderr.

    Args:
        metrics: Populated RunMetrics dataclass.
    """
    entry = {
        "timestamp": datetime.now(UTC).isoformat(),
        "severity": "INFO",
        "metric_type": "transcription_run",
        **asdict(metrics),
    }
    print(json.dumps(entry, ensure_ascii=False), file=sys.stderr)
