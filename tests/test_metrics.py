"""Tests for audio_transcriber.observability.metrics module."""

from __future__ import annotations

import json
import time
from dataclasses import asdict

import pytest

from audio_transcriber.observability.metrics import (
    RunMetrics,
    StageTimer,
    log_run_metrics,
)


def _make_run_metrics(**overrides) -> RunMetrics:
    """Create a RunMetrics with sensible defaults, applying any overrides."""
    defaults = {
        "run_id": "run-001",
        "status": "completed",
        "backend": "openai",
        "audio_duration_seconds": 1500.0,
        "file_size_bytes": 40_000_000,
        "chunk_count": 3,
        "segment_count": 120,
        "processing_wall_time_seconds": 95.5,
        "stage_timings": {"probing": 0.2, "chunking": 4.1},
        "error_stage": None,
        "error_message": None,
    }
    defaults.update(overrides)
    return RunMetrics(**defaults)


class TestRunMetrics:
    """Tests for RunMetrics dataclass."""

    def test_serializes_all_fields_to_dict(self):
        d = asdict(_make_run_metrics())

        assert d["run_id"] == "run-001"
        assert d["status"] == "completed"
        assert d["backend"] == "openai"
        assert d["chunk_count"] == 3
        assert d["stage_timings"] == {"probing": 0.2, "chunking": 4.1}
        assert d["error_stage"] is None

    def test_defaults_for_failed_early_run(self):
        metrics = RunMetrics(run_id="r", status="failed", backend="whisper-cpp")
        assert metrics.chunk_count == 0
        assert metrics.stage_timings == {}

    def test_stage_timings_not_shared_between_instances(self):
        a = RunMetrics(run_id="a", status="completed", backend="openai")
        b = RunMetrics(run_id="b", status="completed", backend="openai")
        a.stage_timings["probing"] = 1.0
        assert b.stage_timings == {}


class TestStageTimer:
    """Tests for StageTimer context manager."""

    def test_measures_elapsed_time(self):
        with StageTimer("chunking") as timer:
            time.sleep(0.01)

        assert timer.duration_seconds >= 0.01
        assert timer.started_at is not None
        assert timer.failed is False

    def test_records_into_timings(self):
        timings: dict[str, float] = {}
        with StageTimer("merging", timings):
            pass
        assert "merging" in timings
        assert timings["merging"] >= 0.0

    def test_failed_stage_recorded_separately(self):
        timings: dict[str, float] = {}
        with pytest.raises(RuntimeError):
            with StageTimer("transcribing", timings) as timer:
                raise RuntimeError("backend down")

        assert "transcribing" not in timings
        assert "_transcribing_failed" in timings
        assert timer.failed is True

    def test_exception_propagates(self):
        with pytest.raises(ValueError, match="bad"):
            with StageTimer("probing"):
                raise ValueError("bad")


class TestLogRunMetrics:
    """Tests for log_run_metrics output."""

    def test_writes_single_json_line_to_stderr(self, capsys):
        log_run_metrics(_make_run_metrics())

        captured = capsys.readouterr()
        assert captured.out == ""
        lines = captured.err.strip().splitlines()
        assert len(lines) == 1

        entry = json.loads(lines[0])
        assert entry["metric_type"] == "transcription_run"
        assert entry["severity"] == "INFO"
        assert entry["run_id"] == "run-001"
        assert entry["segment_count"] == 120
        assert "timestamp" in entry

    def test_failed_run_includes_error_fields(self, capsys):
        log_run_metrics(
            _make_run_metrics(
                status="failed",
                error_stage="transcribing",
                error_message="Whisper API error (401): invalid key",
            )
        )
        entry = json.loads(capsys.readouterr().err.strip())
        assert entry["status"] == "failed"
        assert entry["error_stage"] == "transcribing"
        assert "401" in entry["error_message"]
