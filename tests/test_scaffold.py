"""Tests for project scaffold: imports, logger, and custom exceptions."""

import io
import json
import logging
import sys

import pytest

from audio_transcriber.observability.logger import (
    StructuredJsonFormatter,
    setup_logging,
)
from audio_transcriber.utils.errors import (
    AssetDownloadError,
    ChunkingError,
    MetadataError,
    SubprocessError,
    TranscriptionError,
    TranscriptionPipelineError,
)


class TestModuleImports:
    """Verify all package modules are importable."""

    def test_top_level_import(self) -> None:
        import audio_transcriber

        assert audio_transcriber is not None

    def test_subpackage_imports(self) -> None:
        import audio_transcriber.asr
        import audio_transcriber.assets.model_store
        import audio_transcriber.audio.chunker
        import audio_transcriber.observability.progress
        import audio_transcriber.pipeline
        import audio_transcriber.utils.retry

        assert audio_transcriber.asr is not None
        assert audio_transcriber.assets.model_store is not None
        assert audio_transcriber.audio.chunker is not None
        assert audio_transcriber.observability.progress is not None
        assert audio_transcriber.pipeline is not None
        assert audio_transcriber.utils.retry is not None


class TestCustomExceptions:
    """Verify custom exception hierarchy and string representations."""

    def test_all_exceptions_inherit_from_pipeline_error(self) -> None:
        exception_classes = [
            MetadataError,
            ChunkingError,
            TranscriptionError,
            SubprocessError,
            AssetDownloadError,
        ]
        for cls in exception_classes:
            assert issubclass(cls, TranscriptionPipelineError), (
                f"{cls.__name__} must inherit from TranscriptionPipelineError"
            )

    def test_subprocess_error_is_transcription_error(self) -> None:
        assert issubclass(SubprocessError, TranscriptionError)

    def test_str_includes_run_id(self) -> None:
        err = TranscriptionPipelineError("something broke", run_id="run-42")
        assert str(err) == "[run=run-42] something broke"

    def test_str_without_run_id(self) -> None:
        err = TranscriptionPipelineError("something broke")
        assert str(err) == "something broke"

    def test_transcription_error_defaults_to_not_retryable(self) -> None:
        err = TranscriptionError("bad request", provider="openai")
        assert err.retryable is False
        assert err.provider == "openai"

    def test_subprocess_error_is_never_retryable(self) -> None:
        err = SubprocessError(
            "whisper-cli exited with code 1", exit_code=1, stderr="model load failed"
        )
        assert err.retryable is False
        assert err.exit_code == 1
        assert err.stderr == "model load failed"

    def test_chunking_error_copies_written_paths(self) -> None:
        written = ["/tmp/a.mp3"]
        err = ChunkingError("split failed", chunk_index=1, temp_dir="/tmp", written_paths=written)
        written.append("/tmp/b.mp3")
        assert err.written_paths == ["/tmp/a.mp3"]
        assert err.chunk_index == 1
        assert err.temp_dir == "/tmp"

    def test_metadata_error_carries_file_path(self) -> None:
        err = MetadataError("cannot parse", file_path="/audio/x.m4a")
        assert err.file_path == "/audio/x.m4a"

    def test_catchable_as_base(self) -> None:
        with pytest.raises(TranscriptionPipelineError):
            raise AssetDownloadError("download failed", model_key="turbo")


class TestStructuredJsonFormatter:
    """Verify the JSON log formatter output."""

    def _make_record(self, **extra: object) -> logging.LogRecord:
        record = logging.LogRecord(
            name="audio_transcriber.test",
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg="Transcribing chunk %s",
            args=("1/3",),
            exc_info=None,
        )
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_outputs_single_line_json(self) -> None:
        output = StructuredJsonFormatter().format(self._make_record())
        assert "\n" not in output
        entry = json.loads(output)
        assert entry["severity"] == "INFO"
        assert entry["message"] == "Transcribing chunk 1/3"
        assert entry["logger"] == "audio_transcriber.test"
        assert entry["timestamp"].endswith("Z")

    def test_includes_run_context_fields(self) -> None:
        record = self._make_record(run_id="abc", stage="transcribing", chunk_index=0)
        entry = json.loads(StructuredJsonFormatter().format(record))
        assert entry["run_id"] == "abc"
        assert entry["stage"] == "transcribing"
        assert entry["chunk_index"] == 0

    def test_omits_unset_context_fields(self) -> None:
        entry = json.loads(StructuredJsonFormatter().format(self._make_record()))
        assert "run_id" not in entry
        assert "chunk_index" not in entry

    def test_includes_exception_text(self) -> None:
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = self._make_record()
            record.exc_info = sys.exc_info()
        entry = json.loads(StructuredJsonFormatter().format(record))
        assert entry["exception"] == "boom"

    def test_non_ascii_preserved(self) -> None:
        record = self._make_record()
        record.msg = "こんにちは"
        record.args = ()
        output = StructuredJsonFormatter().format(record)
        assert "こんにちは" in output


class TestLoggerSetup:
    """Verify setup_logging attaches its handler once."""

    def test_setup_logging_writes_json_to_stream(self) -> None:
        root = logging.getLogger()
        saved_handlers = list(root.handlers)
        saved_level = root.level
        stream = io.StringIO()
        try:
            root.handlers = []
            setup_logging(logging.INFO, stream=stream)
            setup_logging(logging.INFO, stream=stream)
            json_handlers = [
                h for h in root.handlers if isinstance(h.formatter, StructuredJsonFormatter)
            ]
            assert len(json_handlers) == 1

            logging.getLogger("audio_transcriber.setup_test").info("hello")
            entry = json.loads(stream.getvalue().strip().splitlines()[-1])
            assert entry["message"] == "hello"
        finally:
            root.handlers = saved_handlers
            root.setLevel(saved_level)
