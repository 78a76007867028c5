"""Tests for the whisper.cpp command-line backend."""

import asyncio
import os
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from audio_transcriber.asr.whisper_cpp import (
    PLACEHOLDER_CONFIDENCE,
    WhisperCppBackend,
    extract_duration,
    parse_segment_line,
    parse_whisper_output,
)
from audio_transcriber.assets.model_store import DownloadProgress, ModelAssetProvider
from audio_transcriber.utils.errors import (
    AssetDownloadError,
    SubprocessError,
    TranscriptionError,
)

CLI_STDOUT = (
    "[00:00:00.000 --> 00:00:03.500]   こんにちは。\n"
    "[00:00:03.500 --> 00:00:07.250]   今日は会議です。\n"
    "whisper_print_timings:     total time =  1234.56 ms\n"
)


def _stream(data: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return reader


def _fake_process(stdout: str, stderr: str = "", exit_code: int = 0) -> MagicMock:
    process = MagicMock()
    process.stdout = _stream(stdout.encode("utf-8"))
    process.stderr = _stream(stderr.encode("utf-8"))
    process.returncode = exit_code
    process.wait = AsyncMock(return_value=exit_code)
    return process


@pytest.fixture
def models_dir(tmp_path):
    path = tmp_path / "models"
    path.mkdir()
    (path / "ggml-large-v3-turbo.bin").write_bytes(b"weights")
    return str(path)


@pytest.fixture
def cli_path(tmp_path):
    path = tmp_path / "whisper-cli"
    path.write_text("#!/bin/sh\n")
    return str(path)


@pytest.fixture
def audio_file(tmp_path):
    path = tmp_path / "chunk_000.mp3"
    path.write_bytes(b"audio")
    return str(path)


@pytest.fixture
def backend(models_dir, cli_path):
    return WhisperCppBackend(ModelAssetProvider(models_dir), cli_path=cli_path, threads=1)


class TestParsing:
    """Tests for whisper-cli output parsing."""

    def test_parses_segment_line(self) -> None:
        segment = parse_segment_line("[00:01:02.500 --> 00:01:05.000]   hello there")
        assert segment is not None
        assert segment.local_start_seconds == 62.5
        assert segment.local_end_seconds == 65.0
        assert segment.text == "hello there"
        assert segment.confidence == PLACEHOLDER_CONFIDENCE

    def test_accepts_comma_millis_and_long_hours(self) -> None:
        segment = parse_segment_line("[100:00:00,250 --> 100:00:01,000]  text")
        assert segment is not None
        assert segment.local_start_seconds == 360000.25

    def test_ignores_non_segment_lines(self) -> None:
        assert parse_segment_line("whisper_init_from_file: loading model") is None
        assert parse_segment_line("") is None

    def test_ignores_lines_without_text(self) -> None:
        assert parse_segment_line("[00:00:00.000 --> 00:00:01.000]   ") is None

    def test_parse_output_in_order(self) -> None:
        segments = parse_whisper_output(CLI_STDOUT)
        assert [s.text for s in segments] == ["こんにちは。", "今日は会議です。"]

    def test_duration_is_max_end(self) -> None:
        assert extract_duration(CLI_STDOUT) == 7.25

    def test_duration_zero_without_segments(self) -> None:
        assert extract_duration("no segments here") == 0.0


class TestInit:
    """Tests for backend construction."""

    def test_unknown_model_rejected(self, models_dir) -> None:
        with pytest.raises(AssetDownloadError, match="Unknown model"):
            WhisperCppBackend(ModelAssetProvider(models_dir), model_key="huge")

    def test_threads_capped_to_cpu_count(self, models_dir) -> None:
        with patch("audio_transcriber.asr.whisper_cpp.os.cpu_count", return_value=2):
            backend = WhisperCppBackend(ModelAssetProvider(models_dir), threads=8)
        assert backend.threads == 2

    def test_needs_preparation_when_model_missing(self, tmp_path) -> None:
        backend = WhisperCppBackend(ModelAssetProvider(str(tmp_path / "empty")))
        assert backend.needs_preparation() is True

    def test_no_preparation_when_model_present(self, backend) -> None:
        assert backend.needs_preparation() is False

    def test_available_models_lists_registry(self, backend) -> None:
        keys = {m["key"] for m in backend.available_models()}
        assert keys == {"turbo", "base"}

    def test_build_command(self, backend) -> None:
        cmd = backend.build_command("/bin/whisper-cli", "/m/model.bin", "/a/in.mp3", "ja")
        assert cmd == [
            "/bin/whisper-cli",
            "-m", "/m/model.bin",
            "-f", "/a/in.mp3",
            "-l", "ja",
            "-otxt",
            "-t", "1",
            "-np",
        ]


class TestTranscribeChunk:
    """Tests for running whisper-cli as a subprocess."""

    async def test_successful_run(self, backend, audio_file) -> None:
        txt_path = f"{audio_file}.txt"

        async def spawn(*cmd, **kwargs):
            with open(txt_path, "w", encoding="utf-8") as f:
                f.write("こんにちは。今日は会議です。\n")
            return _fake_process(CLI_STDOUT)

        progress: list[float] = []
        with patch(
            "audio_transcriber.asr.whisper_cpp.asyncio.create_subprocess_exec",
            side_effect=spawn,
        ) as mock_exec:
            result = await backend.transcribe_chunk(audio_file, "ja", progress.append)

        assert result.raw_text == "こんにちは。今日は会議です。"
        assert result.language_code == "ja"
        assert result.chunk_duration_seconds == 7.25
        assert len(result.segments) == 2
        assert progress == [3.5, 7.25]
        assert not os.path.exists(txt_path)

        cmd = mock_exec.call_args[0]
        assert "-otxt" in cmd
        assert cmd[cmd.index("-f") + 1] == audio_file

    async def test_nonzero_exit_raises_subprocess_error(self, backend, audio_file) -> None:
        txt_path = f"{audio_file}.txt"

        async def spawn(*cmd, **kwargs):
            with open(txt_path, "w", encoding="utf-8") as f:
                f.write("partial")
            return _fake_process("", stderr="model load failed\n", exit_code=1)

        with patch(
            "audio_transcriber.asr.whisper_cpp.asyncio.create_subprocess_exec",
            side_effect=spawn,
        ):
            with pytest.raises(SubprocessError, match="model load failed") as exc_info:
                await backend.transcribe_chunk(audio_file, "ja")

        assert exc_info.value.exit_code == 1
        assert exc_info.value.retryable is False
        assert not os.path.exists(txt_path)

    async def test_missing_transcript_file(self, backend, audio_file) -> None:
        async def spawn(*cmd, **kwargs):
            return _fake_process(CLI_STDOUT)

        with patch(
            "audio_transcriber.asr.whisper_cpp.asyncio.create_subprocess_exec",
            side_effect=spawn,
        ):
            with pytest.raises(TranscriptionError, match="Output file not found"):
                await backend.transcribe_chunk(audio_file, "ja")

    async def test_spawn_failure(self, backend, audio_file) -> None:
        with patch(
            "audio_transcriber.asr.whisper_cpp.asyncio.create_subprocess_exec",
            side_effect=PermissionError("not executable"),
        ):
            with pytest.raises(SubprocessError, match="Failed to spawn"):
                await backend.transcribe_chunk(audio_file, "ja")

    async def test_unreadable_output_kills_process(self, backend, audio_file) -> None:
        process = _fake_process("x" * (70 * 1024))
        process.returncode = None

        async def spawn(*cmd, **kwargs):
            return process

        with patch(
            "audio_transcriber.asr.whisper_cpp.asyncio.create_subprocess_exec",
            side_effect=spawn,
        ):
            with pytest.raises(SubprocessError, match="Failed to read whisper-cli output"):
                await backend.transcribe_chunk(audio_file, "ja")

        process.kill.assert_called_once()
        process.wait.assert_awaited()
        assert not os.path.exists(f"{audio_file}.txt")

    async def test_missing_cli(self, models_dir, audio_file) -> None:
        backend = WhisperCppBackend(
            ModelAssetProvider(models_dir), cli_path="definitely-not-installed-cli"
        )
        with patch("audio_transcriber.asr.whisper_cpp.shutil.which", return_value=None):
            with pytest.raises(SubprocessError, match="not found"):
                await backend.transcribe_chunk(audio_file, "ja")

    async def test_missing_audio_file(self, backend, tmp_path) -> None:
        with pytest.raises(TranscriptionError, match="Audio file not found"):
            await backend.transcribe_chunk(str(tmp_path / "gone.mp3"), "ja")


class TestEnsureModel:
    """Tests for model preparation."""

    async def test_present_model_not_downloaded(self, backend, models_dir) -> None:
        with patch.object(ModelAssetProvider, "download", new=AsyncMock()) as mock_download:
            path = await backend.ensure_model()
        assert path == os.path.join(models_dir, "ggml-large-v3-turbo.bin")
        mock_download.assert_not_called()

    async def test_missing_model_downloaded_with_progress(self, tmp_path) -> None:
        provider = ModelAssetProvider(str(tmp_path / "empty"))
        backend = WhisperCppBackend(provider, model_key="base")
        messages: list[tuple[float, str]] = []

        async def fake_download(key, on_progress=None):
            on_progress(DownloadProgress(downloaded=50, total=100, percentage=50.0))
            return "/models/ggml-base.bin"

        with patch.object(provider, "download", side_effect=fake_download):
            await backend.prepare(lambda pct, msg: messages.append((pct, msg)))

        assert messages[0] == (0.0, "Downloading Whisper Base...")
        assert messages[1] == (50.0, "Downloading: 50.0%")
        assert messages[-1] == (100.0, "Model downloaded successfully")
