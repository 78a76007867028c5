"""Local whisper.cpp transcription backend.

Runs the ``whisper-cli`` executable as a subprocess. The tool prints one
line per segment on stdout and writes the plain transcript to
``<input>.txt``; both are read back and the text file is removed.

Segment line grammar (one per line, surrounding whitespace ignored)::

    line      := "[" timestamp " --> " timestamp "]" spaces text
    timestamp := hours ":" mm ":" ss ("." | ",") mmm

where ``hours`` is one or more digits, ``mm`` and ``ss`` two digits and
``mmm`` three digits. Lines that do not match are ignored.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil

from audio_transcriber.asr.interface import (
    ChunkProgressCallback,
    ChunkTranscriptionResult,
    PreparationProgressCallback,
    RawSegment,
    TranscriptionBackend,
)
from audio_transcriber.assets.model_store import (
    DownloadProgress,
    ModelAssetProvider,
)
from audio_transcriber.utils.errors import SubprocessError, TranscriptionError

logger = logging.getLogger(__name__)

PROVIDER = "whisper-cpp"
DEFAULT_CLI = "whisper-cli"
DEFAULT_MODEL_KEY = "turbo"
DEFAULT_THREADS = 4
# whisper-cli does not report a confidence per segment
PLACEHOLDER_CONFIDENCE = 0.9

_TIMESTAMP = r"(\d+):(\d{2}):(\d{2})[.,](\d{3})"
_TIMESTAMP_PAIR = re.compile(rf"\[{_TIMESTAMP} --> {_TIMESTAMP}\]")
_SEGMENT_LINE = re.compile(rf"^\s*\[{_TIMESTAMP} --> {_TIMESTAMP}\]\s+(.*?)\s*$")


def _to_seconds(hours: str, minutes: str, seconds: str, millis: str) -> float:
    return int(hours) * 3600 + int(minutes) * 60 + int(seconds) + int(millis) / 1000


def parse_segment_line(line: str) -> RawSegment | None:
    """Parse one ``[hh:mm:ss.mmm --> hh:mm:ss.mmm]  text`` line.

    Returns None for lines that are not segments or carry no text.
    """
    match = _SEGMENT_LINE.match(line)
    if not match:
        return None
    groups = match.groups()
    text = groups[8]
    if not text:
        return None
    return RawSegment(
        local_start_seconds=_to_seconds(*groups[0:4]),
        local_end_seconds=_to_seconds(*groups[4:8]),
        text=text,
        confidence=PLACEHOLDER_CONFIDENCE,
    )


def parse_whisper_output(output: str) -> list[RawSegment]:
    """Parse every segment line of whisper-cli's stdout, in order."""
    segments: list[RawSegment] = []
    for line in output.splitlines():
        segment = parse_segment_line(line)
        if segment is not None:
            segments.append(segment)
    return segments


def extract_duration(output: str) -> float:
    """Largest end timestamp printed by whisper-cli, in seconds."""
    max_end = 0.0
    for match in _TIMESTAMP_PAIR.finditer(output):
        max_end = max(max_end, _to_seconds(*match.groups()[4:8]))
    return max_end


class WhisperCppBackend(TranscriptionBackend):
    """whisper.cpp command-line backend.

    Args:
        asset_provider: Model cache used to locate or download weights.
        model_key: Registered model to run (default "turbo").
        cli_path: Executable name on PATH or absolute path.
        threads: Worker threads passed to the tool, capped at the CPU count.
    """

    name = PROVIDER

    def __init__(
        self,
        asset_provider: ModelAssetProvider,
        model_key: str = DEFAULT_MODEL_KEY,
        cli_path: str = DEFAULT_CLI,
        threads: int = DEFAULT_THREADS,
    ) -> None:
        asset_provider.get_asset(model_key)
        self._assets = asset_provider
        self._model_key = model_key
        self._cli_path = cli_path
        self._threads = max(1, min(threads, os.cpu_count() or 1))

    @property
    def threads(self) -> int:
        return self._threads

    def available_models(self) -> list[dict[str, object]]:
        return self._assets.list_models()

    def needs_preparation(self) -> bool:
        return not self._assets.is_asset_available(self._model_key)

    async def prepare(
        self, on_progress: PreparationProgressCallback | None = None
    ) -> None:
        await self.ensure_model(on_progress)

    async def ensure_model(
        self, on_progress: PreparationProgressCallback | None = None
    ) -> str:
        """Return the model path, downloading the model first if absent.

        Raises:
            AssetDownloadError: If the model cannot be fetched.
        """
        if self._assets.is_asset_available(self._model_key):
            return self._assets.get_asset_path(self._model_key)

        asset = self._assets.get_asset(self._model_key)
        if on_progress is not None:
            on_progress(0.0, f"Downloading {asset.name}...")

        def report(progress: DownloadProgress) -> None:
            if on_progress is not None:
                on_progress(progress.percentage, f"Downloading: {progress.percentage:.1f}%")

        path = await self._assets.download(self._model_key, report)
        if on_progress is not None:
            on_progress(100.0, "Model downloaded successfully")
        return path

    def _resolve_cli(self) -> str:
        if os.path.sep in self._cli_path:
            resolved = self._cli_path if os.path.isfile(self._cli_path) else None
        else:
            resolved = shutil.which(self._cli_path)
        if resolved is None:
            raise SubprocessError(
                f"{self._cli_path} not found. Install whisper.cpp "
                "(e.g. brew install whisper-cpp) or set WHISPER_CLI_PATH",
                provider=PROVIDER,
            )
        return resolved

    def build_command(
        self, cli: str, model_path: str, audio_path: str, language_code: str
    ) -> list[str]:
        return [
            cli,
            "-m", model_path,
            "-f", audio_path,
            "-l", language_code,
            "-otxt",
            "-t", str(self._threads),
            "-np",
        ]

    async def transcribe_chunk(
        self,
        audio_path: str,
        language_code: str,
        on_progress: ChunkProgressCallback | None = None,
    ) -> ChunkTranscriptionResult:
        """Transcribe a chunk with whisper-cli.

        Raises:
            SubprocessError: If the tool cannot start or exits non-zero.
            TranscriptionError: If the input or the transcript file is missing.
            AssetDownloadError: If the model has to be fetched and cannot be.
        """
        if not os.path.isfile(audio_path):
            raise TranscriptionError(
                f"Audio file not found: {audio_path}", provider=PROVIDER
            )

        model_path = await self.ensure_model()
        cli = self._resolve_cli()
        cmd = self.build_command(cli, model_path, audio_path, language_code)
        txt_output_path = f"{audio_path}.txt"

        logger.info("Running: %s", " ".join(cmd))
        try:
            stdout, stderr, exit_code = await self._run(cmd, on_progress)

            if exit_code != 0:
                raise SubprocessError(
                    f"whisper-cli exited with code {exit_code}: {stderr.strip()}",
                    provider=PROVIDER,
                    exit_code=exit_code,
                    stderr=stderr,
                )

            try:
                with open(txt_output_path, encoding="utf-8") as f:
                    transcript_text = f.read()
            except FileNotFoundError as exc:
                raise TranscriptionError(
                    f"Output file not found: {txt_output_path}", provider=PROVIDER
                ) from exc
        finally:
            _remove_if_exists(txt_output_path)

        return ChunkTranscriptionResult(
            raw_text=transcript_text.strip(),
            language_code=language_code,
            chunk_duration_seconds=extract_duration(stdout),
            segments=parse_whisper_output(stdout),
        )

    async def _run(
        self, cmd: list[str], on_progress: ChunkProgressCallback | None
    ) -> tuple[str, str, int]:
        """Spawn the tool, streaming stdout for progress.

        Returns:
            (stdout, stderr, exit_code)
        """
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise SubprocessError(
                f"Failed to spawn whisper-cli: {exc}", provider=PROVIDER
            ) from exc

        stdout_lines: list[str] = []

        async def read_stdout() -> None:
            assert process.stdout is not None
            async for raw in process.stdout:
                line = raw.decode("utf-8", errors="replace")
                stdout_lines.append(line)
                logger.debug("whisper-cli stdout: %s", line.rstrip())
                if on_progress is not None:
                    match = _TIMESTAMP_PAIR.search(line)
                    if match:
                        on_progress(_to_seconds(*match.groups()[4:8]))

        async def read_stderr() -> str:
            assert process.stderr is not None
            data = await process.stderr.read()
            return data.decode("utf-8", errors="replace")

        try:
            _, stderr = await asyncio.gather(read_stdout(), read_stderr())
            exit_code = await process.wait()
        except BaseException as exc:
            if process.returncode is None:
                process.kill()
                await process.wait()
            if isinstance(exc, (OSError, ValueError)):
                raise SubprocessError(
                    f"Failed to read whisper-cli output: {exc}", provider=PROVIDER
                ) from exc
            raise

        return "".join(stdout_lines), stderr, exit_code


def _remove_if_exists(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError:
        logger.warning("Failed to remove transcript file %s", path, exc_info=True)
