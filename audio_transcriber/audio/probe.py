"""Audio metadata probing with ffprobe.

Reads duration, size, container format and (when present) bitrate of any
file ffprobe understands. No codec is assumed.
"""

import json
import os
import subprocess
from dataclasses import dataclass

from audio_transcriber.audio.ffmpeg import INSTALL_HINT, find_binary
from audio_transcriber.utils.errors import MetadataError

FFPROBE_TIMEOUT_SECONDS = 30


@dataclass(frozen=True)
class AudioMetadata:
    """Probed properties of a source audio file."""

    duration_seconds: float
    file_size_bytes: int
    container_format: str
    bitrate: int | None = None


def _run_ffprobe(file_path: str) -> dict:
    """Run ffprobe and return its parsed JSON report.

    Raises:
        MetadataError: If ffprobe is missing, fails, times out, or emits
            something that is not JSON.
    """
    ffprobe_path = find_binary("ffprobe")
    if ffprobe_path is None:
        raise MetadataError(
            f"ffprobe binary not found on PATH. {INSTALL_HINT}",
            file_path=file_path,
        )

    cmd = [
        ffprobe_path,
        "-v", "error",
        "-print_format", "json",
        "-show_format",
        file_path,
    ]

    try:
        completed = subprocess.run(
            cmd,
            check=True,
            capture_output=True,
            text=True,
            timeout=FFPROBE_TIMEOUT_SECONDS,
        )
    except subprocess.CalledProcessError as exc:
        stderr = exc.stderr.strip() if exc.stderr else "unknown error"
        raise MetadataError(
            f"Failed to read audio metadata: {stderr}",
            file_path=file_path,
        ) from exc
    except subprocess.TimeoutExpired as exc:
        raise MetadataError(
            f"ffprobe timed out after {FFPROBE_TIMEOUT_SECONDS}s; file may be corrupt",
            file_path=file_path,
        ) from exc
    except OSError as exc:
        raise MetadataError(
            f"Failed to run ffprobe: {exc}",
            file_path=file_path,
        ) from exc

    try:
        return json.loads(completed.stdout or "{}")
    except json.JSONDecodeError as exc:
        raise MetadataError(
            f"ffprobe returned unparseable output: {exc}",
            file_path=file_path,
        ) from exc


def _parse_float(value: object) -> float:
    try:
        return max(0.0, float(value))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0.0


def _parse_int(value: object) -> int | None:
    try:
        return int(float(value))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


def parse_ffprobe_report(report: dict, file_size_bytes: int) -> AudioMetadata:
    """Build AudioMetadata from an ffprobe ``-show_format`` JSON report.

    Args:
        report: Parsed ffprobe output.
        file_size_bytes: Size of the probed file on disk.

    Returns:
        AudioMetadata. Missing duration becomes 0.0, missing bitrate None.

    Raises:
        MetadataError: If the report has no ``format`` section.
    """
    fmt = report.get("format")
    if not isinstance(fmt, dict):
        raise MetadataError("ffprobe report has no container format section")

    return AudioMetadata(
        duration_seconds=_parse_float(fmt.get("duration")),
        file_size_bytes=file_size_bytes,
        container_format=fmt.get("format_name") or "unknown",
        bitrate=_parse_int(fmt.get("bit_rate")),
    )


def probe_audio(file_path: str) -> AudioMetadata:
    """Inspect an audio file and report its duration, size and format.

    Args:
        file_path: Path to the source audio file. It is only read.

    Returns:
        AudioMetadata for the file.

    Raises:
        MetadataError: If the file cannot be opened or its container parsed.
    """
    if not os.path.isfile(file_path):
        raise MetadataError(f"Audio file not found: {file_path}", file_path=file_path)

    try:
        file_size = os.path.getsize(file_path)
    except OSError as exc:
        raise MetadataError(
            f"Failed to get file stats: {exc}", file_path=file_path
        ) from exc

    report = _run_ffprobe(file_path)
    try:
        return parse_ffprobe_report(report, file_size)
    except MetadataError as exc:
        exc.file_path = file_path
        raise
