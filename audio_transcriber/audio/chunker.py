"""Splitting oversized audio files into time-bounded chunks with ffmpeg.

Files at or under the size limit pass through untouched as a single chunk.
Larger files are cut into consecutive, non-overlapping windows, each written
to its own file in a fresh temporary directory next to the source.
"""

from __future__ import annotations

import asyncio
import logging
import math
import os
import shutil
import subprocess
import tempfile
from collections.abc import Callable
from dataclasses import dataclass

from audio_transcriber.audio.ffmpeg import INSTALL_HINT, find_binary
from audio_transcriber.audio.probe import AudioMetadata
from audio_transcriber.utils.errors import ChunkingError

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHUNK_BYTES = 25 * 1024 * 1024
DEFAULT_CHUNK_DURATION_SECONDS = 600.0
CHUNK_FILE_EXTENSION = ".mp3"
TEMP_DIR_PREFIX = ".temp_chunks_"
FFMPEG_TIMEOUT_SECONDS = 600

# Called with (fraction_complete, message) after each chunk is written
ChunkProgressCallback = Callable[[float, str], None]


@dataclass(frozen=True)
class AudioChunk:
    """One time window of the source audio."""

    sequence_index: int
    file_path: str
    start_offset_seconds: float
    duration_seconds: float
    is_temporary: bool = True


def plan_chunk_windows(
    duration_seconds: float, chunk_duration_seconds: float
) -> list[tuple[float, float]]:
    """Compute (start, nominal_duration) for each chunk window.

    There are ``ceil(duration / window)`` windows; all but the last are a
    full window long.
    """
    if chunk_duration_seconds <= 0:
        raise ValueError("chunk_duration_seconds must be positive")

    count = math.ceil(duration_seconds / chunk_duration_seconds)
    windows: list[tuple[float, float]] = []
    for index in range(count):
        start = index * chunk_duration_seconds
        windows.append((start, min(chunk_duration_seconds, duration_seconds - start)))
    return windows


def _extract_chunk(
    ffmpeg_path: str,
    source_path: str,
    output_path: str,
    start_seconds: float,
    duration_seconds: float,
) -> None:
    """Write one time window of the source to ``output_path``.

    Raises:
        subprocess.CalledProcessError: If ffmpeg exits non-zero.
        subprocess.TimeoutExpired: If ffmpeg hangs.
        OSError: If ffmpeg cannot be started.
    """
    cmd = [
        ffmpeg_path,
        "-y",
        "-v", "error",
        "-ss", f"{start_seconds:.3f}",
        "-t", f"{duration_seconds:.3f}",
        "-i", source_path,
        "-vn",
        output_path,
    ]
    subprocess.run(
        cmd,
        check=True,
        capture_output=True,
        text=True,
        timeout=FFMPEG_TIMEOUT_SECONDS,
    )


async def chunk_audio(
    file_path: str,
    metadata: AudioMetadata,
    max_chunk_bytes: int = DEFAULT_MAX_CHUNK_BYTES,
    chunk_duration_seconds: float = DEFAULT_CHUNK_DURATION_SECONDS,
    on_progress: ChunkProgressCallback | None = None,
) -> list[AudioChunk]:
    """Split an audio file into chunks small enough to transcribe.

    Args:
        file_path: Source audio file.
        metadata: Probed metadata of ``file_path``.
        max_chunk_bytes: Files at or under this size are not split.
        chunk_duration_seconds: Window length for each chunk.
        on_progress: Called once per chunk written.

    Returns:
        Chunks ordered by ``sequence_index``.

    Raises:
        ChunkingError: If any chunk cannot be extracted. The error carries
            the temporary directory and the chunk files already written.
    """
    if metadata.file_size_bytes <= max_chunk_bytes:
        return [
            AudioChunk(
                sequence_index=0,
                file_path=file_path,
                start_offset_seconds=0.0,
                duration_seconds=metadata.duration_seconds,
                is_temporary=False,
            )
        ]

    windows = plan_chunk_windows(metadata.duration_seconds, chunk_duration_seconds)
    if not windows:
        raise ChunkingError(
            f"Cannot split {file_path}: probed duration is "
            f"{metadata.duration_seconds}s"
        )

    ffmpeg_path = find_binary("ffmpeg")
    if ffmpeg_path is None:
        raise ChunkingError(f"ffmpeg binary not found on PATH. {INSTALL_HINT}")

    source_dir = os.path.dirname(os.path.abspath(file_path))
    try:
        temp_dir = tempfile.mkdtemp(prefix=TEMP_DIR_PREFIX, dir=source_dir)
    except OSError as exc:
        raise ChunkingError(
            f"Failed to create temporary chunk directory in {source_dir}: {exc}"
        ) from exc

    total = len(windows)
    chunks: list[AudioChunk] = []
    written: list[str] = []
    logger.info(
        "Splitting %s into %d chunks of %.0fs", file_path, total, chunk_duration_seconds
    )

    try:
        for index, (start, duration) in enumerate(windows):
            output_path = os.path.join(temp_dir, f"chunk_{index:03d}{CHUNK_FILE_EXTENSION}")
            try:
                await asyncio.to_thread(
                    _extract_chunk, ffmpeg_path, file_path, output_path, start, duration
                )
            except (OSError, subprocess.SubprocessError) as exc:
                if os.path.exists(output_path):
                    written.append(output_path)
                stderr = getattr(exc, "stderr", None)
                detail = stderr.strip() if isinstance(stderr, str) and stderr.strip() else str(exc)
                raise ChunkingError(
                    f"Failed to split audio file at chunk {index + 1}/{total}: {detail}",
                    chunk_index=index,
                    temp_dir=temp_dir,
                    written_paths=written,
                ) from exc

            if not os.path.exists(output_path):
                raise ChunkingError(
                    f"ffmpeg produced no output for chunk {index + 1}/{total}",
                    chunk_index=index,
                    temp_dir=temp_dir,
                    written_paths=written,
                )

            written.append(output_path)
            chunks.append(
                AudioChunk(
                    sequence_index=index,
                    file_path=output_path,
                    start_offset_seconds=start,
                    duration_seconds=duration,
                )
            )
            if on_progress is not None:
                on_progress((index + 1) / total, f"Split file into chunks: {index + 1}/{total}")
    except asyncio.CancelledError:
        shutil.rmtree(temp_dir, ignore_errors=True)
        raise

    return chunks
