"""Transcription orchestrator for a single audio file.

Drives one run through probe -> chunk -> transcribe each chunk -> merge ->
cleanup, reporting progress on a ProgressChannel. A run either returns a
complete TranscriptionResult or raises; temporary chunk files are removed on
every path.

States::

    IDLE -> PROBING_METADATA -> CHUNKING -> TRANSCRIBING -> MERGING
         -> CLEANING_UP -> COMPLETED

FAILED is reachable from every non-terminal state.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from audio_transcriber.asr.interface import ChunkTranscriptionResult, TranscriptionBackend
from audio_transcriber.asr.merge import (
    TranscriptionResult,
    compute_time_offsets,
    merge_results,
)
from audio_transcriber.asr.registry import build_backend
from audio_transcriber.audio.chunker import (
    DEFAULT_CHUNK_DURATION_SECONDS,
    DEFAULT_MAX_CHUNK_BYTES,
    AudioChunk,
    ChunkProgressCallback,
    chunk_audio,
)
from audio_transcriber.audio.probe import AudioMetadata, probe_audio
from audio_transcriber.config import TranscriberConfig
from audio_transcriber.observability.metrics import RunMetrics, StageTimer, log_run_metrics
from audio_transcriber.observability.progress import (
    ProgressCallback,
    ProgressChannel,
    ProgressRange,
)
from audio_transcriber.utils.errors import ChunkingError, TranscriptionPipelineError

logger = logging.getLogger(__name__)

ProbeFunc = Callable[[str], AudioMetadata]
ChunkFunc = Callable[
    [str, AudioMetadata, int, float, ChunkProgressCallback | None],
    Awaitable[list[AudioChunk]],
]


class PipelineState(str, Enum):
    """States of one transcription run."""

    IDLE = "idle"
    PROBING_METADATA = "probing_metadata"
    CHUNKING = "chunking"
    TRANSCRIBING = "transcribing"
    MERGING = "merging"
    CLEANING_UP = "cleaning_up"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = {PipelineState.COMPLETED, PipelineState.FAILED}

_NEXT_STATE = {
    PipelineState.IDLE: PipelineState.PROBING_METADATA,
    PipelineState.PROBING_METADATA: PipelineState.CHUNKING,
    PipelineState.CHUNKING: PipelineState.TRANSCRIBING,
    PipelineState.TRANSCRIBING: PipelineState.MERGING,
    PipelineState.MERGING: PipelineState.CLEANING_UP,
    PipelineState.CLEANING_UP: PipelineState.COMPLETED,
}


@dataclass(frozen=True)
class ProgressAllocation:
    """Percentage range reserved for each stage."""

    probing: tuple[float, float] = (0.0, 5.0)
    chunking: tuple[float, float] = (5.0, 15.0)
    transcribing: tuple[float, float] = (15.0, 85.0)
    merging: tuple[float, float] = (85.0, 90.0)
    cleanup: tuple[float, float] = (90.0, 100.0)


class TranscriptionOrchestrator:
    """State machine for one transcription run.

    An instance runs once; create a new one per file. The backend is
    injected and used only through the TranscriptionBackend interface.

    Args:
        backend: Transcription backend for every chunk.
        max_chunk_bytes: Files larger than this are split.
        chunk_duration_seconds: Window length of each chunk when splitting.
        max_concurrent_chunks: Chunks transcribed at once (1 = in order).
        allocation: Progress ranges per stage.
        probe: Metadata probe, called off the event loop (default probe_audio).
        chunker: Chunking coroutine (default chunk_audio).
        run_id: Identifier used in logs and errors (random if omitted).
    """

    def __init__(
        self,
        backend: TranscriptionBackend,
        max_chunk_bytes: int = DEFAULT_MAX_CHUNK_BYTES,
        chunk_duration_seconds: float = DEFAULT_CHUNK_DURATION_SECONDS,
        max_concurrent_chunks: int = 1,
        allocation: ProgressAllocation | None = None,
        probe: ProbeFunc | None = None,
        chunker: ChunkFunc | None = None,
        run_id: str | None = None,
    ) -> None:
        if max_concurrent_chunks < 1:
            raise ValueError("max_concurrent_chunks must be at least 1")
        self.backend = backend
        self.max_chunk_bytes = max_chunk_bytes
        self.chunk_duration_seconds = chunk_duration_seconds
        self.max_concurrent_chunks = max_concurrent_chunks
        self.allocation = allocation or ProgressAllocation()
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self._probe = probe or probe_audio
        self._chunker = chunker or chunk_audio

        self._state = PipelineState.IDLE
        self._history: list[PipelineState] = [PipelineState.IDLE]
        self._failed_stage: PipelineState | None = None
        self._stage_timings: dict[str, float] = {}
        self._temp_files: list[str] = []
        self._temp_dirs: list[str] = []
        self._metadata: AudioMetadata | None = None
        self._chunk_count = 0
        self.result: TranscriptionResult | None = None

    @classmethod
    def from_config(
        cls, backend: TranscriptionBackend, config: TranscriberConfig, **kwargs: object
    ) -> TranscriptionOrchestrator:
        return cls(
            backend,
            max_chunk_bytes=config.max_chunk_bytes,
            chunk_duration_seconds=config.chunk_duration_seconds,
            max_concurrent_chunks=config.max_concurrent_chunks,
            **kwargs,  # type: ignore[arg-type]
        )

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def state_history(self) -> list[PipelineState]:
        return list(self._history)

    @property
    def failed_stage(self) -> PipelineState | None:
        return self._failed_stage

    def _advance(self, expected_next: PipelineState) -> None:
        if _NEXT_STATE.get(self._state) is not expected_next:
            raise RuntimeError(
                f"Illegal transition {self._state.value} -> {expected_next.value}"
            )
        self._enter(expected_next)

    def _enter(self, state: PipelineState) -> None:
        self._state = state
        self._history.append(state)
        logger.debug(
            "Run %s entered %s", self.run_id, state.value,
            extra={"run_id": self.run_id, "stage": state.value},
        )

    def _range(self, channel: ProgressChannel, bounds: tuple[float, float]) -> ProgressRange:
        return ProgressRange(channel, bounds[0], bounds[1])

    async def run(
        self,
        file_path: str,
        language_code: str,
        channel: ProgressChannel | None = None,
    ) -> TranscriptionResult:
        """Transcribe ``file_path`` end to end.

        Args:
            file_path: Source audio file.
            language_code: Language to transcribe in.
            channel: Progress channel to report on (a private one if omitted).

        Returns:
            The merged TranscriptionResult.

        Raises:
            MetadataError, ChunkingError, TranscriptionError, SubprocessError,
            AssetDownloadError: The original failure, after cleanup and a
            terminal ``failed`` progress event.
        """
        if self._state is not PipelineState.IDLE:
            raise RuntimeError(
                f"Orchestrator already used (state={self._state.value}); "
                "create a new one per run"
            )

        channel = channel or ProgressChannel()
        wall_start = time.monotonic()
        log_extra = {"run_id": self.run_id}
        logger.info(
            "Starting transcription of %s (language=%s, backend=%s)",
            file_path, language_code, self.backend.name, extra=log_extra,
        )

        try:
            result = await self._run_stages(file_path, language_code, channel)
        except asyncio.CancelledError:
            self._fail(channel, "Transcription cancelled")
            self._emit_metrics("cancelled", wall_start, error_message="cancelled")
            raise
        except Exception as exc:
            if isinstance(exc, TranscriptionPipelineError) and exc.run_id is None:
                exc.run_id = self.run_id
            stage = self._state
            logger.error(
                "Transcription failed at stage '%s' for %s: %s",
                stage.value, file_path, exc,
                exc_info=True,
                extra={**log_extra, "stage": stage.value, "error": type(exc).__name__},
            )
            self._fail(channel, f"Transcription failed: {exc}")
            self._emit_metrics("failed", wall_start, error_message=str(exc))
            raise

        self._emit_metrics("completed", wall_start)
        return result

    async def _run_stages(
        self, file_path: str, language_code: str, channel: ProgressChannel
    ) -> TranscriptionResult:
        alloc = self.allocation

        self._advance(PipelineState.PROBING_METADATA)
        channel.emit(alloc.probing[0], "Getting audio metadata...")
        with StageTimer("probing", self._stage_timings):
            metadata = await asyncio.to_thread(self._probe, file_path)
        self._metadata = metadata
        logger.info(
            "Probed %s: %.1fs, %d bytes, format=%s",
            file_path, metadata.duration_seconds, metadata.file_size_bytes,
            metadata.container_format, extra={"run_id": self.run_id},
        )

        self._advance(PipelineState.CHUNKING)
        channel.emit(alloc.chunking[0], "Splitting audio file...")
        chunk_range = self._range(channel, alloc.chunking)
        with StageTimer("chunking", self._stage_timings):
            try:
                chunks = await self._chunker(
                    file_path,
                    metadata,
                    self.max_chunk_bytes,
                    self.chunk_duration_seconds,
                    chunk_range.report,
                )
            except ChunkingError as exc:
                self._track_partial_chunks(exc)
                raise
        chunks = sorted(chunks, key=lambda c: c.sequence_index)
        self._track_chunks(chunks)
        self._chunk_count = len(chunks)
        chunk_range.report(1.0, f"Prepared {len(chunks)} chunk(s)")

        self._advance(PipelineState.TRANSCRIBING)
        with StageTimer("transcribing", self._stage_timings):
            results = await self._transcribe_all(
                chunks, language_code, self._range(channel, alloc.transcribing)
            )

        self._advance(PipelineState.MERGING)
        channel.emit(alloc.merging[0], "Merging results...")
        with StageTimer("merging", self._stage_timings):
            offsets = compute_time_offsets(results)
            result = merge_results(results, offsets, default_language=language_code)

        self._advance(PipelineState.CLEANING_UP)
        channel.emit(alloc.cleanup[0], "Cleaning up temporary files...")
        with StageTimer("cleanup", self._stage_timings):
            self._cleanup()

        self._advance(PipelineState.COMPLETED)
        self.result = result
        channel.complete("Transcription completed!")
        logger.info(
            "Transcription completed: %d segments, %.1fs",
            len(result.segments), result.total_duration_seconds,
            extra={"run_id": self.run_id, "duration_seconds": result.total_duration_seconds},
        )
        return result

    async def _transcribe_all(
        self,
        chunks: list[AudioChunk],
        language_code: str,
        stage_range: ProgressRange,
    ) -> list[ChunkTranscriptionResult]:
        """Transcribe every chunk, returning results in chunk order."""
        total = len(chunks)
        lead_slots = 1 if self.backend.needs_preparation() else 0
        slots = total + lead_slots

        if lead_slots:
            prep_range = stage_range.slice(0, slots)
            await self.backend.prepare(
                lambda pct, msg: prep_range.report(pct / 100.0, msg)
            )
        stage_range.report(lead_slots / max(slots, 1))

        completed = 0
        sequential = self.max_concurrent_chunks == 1

        async def transcribe_one(chunk: AudioChunk) -> ChunkTranscriptionResult:
            nonlocal completed
            index = chunk.sequence_index
            label = f"{index + 1}/{total}"
            stage_range.report(
                (lead_slots + completed) / slots, f"Transcribing chunk {label}..."
            )

            on_progress = None
            if sequential and chunk.duration_seconds > 0:
                slot = stage_range.slice(lead_slots + index, slots)

                def on_progress(seconds: float) -> None:
                    slot.report(seconds / chunk.duration_seconds, f"Transcribing chunk {label}...")

            logger.info(
                "Transcribing chunk %s", label,
                extra={"run_id": self.run_id, "stage": "transcribing", "chunk_index": index},
            )
            result = await self.backend.transcribe_chunk(
                chunk.file_path, language_code, on_progress
            )
            completed += 1
            stage_range.report((lead_slots + completed) / slots, f"Transcribed chunk {label}")
            if chunk.is_temporary:
                self._discard_chunk(chunk.file_path)
            return result

        if sequential:
            return [await transcribe_one(chunk) for chunk in chunks]

        semaphore = asyncio.Semaphore(self.max_concurrent_chunks)

        async def bounded(chunk: AudioChunk) -> ChunkTranscriptionResult:
            async with semaphore:
                return await transcribe_one(chunk)

        tasks = [asyncio.create_task(bounded(chunk)) for chunk in chunks]
        try:
            # gather preserves argument order, which is sequence order
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    def _track_chunks(self, chunks: list[AudioChunk]) -> None:
        for chunk in chunks:
            if not chunk.is_temporary:
                continue
            self._temp_files.append(chunk.file_path)
            chunk_dir = os.path.dirname(chunk.file_path)
            if chunk_dir not in self._temp_dirs:
                self._temp_dirs.append(chunk_dir)

    def _track_partial_chunks(self, exc: ChunkingError) -> None:
        self._temp_files.extend(exc.written_paths)
        if exc.temp_dir and exc.temp_dir not in self._temp_dirs:
            self._temp_dirs.append(exc.temp_dir)

    def _discard_chunk(self, path: str) -> None:
        """Delete a chunk file whose transcription has been read."""
        if _remove_file(path, self.run_id) and path in self._temp_files:
            self._temp_files.remove(path)

    def _cleanup(self) -> None:
        """Delete all temporary chunk files and directories. Never raises."""
        for path in list(self._temp_files):
            _remove_file(path, self.run_id)
        self._temp_files.clear()

        for directory in self._temp_dirs:
            try:
                shutil.rmtree(directory)
            except FileNotFoundError:
                pass
            except OSError:
                logger.warning(
                    "Failed to delete temporary directory: %s", directory,
                    exc_info=True, extra={"run_id": self.run_id},
                )
        self._temp_dirs.clear()

    def _fail(self, channel: ProgressChannel, message: str) -> None:
        self._failed_stage = self._state
        self._enter(PipelineState.FAILED)
        self._cleanup()
        channel.fail(message)

    def _emit_metrics(
        self, status: str, wall_start: float, error_message: str | None = None
    ) -> None:
        metadata = self._metadata
        log_run_metrics(
            RunMetrics(
                run_id=self.run_id,
                status=status,
                backend=self.backend.name,
                audio_duration_seconds=metadata.duration_seconds if metadata else 0.0,
                file_size_bytes=metadata.file_size_bytes if metadata else 0,
                chunk_count=self._chunk_count,
                segment_count=len(self.result.segments) if self.result else 0,
                processing_wall_time_seconds=time.monotonic() - wall_start,
                stage_timings=dict(self._stage_timings),
                error_stage=self._failed_stage.value if self._failed_stage else None,
                error_message=error_message,
            )
        )


def _remove_file(path: str, run_id: str) -> bool:
    """Delete a file, logging instead of raising. Returns True if it is gone."""
    try:
        os.remove(path)
    except FileNotFoundError:
        return True
    except OSError:
        logger.warning(
            "Failed to delete temporary chunk: %s", path,
            exc_info=True, extra={"run_id": run_id},
        )
        return False
    return True


async def run_transcription(
    file_path: str,
    language_code: str,
    progress_callback: ProgressCallback | None = None,
    *,
    backend: TranscriptionBackend | None = None,
    config: TranscriberConfig | None = None,
    channel: ProgressChannel | None = None,
) -> TranscriptionResult:
    """Transcribe one file with a fresh orchestrator.

    Args:
        file_path: Source audio file.
        language_code: Language to transcribe in.
        progress_callback: Optional ``(percentage, message)`` push callback.
        backend: Backend to use; built from ``config`` when omitted.
        config: Settings; read from the environment when omitted.
        channel: Existing progress channel to report on.

    Returns:
        The merged TranscriptionResult.
    """
    config = config or TranscriberConfig.from_env()
    backend = backend or build_backend(config)
    channel = channel or ProgressChannel()
    if progress_callback is not None:
        channel.subscribe_callback(progress_callback)

    orchestrator = TranscriptionOrchestrator.from_config(backend, config)
    return await orchestrator.run(file_path, language_code, channel)
