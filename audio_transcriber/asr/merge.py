"""Merging chunk-level transcriptions into one time-corrected transcript.

Each chunk's segments are shifted by that chunk's offset into the source
audio and numbered with a single running counter, so the final segment list
is dense, zero-based and ordered by start time.
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field

from audio_transcriber.asr.interface import ChunkTranscriptionResult


@dataclass
class FinalSegment:
    """A transcript segment positioned on the source audio's timeline."""

    id: str
    start_time_seconds: float
    end_time_seconds: float
    text: str
    confidence: float | None
    sequence_number: int


@dataclass
class TranscriptionResult:
    """The complete transcript of one source file."""

    full_text: str
    language_code: str
    total_duration_seconds: float
    segments: list[FinalSegment] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Serialize using the field names the persistence layer stores."""
        return {
            "text": self.full_text,
            "language": self.language_code,
            "duration": self.total_duration_seconds,
            "segments": [
                {
                    "id": seg.id,
                    "start_time": seg.start_time_seconds,
                    "end_time": seg.end_time_seconds,
                    "text": seg.text,
                    "confidence": seg.confidence,
                    "sequence_number": seg.sequence_number,
                }
                for seg in self.segments
            ],
        }


def compute_time_offsets(results: Sequence[ChunkTranscriptionResult]) -> list[float]:
    """Cumulative start offset of each chunk, from the durations before it."""
    offsets: list[float] = []
    current = 0.0
    for result in results:
        offsets.append(current)
        current += result.chunk_duration_seconds
    return offsets


def merge_results(
    results: Sequence[ChunkTranscriptionResult],
    time_offsets: Sequence[float],
    default_language: str = "",
) -> TranscriptionResult:
    """Combine chunk results, in chunk order, into a single transcript.

    Args:
        results: Chunk results ordered by chunk sequence index.
        time_offsets: Start offset in seconds of each chunk; same length
            as ``results``.
        default_language: Language reported when there are no chunks.

    Returns:
        TranscriptionResult with globally timed, densely numbered segments.

    Raises:
        ValueError: If ``results`` and ``time_offsets`` differ in length.
        AssertionError: If chunks disagree on language. All chunks are
            transcribed with the same requested language, so this is a
            programming error rather than a user-facing one.
    """
    if len(results) != len(time_offsets):
        raise ValueError(
            f"Got {len(results)} results but {len(time_offsets)} time offsets"
        )

    if not results:
        return TranscriptionResult(
            full_text="",
            language_code=default_language,
            total_duration_seconds=0.0,
            segments=[],
        )

    language = results[0].language_code
    mismatched = {r.language_code for r in results} - {language}
    if mismatched:
        raise AssertionError(
            f"Chunk languages disagree: expected '{language}', "
            f"also got {sorted(mismatched)}"
        )

    segments: list[FinalSegment] = []
    sequence_number = 0
    for result, offset in zip(results, time_offsets):
        # Backends normally emit segments in order; enforce it per chunk
        for raw in sorted(result.segments, key=lambda s: s.local_start_seconds):
            segments.append(
                FinalSegment(
                    id=str(uuid.uuid4()),
                    start_time_seconds=raw.local_start_seconds + offset,
                    end_time_seconds=raw.local_end_seconds + offset,
                    text=raw.text,
                    confidence=raw.confidence,
                    sequence_number=sequence_number,
                )
            )
            sequence_number += 1

    return TranscriptionResult(
        full_text=" ".join(r.raw_text for r in results),
        language_code=language,
        total_duration_seconds=time_offsets[-1] + results[-1].chunk_duration_seconds,
        segments=segments,
    )

