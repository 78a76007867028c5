"""Abstract transcription backend interface.

Defines the TranscriptionBackend ABC and the chunk-level data models it
produces. Concrete implementations (OpenAI Whisper API, whisper.cpp CLI)
subclass TranscriptionBackend.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field

# Called with the number of seconds of the chunk transcribed so far
ChunkProgressCallback = Callable[[float], None]

# Called with (percentage 0-100, message) while a backend prepares itself
PreparationProgressCallback = Callable[[float, str], None]


@dataclass
class RawSegment:
    """A span of speech with timestamps relative to its own chunk."""

    local_start_seconds: float
    local_end_seconds: float
    text: str
    confidence: float | None = None


@dataclass
class ChunkTranscriptionResult:
    """Transcription of a single audio chunk."""

    raw_text: str
    language_code: str
    chunk_duration_seconds: float
    segments: list[RawSegment] = field(default_factory=list)


class TranscriptionBackend(ABC):
    """Abstract base class for transcription engines.

    Subclasses must implement transcribe_chunk(). Backends that need a
    one-off setup step (such as fetching model weights) override
    needs_preparation() and prepare().
    """

    name: str = "unknown"

    @abstractmethod
    async def transcribe_chunk(
        self,
        audio_path: str,
        language_code: str,
        on_progress: ChunkProgressCallback | None = None,
    ) -> ChunkTranscriptionResult:
        """Transcribe one audio chunk.

        Args:
            audio_path: Path to the chunk's audio file.
            language_code: ISO language code to transcribe in (e.g., "ja").
            on_progress: Optional best-effort callback receiving the number
                of seconds transcribed so far.

        Returns:
            ChunkTranscriptionResult with chunk-relative segments.

        Raises:
            TranscriptionError: On failure, with ``retryable`` set.
        """

    def needs_preparation(self) -> bool:
        """Return True if prepare() still has work to do."""
        return False

    async def prepare(
        self, on_progress: PreparationProgressCallback | None = None
    ) -> None:
        """Make the backend ready to transcribe. No-op by default."""
        return None
