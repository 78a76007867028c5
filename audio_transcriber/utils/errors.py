"""Custom exception hierarchy for the transcription pipeline.

All exceptions inherit from TranscriptionPipelineError, enabling targeted
handling at the orchestrator boundary while preserving specific failure
context.
"""


class TranscriptionPipelineError(Exception):
    """Base exception for all transcription pipeline errors."""

    def __init__(self, message: str, run_id: str | None = None) -> None:
        self.run_id = run_id
        super().__init__(message)

    def __str__(self) -> str:
        if self.run_id:
            return f"[run={self.run_id}] {super().__str__()}"
        return super().__str__()


class MetadataError(TranscriptionPipelineError):
    """Raised when the source audio file cannot be opened or parsed."""

    def __init__(
        self,
        message: str,
        run_id: str | None = None,
        file_path: str | None = None,
    ) -> None:
        self.file_path = file_path
        super().__init__(message, run_id)


class ChunkingError(TranscriptionPipelineError):
    """Raised when splitting the source file into chunks fails partway.

    Carries the temporary directory and the chunk files already written so
    the caller can remove them.
    """

    def __init__(
        self,
        message: str,
        run_id: str | None = None,
        chunk_index: int | None = None,
        temp_dir: str | None = None,
        written_paths: list[str] | None = None,
    ) -> None:
        self.chunk_index = chunk_index
        self.temp_dir = temp_dir
        self.written_paths = list(written_paths or [])
        super().__init__(message, run_id)


class TranscriptionError(TranscriptionPipelineError):
    """Raised when a single chunk could not be transcribed."""

    def __init__(
        self,
        message: str,
        run_id: str | None = None,
        retryable: bool = False,
        provider: str | None = None,
    ) -> None:
        self.retryable = retryable
        self.provider = provider
        super().__init__(message, run_id)


class SubprocessError(TranscriptionError):
    """Raised when the local transcription tool exits non-zero or cannot start."""

    def __init__(
        self,
        message: str,
        run_id: str | None = None,
        provider: str | None = None,
        exit_code: int | None = None,
        stderr: str = "",
    ) -> None:
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(message, run_id, retryable=False, provider=provider)


class AssetDownloadError(TranscriptionPipelineError):
    """Raised when a transcription model asset cannot be fetched."""

    def __init__(
        self,
        message: str,
        run_id: str | None = None,
        model_key: str | None = None,
    ) -> None:
        self.model_key = model_key
        super().__init__(message, run_id)
