"""OpenAI Whisper API transcription backend.

Uploads each chunk as multipart form data to the hosted
``/audio/transcriptions`` endpoint with ``response_format=verbose_json``
and converts the response into a ChunkTranscriptionResult. Transient
failures are retried with a bounded attempt loop.
"""

import logging
import os

import httpx

from audio_transcriber.asr.interface import (
    ChunkProgressCallback,
    ChunkTranscriptionResult,
    RawSegment,
    TranscriptionBackend,
)
from audio_transcriber.utils.errors import TranscriptionError
from audio_transcriber.utils.retry import retry_async

logger = logging.getLogger(__name__)

PROVIDER = "openai"
DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "whisper-1"
DEFAULT_TIMEOUT_SECONDS = 300.0
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_BASE_DELAY = 1.0

# 408 Request Timeout, 409 Conflict and 429 Too Many Requests are transient
RETRYABLE_CLIENT_STATUS_CODES = {408, 409, 429}


def is_retryable_status(status_code: int) -> bool:
    """Classify an HTTP error status as transient (True) or permanent."""
    return status_code >= 500 or status_code in RETRYABLE_CLIENT_STATUS_CODES


def _error_detail(response: httpx.Response) -> str:
    """Extract the API's error message, falling back to the raw body."""
    try:
        body = response.json()
    except ValueError:
        return response.text
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return response.text


def _confidence_from_no_speech(no_speech_prob: object) -> float | None:
    if no_speech_prob is None:
        return None
    try:
        value = 1.0 - float(no_speech_prob)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return max(0.0, min(1.0, value))


def convert_response(body: dict, language_code: str) -> ChunkTranscriptionResult:
    """Convert a verbose_json transcription response.

    Args:
        body: Decoded JSON response
            ``{text, language, duration, segments: [{start, end, text, no_speech_prob}]}``.
        language_code: Requested language, used when the response omits one.

    Returns:
        ChunkTranscriptionResult with chunk-relative segments. Confidence
        is ``1 - no_speech_prob``.

    Raises:
        TranscriptionError: If a timestamp or the duration is not numeric
            (not retryable).
    """
    try:
        segments: list[RawSegment] = []
        for item in body.get("segments") or []:
            start = float(item.get("start", 0.0))
            end = float(item.get("end", start))
            segments.append(
                RawSegment(
                    local_start_seconds=start,
                    local_end_seconds=max(start, end),
                    text=str(item.get("text", "")).strip(),
                    confidence=_confidence_from_no_speech(item.get("no_speech_prob")),
                )
            )

        duration = body.get("duration")
        if duration is None:
            duration = max((s.local_end_seconds for s in segments), default=0.0)
        duration = float(duration)
    except (AttributeError, TypeError, ValueError) as exc:
        raise TranscriptionError(
            f"Whisper API returned malformed timing data: {exc}",
            retryable=False,
            provider=PROVIDER,
        ) from exc

    return ChunkTranscriptionResult(
        raw_text=str(body.get("text", "")).strip(),
        language_code=body.get("language") or language_code,
        chunk_duration_seconds=duration,
        segments=segments,
    )


class OpenAIWhisperBackend(TranscriptionBackend):
    """Hosted Whisper API backend.

    Args:
        api_key: Bearer credential for the API.
        base_url: API base URL (default production endpoint).
        model: Transcription model identifier.
        timeout: Per-request timeout in seconds (default 5 minutes).
        max_attempts: Total attempts per chunk, including the first.
        retry_base_delay: Seconds to wait after the first failed attempt;
            the wait after attempt N is ``retry_base_delay * N``.
        transport: Optional httpx transport, used in tests.
    """

    name = PROVIDER

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        model: str = DEFAULT_MODEL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("api_key is required")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._retry_base_delay = retry_base_delay
        self._transport = transport

    def update_api_key(self, api_key: str) -> None:
        """Replace the bearer credential used for subsequent requests."""
        if not api_key:
            raise ValueError("api_key is required")
        self._api_key = api_key

    async def transcribe_chunk(
        self,
        audio_path: str,
        language_code: str,
        on_progress: ChunkProgressCallback | None = None,
    ) -> ChunkTranscriptionResult:
        """Transcribe a chunk via the hosted API, retrying transient failures.

        Raises:
            TranscriptionError: When the request fails permanently or every
                attempt fails.
        """
        async with httpx.AsyncClient(
            timeout=self._timeout, transport=self._transport
        ) as client:
            result = await retry_async(
                self._request_transcription,
                client,
                audio_path,
                language_code,
                max_attempts=self._max_attempts,
                base_delay=self._retry_base_delay,
            )
        if on_progress is not None:
            on_progress(result.chunk_duration_seconds)
        return result

    async def _request_transcription(
        self, client: httpx.AsyncClient, audio_path: str, language_code: str
    ) -> ChunkTranscriptionResult:
        """Make a single transcription request.

        Raises:
            TranscriptionError: With ``retryable`` set from the failure kind.
        """
        url = f"{self._base_url}/audio/transcriptions"
        headers = {"Authorization": f"Bearer {self._api_key}"}
        data = {
            "model": self._model,
            "language": language_code,
            "response_format": "verbose_json",
        }

        try:
            with open(audio_path, "rb") as audio_file:
                files = {
                    "file": (
                        os.path.basename(audio_path),
                        audio_file,
                        "application/octet-stream",
                    ),
                }
                response = await client.post(
                    url, headers=headers, files=files, data=data
                )
        except OSError as exc:
            raise TranscriptionError(
                f"Failed to read audio chunk {audio_path}: {exc}",
                retryable=False,
                provider=PROVIDER,
            ) from exc
        except httpx.TransportError as exc:
            raise TranscriptionError(
                f"Whisper API request failed: {exc}",
                retryable=True,
                provider=PROVIDER,
            ) from exc

        if response.status_code != 200:
            retryable = is_retryable_status(response.status_code)
            raise TranscriptionError(
                f"Whisper API error ({response.status_code}): {_error_detail(response)}",
                retryable=retryable,
                provider=PROVIDER,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise TranscriptionError(
                "Whisper API returned a non-JSON response",
                retryable=True,
                provider=PROVIDER,
            ) from exc

        logger.info("Transcribed %s via Whisper API", os.path.basename(audio_path))
        return convert_response(body, language_code)
