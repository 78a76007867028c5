"""Runtime configuration read from environment variables."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from audio_transcriber.asr.openai_whisper import (
    DEFAULT_BASE_URL,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MODEL,
    DEFAULT_RETRY_BASE_DELAY,
    DEFAULT_TIMEOUT_SECONDS,
)
from audio_transcriber.asr.whisper_cpp import DEFAULT_CLI, DEFAULT_MODEL_KEY, DEFAULT_THREADS
from audio_transcriber.assets.model_store import DEFAULT_MODELS_DIR
from audio_transcriber.audio.chunker import (
    DEFAULT_CHUNK_DURATION_SECONDS,
    DEFAULT_MAX_CHUNK_BYTES,
)


@dataclass
class TranscriberConfig:
    """Settings for building a backend and running the pipeline."""

    backend: str = "openai"
    language: str = "ja"
    openai_api_key: str = ""
    openai_base_url: str = DEFAULT_BASE_URL
    openai_model: str = DEFAULT_MODEL
    request_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_base_delay_seconds: float = DEFAULT_RETRY_BASE_DELAY
    whisper_cli_path: str = DEFAULT_CLI
    whisper_model: str = DEFAULT_MODEL_KEY
    whisper_models_dir: str = DEFAULT_MODELS_DIR
    whisper_threads: int = DEFAULT_THREADS
    max_chunk_bytes: int = DEFAULT_MAX_CHUNK_BYTES
    chunk_duration_seconds: float = DEFAULT_CHUNK_DURATION_SECONDS
    max_concurrent_chunks: int = 1

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> TranscriberConfig:
        """Build a config from environment variables, falling back to defaults.

        Raises:
            ValueError: If a numeric variable cannot be parsed or is out of range.
        """
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            backend=env.get("TRANSCRIPTION_BACKEND", defaults.backend),
            language=env.get("TRANSCRIPTION_LANGUAGE", defaults.language),
            openai_api_key=env.get("OPENAI_API_KEY", ""),
            openai_base_url=env.get("OPENAI_BASE_URL", defaults.openai_base_url),
            openai_model=env.get("OPENAI_WHISPER_MODEL", defaults.openai_model),
            request_timeout_seconds=_float(
                env, "REQUEST_TIMEOUT_SECONDS", defaults.request_timeout_seconds
            ),
            max_attempts=_int(env, "MAX_ATTEMPTS", defaults.max_attempts),
            retry_base_delay_seconds=_float(
                env, "RETRY_BASE_DELAY_SECONDS", defaults.retry_base_delay_seconds, minimum=0.0
            ),
            whisper_cli_path=env.get("WHISPER_CLI_PATH", defaults.whisper_cli_path),
            whisper_model=env.get("WHISPER_MODEL", defaults.whisper_model),
            whisper_models_dir=env.get("WHISPER_MODELS_DIR", defaults.whisper_models_dir),
            whisper_threads=_int(env, "WHISPER_THREADS", defaults.whisper_threads),
            max_chunk_bytes=_int(env, "MAX_CHUNK_BYTES", defaults.max_chunk_bytes),
            chunk_duration_seconds=_float(
                env, "CHUNK_DURATION_SECONDS", defaults.chunk_duration_seconds
            ),
            max_concurrent_chunks=_int(
                env, "TRANSCRIBE_CONCURRENCY", defaults.max_concurrent_chunks
            ),
        )


def _int(env: Mapping[str, str], name: str, default: int, minimum: int = 1) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got '{raw}'") from exc
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _float(
    env: Mapping[str, str], name: str, default: float, minimum: float = 1e-9
) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got '{raw}'") from exc
    if value < minimum:
        raise ValueError(f"{name} must be positive, got {value}")
    return value
