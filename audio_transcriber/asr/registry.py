"""Transcription backend registry with configuration-driven selection.

Maps backend name strings to factories. Use get_backend() to instantiate a
backend by name with explicit keyword arguments, or build_backend() to
construct the one a TranscriberConfig selects.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from audio_transcriber.asr.interface import TranscriptionBackend
from audio_transcriber.asr.openai_whisper import OpenAIWhisperBackend
from audio_transcriber.asr.whisper_cpp import WhisperCppBackend
from audio_transcriber.assets.model_store import ModelAssetProvider
from audio_transcriber.utils.errors import TranscriptionError

if TYPE_CHECKING:
    from audio_transcriber.config import TranscriberConfig

BACKENDS: dict[str, type[TranscriptionBackend]] = {
    "openai": OpenAIWhisperBackend,
    "whisper-cpp": WhisperCppBackend,
}


def get_backend(name: str, **kwargs: object) -> TranscriptionBackend:
    """Create a backend instance by name.

    Args:
        name: Backend name (e.g., "openai").
        **kwargs: Backend-specific configuration passed to the constructor.

    Returns:
        An initialized TranscriptionBackend.

    Raises:
        TranscriptionError: If the name is not registered.
    """
    backend_cls = BACKENDS.get(name)
    if not backend_cls:
        available = ", ".join(sorted(BACKENDS.keys()))
        raise TranscriptionError(
            f"Unknown transcription backend: '{name}'. Available: {available}",
            provider=name,
        )
    return backend_cls(**kwargs)


def build_backend(
    config: TranscriberConfig,
    asset_provider: ModelAssetProvider | None = None,
) -> TranscriptionBackend:
    """Construct the backend selected by ``config.backend``."""
    if config.backend == "openai":
        return get_backend(
            "openai",
            api_key=config.openai_api_key,
            base_url=config.openai_base_url,
            model=config.openai_model,
            timeout=config.request_timeout_seconds,
            max_attempts=config.max_attempts,
            retry_base_delay=config.retry_base_delay_seconds,
        )
    if config.backend == "whisper-cpp":
        return get_backend(
            "whisper-cpp",
            asset_provider=asset_provider or ModelAssetProvider(config.whisper_models_dir),
            model_key=config.whisper_model,
            cli_path=config.whisper_cli_path,
            threads=config.whisper_threads,
        )
    return get_backend(config.backend)
