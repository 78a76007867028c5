"""Transcription backends and result merging."""

from audio_transcriber.asr.registry import build_backend, get_backend

__all__ = ["build_backend", "get_backend"]
