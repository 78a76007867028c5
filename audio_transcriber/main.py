"""Command-line entry point for transcribing a single audio file.

Logs go to stderr as structured JSON; the transcription result is written
to stdout (or ``--output``) as JSON.
"""

import argparse
import asyncio
import json
import logging
import sys

from audio_transcriber.asr.registry import BACKENDS, build_backend
from audio_transcriber.assets.model_store import DownloadProgress, ModelAssetProvider
from audio_transcriber.audio.ffmpeg import (
    INSTALL_HINT,
    check_ffmpeg_installed,
    get_ffmpeg_version,
)
from audio_transcriber.config import TranscriberConfig
from audio_transcriber.observability.logger import setup_logging
from audio_transcriber.pipeline import run_transcription
from audio_transcriber.utils.errors import TranscriptionPipelineError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="audio-transcriber",
        description="Transcribe an audio file with OpenAI Whisper or a local whisper.cpp model.",
    )
    parser.add_argument("file", nargs="?", help="Audio file to transcribe.")
    parser.add_argument(
        "--language",
        default=None,
        help="Language code, e.g. ja, en (default: TRANSCRIPTION_LANGUAGE or 'ja').",
    )
    parser.add_argument(
        "--backend",
        choices=sorted(BACKENDS),
        default=None,
        help="Transcription backend (default: TRANSCRIPTION_BACKEND or 'openai').",
    )
    parser.add_argument(
        "--output", "-o", default=None, help="Write the JSON result here instead of stdout."
    )
    parser.add_argument(
        "--list-models", action="store_true", help="List local whisper models and exit."
    )
    parser.add_argument(
        "--download-model", metavar="KEY", default=None, help="Download a local whisper model and exit."
    )
    parser.add_argument(
        "--check-ffmpeg", action="store_true", help="Report whether ffmpeg/ffprobe are installed and exit."
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging.")
    return parser


def _log_progress(percentage: float, message: str | None) -> None:
    logger.info("Progress %.1f%%: %s", percentage, message or "")


def _check_ffmpeg() -> int:
    if not check_ffmpeg_installed():
        print(f"ffmpeg not found. {INSTALL_HINT}", file=sys.stderr)
        return EXIT_FAILURE
    print(f"ffmpeg {get_ffmpeg_version() or 'unknown version'}")
    return EXIT_OK


def _list_models(config: TranscriberConfig) -> int:
    provider = ModelAssetProvider(config.whisper_models_dir)
    print(json.dumps(provider.list_models(), indent=2, ensure_ascii=False))
    return EXIT_OK


async def _download_model(config: TranscriberConfig, key: str) -> int:
    provider = ModelAssetProvider(config.whisper_models_dir)

    def report(progress: DownloadProgress) -> None:
        logger.info(
            "Downloaded %d/%d bytes (%.1f%%)",
            progress.downloaded, progress.total, progress.percentage,
        )

    path = await provider.download(key, report)
    print(path)
    return EXIT_OK


async def _transcribe(config: TranscriberConfig, file_path: str, output: str | None) -> int:
    backend = build_backend(config)
    result = await run_transcription(
        file_path,
        config.language,
        _log_progress,
        backend=backend,
        config=config,
    )
    payload = json.dumps(result.to_dict(), indent=2, ensure_ascii=False)
    if output:
        with open(output, "w", encoding="utf-8") as f:
            f.write(payload + "\n")
        logger.info("Wrote transcription to %s", output)
    else:
        print(payload)
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    """Parse arguments, run the requested action and return an exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO, stream=sys.stderr)

    try:
        config = TranscriberConfig.from_env()
    except ValueError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return EXIT_USAGE
    if args.backend:
        config.backend = args.backend
    if args.language:
        config.language = args.language

    if args.check_ffmpeg:
        return _check_ffmpeg()
    if args.list_models:
        return _list_models(config)

    try:
        if args.download_model:
            return asyncio.run(_download_model(config, args.download_model))
        if not args.file:
            parser.print_usage(sys.stderr)
            print("error: an audio file is required", file=sys.stderr)
            return EXIT_USAGE
        return asyncio.run(_transcribe(config, args.file, args.output))
    except TranscriptionPipelineError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FAILURE
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_USAGE
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
