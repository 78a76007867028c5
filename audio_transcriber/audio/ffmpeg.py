"""Locating and identifying the ffmpeg toolchain."""

import re
import shutil
import subprocess

VERSION_TIMEOUT_SECONDS = 10

_VERSION_PATTERN = re.compile(r"ffmpeg version (\S+)")


def find_binary(name: str) -> str | None:
    """Return the absolute path of an executable on PATH, or None."""
    return shutil.which(name)


def check_ffmpeg_installed() -> bool:
    """Return True if both ffmpeg and ffprobe are on PATH."""
    return find_binary("ffmpeg") is not None and find_binary("ffprobe") is not None


def get_ffmpeg_version() -> str | None:
    """Return the installed ffmpeg version string, or None if unavailable."""
    ffmpeg_path = find_binary("ffmpeg")
    if ffmpeg_path is None:
        return None

    try:
        completed = subprocess.run(
            [ffmpeg_path, "-version"],
            check=True,
            capture_output=True,
            text=True,
            timeout=VERSION_TIMEOUT_SECONDS,
        )
    except (OSError, subprocess.SubprocessError):
        return None

    match = _VERSION_PATTERN.search(completed.stdout)
    return match.group(1) if match else None


INSTALL_HINT = (
    "FFmpeg is required but not installed. "
    "macOS: brew install ffmpeg; "
    "Windows: https://ffmpeg.org/download.html; "
    "Linux: sudo apt-get install ffmpeg"
)
