"""On-disk cache of whisper.cpp model weights.

Models are fetched over HTTPS into a shared directory. A download streams
into ``<file>.tmp`` and is renamed into place only once complete, so a
reader never sees a partial file. Concurrent requests for the same model in
one process share a lock keyed by the model's path on disk, whichever
provider instance they come through: the second caller waits and then finds
the file already present.
"""

from __future__ import annotations

import asyncio
import logging
import os
import weakref
from collections.abc import Callable
from dataclasses import dataclass

import httpx

from audio_transcriber.utils.errors import AssetDownloadError

logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK_BYTES = 1024 * 1024
DOWNLOAD_TIMEOUT_SECONDS = 60.0
TEMP_SUFFIX = ".tmp"

# event loop -> resolved model path -> lock
_download_locks: weakref.WeakKeyDictionary[
    asyncio.AbstractEventLoop, dict[str, asyncio.Lock]
] = weakref.WeakKeyDictionary()


def _download_lock(final_path: str) -> asyncio.Lock:
    locks = _download_locks.setdefault(asyncio.get_running_loop(), {})
    return locks.setdefault(os.path.realpath(final_path), asyncio.Lock())


@dataclass(frozen=True)
class ModelAsset:
    """A downloadable model file."""

    name: str
    file_name: str
    url: str
    size_bytes: int
    description: str = ""


@dataclass(frozen=True)
class DownloadProgress:
    """Progress of an in-flight model download."""

    downloaded: int
    total: int
    percentage: float


WHISPER_MODELS: dict[str, ModelAsset] = {
    "turbo": ModelAsset(
        name="Whisper Large v3 Turbo",
        file_name="ggml-large-v3-turbo.bin",
        url="https://huggingface.co/ggerganov/whisper.cpp/resolve/main/ggml-large-v3-turbo.bin",
        size_bytes=809 * 1024 * 1024,
        description="Fastest and most accurate model (recommended)",
    ),
    "base": ModelAsset(
        name="Whisper Base",
        file_name="ggml-base.bin",
        url="https://huggingface.co/ggerganov/whisper.cpp/resolve/main/ggml-base.bin",
        size_bytes=142 * 1024 * 1024,
        description="Small model for testing",
    ),
}

DEFAULT_MODELS_DIR = os.path.join(
    os.path.expanduser("~"), ".cache", "audio-transcriber", "whisper-models"
)


class ModelAssetProvider:
    """Checks for, downloads and removes model assets in ``models_dir``.

    Args:
        models_dir: Directory holding downloaded models (created on demand).
        registry: Known models by key.
        transport: Optional httpx transport, used in tests.
    """

    def __init__(
        self,
        models_dir: str = DEFAULT_MODELS_DIR,
        registry: dict[str, ModelAsset] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.models_dir = models_dir
        self.registry = registry if registry is not None else WHISPER_MODELS
        self._transport = transport

    def get_asset(self, key: str) -> ModelAsset:
        """Look up a model by key.

        Raises:
            AssetDownloadError: If the key is not registered.
        """
        asset = self.registry.get(key)
        if asset is None:
            available = ", ".join(sorted(self.registry))
            raise AssetDownloadError(
                f"Unknown model: '{key}'. Available: {available}", model_key=key
            )
        return asset

    def get_asset_path(self, key: str) -> str:
        return os.path.join(self.models_dir, self.get_asset(key).file_name)

    def is_asset_available(self, key: str) -> bool:
        return os.path.isfile(self.get_asset_path(key))

    def list_downloaded(self) -> list[str]:
        return [key for key in self.registry if self.is_asset_available(key)]

    def list_models(self) -> list[dict[str, object]]:
        """Describe every registered model with its download state."""
        return [
            {
                "key": key,
                "name": asset.name,
                "file_name": asset.file_name,
                "url": asset.url,
                "size_bytes": asset.size_bytes,
                "description": asset.description,
                "is_downloaded": self.is_asset_available(key),
            }
            for key, asset in self.registry.items()
        ]

    def delete_asset(self, key: str) -> bool:
        """Remove a downloaded model. Returns False if it was not present."""
        path = self.get_asset_path(key)
        if not os.path.exists(path):
            logger.info("Model not found, nothing to delete: %s", path)
            return False
        os.remove(path)
        logger.info("Model deleted: %s", path)
        return True

    async def download(
        self,
        key: str,
        on_progress: Callable[[DownloadProgress], None] | None = None,
    ) -> str:
        """Ensure a model is on disk, downloading it if needed.

        Args:
            key: Registered model key.
            on_progress: Called as bytes arrive.

        Returns:
            Absolute path of the model file.

        Raises:
            AssetDownloadError: If the key is unknown or the download fails.
        """
        asset = self.get_asset(key)
        final_path = self.get_asset_path(key)

        lock = _download_lock(final_path)
        async with lock:
            if os.path.isfile(final_path):
                logger.info("Model already downloaded: %s", final_path)
                return final_path

            logger.info(
                "Downloading model %s from %s (~%.2f MB)",
                asset.name,
                asset.url,
                asset.size_bytes / 1024 / 1024,
            )
            await self._fetch(key, asset, final_path, on_progress)
            logger.info("Model downloaded successfully: %s", final_path)
            return final_path

    async def _fetch(
        self,
        key: str,
        asset: ModelAsset,
        final_path: str,
        on_progress: Callable[[DownloadProgress], None] | None,
    ) -> None:
        temp_path = final_path + TEMP_SUFFIX
        try:
            os.makedirs(self.models_dir, exist_ok=True)
            async with httpx.AsyncClient(
                timeout=DOWNLOAD_TIMEOUT_SECONDS,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                async with client.stream("GET", asset.url) as response:
                    response.raise_for_status()
                    total = int(response.headers.get("content-length") or asset.size_bytes)
                    downloaded = 0
                    with open(temp_path, "wb") as out:
                        async for data in response.aiter_bytes(DOWNLOAD_CHUNK_BYTES):
                            out.write(data)
                            downloaded += len(data)
                            if on_progress is not None and total > 0:
                                on_progress(
                                    DownloadProgress(
                                        downloaded=downloaded,
                                        total=total,
                                        percentage=min(100.0, downloaded / total * 100),
                                    )
                                )
            os.replace(temp_path, final_path)
        except (httpx.HTTPError, OSError) as exc:
            _remove_quietly(temp_path)
            raise AssetDownloadError(
                f"Failed to download model '{key}': {exc}", model_key=key
            ) from exc
        except asyncio.CancelledError:
            _remove_quietly(temp_path)
            raise


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError:
        logger.warning("Failed to remove partial download %s", path, exc_info=True)
