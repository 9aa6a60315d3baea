"""External collaborators: speech-to-text and object storage.

Stage workers only see the abstract interfaces; tests substitute fakes.
"""

import asyncio
import logging
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional, Union

import httpx

from .errors import ProviderError
from .models import SpeechConfig, StorageConfig

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class SpeechToText(ABC):
    @abstractmethod
    async def transcribe(self, audio_path: PathLike) -> Dict[str, Any]:
        """Transcribe an audio file.

        Returns:
            Verbose JSON transcript with ``text``, ``segments`` and ``words``
        """
        pass


class WhisperClient(SpeechToText):
    """OpenAI-compatible ``/audio/transcriptions`` client over httpx."""

    def __init__(self, config: Optional[SpeechConfig] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or SpeechConfig()
        self._client = client

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.api_base,
                timeout=httpx.Timeout(self.config.timeout_s, connect=10.0),
            )
        return self._client

    async def transcribe(self, audio_path: PathLike) -> Dict[str, Any]:
        if not self.config.api_key:
            raise ProviderError("speech-to-text", "no API key configured (set OPENAI_API_KEY)")

        audio_path = Path(audio_path)
        audio = await asyncio.to_thread(audio_path.read_bytes)

        logger.info("Transcribing %s (%d bytes) with %s", audio_path.name, len(audio), self.config.model)
        try:
            response = await self._http().post(
                "/audio/transcriptions",
                headers={"Authorization": f"Bearer {self.config.api_key}"},
                files={"file": (audio_path.name, audio, "audio/mpeg")},
                data={
                    "model": self.config.model,
                    "response_format": "verbose_json",
                    "timestamp_granularities[]": ["word", "segment"],
                },
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ProviderError(
                "speech-to-text", f"HTTP {e.response.status_code}: {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise ProviderError("speech-to-text", str(e) or type(e).__name__) from e

        return response.json()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class ObjectStorage(ABC):
    @abstractmethod
    async def upload_video(self, path: PathLike, public_id: str) -> str:
        """Store a video under ``public_id`` and return its artifact id."""
        pass

    @abstractmethod
    def video_url(self, artifact_id: str) -> str:
        pass

    @abstractmethod
    def thumbnail_url(self, artifact_id: str) -> str:
        pass


class LocalObjectStorage(ObjectStorage):
    """Directory-backed storage: ``<root>/videos/<public_id>.mp4``."""

    FOLDER = "videos"

    def __init__(self, config: Optional[StorageConfig] = None):
        self.config = config or StorageConfig()
        self.root = Path(self.config.root)

    def _video_path(self, artifact_id: str) -> Path:
        return self.root / self.FOLDER / f"{artifact_id}.mp4"

    def _url(self, relative: str) -> str:
        if self.config.base_url:
            return f"{self.config.base_url.rstrip('/')}/{relative}"
        return (self.root / relative).resolve().as_uri()

    def _copy(self, source: Path, artifact_id: str) -> None:
        destination = self._video_path(artifact_id)
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, destination)

    async def upload_video(self, path: PathLike, public_id: str) -> str:
        source = Path(path)
        try:
            await asyncio.to_thread(self._copy, source, public_id)
        except OSError as e:
            raise ProviderError("storage", f"upload of {source.name} failed: {e}") from e

        logger.info("Stored %s as %s", source.name, public_id)
        return public_id

    def video_url(self, artifact_id: str) -> str:
        return self._url(f"{self.FOLDER}/{artifact_id}.mp4")

    def thumbnail_url(self, artifact_id: str) -> str:
        return self._url(f"{self.FOLDER}/{artifact_id}.jpg")
