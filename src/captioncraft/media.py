"""Media toolkit: FFmpeg operations used by the stage workers.

``FfmpegToolkit`` runs every operation in its own FFmpeg subprocess with:
- a global timeout per operation
- process tree cleanup (SIGTERM, grace period, SIGKILL) via psutil
- error classification: permanent failures (bad input, unsupported codec)
  raise ``PermanentJobError`` so the broker does not retry them, anything
  else raises ``ProviderError`` and goes through the queue's retry policy

The async methods run the blocking subprocess off the event loop.
"""

import asyncio
import logging
import shutil
import subprocess
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from urllib.parse import urlparse
from urllib.request import url2pathname

import imageio_ffmpeg
import psutil

from .errors import PermanentJobError, ProviderError
from .models import MediaConfig
from .subtitles import force_style

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

PERMANENT_PATTERNS = [
    "no such file or directory",
    "invalid data found",
    "invalid argument",
    "permission denied",
    "unsupported codec",
    "invalid codec",
    "moov atom not found",
    "corrupt",
]


class FfmpegErrorType(Enum):
    """FFmpeg error classification for retry logic."""
    PERMANENT = "permanent"     # File not found, invalid format, codec error
    TRANSIENT = "transient"     # Network timeout, disk I/O stall
    TIMEOUT = "timeout"         # Global timeout exceeded


@dataclass
class FfmpegResult:
    """Result of one FFmpeg execution."""
    success: bool
    returncode: int
    stderr: str
    duration_s: float
    error_type: Optional[FfmpegErrorType] = None


def classify_error(stderr: str) -> FfmpegErrorType:
    """Permanent if stderr matches a known bad-input pattern, transient otherwise."""
    stderr_lower = stderr.lower()
    for pattern in PERMANENT_PATTERNS:
        if pattern in stderr_lower:
            return FfmpegErrorType.PERMANENT
    return FfmpegErrorType.TRANSIENT


def _escape_filter_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace(":", "\\:").replace("'", "\\'")


def _local_path(url: str) -> Optional[Path]:
    parsed = urlparse(url)
    if parsed.scheme == "file":
        return Path(url2pathname(parsed.path))
    if parsed.scheme == "":
        return Path(url)
    return None


class MediaToolkit(ABC):
    """Media transformations needed by the pipeline."""

    @abstractmethod
    async def extract_audio(self, video_path: PathLike, output_path: PathLike) -> Path:
        """Strip the video track and encode the audio as MP3."""
        pass

    @abstractmethod
    async def burn_subtitles(
        self,
        video_path: PathLike,
        subtitle_path: PathLike,
        output_path: PathLike,
        caption_style: Optional[Dict[str, Any]] = None,
    ) -> Path:
        """Render ``subtitle_path`` into the frames of ``video_path``."""
        pass

    @abstractmethod
    async def download(self, url: str, output_path: PathLike) -> Path:
        """Fetch stored media to a local file."""
        pass


class FfmpegToolkit(MediaToolkit):
    """MediaToolkit backed by the FFmpeg binary shipped with imageio-ffmpeg."""

    def __init__(self, config: Optional[MediaConfig] = None):
        self.config = config or MediaConfig()
        self.global_timeout_s = self.config.global_timeout_s
        self.kill_grace_period_s = self.config.kill_grace_period_s
        self.ffmpeg_loglevel = self.config.ffmpeg_loglevel

    @staticmethod
    def ffmpeg_exe() -> str:
        """Get FFmpeg executable path."""
        return imageio_ffmpeg.get_ffmpeg_exe()

    def version(self) -> str:
        """First line of ``ffmpeg -version`` (used by the ``check`` command)."""
        completed = subprocess.run(
            [self.ffmpeg_exe(), "-version"],
            capture_output=True,
            text=True,
            timeout=30,
            check=True,
        )
        return completed.stdout.splitlines()[0] if completed.stdout else ""

    def _base_cmd(self) -> List[str]:
        return [self.ffmpeg_exe(), "-y", "-loglevel", self.ffmpeg_loglevel]

    def run(self, cmd: List[str]) -> FfmpegResult:
        """Execute FFmpeg with timeout enforcement.

        Args:
            cmd: Full command including the executable

        Returns:
            FfmpegResult with execution details
        """
        start_time = time.time()
        process = subprocess.Popen(
            cmd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            text=True,
        )

        try:
            _, stderr = process.communicate(timeout=self.global_timeout_s)
            returncode = process.returncode
            timed_out = False
        except subprocess.TimeoutExpired:
            stderr = self._kill_process_tree(process)
            returncode = -1
            timed_out = True
        except BaseException:
            self._kill_process_tree(process)
            raise

        error_type = None
        if timed_out:
            error_type = FfmpegErrorType.TIMEOUT
        elif returncode != 0:
            error_type = classify_error(stderr or "")

        return FfmpegResult(
            success=returncode == 0,
            returncode=returncode,
            stderr=stderr or "",
            duration_s=time.time() - start_time,
            error_type=error_type,
        )

    def _kill_process_tree(self, process: subprocess.Popen) -> str:
        """Terminate FFmpeg and its children, then collect remaining stderr."""
        try:
            parent = psutil.Process(process.pid)
            children = parent.children(recursive=True)
            for proc in children + [parent]:
                try:
                    proc.terminate()
                except psutil.NoSuchProcess:
                    pass

            _, alive = psutil.wait_procs([parent] + children, timeout=self.kill_grace_period_s)
            for proc in alive:
                try:
                    proc.kill()
                except psutil.NoSuchProcess:
                    pass
        except psutil.NoSuchProcess:
            pass

        try:
            _, stderr = process.communicate(timeout=self.kill_grace_period_s)
        except (subprocess.TimeoutExpired, ValueError):
            stderr = ""
        return stderr or ""

    def _check(self, operation: str, result: FfmpegResult) -> None:
        if result.success:
            return

        if result.error_type == FfmpegErrorType.TIMEOUT:
            detail = f"timed out after {self.global_timeout_s}s"
        else:
            detail = result.stderr.strip()[-500:] or f"exit code {result.returncode}"

        logger.error("FFmpeg %s failed (%s): %s", operation, result.error_type.value, detail)
        if result.error_type == FfmpegErrorType.PERMANENT:
            raise PermanentJobError(f"FFmpeg {operation} failed: {detail}")
        raise ProviderError("ffmpeg", f"{operation}: {detail}")

    def _extract_audio(self, video_path: Path, output_path: Path) -> Path:
        cmd = self._base_cmd() + [
            "-i", str(video_path),
            "-vn",
            "-acodec", "libmp3lame",
            str(output_path),
        ]
        self._check("audio extraction", self.run(cmd))
        return output_path

    def _burn_subtitles(
        self,
        video_path: Path,
        subtitle_path: Path,
        output_path: Path,
        caption_style: Optional[Dict[str, Any]],
    ) -> Path:
        vf = f"subtitles=filename='{_escape_filter_value(str(subtitle_path))}'"
        style = force_style(caption_style)
        if style:
            vf += f":force_style='{_escape_filter_value(style)}'"

        cmd = self._base_cmd() + [
            "-i", str(video_path),
            "-vf", vf,
            "-c:a", "copy",
            str(output_path),
        ]
        self._check("subtitle burn-in", self.run(cmd))
        return output_path

    def _download(self, url: str, output_path: Path) -> Path:
        local = _local_path(url)
        if local is not None:
            if not local.exists():
                raise PermanentJobError(f"Stored media not found: {local}")
            shutil.copyfile(local, output_path)
            return output_path

        cmd = self._base_cmd() + ["-i", url, "-c", "copy", str(output_path)]
        self._check("download", self.run(cmd))
        return output_path

    async def extract_audio(self, video_path: PathLike, output_path: PathLike) -> Path:
        return await asyncio.to_thread(self._extract_audio, Path(video_path), Path(output_path))

    async def burn_subtitles(
        self,
        video_path: PathLike,
        subtitle_path: PathLike,
        output_path: PathLike,
        caption_style: Optional[Dict[str, Any]] = None,
    ) -> Path:
        return await asyncio.to_thread(
            self._burn_subtitles,
            Path(video_path),
            Path(subtitle_path),
            Path(output_path),
            caption_style,
        )

    async def download(self, url: str, output_path: PathLike) -> Path:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        return await asyncio.to_thread(self._download, url, output_path)
