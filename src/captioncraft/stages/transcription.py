"""Transcription stage.

For one ``transcribe`` job:

1. Locate the source media: the uploaded file, or (on a retry without a file)
   a copy downloaded from object storage
2. Store the source media, record its artifact id and thumbnail (``processing``)
3. Extract the audio track
4. Send the audio to the speech-to-text provider
5. Save the transcript (``ready``)

Any failure marks the video ``failed`` with the error message and re-raises so
the broker applies its retry policy. Temp files are removed on every exit
path, except the source upload while a broker retry is still pending.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional

from ..errors import PermanentJobError
from ..lifecycle import VideoLifecycle
from ..media import MediaToolkit
from ..providers import ObjectStorage, SpeechToText
from ..queue.models import Job, TranscribeJob
from ..queue.worker import is_permanent
from ..records.store import VideoStore
from .cleanup import remove_temp_files

logger = logging.getLogger(__name__)


class TranscriptionStage:
    """Handler for ``transcribe`` jobs."""

    def __init__(
        self,
        lifecycle: VideoLifecycle,
        store: VideoStore,
        storage: ObjectStorage,
        speech: SpeechToText,
        media: MediaToolkit,
        tmp_dir: str = "tmp",
    ):
        self.lifecycle = lifecycle
        self.store = store
        self.storage = storage
        self.speech = speech
        self.media = media
        self.tmp_dir = Path(tmp_dir)

    async def _source_file(self, payload: TranscribeJob) -> Path:
        if payload.file_path and Path(payload.file_path).exists():
            return Path(payload.file_path)

        video = await self.store.get_video(payload.video_id)
        if not video.original_artifact_id:
            raise PermanentJobError(
                f"Could not find original video in storage for video {payload.video_id}"
            )

        logger.info("Downloading stored original for video %s", payload.video_id)
        return await self.media.download(
            self.storage.video_url(video.original_artifact_id),
            self.tmp_dir / f"{payload.video_id}_retry.mp4",
        )

    async def __call__(self, job: Job) -> Dict[str, Any]:
        payload: TranscribeJob = job.typed_payload()
        video_id = payload.video_id
        logger.info("Processing job %s of type %s for video %s", job.job_id, job.job_type, video_id)

        if job.attempts > 0:
            await self.lifecycle.record_attempt_started(video_id)

        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        audio_path = self.tmp_dir / f"{video_id}.mp3"
        source_path: Optional[Path] = None
        keep_source = False

        try:
            source_path = await self._source_file(payload)

            artifact_id = await self.storage.upload_video(source_path, video_id)
            await self.lifecycle.record_upload_stored(
                video_id, artifact_id, self.storage.thumbnail_url(artifact_id)
            )

            await self.media.extract_audio(source_path, audio_path)
            transcript = await self.speech.transcribe(audio_path)

            await self.lifecycle.record_transcript(video_id, transcript)
            logger.info("Job %s completed.", job.job_id)
            return {"status": "completed", "videoId": video_id}

        except Exception as e:
            logger.error("Job %s failed: %s", job.job_id, e)
            keep_source = not is_permanent(e) and job.attempts + 1 < job.max_attempts
            await self.lifecycle.record_failure(video_id, str(e))
            raise

        finally:
            remove_temp_files([audio_path, None if keep_source else source_path])
