"""Caption burn-in stage.

For one ``burn-in`` job: pick the transcript the owner selected (original or
edited), render it as SRT, burn it into the stored source video with the
video's caption style, store the render as ``<videoId>_burned`` and mark the
video ``complete``. Failures mark the video ``failed`` and re-raise; the
subtitle file, the downloaded source and the render are always removed.
"""

import logging
from pathlib import Path
from typing import Any, Dict

from ..errors import PermanentJobError
from ..lifecycle import VideoLifecycle
from ..media import MediaToolkit
from ..providers import ObjectStorage
from ..queue.models import BurnInJob, Job
from ..records.store import VideoStore
from ..subtitles import transcript_segments, write_srt
from .cleanup import remove_temp_files

logger = logging.getLogger(__name__)


class BurnInStage:
    """Handler for ``burn-in`` jobs."""

    def __init__(
        self,
        lifecycle: VideoLifecycle,
        store: VideoStore,
        storage: ObjectStorage,
        media: MediaToolkit,
        tmp_dir: str = "tmp",
    ):
        self.lifecycle = lifecycle
        self.store = store
        self.storage = storage
        self.media = media
        self.tmp_dir = Path(tmp_dir)

    async def __call__(self, job: Job) -> Dict[str, Any]:
        payload: BurnInJob = job.typed_payload()
        video_id = payload.video_id
        logger.info("Processing job %s of type %s for video %s", job.job_id, job.job_type, video_id)

        if job.attempts > 0:
            await self.lifecycle.record_attempt_started(video_id)

        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        srt_path = self.tmp_dir / f"{video_id}.srt"
        source_path = self.tmp_dir / f"{video_id}_source.mp4"
        burned_path = self.tmp_dir / f"{video_id}_burned.mp4"

        try:
            video = await self.store.get_video(video_id)
            transcript = await self.store.get_transcript(video_id)
            content = transcript.select(video.active_transcript_kind) if transcript else None

            # Raises TranscriptDataError when there is nothing to render
            transcript_segments(content)

            if not video.original_artifact_id:
                raise PermanentJobError(f"Original video for {video_id} is not in storage")

            write_srt(content, srt_path)
            await self.media.download(self.storage.video_url(video.original_artifact_id), source_path)
            await self.media.burn_subtitles(source_path, srt_path, burned_path, video.caption_style)

            artifact_id = await self.storage.upload_video(burned_path, f"{video_id}_burned")
            await self.lifecycle.record_burn_in(video_id, artifact_id)

            logger.info("Job %s completed.", job.job_id)
            return {"status": "completed", "videoId": video_id}

        except Exception as e:
            logger.error("Job %s failed: %s", job.job_id, e)
            await self.lifecycle.record_failure(video_id, str(e))
            raise

        finally:
            remove_temp_files([srt_path, source_path, burned_path])
