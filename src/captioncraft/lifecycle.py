"""Video processing lifecycle.

Every status change of a video goes through ``VideoLifecycle``: producers call
it to decide what to enqueue next, stage workers call it to record outcomes.

Status flow::

    uploading → processing → ready → burning_in → complete
         ↑                                 ↑          │
         └──────── failed (retry)          └──────────┘ (re-burn)

Any status may move to ``failed``. A retry resumes from the furthest stage
whose input artifact exists: if the source media was already stored only the
burn-in runs again, otherwise transcription does. The check looks at the
artifact id alone, so a failure after the upload but before the transcript
was saved resumes at burn-in and fails there on the missing transcript.
"""

import logging
from typing import Any, Dict, Optional, Union

from .errors import InvalidTransitionError, NotRetryableError
from .models import QueuesConfig
from .queue.cache import JobCache
from .queue.models import BurnInJob, JobHandle, TranscribeJob
from .records.store import TranscriptKind, TranscriptRecord, VideoRecord, VideoStatus, VideoStore

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    # complete: burn-in resumed by a retry goes straight from uploading
    VideoStatus.UPLOADING: {VideoStatus.PROCESSING, VideoStatus.COMPLETE, VideoStatus.FAILED},
    VideoStatus.PROCESSING: {VideoStatus.READY, VideoStatus.FAILED},
    VideoStatus.READY: {VideoStatus.BURNING_IN, VideoStatus.FAILED},
    VideoStatus.BURNING_IN: {VideoStatus.COMPLETE, VideoStatus.FAILED},
    VideoStatus.COMPLETE: {VideoStatus.BURNING_IN, VideoStatus.FAILED},
    VideoStatus.FAILED: {VideoStatus.UPLOADING},
}


def can_transition(current: VideoStatus, target: VideoStatus) -> bool:
    """Self-transitions are always allowed (no-ops on the status)."""
    return current == target or target in ALLOWED_TRANSITIONS[current]


class VideoLifecycle:
    """State machine and resume policy for videos."""

    def __init__(
        self,
        store: VideoStore,
        submitter: JobCache,
        queues: Optional[QueuesConfig] = None,
    ):
        self.store = store
        self.submitter = submitter
        self.queues = queues or QueuesConfig()

    async def _transition(
        self, video: VideoRecord, target: VideoStatus, **fields: Any
    ) -> VideoRecord:
        if not can_transition(video.status, target):
            raise InvalidTransitionError(video.status.value, target.value)

        if video.status != target:
            logger.info("Video %s: %s -> %s", video.id, video.status.value, target.value)
        return await self.store.update_video(video.id, status=target, **fields)

    async def _submit_transcription(self, job: TranscribeJob) -> JobHandle:
        return await self.submitter.submit(
            self.queues.transcription.name, job.job_type, job
        )

    async def _submit_burn_in(self, job: BurnInJob) -> JobHandle:
        return await self.submitter.submit(self.queues.burn_in.name, job.job_type, job)

    async def register_upload(self, video_id: str, file_path: str) -> JobHandle:
        """Upload accepted: mark ``uploading`` and queue transcription of the local file."""
        video = await self.store.get_video(video_id)
        await self._transition(video, VideoStatus.UPLOADING)
        return await self._submit_transcription(
            TranscribeJob(video_id=video_id, file_path=file_path)
        )

    async def record_upload_stored(
        self, video_id: str, artifact_id: str, thumbnail_url: Optional[str] = None
    ) -> VideoRecord:
        video = await self.store.get_video(video_id)
        return await self._transition(
            video,
            VideoStatus.PROCESSING,
            original_artifact_id=artifact_id,
            thumbnail_url=thumbnail_url,
        )

    async def record_transcript(self, video_id: str, transcript: Dict[str, Any]) -> TranscriptRecord:
        video = await self.store.get_video(video_id)
        if not can_transition(video.status, VideoStatus.READY):
            raise InvalidTransitionError(video.status.value, VideoStatus.READY.value)

        record = await self.store.save_transcript(video_id, transcript)
        await self._transition(video, VideoStatus.READY, error_message=None)
        return record

    async def record_failure(self, video_id: str, message: str) -> VideoRecord:
        video = await self.store.get_video(video_id)
        logger.warning("Video %s failed: %s", video_id, message)
        return await self._transition(video, VideoStatus.FAILED, error_message=message)

    async def request_burn_in(
        self,
        video_id: str,
        owner_id: str,
        caption_style: Optional[Dict[str, Any]] = None,
    ) -> JobHandle:
        """Owner asked for captions to be burned in (again, for a complete video)."""
        video = await self.store.get_video(video_id, owner_id)
        fields: Dict[str, Any] = {"error_message": None}
        if caption_style is not None:
            fields["caption_style"] = caption_style

        await self._transition(video, VideoStatus.BURNING_IN, **fields)

        job = BurnInJob(video_id=video_id)
        if video.status == VideoStatus.COMPLETE:
            # Same payload as the first render; let it through the dedup window
            self.submitter.forget(job.job_type, job)
        return await self._submit_burn_in(job)

    async def record_burn_in(self, video_id: str, artifact_id: str) -> VideoRecord:
        video = await self.store.get_video(video_id)
        return await self._transition(
            video, VideoStatus.COMPLETE, final_artifact_id=artifact_id, error_message=None
        )

    async def select_transcript(
        self, video_id: str, owner_id: str, kind: Union[TranscriptKind, str]
    ) -> VideoRecord:
        """Choose which transcript the next burn-in renders."""
        kind = TranscriptKind(kind)
        await self.store.get_video(video_id, owner_id)
        return await self.store.update_video(video_id, active_transcript_kind=kind)

    async def retry(self, video_id: str, owner_id: str) -> JobHandle:
        """Re-run a failed video from the stage its stored artifacts allow.

        Raises:
            NotRetryableError: If the video is not ``failed``
            RecordNotFoundError: If the owner has no such video
        """
        video = await self.store.get_video(video_id, owner_id)
        if video.status != VideoStatus.FAILED:
            raise NotRetryableError()

        await self._transition(video, VideoStatus.UPLOADING, error_message=None)

        if video.original_artifact_id:
            logger.info("Retrying video %s from burn-in", video_id)
            job = BurnInJob(video_id=video_id)
            self.submitter.forget(job.job_type, job)
            return await self._submit_burn_in(job)

        logger.info("Retrying video %s from transcription", video_id)
        job = TranscribeJob(video_id=video_id)
        self.submitter.forget(job.job_type, job)
        return await self._submit_transcription(job)

    async def record_attempt_started(self, video_id: str) -> VideoRecord:
        """A broker retry of a stage is starting; reopen a video the last attempt failed."""
        video = await self.store.get_video(video_id)
        if video.status != VideoStatus.FAILED:
            return video
        return await self._transition(video, VideoStatus.UPLOADING, error_message=None)
