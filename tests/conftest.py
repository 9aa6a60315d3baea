import copy
import tempfile
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from captioncraft.errors import RecordNotFoundError
from captioncraft.media import MediaToolkit
from captioncraft.models import BrokerConfig, CacheConfig, QueuesConfig
from captioncraft.providers import ObjectStorage, SpeechToText
from captioncraft.queue.connection import ConnectionPool
from captioncraft.queue.models import JobHandle
from captioncraft.queue.sqlite_backend import SQLiteBroker
from captioncraft.records.store import TranscriptRecord, VideoRecord, VideoStore

SAMPLE_TRANSCRIPT = {
    "text": "Hello world. Second line.",
    "segments": [
        {"id": 0, "start": 0.0, "end": 1.5, "text": " Hello world."},
        {"id": 1, "start": 1.5, "end": 3.25, "text": " Second line."},
    ],
    "words": [
        {"word": "Hello", "start": 0.0, "end": 0.5},
        {"word": "world", "start": 0.5, "end": 1.5},
    ],
}


class FakeVideoStore(VideoStore):
    """In-memory VideoStore."""

    def __init__(self):
        self.videos: Dict[str, VideoRecord] = {}
        self.transcripts: Dict[str, TranscriptRecord] = {}

    async def create_video(self, user_id, title="", video_id=None):
        video_id = video_id or str(uuid.uuid4())
        now = datetime.utcnow()
        self.videos[video_id] = VideoRecord(
            id=video_id, user_id=user_id, title=title, created_at=now, updated_at=now
        )
        return self.videos[video_id]

    async def get_video(self, video_id, owner_id=None):
        video = self.videos.get(video_id)
        if video is None or (owner_id is not None and video.user_id != owner_id):
            raise RecordNotFoundError(f"Video {video_id} not found")
        return video

    async def update_video(self, video_id, **fields):
        video = await self.get_video(video_id)
        updated = VideoRecord(**{**video.model_dump(), **fields, "updated_at": datetime.utcnow()})
        self.videos[video_id] = updated
        return updated

    async def get_transcript(self, video_id):
        return self.transcripts.get(video_id)

    async def save_transcript(self, video_id, original):
        existing = self.transcripts.get(video_id)
        self.transcripts[video_id] = TranscriptRecord(
            id=existing.id if existing else str(uuid.uuid4()),
            video_id=video_id,
            original=original,
            edited=existing.edited if existing else None,
        )
        return self.transcripts[video_id]

    async def save_edited_transcript(self, video_id, edited):
        existing = self.transcripts.get(video_id)
        if existing is None:
            raise RecordNotFoundError(f"Transcript for video {video_id} not found")
        self.transcripts[video_id] = existing.model_copy(update={"edited": edited})
        return self.transcripts[video_id]


class FakeStorage(ObjectStorage):
    def __init__(self, fail: Optional[Exception] = None):
        self.uploads: List[tuple] = []
        self.fail = fail

    async def upload_video(self, path, public_id):
        if self.fail is not None:
            raise self.fail
        self.uploads.append((Path(path).name, public_id))
        return public_id

    def video_url(self, artifact_id):
        return f"https://media.test/videos/{artifact_id}.mp4"

    def thumbnail_url(self, artifact_id):
        return f"https://media.test/videos/{artifact_id}.jpg"


class FakeSpeech(SpeechToText):
    def __init__(self, result: Optional[Dict[str, Any]] = None, fail: Optional[Exception] = None):
        self.result = result if result is not None else SAMPLE_TRANSCRIPT
        self.fail = fail
        self.calls: List[str] = []

    async def transcribe(self, audio_path):
        self.calls.append(str(audio_path))
        if self.fail is not None:
            raise self.fail
        return self.result


class FakeMedia(MediaToolkit):
    """Writes placeholder files where FFmpeg would write real ones."""

    def __init__(self):
        self.calls: List[tuple] = []
        self.burned_styles: List[Any] = []
        self.subtitles_seen: List[str] = []

    async def extract_audio(self, video_path, output_path):
        self.calls.append(("extract_audio", str(video_path), str(output_path)))
        Path(output_path).write_bytes(b"audio")
        return Path(output_path)

    async def burn_subtitles(self, video_path, subtitle_path, output_path, caption_style=None):
        self.calls.append(("burn_subtitles", str(video_path), str(output_path)))
        self.subtitles_seen.append(Path(subtitle_path).read_text())
        self.burned_styles.append(caption_style)
        Path(output_path).write_bytes(b"burned")
        return Path(output_path)

    async def download(self, url, output_path):
        self.calls.append(("download", url, str(output_path)))
        Path(output_path).write_bytes(b"downloaded")
        return Path(output_path)


class RecordingSubmitter:
    """Stands in for the job cache: records submissions and forgets."""

    def __init__(self):
        self.submitted: List[tuple] = []
        self.forgotten: List[tuple] = []

    async def submit(self, queue_name, job_type, payload, options=None):
        wire = payload.model_dump(by_alias=True, exclude={"job_type"}, exclude_none=True)
        self.submitted.append((queue_name, job_type, wire))
        return JobHandle(job_id=f"job-{len(self.submitted)}", queue_name=queue_name, job_type=job_type)

    def forget(self, job_type, payload):
        self.forgotten.append((job_type, payload.video_id))
        return True


@pytest.fixture
def temp_dir():
    """Create temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def broker_config(temp_dir):
    return BrokerConfig(db_path=str(temp_dir / "broker.db"), poll_interval_s=0.01)


@pytest.fixture
async def pool(broker_config):
    pool = ConnectionPool(broker_config)
    yield pool
    await pool.shutdown()


@pytest.fixture
def broker(pool):
    return SQLiteBroker(pool.get_connection())


@pytest.fixture
def fast_cache_config():
    return CacheConfig(batch_window_s=0.01)


@pytest.fixture
def queues():
    return QueuesConfig()


@pytest.fixture
def store():
    return FakeVideoStore()


@pytest.fixture
def submitter():
    return RecordingSubmitter()


@pytest.fixture
def sample_transcript():
    return copy.deepcopy(SAMPLE_TRANSCRIPT)
