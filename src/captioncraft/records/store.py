"""Video and transcript records.

``VideoStore`` is the boundary the lifecycle and the stage workers code
against. ``SQLVideoStore`` implements it with SQLAlchemy Core queries executed
through the async ``databases`` driver; any SQLAlchemy URL that ``databases``
supports works (``sqlite:///./captioncraft.db`` by default).
"""

import json
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from databases import Database
from pydantic import BaseModel, Field
from sqlalchemy import create_engine, insert, select, update

from ..errors import RecordNotFoundError
from .db_models import Base, Transcript, Video


class VideoStatus(str, Enum):
    """Processing state of a video as seen by its owner."""

    UPLOADING = "uploading"
    PROCESSING = "processing"
    READY = "ready"
    BURNING_IN = "burning_in"
    COMPLETE = "complete"
    FAILED = "failed"


class TranscriptKind(str, Enum):
    ORIGINAL = "original"
    EDITED = "edited"


class VideoRecord(BaseModel):
    """One uploaded video and where it is in the pipeline."""

    id: str
    user_id: str = Field(..., description="Owner")
    title: str = ""
    status: VideoStatus = VideoStatus.UPLOADING
    original_artifact_id: Optional[str] = Field(
        default=None, description="Storage id of the uploaded source media"
    )
    final_artifact_id: Optional[str] = Field(
        default=None, description="Storage id of the captioned render"
    )
    thumbnail_url: Optional[str] = None
    error_message: Optional[str] = None
    active_transcript_kind: TranscriptKind = TranscriptKind.ORIGINAL
    caption_style: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class TranscriptRecord(BaseModel):
    """Speech-to-text output for a video, plus the owner's edited copy."""

    id: str
    video_id: str
    original: Dict[str, Any] = Field(default_factory=dict)
    edited: Optional[Dict[str, Any]] = None
    updated_at: Optional[datetime] = None

    def select(self, kind: TranscriptKind) -> Optional[Dict[str, Any]]:
        """Transcript document for ``kind`` (None if there is no edited copy)."""
        return self.edited if kind == TranscriptKind.EDITED else self.original


class VideoStore(ABC):
    """Record store interface."""

    @abstractmethod
    async def create_video(
        self, user_id: str, title: str = "", video_id: Optional[str] = None
    ) -> VideoRecord:
        pass

    @abstractmethod
    async def get_video(self, video_id: str, owner_id: Optional[str] = None) -> VideoRecord:
        """Fetch a video.

        Raises:
            RecordNotFoundError: If the video does not exist, or ``owner_id``
                is given and does not own it
        """
        pass

    @abstractmethod
    async def update_video(self, video_id: str, **fields: Any) -> VideoRecord:
        """Apply field changes and return the updated record."""
        pass

    @abstractmethod
    async def get_transcript(self, video_id: str) -> Optional[TranscriptRecord]:
        pass

    @abstractmethod
    async def save_transcript(self, video_id: str, original: Dict[str, Any]) -> TranscriptRecord:
        """Store the provider transcript, replacing any previous original."""
        pass

    @abstractmethod
    async def save_edited_transcript(
        self, video_id: str, edited: Dict[str, Any]
    ) -> TranscriptRecord:
        pass


_VIDEO_FIELDS = {c.name for c in Video.__table__.columns} - {"id", "created_at"}
_JSON_FIELDS = {"caption_style"}


def _dump(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


class SQLVideoStore(VideoStore):
    """VideoStore over SQLAlchemy tables and the ``databases`` async driver."""

    def __init__(self, url: str):
        self.url = url
        self.database = Database(url)

    def create_tables(self) -> None:
        # Tables are created through a synchronous engine; queries go through databases
        engine = create_engine(self.url)
        Base.metadata.create_all(engine)
        engine.dispose()

    async def connect(self) -> None:
        if not self.database.is_connected:
            await self.database.connect()

    async def disconnect(self) -> None:
        if self.database.is_connected:
            await self.database.disconnect()

    @staticmethod
    def _to_video(row) -> VideoRecord:
        data = {c.name: row[c.name] for c in Video.__table__.columns}
        data["caption_style"] = json.loads(data["caption_style"]) if data["caption_style"] else {}
        return VideoRecord(**data)

    @staticmethod
    def _to_transcript(row) -> TranscriptRecord:
        return TranscriptRecord(
            id=row["id"],
            video_id=row["video_id"],
            original=json.loads(row["original"]) if row["original"] else {},
            edited=json.loads(row["edited"]) if row["edited"] else None,
            updated_at=row["updated_at"],
        )

    async def create_video(
        self, user_id: str, title: str = "", video_id: Optional[str] = None
    ) -> VideoRecord:
        now = datetime.utcnow()
        video_id = video_id or str(uuid.uuid4())
        await self.database.execute(
            insert(Video).values(
                id=video_id,
                user_id=user_id,
                title=title,
                status=VideoStatus.UPLOADING.value,
                active_transcript_kind=TranscriptKind.ORIGINAL.value,
                caption_style=json.dumps({}),
                created_at=now,
                updated_at=now,
            )
        )
        return await self.get_video(video_id)

    async def get_video(self, video_id: str, owner_id: Optional[str] = None) -> VideoRecord:
        query = select(Video).where(Video.id == video_id)
        if owner_id is not None:
            query = query.where(Video.user_id == owner_id)

        row = await self.database.fetch_one(query)
        if row is None:
            raise RecordNotFoundError(f"Video {video_id} not found")
        return self._to_video(row)

    async def update_video(self, video_id: str, **fields: Any) -> VideoRecord:
        unknown = set(fields) - _VIDEO_FIELDS
        if unknown:
            raise ValueError(f"Unknown video fields: {', '.join(sorted(unknown))}")

        # Raises RecordNotFoundError before writing anything
        await self.get_video(video_id)

        values = {}
        for key, value in fields.items():
            if key in _JSON_FIELDS:
                values[key] = json.dumps(value or {})
            else:
                values[key] = _dump(value)
        values["updated_at"] = datetime.utcnow()

        await self.database.execute(update(Video).where(Video.id == video_id).values(**values))
        return await self.get_video(video_id)

    async def get_transcript(self, video_id: str) -> Optional[TranscriptRecord]:
        row = await self.database.fetch_one(
            select(Transcript).where(Transcript.video_id == video_id)
        )
        return self._to_transcript(row) if row is not None else None

    async def save_transcript(self, video_id: str, original: Dict[str, Any]) -> TranscriptRecord:
        existing = await self.get_transcript(video_id)
        now = datetime.utcnow()

        if existing is None:
            await self.database.execute(
                insert(Transcript).values(
                    id=str(uuid.uuid4()),
                    video_id=video_id,
                    original=json.dumps(original),
                    edited=None,
                    updated_at=now,
                )
            )
        else:
            await self.database.execute(
                update(Transcript)
                .where(Transcript.video_id == video_id)
                .values(original=json.dumps(original), updated_at=now)
            )
        return await self.get_transcript(video_id)

    async def save_edited_transcript(
        self, video_id: str, edited: Dict[str, Any]
    ) -> TranscriptRecord:
        existing = await self.get_transcript(video_id)
        if existing is None:
            raise RecordNotFoundError(f"Transcript for video {video_id} not found")

        await self.database.execute(
            update(Transcript)
            .where(Transcript.video_id == video_id)
            .values(edited=json.dumps(edited), updated_at=datetime.utcnow())
        )
        return await self.get_transcript(video_id)
