from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class Video(Base):
    __tablename__ = "videos"
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    title = Column(String, default="")
    status = Column(String, nullable=False, default="uploading")
    original_artifact_id = Column(String, nullable=True)
    final_artifact_id = Column(String, nullable=True)
    thumbnail_url = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    active_transcript_kind = Column(String, nullable=False, default="original")
    caption_style = Column(Text, nullable=True)  # JSON string
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Transcript(Base):
    __tablename__ = "transcripts"
    id = Column(String, primary_key=True)
    video_id = Column(String, ForeignKey("videos.id"), nullable=False, unique=True)
    original = Column(Text, nullable=False)  # JSON string
    edited = Column(Text, nullable=True)  # JSON string
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
