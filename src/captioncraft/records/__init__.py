"""Relational record store for videos and transcripts."""

from .store import (
    SQLVideoStore,
    TranscriptKind,
    TranscriptRecord,
    VideoRecord,
    VideoStatus,
    VideoStore,
)

__all__ = [
    "SQLVideoStore",
    "TranscriptKind",
    "TranscriptRecord",
    "VideoRecord",
    "VideoStatus",
    "VideoStore",
]
