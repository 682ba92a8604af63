"""ORM model for transcripts."""

from __future__ import annotations

import uuid
from enum import Enum

from sqlalchemy import JSON, Column, DateTime, Float, ForeignKey, Integer, String, Text

from vidscribe.db.base import Base
from vidscribe.utils.timeutils import utcnow


class TranscriptStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


def count_words(text: str) -> int:
    return len(text.split())


class Transcript(Base):
    """
    Represents the transcription output for a video.

    At most one row exists per video: a re-transcription replaces the content
    of the existing row instead of adding a version.
    """
    __tablename__ = "transcripts"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()), comment="Primary key for the transcript record.")
    video_id = Column(String(36), ForeignKey("videos.id"), nullable=False, unique=True, index=True, comment="Video this transcript belongs to.")
    content = Column(Text, nullable=False, comment="The full transcript in plain text format.")
    language = Column(String(50), nullable=True, comment="The detected language of the audio (e.g., 'en', 'english').")
    confidence = Column(Float, nullable=False, default=0.0, comment="Mean of exp(avg_logprob) over all segments.")
    status = Column(String(20), nullable=False, default=TranscriptStatus.COMPLETED.value)
    segments = Column(JSON, nullable=True, comment="Ordered timestamped segments as returned by the provider.")
    word_count = Column(Integer, nullable=False, default=0)
    duration = Column(Float, nullable=True, comment="Audio duration reported by the provider, in seconds.")
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @classmethod
    def new(cls, video_id: str) -> "Transcript":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            video_id=video_id,
            content="",
            confidence=0.0,
            status=TranscriptStatus.PENDING.value,
            word_count=0,
            created_at=now,
            updated_at=now,
        )

    def apply_result(self, result) -> None:
        """Copy a :class:`~vidscribe.services.transcription.TranscriptionResult` in place."""
        if not result.text or not result.text.strip():
            raise ValueError("transcript content must not be empty")
        self.content = result.text
        self.language = result.language or "unknown"
        self.confidence = result.confidence
        self.segments = [segment.to_dict() for segment in result.segments] if result.segments else None
        self.word_count = count_words(result.text)
        self.duration = result.duration
        self.status = TranscriptStatus.COMPLETED.value
        self.error_message = None
        self.updated_at = utcnow()
