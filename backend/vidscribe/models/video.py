"""ORM model for uploaded videos."""

from __future__ import annotations

from enum import Enum

from sqlalchemy import BigInteger, Column, DateTime, Float, String, Text

from vidscribe.db.base import Base
from vidscribe.utils.timeutils import utcnow


class VideoStatus(str, Enum):
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Video(Base):
    """
    Represents an uploaded video file.

    Rows are registered by the upload intake with the path where the file was
    stored; the pipeline only updates ``status``, ``duration`` and
    ``error_message``.
    """
    __tablename__ = "videos"

    id = Column(String(36), primary_key=True, comment="Identifier handed over by the upload intake.")
    filename = Column(String(255), nullable=False, comment="Stored filename on disk.")
    original_name = Column(String(255), nullable=False, comment="The original filename as uploaded by the user.")
    upload_path = Column(String(1024), nullable=False, comment="Absolute path of the stored video file.")
    size_bytes = Column(BigInteger, nullable=False, default=0, comment="The size of the video file in bytes.")
    mime_type = Column(String(100), nullable=True)
    duration = Column(Float, nullable=True, comment="Duration in seconds, known once audio was extracted.")
    status = Column(String(20), nullable=False, default=VideoStatus.UPLOADED.value)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def refresh_upload(self, upload: "Video") -> bool:
        """Take over the file location of a re-upload registered under the same id.

        Returns whether anything changed.
        """
        changed = False
        for key in ("filename", "original_name", "upload_path", "size_bytes", "mime_type"):
            value = getattr(upload, key)
            if value and value != getattr(self, key):
                setattr(self, key, value)
                changed = True
        if changed:
            self.updated_at = utcnow()
        return changed
