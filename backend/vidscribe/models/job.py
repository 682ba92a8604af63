"""SQLAlchemy model & helpers for processing jobs.

A job is one attempt chain at processing a single video.  The state machine is

    pending -> running -> completed | failed
    failed  -> pending            (manual retry or scheduler re-attempt)

The transition helpers below are the only code that changes ``status``; the
stores call them inside their own locking / transaction scope.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Column, DateTime, Enum as SAEnum, ForeignKey, Integer, String, Text

from vidscribe.db.base import Base
from vidscribe.utils.timeutils import utcnow


class JobStatus(str, Enum):
    """Enum representing the lifecycle of a background processing job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class JobType(str, Enum):
    TRANSCRIPTION = "transcription"
    NOTION_SYNC = "notion_sync"
    CLEANUP = "cleanup"


class JobPriority(int, Enum):
    LOW = -5
    NORMAL = 0
    HIGH = 10


class ProcessingJob(Base):
    """Persistent representation of a background processing job."""

    __tablename__ = "processing_jobs"

    id: str = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    video_id: Optional[str] = Column(String(36), ForeignKey("videos.id"), nullable=True, index=True)
    job_type: str = Column(String(50), nullable=False, default=JobType.TRANSCRIPTION.value)
    status: JobStatus = Column(SAEnum(JobStatus), nullable=False, default=JobStatus.PENDING, index=True)
    priority: int = Column(Integer, nullable=False, default=JobPriority.NORMAL.value)
    progress: int = Column(Integer, nullable=False, default=0)
    stage: Optional[str] = Column(String(50), nullable=True)
    message: Optional[str] = Column(String(255), nullable=True)
    attempts: int = Column(Integer, nullable=False, default=0)
    max_attempts: int = Column(Integer, nullable=False, default=3)
    error_message: Optional[str] = Column(Text, nullable=True)
    created_at: datetime = Column(DateTime, nullable=False, default=utcnow)
    started_at: Optional[datetime] = Column(DateTime, nullable=True)
    completed_at: Optional[datetime] = Column(DateTime, nullable=True)
    failed_at: Optional[datetime] = Column(DateTime, nullable=True)
    updated_at: datetime = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @classmethod
    def new(
        cls,
        video_id: str | None,
        job_type: str = JobType.TRANSCRIPTION.value,
        priority: int = JobPriority.NORMAL.value,
        max_attempts: int = 3,
    ) -> "ProcessingJob":
        """Build a pending job with every column set (no flush defaults needed)."""
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            video_id=video_id,
            job_type=job_type,
            status=JobStatus.PENDING,
            priority=priority,
            progress=0,
            stage=None,
            message="Queued",
            attempts=0,
            max_attempts=max_attempts,
            error_message=None,
            created_at=now,
            updated_at=now,
        )

    # Helper to convert enum to plain string for JSON responses
    @property
    def status_str(self) -> str:
        return self.status.value if isinstance(self.status, JobStatus) else str(self.status)

    @property
    def is_active(self) -> bool:
        return self.status in (JobStatus.PENDING, JobStatus.RUNNING)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def can_start(self) -> bool:
        return self.status == JobStatus.PENDING and self.attempts < self.max_attempts

    def mark_running(self) -> None:
        now = utcnow()
        self.status = JobStatus.RUNNING
        self.attempts += 1
        self.progress = 0
        self.stage = "queued"
        self.message = f"Attempt {self.attempts} of {self.max_attempts} started"
        self.started_at = now
        self.completed_at = None
        self.failed_at = None
        self.updated_at = now

    def advance(self, progress: int, stage: str, message: str) -> None:
        # Never move backwards within an attempt
        self.progress = max(self.progress or 0, min(int(progress), 100))
        self.stage = stage
        self.message = message
        self.updated_at = utcnow()

    def mark_completed(self, message: str = "Transcription completed successfully") -> None:
        now = utcnow()
        self.status = JobStatus.COMPLETED
        self.progress = 100
        self.message = message
        self.error_message = None
        self.completed_at = now
        self.updated_at = now

    def mark_failed(self, error: str) -> None:
        # progress and stage stay at the last checkpoint reached
        now = utcnow()
        self.status = JobStatus.FAILED
        self.error_message = error
        self.message = f"Failed during {self.stage or 'startup'}"
        self.failed_at = now
        self.updated_at = now

    def mark_requeued(self) -> None:
        """Back to pending for another scheduler attempt; history is kept."""
        self.status = JobStatus.PENDING
        self.message = f"Waiting to retry (attempt {self.attempts} of {self.max_attempts} failed)"
        self.updated_at = utcnow()

    def reset(self, priority: int | None = None) -> None:
        """Operator-triggered restart of a failed job from scratch."""
        self.status = JobStatus.PENDING
        self.progress = 0
        self.stage = None
        self.message = "Queued for retry"
        self.attempts = 0
        self.error_message = None
        self.started_at = None
        self.completed_at = None
        self.failed_at = None
        if priority is not None:
            self.priority = priority
        self.updated_at = utcnow()
