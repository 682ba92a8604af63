"""Public operations of the transcription core.

This is what the HTTP layer (or a CLI) talks to.  The queue is any object
offering ``enqueue``/``resubmit``/``status``/``stats``:
:class:`~vidscribe.services.queue.TranscriptionQueue` in-process or
:class:`~vidscribe.workers.tasks.CeleryTranscriptionQueue` with a broker.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from vidscribe.errors import ErrorKind, JobConflictError, JobNotFoundError, VideoNotFoundError
from vidscribe.models import JobPriority, ProcessingJob, Transcript, Video
from vidscribe.services.notion import NotionSyncService, SyncResult
from vidscribe.services.store import JobStore

logger = logging.getLogger(__name__)


@dataclass
class JobStatusView:
    job_id: str
    video_id: Optional[str]
    status: str
    progress: int
    stage: Optional[str]
    message: Optional[str]
    error: Optional[str]
    attempts: int
    max_attempts: int
    created_at: Optional[datetime]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    failed_at: Optional[datetime]
    queue_state: Optional[str] = None

    @classmethod
    def from_job(cls, job: ProcessingJob, queue_state: str | None = None) -> "JobStatusView":
        return cls(
            job_id=job.id,
            video_id=job.video_id,
            status=job.status_str,
            progress=job.progress,
            stage=job.stage,
            message=job.message,
            error=job.error_message,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            failed_at=job.failed_at,
            queue_state=queue_state,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class VideoTranscription:
    video: Video
    job: Optional[ProcessingJob]
    transcript: Optional[Transcript]


class TranscriptionService:
    def __init__(
        self,
        store: JobStore,
        queue,
        sync_service: NotionSyncService | None = None,
        default_database_id: str = "",
    ) -> None:
        self.store = store
        self.queue = queue
        self.sync_service = sync_service
        self.default_database_id = default_database_id

    def enqueue_transcription(
        self,
        video_id: str,
        video_path: str,
        original_name: str,
        size_bytes: int = 0,
        mime_type: str | None = None,
        priority: int = JobPriority.NORMAL.value,
    ) -> str:
        """Register the uploaded video (or its re-upload) and queue a transcription job.

        Raises:
            JobConflictError: a pending or running job already exists for the video.
        """
        latest = self.store.find_job_by_video_id(video_id)
        if latest is not None and latest.is_active:
            # Leave the stored upload path alone while a job may be reading it
            raise JobConflictError(f"Transcription job already exists for video {video_id}")
        self.store.register_video(Video(
            id=video_id,
            filename=Path(video_path).name,
            original_name=original_name,
            upload_path=str(video_path),
            size_bytes=size_bytes,
            mime_type=mime_type,
        ))
        job_id = self.queue.enqueue(video_id, str(video_path), original_name, priority)
        logger.info("Transcription job %s queued for video %s", job_id, video_id)
        return job_id

    def get_job_status(self, job_id: str) -> JobStatusView:
        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        queue_status = self.queue.status(job_id)
        return JobStatusView.from_job(job, queue_status["state"] if queue_status else None)

    def get_transcription_for_video(self, video_id: str) -> VideoTranscription:
        video = self.store.get_video(video_id)
        if video is None:
            raise VideoNotFoundError(f"Video {video_id} not found")
        return VideoTranscription(
            video=video,
            job=self.store.find_job_by_video_id(video_id),
            transcript=self.store.get_transcript(video_id),
        )

    def retry_transcription(self, video_id: str) -> str:
        """Restart the latest failed job of the video at high priority.

        Raises:
            VideoNotFoundError, JobNotFoundError,
            InvalidJobStateError: the latest job is not failed.
        """
        video = self.store.get_video(video_id)
        if video is None:
            raise VideoNotFoundError(f"Video {video_id} not found")
        job = self.store.find_job_by_video_id(video_id)
        if job is None:
            raise JobNotFoundError(f"No transcription job found for video {video_id}")

        job = self.store.reset_job(job.id, priority=JobPriority.HIGH.value)
        self.queue.resubmit(job, video.upload_path, video.original_name)
        logger.info("Retry of video %s queued as job %s", video_id, job.id)
        return job.id

    async def sync_transcript_to_external(self, video_id: str, database_id: str | None = None) -> SyncResult:
        if self.sync_service is None:
            return SyncResult.failure(ErrorKind.UNAUTHORIZED, "Notion API key not configured")
        database_id = database_id or self.default_database_id
        if not database_id:
            return SyncResult.failure(ErrorKind.VALIDATION, "Database ID is required")
        return await self.sync_service.sync(video_id, database_id)

    def get_queue_stats(self) -> dict[str, int]:
        return self.queue.stats()

    def search_transcripts(self, term: str, limit: int = 50) -> list[Transcript]:
        if not term.strip():
            return []
        return self.store.search_transcripts(term.strip(), limit)

    def list_jobs(self, limit: int | None = None) -> list[JobStatusView]:
        return [JobStatusView.from_job(job) for job in self.store.list_jobs(limit)]

    def get_statistics(self) -> dict[str, Any]:
        return {
            "jobs": self.store.count_jobs_by_status(),
            "queue": self.queue.stats(),
            "total_words": self.store.total_word_count(),
        }
