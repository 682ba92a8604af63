"""Job / transcript persistence.

:class:`JobStore` is the only way the pipeline reads or writes state.  Two
implementations are provided: :class:`InMemoryJobStore` for tests and single
process experiments, and :class:`SqlJobStore` (see :mod:`.sql_store`) for
production.

Writes made on behalf of a running attempt carry the attempt number.  They are
dropped when the stored job has moved on (another attempt started, or the job
is no longer running) so a stale attempt can never resurrect a superseded job.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import TYPE_CHECKING, Optional, TypeVar

from vidscribe.errors import InvalidJobStateError, JobConflictError, JobNotFoundError
from vidscribe.models import JobStatus, ProcessingJob, Transcript, TranscriptStatus, Video, VideoStatus
from vidscribe.utils.timeutils import utcnow

if TYPE_CHECKING:
    from vidscribe.services.transcription import TranscriptionResult

logger = logging.getLogger(__name__)

M = TypeVar("M")


def detached_copy(obj: M) -> M:
    """Column-wise copy of an ORM instance, unattached to any session."""
    return type(obj)(**{column.name: getattr(obj, column.name) for column in obj.__table__.columns})


def attempt_is_current(job: ProcessingJob | None, attempt: int) -> bool:
    return job is not None and job.status == JobStatus.RUNNING and job.attempts == attempt


class JobStore(ABC):
    """Repository for videos, processing jobs and transcripts."""

    # -- videos ---------------------------------------------------------

    @abstractmethod
    def register_video(self, video: Video) -> Video:
        """Insert ``video``, or point the existing row with that id at the new upload; return the stored row."""

    @abstractmethod
    def get_video(self, video_id: str) -> Optional[Video]: ...

    @abstractmethod
    def update_video(self, video_id: str, **fields) -> Optional[Video]: ...

    # -- jobs -----------------------------------------------------------

    @abstractmethod
    def create_job(self, job: ProcessingJob) -> ProcessingJob:
        """Insert a pending job.

        Raises:
            JobConflictError: a pending or running job already exists for the video.
        """

    @abstractmethod
    def get_job(self, job_id: str) -> Optional[ProcessingJob]: ...

    @abstractmethod
    def find_job_by_video_id(self, video_id: str) -> Optional[ProcessingJob]:
        """Most recently created job for the video."""

    @abstractmethod
    def find_jobs_by_status(self, status: JobStatus) -> list[ProcessingJob]:
        """Jobs in ``status``, oldest first."""

    @abstractmethod
    def list_jobs(self, limit: int | None = None) -> list[ProcessingJob]:
        """All jobs, newest first."""

    @abstractmethod
    def start_attempt(self, job_id: str) -> Optional[ProcessingJob]:
        """pending -> running.  ``None`` when the job cannot start."""

    @abstractmethod
    def record_progress(self, job_id: str, attempt: int, progress: int, stage: str, message: str) -> bool: ...

    @abstractmethod
    def complete_job(self, job_id: str, attempt: int, result: "TranscriptionResult") -> Optional[Transcript]:
        """Upsert the transcript and mark job and video completed in one step."""

    @abstractmethod
    def fail_job(self, job_id: str, attempt: int, error: str) -> bool: ...

    @abstractmethod
    def requeue_job(self, job_id: str) -> Optional[ProcessingJob]:
        """failed -> pending for a scheduler re-attempt (attempt history kept)."""

    @abstractmethod
    def reset_job(self, job_id: str, priority: int | None = None) -> ProcessingJob:
        """failed -> pending from scratch.

        Raises:
            JobNotFoundError, InvalidJobStateError
        """

    @abstractmethod
    def count_jobs_by_status(self) -> dict[str, int]: ...

    @abstractmethod
    def delete_jobs_older_than(self, days: float) -> int:
        """Delete completed/failed jobs created more than ``days`` ago."""

    # -- transcripts ----------------------------------------------------

    @abstractmethod
    def get_transcript(self, video_id: str) -> Optional[Transcript]: ...

    @abstractmethod
    def find_transcripts_by_status(self, status: TranscriptStatus) -> list[Transcript]: ...

    @abstractmethod
    def search_transcripts(self, term: str, limit: int = 50) -> list[Transcript]:
        """Case-insensitive substring search over completed transcripts, newest first."""

    @abstractmethod
    def total_word_count(self) -> int: ...


class InMemoryJobStore(JobStore):
    """Dictionary-backed store; a single lock serialises every operation."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._videos: dict[str, Video] = {}
        self._jobs: dict[str, ProcessingJob] = {}
        self._transcripts: dict[str, Transcript] = {}

    # -- videos ---------------------------------------------------------

    def register_video(self, video: Video) -> Video:
        with self._lock:
            existing = self._videos.get(video.id)
            if existing is not None:
                if existing.refresh_upload(video):
                    logger.info("Video %s re-registered at %s", video.id, existing.upload_path)
                return detached_copy(existing)
            stored = detached_copy(video)
            now = utcnow()
            stored.status = stored.status or VideoStatus.UPLOADED.value
            stored.size_bytes = stored.size_bytes or 0
            stored.created_at = stored.created_at or now
            stored.updated_at = stored.updated_at or now
            self._videos[video.id] = stored
            return detached_copy(stored)

    def get_video(self, video_id: str) -> Optional[Video]:
        with self._lock:
            video = self._videos.get(video_id)
            return detached_copy(video) if video else None

    def update_video(self, video_id: str, **fields) -> Optional[Video]:
        with self._lock:
            video = self._videos.get(video_id)
            if video is None:
                return None
            for key, value in fields.items():
                setattr(video, key, value)
            video.updated_at = utcnow()
            return detached_copy(video)

    # -- jobs -----------------------------------------------------------

    def create_job(self, job: ProcessingJob) -> ProcessingJob:
        with self._lock:
            if job.video_id:
                active = [j for j in self._jobs.values() if j.video_id == job.video_id and j.is_active]
                if active:
                    raise JobConflictError(f"Transcription job already exists for video {job.video_id}")
            self._jobs[job.id] = detached_copy(job)
            return detached_copy(job)

    def get_job(self, job_id: str) -> Optional[ProcessingJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return detached_copy(job) if job else None

    def find_job_by_video_id(self, video_id: str) -> Optional[ProcessingJob]:
        with self._lock:
            jobs = [j for j in self._jobs.values() if j.video_id == video_id]
            if not jobs:
                return None
            return detached_copy(max(jobs, key=lambda j: j.created_at))

    def find_jobs_by_status(self, status: JobStatus) -> list[ProcessingJob]:
        with self._lock:
            jobs = sorted((j for j in self._jobs.values() if j.status == status), key=lambda j: j.created_at)
            return [detached_copy(j) for j in jobs]

    def list_jobs(self, limit: int | None = None) -> list[ProcessingJob]:
        with self._lock:
            jobs = sorted(self._jobs.values(), key=lambda j: j.created_at, reverse=True)
            return [detached_copy(j) for j in jobs[:limit]]

    def start_attempt(self, job_id: str) -> Optional[ProcessingJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or not job.can_start():
                return None
            job.mark_running()
            video = self._videos.get(job.video_id) if job.video_id else None
            if video is not None:
                video.status = VideoStatus.PROCESSING.value
                video.updated_at = utcnow()
            return detached_copy(job)

    def record_progress(self, job_id: str, attempt: int, progress: int, stage: str, message: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if not attempt_is_current(job, attempt):
                return False
            job.advance(progress, stage, message)
            return True

    def complete_job(self, job_id: str, attempt: int, result: "TranscriptionResult") -> Optional[Transcript]:
        with self._lock:
            job = self._jobs.get(job_id)
            if not attempt_is_current(job, attempt):
                return None
            transcript = self._transcripts.get(job.video_id)
            candidate = detached_copy(transcript) if transcript else Transcript.new(job.video_id)
            # Validates content before anything is mutated
            candidate.apply_result(result)
            self._transcripts[job.video_id] = candidate
            job.mark_completed()
            video = self._videos.get(job.video_id)
            if video is not None:
                video.status = VideoStatus.COMPLETED.value
                video.error_message = None
                video.updated_at = utcnow()
            return detached_copy(candidate)

    def fail_job(self, job_id: str, attempt: int, error: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if not attempt_is_current(job, attempt):
                return False
            job.mark_failed(error)
            video = self._videos.get(job.video_id) if job.video_id else None
            if video is not None:
                video.status = VideoStatus.FAILED.value
                video.error_message = error
                video.updated_at = utcnow()
            return True

    def requeue_job(self, job_id: str) -> Optional[ProcessingJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.FAILED or job.attempts >= job.max_attempts:
                return None
            job.mark_requeued()
            return detached_copy(job)

    def reset_job(self, job_id: str, priority: int | None = None) -> ProcessingJob:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            if job.status != JobStatus.FAILED:
                raise InvalidJobStateError("Only failed jobs can be retried")
            job.reset(priority)
            return detached_copy(job)

    def count_jobs_by_status(self) -> dict[str, int]:
        with self._lock:
            counts = {status.value: 0 for status in JobStatus}
            for job in self._jobs.values():
                counts[job.status.value] += 1
            return counts

    def delete_jobs_older_than(self, days: float) -> int:
        cutoff = utcnow() - timedelta(days=days)
        with self._lock:
            stale = [j.id for j in self._jobs.values() if j.status.terminal and j.created_at < cutoff]
            for job_id in stale:
                del self._jobs[job_id]
            return len(stale)

    # -- transcripts ----------------------------------------------------

    def get_transcript(self, video_id: str) -> Optional[Transcript]:
        with self._lock:
            transcript = self._transcripts.get(video_id)
            return detached_copy(transcript) if transcript else None

    def find_transcripts_by_status(self, status: TranscriptStatus) -> list[Transcript]:
        with self._lock:
            matches = [t for t in self._transcripts.values() if t.status == status.value]
            matches.sort(key=lambda t: t.created_at, reverse=True)
            return [detached_copy(t) for t in matches]

    def search_transcripts(self, term: str, limit: int = 50) -> list[Transcript]:
        needle = term.lower()
        with self._lock:
            matches = [
                t
                for t in self._transcripts.values()
                if t.status == TranscriptStatus.COMPLETED.value and needle in t.content.lower()
            ]
            matches.sort(key=lambda t: t.created_at, reverse=True)
            return [detached_copy(t) for t in matches[:limit]]

    def total_word_count(self) -> int:
        with self._lock:
            return sum(
                t.word_count or 0
                for t in self._transcripts.values()
                if t.status == TranscriptStatus.COMPLETED.value
            )
