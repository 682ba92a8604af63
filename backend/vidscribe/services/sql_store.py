"""SQLAlchemy implementation of :class:`~vidscribe.services.store.JobStore`.

Every public method runs in its own short transaction.  Rows handed back to
callers are detached (the session factory keeps them loaded after commit).
Attempt-scoped writes lock the job row with ``SELECT ... FOR UPDATE`` where the
backend supports it and re-check the attempt number before writing.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from vidscribe.errors import (
    ErrorKind,
    InvalidJobStateError,
    JobConflictError,
    JobNotFoundError,
    PersistenceError,
)
from vidscribe.models import JobStatus, ProcessingJob, Transcript, TranscriptStatus, Video, VideoStatus
from vidscribe.services.store import JobStore, attempt_is_current
from vidscribe.utils.timeutils import utcnow

if TYPE_CHECKING:
    from vidscribe.services.transcription import TranscriptionResult

logger = logging.getLogger(__name__)


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class SqlJobStore(JobStore):
    """Store backed by any SQLAlchemy engine (SQLite in dev, Postgres in prod)."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._sessions = session_factory

    def _locked_job(self, session: Session, job_id: str) -> Optional[ProcessingJob]:
        return session.execute(
            select(ProcessingJob).where(ProcessingJob.id == job_id).with_for_update()
        ).scalar_one_or_none()

    # -- videos ---------------------------------------------------------

    def register_video(self, video: Video) -> Video:
        with self._sessions.begin() as session:
            existing = session.get(Video, video.id)
            if existing is not None:
                if existing.refresh_upload(video):
                    session.flush()
                    logger.info("Video %s re-registered at %s", video.id, existing.upload_path)
                return existing
            session.add(video)
            session.flush()
            return video

    def get_video(self, video_id: str) -> Optional[Video]:
        with self._sessions() as session:
            return session.get(Video, video_id)

    def update_video(self, video_id: str, **fields) -> Optional[Video]:
        with self._sessions.begin() as session:
            video = session.get(Video, video_id)
            if video is None:
                return None
            for key, value in fields.items():
                setattr(video, key, value)
            video.updated_at = utcnow()
            session.flush()
            return video

    # -- jobs -----------------------------------------------------------

    def create_job(self, job: ProcessingJob) -> ProcessingJob:
        with self._sessions.begin() as session:
            if job.video_id:
                active = session.execute(
                    select(ProcessingJob.id)
                    .where(ProcessingJob.video_id == job.video_id)
                    .where(ProcessingJob.status.in_([JobStatus.PENDING, JobStatus.RUNNING]))
                    .limit(1)
                ).first()
                if active is not None:
                    raise JobConflictError(f"Transcription job already exists for video {job.video_id}")
            session.add(job)
            session.flush()
            logger.debug("Created job %s for video %s", job.id, job.video_id)
            return job

    def get_job(self, job_id: str) -> Optional[ProcessingJob]:
        with self._sessions() as session:
            return session.get(ProcessingJob, job_id)

    def find_job_by_video_id(self, video_id: str) -> Optional[ProcessingJob]:
        with self._sessions() as session:
            return session.execute(
                select(ProcessingJob)
                .where(ProcessingJob.video_id == video_id)
                .order_by(ProcessingJob.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()

    def find_jobs_by_status(self, status: JobStatus) -> list[ProcessingJob]:
        with self._sessions() as session:
            return list(
                session.execute(
                    select(ProcessingJob).where(ProcessingJob.status == status).order_by(ProcessingJob.created_at)
                ).scalars()
            )

    def list_jobs(self, limit: int | None = None) -> list[ProcessingJob]:
        stmt = select(ProcessingJob).order_by(ProcessingJob.created_at.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._sessions() as session:
            return list(session.execute(stmt).scalars())

    def start_attempt(self, job_id: str) -> Optional[ProcessingJob]:
        with self._sessions.begin() as session:
            job = self._locked_job(session, job_id)
            if job is None or not job.can_start():
                return None
            job.mark_running()
            if job.video_id:
                video = session.get(Video, job.video_id)
                if video is not None:
                    video.status = VideoStatus.PROCESSING.value
                    video.updated_at = utcnow()
            session.flush()
            return job

    def record_progress(self, job_id: str, attempt: int, progress: int, stage: str, message: str) -> bool:
        with self._sessions.begin() as session:
            job = self._locked_job(session, job_id)
            if not attempt_is_current(job, attempt):
                return False
            job.advance(progress, stage, message)
            return True

    def complete_job(self, job_id: str, attempt: int, result: "TranscriptionResult") -> Optional[Transcript]:
        try:
            with self._sessions.begin() as session:
                job = self._locked_job(session, job_id)
                if not attempt_is_current(job, attempt):
                    return None
                transcript = session.execute(
                    select(Transcript).where(Transcript.video_id == job.video_id)
                ).scalar_one_or_none()
                if transcript is None:
                    transcript = Transcript.new(job.video_id)
                    session.add(transcript)
                transcript.apply_result(result)
                job.mark_completed()
                video = session.get(Video, job.video_id)
                if video is not None:
                    video.status = VideoStatus.COMPLETED.value
                    video.error_message = None
                    video.updated_at = utcnow()
                session.flush()
                return transcript
        except SQLAlchemyError as exc:
            logger.exception("Failed to persist transcript for job %s", job_id)
            raise PersistenceError(ErrorKind.RESOURCE, f"Failed to save transcript: {exc}") from exc

    def fail_job(self, job_id: str, attempt: int, error: str) -> bool:
        with self._sessions.begin() as session:
            job = self._locked_job(session, job_id)
            if not attempt_is_current(job, attempt):
                return False
            job.mark_failed(error)
            if job.video_id:
                video = session.get(Video, job.video_id)
                if video is not None:
                    video.status = VideoStatus.FAILED.value
                    video.error_message = error
                    video.updated_at = utcnow()
            return True

    def requeue_job(self, job_id: str) -> Optional[ProcessingJob]:
        with self._sessions.begin() as session:
            job = self._locked_job(session, job_id)
            if job is None or job.status != JobStatus.FAILED or job.attempts >= job.max_attempts:
                return None
            job.mark_requeued()
            session.flush()
            return job

    def reset_job(self, job_id: str, priority: int | None = None) -> ProcessingJob:
        with self._sessions.begin() as session:
            job = self._locked_job(session, job_id)
            if job is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            if job.status != JobStatus.FAILED:
                raise InvalidJobStateError("Only failed jobs can be retried")
            job.reset(priority)
            session.flush()
            return job

    def count_jobs_by_status(self) -> dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        with self._sessions() as session:
            rows = session.execute(
                select(ProcessingJob.status, func.count(ProcessingJob.id)).group_by(ProcessingJob.status)
            ).all()
        for status, count in rows:
            counts[JobStatus(status).value] = count
        return counts

    def delete_jobs_older_than(self, days: float) -> int:
        cutoff = utcnow() - timedelta(days=days)
        with self._sessions.begin() as session:
            stale = list(
                session.execute(
                    select(ProcessingJob)
                    .where(ProcessingJob.status.in_([JobStatus.COMPLETED, JobStatus.FAILED]))
                    .where(ProcessingJob.created_at < cutoff)
                ).scalars()
            )
            for job in stale:
                session.delete(job)
        if stale:
            logger.info("Deleted %d job(s) older than %s days", len(stale), days)
        return len(stale)

    # -- transcripts ----------------------------------------------------

    def get_transcript(self, video_id: str) -> Optional[Transcript]:
        with self._sessions() as session:
            return session.execute(select(Transcript).where(Transcript.video_id == video_id)).scalar_one_or_none()

    def find_transcripts_by_status(self, status: TranscriptStatus) -> list[Transcript]:
        with self._sessions() as session:
            return list(
                session.execute(
                    select(Transcript)
                    .where(Transcript.status == status.value)
                    .order_by(Transcript.created_at.desc())
                ).scalars()
            )

    def search_transcripts(self, term: str, limit: int = 50) -> list[Transcript]:
        pattern = f"%{_escape_like(term)}%"
        with self._sessions() as session:
            return list(
                session.execute(
                    select(Transcript)
                    .where(Transcript.status == TranscriptStatus.COMPLETED.value)
                    .where(Transcript.content.ilike(pattern, escape="\\"))
                    .order_by(Transcript.created_at.desc())
                    .limit(limit)
                ).scalars()
            )

    def total_word_count(self) -> int:
        with self._sessions() as session:
            total = session.execute(
                select(func.coalesce(func.sum(Transcript.word_count), 0)).where(
                    Transcript.status == TranscriptStatus.COMPLETED.value
                )
            ).scalar_one()
        return int(total)
