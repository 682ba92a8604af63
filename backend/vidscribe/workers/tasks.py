"""Celery task definitions.

Used when ``QUEUE_BACKEND=celery``: the API process enqueues through
:class:`CeleryTranscriptionQueue` and worker processes run the pipeline in
:func:`transcribe_video_task`.  The job store remains the source of truth for
status; Celery only carries job ids.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from celery import Celery, Task
from celery.signals import setup_logging as setup_celery_logging

from vidscribe import bootstrap
from vidscribe.config import settings
from vidscribe.logging_config import setup_logging as setup_app_logging
from vidscribe.models import JobPriority, JobStatus, ProcessingJob
from vidscribe.services.store import JobStore

logger = logging.getLogger(__name__)


# --- Celery Application Setup ---
celery_app = Celery(
    "vidscribe",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["vidscribe.workers.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # One transcription at a time per worker process; long jobs must not be prefetched
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    beat_schedule={
        "cleanup-old-jobs": {
            "task": "cleanup_task",
            "schedule": 60 * 60,
        },
    },
)


@setup_celery_logging.connect
def _configure_worker_logging(**_kwargs) -> None:
    # Connecting to the signal stops Celery from replacing our handlers
    setup_app_logging()


def _broker_priority(priority: int) -> int:
    # Redis transport: lower numbers are consumed first
    if priority >= JobPriority.HIGH.value:
        return 0
    if priority <= JobPriority.LOW.value:
        return 9
    return 5


class CeleryTranscriptionQueue:
    """Queue contract (enqueue/resubmit/status/stats) on top of a Celery broker."""

    def __init__(self, store: JobStore, max_attempts: int = 3) -> None:
        self.store = store
        self.max_attempts = max_attempts

    def enqueue(
        self,
        video_id: str,
        video_path: str,
        original_name: str,
        priority: int = JobPriority.NORMAL.value,
    ) -> str:
        job = self.store.create_job(ProcessingJob.new(video_id, priority=priority, max_attempts=self.max_attempts))
        self._send(job.id, priority)
        logger.info("Enqueued transcription job %s for video %s (%s)", job.id, video_id, original_name)
        return job.id

    def resubmit(self, job: ProcessingJob, video_path: str, original_name: str) -> str:
        self._send(job.id, job.priority)
        logger.info("Resubmitted job %s (%s) with priority %d", job.id, original_name, job.priority)
        return job.id

    def _send(self, job_id: str, priority: int) -> None:
        transcribe_video_task.apply_async(args=[job_id], priority=_broker_priority(priority))

    def status(self, handle: str) -> Optional[dict[str, Any]]:
        job = self.store.get_job(handle)
        if job is None:
            return None
        video = self.store.get_video(job.video_id) if job.video_id else None
        return {
            "id": job.id,
            "state": _queue_state(job),
            "progress": job.progress,
            "data": {
                "videoId": job.video_id,
                "videoPath": video.upload_path if video else None,
                "originalName": video.original_name if video else None,
            },
            "attemptsMade": job.attempts,
            "finishedOn": job.completed_at or job.failed_at,
            "failedReason": job.error_message,
            "stalled": False,
        }

    def stats(self) -> dict[str, int]:
        counts = self.store.count_jobs_by_status()
        delayed = sum(1 for job in self.store.find_jobs_by_status(JobStatus.PENDING) if job.attempts > 0)
        return {
            "waiting": counts[JobStatus.PENDING.value] - delayed,
            "active": counts[JobStatus.RUNNING.value],
            "delayed": delayed,
            "completed": counts[JobStatus.COMPLETED.value],
            "failed": counts[JobStatus.FAILED.value],
        }


def _queue_state(job: ProcessingJob) -> str:
    if job.status == JobStatus.PENDING:
        # A pending job that already ran is waiting out its retry countdown
        return "delayed" if job.attempts > 0 else "waiting"
    if job.status == JobStatus.RUNNING:
        return "active"
    return job.status_str


class TranscriptionTask(Task):
    """Base task: logs calls and fails the job if the worker itself crashes."""

    abstract = True

    def __call__(self, *args, **kwargs):
        logger.info("Task %s [%s] called with args: %s", self.name, self.request.id, args)
        return super().__call__(*args, **kwargs)

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        logger.error("Task %s [%s] failed: %s", self.name, task_id, exc, exc_info=einfo)
        job_id = kwargs.get("job_id") or (args[0] if args else None)
        if job_id:
            store = bootstrap.get_container().store
            job = store.get_job(job_id)
            if job is not None and job.status == JobStatus.RUNNING:
                store.fail_job(job_id, job.attempts, f"Task failed: {str(exc)[:500]}")
        super().on_failure(exc, task_id, args, kwargs, einfo)

    def on_success(self, retval, task_id, args, kwargs):
        logger.info("Task %s [%s] completed. Result: %s", self.name, task_id, retval)
        super().on_success(retval, task_id, args, kwargs)


@celery_app.task(name="transcribe_video_task", base=TranscriptionTask, bind=True, max_retries=None)
def transcribe_video_task(self, job_id: str) -> dict[str, Any]:
    """Run one pipeline attempt; schedule another through ``retry`` when allowed."""
    container = bootstrap.get_container()
    # Fresh pipeline per task: every task gets its own event loop
    pipeline = bootstrap.build_pipeline(container.settings, container.store, container.extractor)
    outcome = asyncio.run(pipeline.run(job_id))

    if outcome.succeeded:
        return {"job_id": job_id, "status": JobStatus.COMPLETED.value, "transcript_id": outcome.transcript.id}
    if not outcome.started:
        return {"job_id": job_id, "status": outcome.status.value if outcome.status else "missing"}

    if outcome.reattemptable and container.store.requeue_job(job_id) is not None:
        countdown = container.settings.JOB_RETRY_BASE_DELAY * (2 ** (outcome.attempt - 1))
        logger.warning("Job %s attempt %d failed (%s), retrying in %.1fs",
                       job_id, outcome.attempt, outcome.error.kind.value, countdown)
        raise self.retry(countdown=countdown, exc=outcome.error)

    return {
        "job_id": job_id,
        "status": JobStatus.FAILED.value,
        "error": outcome.error.detail if outcome.error else None,
    }


@celery_app.task(name="cleanup_task", base=TranscriptionTask)
def cleanup_task() -> dict[str, int]:
    """Drop old finished jobs and stale scratch audio."""
    container = bootstrap.get_container()
    deleted_jobs = container.store.delete_jobs_older_than(container.settings.JOB_RETENTION_DAYS)
    removed_files = container.extractor.cleanup_old_files(container.settings.TEMP_AUDIO_MAX_AGE_HOURS * 3600)
    return {"deleted_jobs": deleted_jobs, "removed_files": removed_files}
