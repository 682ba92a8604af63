"""In-process transcription queue.

A bounded pool of asyncio workers pulls job ids from a priority queue (higher
priority first, FIFO within a priority) and hands them to the
:class:`~vidscribe.services.pipeline.TranscriptionPipeline`.  Failed attempts
whose error kind allows it are put back after an exponential delay until the
job's attempt budget is spent.

Queue bookkeeping lives in memory; the job store stays the source of truth, so
:meth:`TranscriptionQueue.status` falls back to the stored job for handles the
queue no longer (or never) tracked.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from vidscribe.models import JobPriority, JobStatus, ProcessingJob
from vidscribe.services.pipeline import JobOutcome, ProgressEvent, TranscriptionPipeline
from vidscribe.services.store import JobStore
from vidscribe.utils.timeutils import utcnow

logger = logging.getLogger(__name__)


class QueueState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


_FROM_JOB_STATUS = {
    JobStatus.PENDING: QueueState.WAITING,
    JobStatus.RUNNING: QueueState.ACTIVE,
    JobStatus.COMPLETED: QueueState.COMPLETED,
    JobStatus.FAILED: QueueState.FAILED,
}


@dataclass
class QueueEntry:
    job_id: str
    video_id: str
    video_path: str
    original_name: str
    priority: int = JobPriority.NORMAL.value
    state: QueueState = QueueState.WAITING
    progress: int = 0
    attempts_made: int = 0
    failed_reason: Optional[str] = None
    finished_on: Optional[datetime] = None
    finished_at: Optional[float] = None
    last_activity: float = field(default_factory=time.monotonic)
    stalled: bool = False

    @property
    def data(self) -> dict[str, Any]:
        return {"videoId": self.video_id, "videoPath": self.video_path, "originalName": self.original_name}

    def to_status(self) -> dict[str, Any]:
        return {
            "id": self.job_id,
            "state": self.state.value,
            "progress": self.progress,
            "data": self.data,
            "attemptsMade": self.attempts_made,
            "finishedOn": self.finished_on,
            "failedReason": self.failed_reason,
            "stalled": self.stalled,
        }


class TranscriptionQueue:
    """Priority queue with bounded concurrency and whole-job retries."""

    def __init__(
        self,
        pipeline: TranscriptionPipeline,
        store: JobStore,
        concurrency: int = 1,
        max_attempts: int = 3,
        retry_base_delay: float = 2.0,
        stalled_after: float = 900.0,
        stall_check_interval: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.pipeline = pipeline
        self.store = store
        self.concurrency = max(1, concurrency)
        self.max_attempts = max(1, max_attempts)
        self.retry_base_delay = retry_base_delay
        self.stalled_after = stalled_after
        self.stall_check_interval = stall_check_interval
        self._clock = clock

        self._entries: dict[str, QueueEntry] = {}
        self._pending: asyncio.PriorityQueue = asyncio.PriorityQueue()
        self._sequence = itertools.count()
        self._unpaused = asyncio.Event()
        self._unpaused.set()
        self._idle = asyncio.Event()
        self._idle.set()
        self._outstanding = 0
        self._workers: list[asyncio.Task] = []
        self._timers: set[asyncio.Task] = set()
        self._watchdog: Optional[asyncio.Task] = None

        pipeline.add_listener(self._on_progress)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return bool(self._workers)

    @property
    def paused(self) -> bool:
        return not self._unpaused.is_set()

    async def start(self, recover: bool = True) -> None:
        """Spawn the workers and the stalled-job watchdog.

        With ``recover`` set, jobs left over by a previous process are admitted
        first.  Jobs it left ``running`` are failed as interrupted and, while
        their attempt budget lasts, put back to pending.
        """
        if self._workers:
            return
        if recover:
            self.recover_interrupted()
            self.recover_pending()
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"transcription-worker-{n}") for n in range(self.concurrency)
        ]
        if self.stalled_after > 0:
            self._watchdog = asyncio.create_task(self._watch_stalled(), name="transcription-watchdog")
        logger.info("Transcription queue started with %d worker(s)", self.concurrency)

    async def stop(self) -> None:
        """Cancel the workers.  Jobs cut off mid-run are failed and requeued in the store."""
        active = [entry for entry in self._entries.values() if entry.state == QueueState.ACTIVE]
        tasks = list(self._workers) + list(self._timers)
        if self._watchdog is not None:
            tasks.append(self._watchdog)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._timers.clear()
        self._watchdog = None
        for entry in active:
            job = self.store.get_job(entry.job_id)
            if job is not None and job.status == JobStatus.RUNNING:
                self._interrupt(job, "Interrupted by shutdown")
            self._finish(entry, QueueState.FAILED, "Interrupted by shutdown")
        logger.info("Transcription queue stopped")

    def pause(self) -> None:
        self._unpaused.clear()
        logger.info("Transcription queue paused")

    def resume(self) -> None:
        self._unpaused.set()
        logger.info("Transcription queue resumed")

    async def wait_until_idle(self, timeout: float | None = None) -> None:
        """Block until no job is waiting, active or delayed."""
        await asyncio.wait_for(self._idle.wait(), timeout)

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def enqueue(
        self,
        video_id: str,
        video_path: str,
        original_name: str,
        priority: int = JobPriority.NORMAL.value,
    ) -> str:
        """Create a pending job for the video and admit it. Returns the job id (the handle).

        Raises:
            JobConflictError: the video already has a pending or running job.
        """
        job = self.store.create_job(
            ProcessingJob.new(video_id, priority=priority, max_attempts=self.max_attempts)
        )
        self._admit(QueueEntry(job.id, video_id, video_path, original_name, priority=priority))
        logger.info("Enqueued transcription job %s for video %s (%s)", job.id, video_id, original_name)
        return job.id

    def resubmit(self, job: ProcessingJob, video_path: str, original_name: str) -> str:
        """Admit an existing pending job again (after a manual reset)."""
        self._admit(QueueEntry(job.id, job.video_id, video_path, original_name, priority=job.priority))
        logger.info("Resubmitted job %s with priority %d", job.id, job.priority)
        return job.id

    def recover_interrupted(self) -> int:
        """Fail ``running`` jobs this queue is not running itself."""
        interrupted = 0
        for job in self.store.find_jobs_by_status(JobStatus.RUNNING):
            entry = self._entries.get(job.id)
            if entry is not None and entry.state == QueueState.ACTIVE:
                continue
            self._interrupt(job, "Interrupted by restart")
            interrupted += 1
        if interrupted:
            logger.warning("Found %d job(s) interrupted mid-run", interrupted)
        return interrupted

    def _interrupt(self, job: ProcessingJob, reason: str) -> None:
        if not self.store.fail_job(job.id, job.attempts, reason):
            return
        if self.store.requeue_job(job.id) is None:
            logger.error("Job %s %s with no attempts left", job.id, reason.lower())
        else:
            logger.warning("Job %s %s, back to pending", job.id, reason.lower())

    def recover_pending(self) -> int:
        recovered = 0
        for job in self.store.find_jobs_by_status(JobStatus.PENDING):
            entry = self._entries.get(job.id)
            # Waiting entries are still in the heap; delayed ones lost their timer on stop()
            if entry is not None and entry.state in (QueueState.WAITING, QueueState.ACTIVE):
                continue
            if not job.video_id:
                continue
            video = self.store.get_video(job.video_id)
            if video is None:
                continue
            self._admit(QueueEntry(
                job.id, job.video_id, video.upload_path, video.original_name,
                priority=job.priority, attempts_made=job.attempts,
            ))
            recovered += 1
        if recovered:
            logger.info("Recovered %d pending job(s) from the store", recovered)
        return recovered

    def _admit(self, entry: QueueEntry) -> None:
        previous = self._entries.get(entry.job_id)
        if previous is None or previous.state in (QueueState.COMPLETED, QueueState.FAILED):
            self._outstanding += 1
            self._idle.clear()
        self._entries[entry.job_id] = entry
        self._push(entry)

    def _push(self, entry: QueueEntry) -> None:
        entry.state = QueueState.WAITING
        entry.last_activity = self._clock()
        self._pending.put_nowait((-entry.priority, next(self._sequence), entry.job_id))

    def _finish(self, entry: QueueEntry, state: QueueState, reason: str | None = None) -> None:
        entry.state = state
        entry.failed_reason = reason
        entry.finished_on = utcnow()
        entry.finished_at = self._clock()
        self._outstanding = max(0, self._outstanding - 1)
        if self._outstanding == 0:
            self._idle.set()

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _worker(self, number: int) -> None:
        while True:
            _priority, _seq, job_id = await self._pending.get()
            try:
                await self._unpaused.wait()
                entry = self._entries.get(job_id)
                if entry is None or entry.state != QueueState.WAITING:
                    continue
                await self._process(entry)
            finally:
                self._pending.task_done()

    async def _process(self, entry: QueueEntry) -> None:
        entry.state = QueueState.ACTIVE
        entry.progress = 0
        entry.stalled = False
        entry.attempts_made += 1
        entry.last_activity = self._clock()

        try:
            outcome = await self.pipeline.run(entry.job_id)
        except Exception as exc:
            # The pipeline records stage errors itself; this is a store or programming fault
            logger.exception("Job %s crashed outside the pipeline stages", entry.job_id)
            self._finish(entry, QueueState.FAILED, str(exc))
            return

        self._settle(entry, outcome)

    def _settle(self, entry: QueueEntry, outcome: JobOutcome) -> None:
        if not outcome.started:
            entry.attempts_made -= 1
            state = _FROM_JOB_STATUS.get(outcome.status, QueueState.FAILED)
            if state in (QueueState.WAITING, QueueState.ACTIVE):
                state = QueueState.FAILED
            self._finish(entry, state, None if state == QueueState.COMPLETED else "Job could not be started")
            return

        entry.attempts_made = outcome.attempt
        if outcome.succeeded:
            entry.progress = 100
            self._finish(entry, QueueState.COMPLETED)
            return

        reason = outcome.error.detail if outcome.error else "Job did not complete"
        if outcome.status == JobStatus.FAILED and outcome.reattemptable and entry.attempts_made < self.max_attempts:
            requeued = self.store.requeue_job(entry.job_id)
            if requeued is not None:
                delay = self.retry_base_delay * (2 ** (entry.attempts_made - 1))
                entry.state = QueueState.DELAYED
                entry.failed_reason = reason
                logger.warning(
                    "Job %s attempt %d/%d failed (%s), retrying in %.1fs",
                    entry.job_id, entry.attempts_made, self.max_attempts, outcome.error.kind.value, delay,
                )
                timer = asyncio.create_task(self._release_after(entry, delay))
                self._timers.add(timer)
                timer.add_done_callback(self._timers.discard)
                return

        logger.error("Job %s failed permanently after %d attempt(s): %s", entry.job_id, entry.attempts_made, reason)
        self._finish(entry, QueueState.FAILED, reason)

    async def _release_after(self, entry: QueueEntry, delay: float) -> None:
        await asyncio.sleep(delay)
        if entry.state == QueueState.DELAYED and self._entries.get(entry.job_id) is entry:
            self._push(entry)

    def _on_progress(self, event: ProgressEvent) -> None:
        entry = self._entries.get(event.job_id)
        if entry is None or entry.state != QueueState.ACTIVE:
            return
        entry.progress = max(entry.progress, event.progress)
        entry.last_activity = self._clock()
        entry.stalled = False

    async def _watch_stalled(self) -> None:
        while True:
            await asyncio.sleep(self.stall_check_interval)
            self.check_stalled()

    def check_stalled(self) -> list[str]:
        """Flag active jobs silent for longer than ``stalled_after``. Nothing is requeued."""
        now = self._clock()
        flagged = []
        for entry in self._entries.values():
            if entry.state != QueueState.ACTIVE or entry.stalled:
                continue
            if now - entry.last_activity > self.stalled_after:
                entry.stalled = True
                flagged.append(entry.job_id)
                logger.warning(
                    "Job %s stalled: no progress for %.0fs (stuck at %d%%)",
                    entry.job_id, now - entry.last_activity, entry.progress,
                )
        return flagged

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def status(self, handle: str) -> Optional[dict[str, Any]]:
        entry = self._entries.get(handle)
        if entry is not None:
            return entry.to_status()

        job = self.store.get_job(handle)
        if job is None:
            return None
        video = self.store.get_video(job.video_id) if job.video_id else None
        return {
            "id": job.id,
            "state": _FROM_JOB_STATUS[job.status].value,
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
        counts = {state.value: 0 for state in QueueState}
        for entry in self._entries.values():
            counts[entry.state.value] += 1
        return counts

    def clean(self, grace_seconds: float, state: QueueState | None = None) -> int:
        """Forget finished entries older than ``grace_seconds``."""
        now = self._clock()
        finished = (QueueState.COMPLETED, QueueState.FAILED) if state is None else (state,)
        stale = [
            job_id
            for job_id, entry in self._entries.items()
            if entry.state in finished and entry.finished_at is not None and now - entry.finished_at >= grace_seconds
        ]
        for job_id in stale:
            del self._entries[job_id]
        if stale:
            logger.info("Cleaned %d finished queue entr%s", len(stale), "y" if len(stale) == 1 else "ies")
        return len(stale)
