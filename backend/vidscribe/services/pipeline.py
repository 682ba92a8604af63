"""Job orchestrator: runs one attempt of one job through every stage.

Stages run strictly in sequence (extraction, transcription, persistence).  Each
stage outcome is wrapped as :class:`~vidscribe.errors.Ok` or
:class:`~vidscribe.errors.Err`; the first ``Err`` fails the job with the error
detail recorded verbatim and progress left at the last checkpoint reached.
The scratch audio file is removed whatever the outcome.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional

from vidscribe.errors import (
    AudioExtractionError,
    Err,
    ErrorKind,
    Ok,
    PersistenceError,
    PipelineError,
    StageResult,
    TranscriptionFailed,
)
from vidscribe.models import JobStatus, ProcessingJob, Transcript
from vidscribe.services.audio_extraction import AudioExtractionOptions, AudioExtractor
from vidscribe.services.store import JobStore
from vidscribe.services.transcription import TranscriptionOptions, WhisperTranscriber

logger = logging.getLogger(__name__)

# (progress, stage, message) checkpoints of a successful attempt
EXTRACTION_STARTED = (10, "audio_extraction", "Extracting audio from video")
EXTRACTION_DONE = (30, "audio_extraction", "Audio extracted")
TRANSCRIPTION_STARTED = (40, "transcription", "Transcribing audio")
TRANSCRIPTION_DONE = (80, "transcription", "Transcription received")
STORAGE_STARTED = (90, "storage", "Saving transcript")
COMPLETED = (100, "completed", "Transcription completed successfully")


@dataclass(frozen=True)
class ProgressEvent:
    job_id: str
    video_id: str | None
    attempt: int
    progress: int
    stage: str
    message: str
    status: JobStatus = JobStatus.RUNNING


ProgressListener = Callable[[ProgressEvent], None]


@dataclass
class JobOutcome:
    """What happened to one ``run`` call."""

    job_id: str
    status: Optional[JobStatus]
    attempt: int = 0
    transcript: Optional[Transcript] = None
    error: Optional[PipelineError] = None
    started: bool = True

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.COMPLETED

    @property
    def reattemptable(self) -> bool:
        return self.error is not None and self.error.kind.reattemptable


async def _run_stage(stage: str, call: Callable[[], Awaitable]) -> StageResult:
    try:
        return Ok(await call())
    except PipelineError as exc:
        return Err(exc)
    except Exception as exc:
        logger.exception("Unexpected error during %s", stage)
        return Err(PipelineError(ErrorKind.UNKNOWN, f"Unexpected error during {stage}: {exc}", stage=stage))


class TranscriptionPipeline:
    """Sequences the stages for a job and owns its state transitions."""

    def __init__(
        self,
        extractor: AudioExtractor,
        transcriber: WhisperTranscriber,
        store: JobStore,
        extraction_options: AudioExtractionOptions | None = None,
        transcription_options: TranscriptionOptions | None = None,
        listeners: list[ProgressListener] | None = None,
    ) -> None:
        self.extractor = extractor
        self.transcriber = transcriber
        self.store = store
        self.extraction_options = extraction_options or AudioExtractionOptions()
        self.transcription_options = transcription_options or TranscriptionOptions()
        self._listeners: list[ProgressListener] = list(listeners or [])

    def add_listener(self, listener: ProgressListener) -> None:
        self._listeners.append(listener)

    def _emit(self, event: ProgressEvent) -> None:
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Progress listener %r failed for job %s", listener, event.job_id)

    def _checkpoint(self, job: ProcessingJob, checkpoint: tuple[int, str, str], detail: str = "") -> None:
        progress, stage, message = checkpoint
        if detail:
            message = f"{message} ({detail})"
        if self.store.record_progress(job.id, job.attempts, progress, stage, message):
            logger.info("Job %s: %d%% %s", job.id, progress, message)
            self._emit(ProgressEvent(job.id, job.video_id, job.attempts, progress, stage, message))
        else:
            logger.warning("Job %s attempt %d is no longer current, progress %d%% dropped", job.id, job.attempts, progress)

    async def run(self, job_id: str) -> JobOutcome:
        """Run one attempt of ``job_id``.

        Never raises for stage failures: they are recorded on the job and
        returned on the outcome.
        """
        job = self.store.start_attempt(job_id)
        if job is None:
            current = self.store.get_job(job_id)
            logger.warning(
                "Job %s cannot start (status=%s)", job_id, current.status_str if current else "missing"
            )
            return JobOutcome(job_id=job_id, status=current.status if current else None, started=False)

        logger.info("Processing transcription job %s for video %s (attempt %d/%d)",
                    job.id, job.video_id, job.attempts, job.max_attempts)
        self._emit(ProgressEvent(job.id, job.video_id, job.attempts, 0, "queued", job.message or ""))

        audio_path: Path | None = None
        try:
            video = self.store.get_video(job.video_id) if job.video_id else None
            if video is None:
                return self._fail(job, PipelineError(
                    ErrorKind.NOT_FOUND, f"Video {job.video_id} not found", stage="startup"
                ))

            self._checkpoint(job, EXTRACTION_STARTED)
            extracted = await _run_stage(
                AudioExtractionError.stage,
                lambda: self.extractor.extract_audio(video.upload_path, self.extraction_options),
            )
            if not extracted.ok:
                return self._fail(job, extracted.error)
            audio = extracted.value
            audio_path = audio.path
            self.store.update_video(video.id, duration=audio.metadata.duration)
            self._checkpoint(job, EXTRACTION_DONE, f"{audio.metadata.duration:.1f}s, {audio.metadata.size} bytes")

            self._checkpoint(job, TRANSCRIPTION_STARTED)
            transcribed = await _run_stage(
                TranscriptionFailed.stage,
                lambda: self.transcriber.transcribe_audio(audio.path, self.transcription_options),
            )
            if not transcribed.ok:
                return self._fail(job, transcribed.error)
            result = transcribed.value
            self._checkpoint(job, TRANSCRIPTION_DONE, f"{len(result.text)} characters")

            self._checkpoint(job, STORAGE_STARTED)
            stored = self._persist(job, result)
            if not stored.ok:
                return self._fail(job, stored.error)
            transcript = stored.value
            if transcript is None:
                logger.warning("Job %s attempt %d superseded before completion", job.id, job.attempts)
                current = self.store.get_job(job.id)
                return JobOutcome(job.id, current.status if current else None, job.attempts)

            progress, stage, message = COMPLETED
            self._emit(ProgressEvent(job.id, job.video_id, job.attempts, progress, stage, message, JobStatus.COMPLETED))
            logger.info("Job %s completed: %d words, confidence %.3f", job.id, transcript.word_count, transcript.confidence)
            return JobOutcome(job.id, JobStatus.COMPLETED, job.attempts, transcript=transcript)
        finally:
            if audio_path is not None and not self.extractor.cleanup_audio_file(audio_path):
                logger.warning("Could not remove temporary audio %s for job %s", audio_path, job.id)

    def _persist(self, job: ProcessingJob, result) -> StageResult:
        try:
            return Ok(self.store.complete_job(job.id, job.attempts, result))
        except PersistenceError as exc:
            return Err(exc)
        except ValueError as exc:
            return Err(PersistenceError(ErrorKind.VALIDATION, f"Invalid transcript: {exc}"))

    def _fail(self, job: ProcessingJob, error: PipelineError) -> JobOutcome:
        logger.error(
            "Job %s failed during %s [%s]: %s", job.id, error.stage, error.kind.value, error.detail
        )
        if not self.store.fail_job(job.id, job.attempts, error.detail):
            logger.warning("Job %s attempt %d superseded, failure not recorded", job.id, job.attempts)
        current = self.store.get_job(job.id)
        if current is not None:
            self._emit(ProgressEvent(
                job.id, job.video_id, job.attempts, current.progress, current.stage or "", current.message or "",
                current.status,
            ))
        return JobOutcome(job.id, JobStatus.FAILED, job.attempts, error=error)
