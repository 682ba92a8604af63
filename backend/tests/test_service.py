import pytest

from vidscribe.errors import (
    ErrorKind,
    InvalidJobStateError,
    JobConflictError,
    JobNotFoundError,
    VideoNotFoundError,
)
from vidscribe.models import JobPriority, JobStatus
from vidscribe.services.pipeline import TranscriptionPipeline
from vidscribe.services.queue import TranscriptionQueue
from vidscribe.services.transcription_service import TranscriptionService

from .conftest import register_video


@pytest.fixture
def service(memory_store, extractor, transcriber) -> TranscriptionService:
    pipeline = TranscriptionPipeline(extractor, transcriber, memory_store)
    queue = TranscriptionQueue(pipeline, memory_store, retry_base_delay=0.01, stall_check_interval=3600)
    return TranscriptionService(memory_store, queue)


def submit(service, video_id="video-1") -> str:
    return service.enqueue_transcription(video_id, f"/uploads/{video_id}.mp4", "talk.mp4", size_bytes=2048, mime_type="video/mp4")


def test_enqueue_registers_video_and_creates_job(service):
    job_id = submit(service)

    video = service.store.get_video("video-1")
    assert video.original_name == "talk.mp4"
    assert video.mime_type == "video/mp4"
    view = service.get_job_status(job_id)
    assert view.status == "pending"
    assert view.queue_state == "waiting"
    assert view.progress == 0
    assert view.to_dict()["job_id"] == job_id


def test_second_enqueue_for_same_video_conflicts(service):
    submit(service)

    with pytest.raises(JobConflictError):
        submit(service)


def test_conflicting_enqueue_keeps_stored_upload(service):
    submit(service)

    with pytest.raises(JobConflictError):
        service.enqueue_transcription("video-1", "/uploads/replacement.mp4", "other.mp4")

    assert service.store.get_video("video-1").upload_path == "/uploads/video-1.mp4"


def test_reupload_after_failure_runs_against_new_path(service):
    job_id = submit(service)
    service.store.start_attempt(job_id)
    service.store.fail_job(job_id, 1, "Invalid data found when processing input")

    new_job_id = service.enqueue_transcription("video-1", "/uploads/video-1-fixed.mp4", "talk-fixed.mp4")

    assert new_job_id != job_id
    assert service.store.get_video("video-1").upload_path == "/uploads/video-1-fixed.mp4"
    assert service.queue.status(new_job_id)["data"]["videoPath"] == "/uploads/video-1-fixed.mp4"


def test_unknown_job_and_video(service):
    with pytest.raises(JobNotFoundError):
        service.get_job_status("missing")
    with pytest.raises(VideoNotFoundError):
        service.get_transcription_for_video("missing")
    with pytest.raises(VideoNotFoundError):
        service.retry_transcription("missing")


def test_retry_refused_unless_latest_job_failed(service):
    submit(service)

    with pytest.raises(InvalidJobStateError):
        service.retry_transcription("video-1")


def test_retry_without_any_job(service):
    register_video(service.store)

    with pytest.raises(JobNotFoundError):
        service.retry_transcription("video-1")


def test_retry_resets_failed_job_with_high_priority(service):
    job_id = submit(service)
    store = service.store
    store.start_attempt(job_id)
    store.record_progress(job_id, 1, 40, "transcription", "Transcribing audio")
    store.fail_job(job_id, 1, "Rate limit exceeded")

    retried = service.retry_transcription("video-1")

    assert retried == job_id
    job = store.get_job(job_id)
    assert job.status == JobStatus.PENDING
    assert job.priority == JobPriority.HIGH.value
    assert job.progress == 0
    assert job.error_message is None
    assert service.queue.status(job_id)["state"] == "waiting"


@pytest.mark.asyncio
async def test_full_run_and_lookup(service):
    await service.queue.start()
    try:
        job_id = submit(service)
        await service.queue.wait_until_idle(timeout=5)
    finally:
        await service.queue.stop()

    found = service.get_transcription_for_video("video-1")
    assert found.job.id == job_id
    assert found.job.status == JobStatus.COMPLETED
    assert found.transcript.content == "hello world"
    assert [t.video_id for t in service.search_transcripts("HELLO")] == ["video-1"]
    assert service.search_transcripts("   ") == []

    stats = service.get_statistics()
    assert stats["jobs"]["completed"] == 1
    assert stats["queue"]["completed"] == 1
    assert stats["total_words"] == 2
    assert service.get_queue_stats()["completed"] == 1
    assert [view.job_id for view in service.list_jobs()] == [job_id]


@pytest.mark.asyncio
async def test_sync_without_notion_configured(service):
    result = await service.sync_transcript_to_external("video-1")

    assert result.success is False
    assert result.error_kind == ErrorKind.UNAUTHORIZED.value


@pytest.mark.asyncio
async def test_sync_requires_database_id(service):
    class NeverCalled:
        async def sync(self, video_id, database_id):
            raise AssertionError("should not be reached")

    service.sync_service = NeverCalled()

    result = await service.sync_transcript_to_external("video-1")

    assert result.error_kind == ErrorKind.VALIDATION.value
    assert result.error == "Database ID is required"
