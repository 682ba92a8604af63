from datetime import timedelta

import pytest

from vidscribe.errors import InvalidJobStateError, JobConflictError, JobNotFoundError
from vidscribe.models import JobStatus, ProcessingJob, TranscriptStatus, VideoStatus
from vidscribe.services.transcription import TranscriptionResult
from vidscribe.utils.timeutils import utcnow

from .conftest import hello_world_result, register_video


def new_job(store, video_id="video-1", max_attempts=3) -> ProcessingJob:
    return store.create_job(ProcessingJob.new(video_id, max_attempts=max_attempts))


def run_to_completion(store, video_id: str, text: str) -> None:
    job = new_job(store, video_id)
    started = store.start_attempt(job.id)
    assert store.complete_job(job.id, started.attempts, TranscriptionResult(text=text, language="en")) is not None


def test_register_video_is_idempotent(store):
    first = register_video(store)
    again = register_video(store)

    assert again.id == first.id
    assert again.upload_path == "/uploads/video-1.mp4"
    assert again.status == VideoStatus.UPLOADED.value


def test_register_video_again_takes_new_upload_path(store):
    register_video(store)
    store.update_video("video-1", duration=12.0)

    again = register_video(store, path="/uploads/video-1-v2.mp4", name="talk-final.mp4")

    assert again.upload_path == "/uploads/video-1-v2.mp4"
    assert again.filename == "video-1-v2.mp4"
    assert again.original_name == "talk-final.mp4"
    stored = store.get_video("video-1")
    assert stored.upload_path == "/uploads/video-1-v2.mp4"
    assert stored.duration == 12.0


def test_update_video(store):
    register_video(store)

    updated = store.update_video("video-1", duration=31.5)

    assert updated.duration == 31.5
    assert store.get_video("video-1").duration == 31.5
    assert store.update_video("missing", duration=1) is None


def test_create_job_rejects_second_active_job(store):
    register_video(store)
    new_job(store)

    with pytest.raises(JobConflictError):
        new_job(store)


def test_find_job_by_video_and_status(store):
    register_video(store)
    job = new_job(store)

    assert store.get_job(job.id).status == JobStatus.PENDING
    assert store.find_job_by_video_id("video-1").id == job.id
    assert [j.id for j in store.find_jobs_by_status(JobStatus.PENDING)] == [job.id]
    assert store.find_jobs_by_status(JobStatus.RUNNING) == []
    assert store.get_job("nope") is None


def test_start_attempt_transitions_to_running(store):
    register_video(store)
    job = new_job(store)

    started = store.start_attempt(job.id)

    assert started.status == JobStatus.RUNNING
    assert started.attempts == 1
    assert started.progress == 0
    assert started.started_at is not None
    assert store.get_video("video-1").status == VideoStatus.PROCESSING.value
    # Already running: a second start is refused
    assert store.start_attempt(job.id) is None


def test_progress_is_monotonic_and_guarded(store):
    register_video(store)
    job = new_job(store)
    store.start_attempt(job.id)

    assert store.record_progress(job.id, 1, 30, "audio_extraction", "done") is True
    assert store.record_progress(job.id, 1, 20, "audio_extraction", "late") is True
    assert store.get_job(job.id).progress == 30
    # Stale attempt number
    assert store.record_progress(job.id, 0, 90, "storage", "stale") is False
    assert store.get_job(job.id).progress == 30


def test_complete_job_stores_transcript_atomically(store):
    register_video(store)
    job = new_job(store)
    store.start_attempt(job.id)

    transcript = store.complete_job(job.id, 1, hello_world_result())

    assert transcript.content == "hello world"
    assert transcript.word_count == 2
    assert transcript.confidence == 1.0
    assert transcript.status == TranscriptStatus.COMPLETED.value
    assert transcript.segments[0]["text"] == "hello world"
    stored_job = store.get_job(job.id)
    assert stored_job.status == JobStatus.COMPLETED
    assert stored_job.progress == 100
    assert stored_job.completed_at is not None
    assert store.get_video("video-1").status == VideoStatus.COMPLETED.value
    assert store.get_transcript("video-1").id == transcript.id


def test_complete_job_replaces_existing_transcript(store):
    register_video(store)
    run_to_completion(store, "video-1", "first version")
    first = store.get_transcript("video-1")

    run_to_completion(store, "video-1", "second version of the text")

    second = store.get_transcript("video-1")
    assert second.id == first.id
    assert second.content == "second version of the text"
    assert second.word_count == 5


def test_empty_transcript_is_rejected_without_side_effects(store):
    register_video(store)
    job = new_job(store)
    store.start_attempt(job.id)

    with pytest.raises(ValueError):
        store.complete_job(job.id, 1, TranscriptionResult(text="   "))

    assert store.get_job(job.id).status == JobStatus.RUNNING
    assert store.get_transcript("video-1") is None


def test_fail_job_keeps_last_checkpoint(store):
    register_video(store)
    job = new_job(store)
    store.start_attempt(job.id)
    store.record_progress(job.id, 1, 40, "transcription", "Transcribing audio")

    assert store.fail_job(job.id, 1, "Rate limit exceeded") is True

    failed = store.get_job(job.id)
    assert failed.status == JobStatus.FAILED
    assert failed.progress == 40
    assert failed.stage == "transcription"
    assert failed.error_message == "Rate limit exceeded"
    assert failed.failed_at is not None
    video = store.get_video("video-1")
    assert video.status == VideoStatus.FAILED.value
    assert video.error_message == "Rate limit exceeded"


def test_stale_attempt_cannot_resurrect_superseded_job(store):
    register_video(store)
    job = new_job(store)
    store.start_attempt(job.id)
    store.fail_job(job.id, 1, "boom")
    store.reset_job(job.id)
    store.start_attempt(job.id)
    store.fail_job(job.id, 1, "second run failed")
    store.reset_job(job.id)
    current = store.start_attempt(job.id)

    # A late completion from an older attempt object with a different number is ignored
    assert store.complete_job(job.id, current.attempts + 1, hello_world_result()) is None
    assert store.fail_job(job.id, current.attempts + 1, "late") is False
    assert store.get_job(job.id).status == JobStatus.RUNNING


def test_requeue_respects_attempt_budget(store):
    register_video(store)
    job = new_job(store, max_attempts=2)

    store.start_attempt(job.id)
    store.fail_job(job.id, 1, "flaky")
    requeued = store.requeue_job(job.id)
    assert requeued.status == JobStatus.PENDING
    assert requeued.attempts == 1

    store.start_attempt(job.id)
    store.fail_job(job.id, 2, "flaky again")
    assert store.requeue_job(job.id) is None
    assert store.get_job(job.id).status == JobStatus.FAILED


def test_new_attempt_clears_previous_failure_time(store):
    register_video(store)
    job = new_job(store)
    store.start_attempt(job.id)
    store.fail_job(job.id, 1, "Connection reset")
    assert store.requeue_job(job.id).failed_at is not None

    second = store.start_attempt(job.id)
    assert second.failed_at is None
    store.complete_job(job.id, 2, hello_world_result())

    done = store.get_job(job.id)
    assert done.status == JobStatus.COMPLETED
    assert done.failed_at is None
    assert done.error_message is None


def test_reset_job_only_from_failed(store):
    register_video(store)
    job = new_job(store)

    with pytest.raises(InvalidJobStateError):
        store.reset_job(job.id)
    with pytest.raises(JobNotFoundError):
        store.reset_job("missing")

    store.start_attempt(job.id)
    store.record_progress(job.id, 1, 40, "transcription", "x")
    store.fail_job(job.id, 1, "boom")
    reset = store.reset_job(job.id, priority=10)

    assert reset.status == JobStatus.PENDING
    assert reset.attempts == 0
    assert reset.progress == 0
    assert reset.error_message is None
    assert reset.priority == 10


def test_count_and_list_jobs(store):
    register_video(store, "a")
    register_video(store, "b")
    first = new_job(store, "a")
    second = new_job(store, "b")
    store.start_attempt(second.id)

    counts = store.count_jobs_by_status()

    assert counts == {"pending": 1, "running": 1, "completed": 0, "failed": 0}
    assert {j.id for j in store.list_jobs()} == {first.id, second.id}
    assert len(store.list_jobs(limit=1)) == 1


def test_delete_jobs_older_than_only_touches_finished_jobs(store):
    register_video(store, "a")
    register_video(store, "b")
    old = ProcessingJob.new("a")
    old.created_at = utcnow() - timedelta(days=40)
    store.create_job(old)
    store.start_attempt(old.id)
    store.fail_job(old.id, 1, "old failure")
    pending = ProcessingJob.new("b")
    pending.created_at = utcnow() - timedelta(days=40)
    store.create_job(pending)

    assert store.delete_jobs_older_than(30) == 1
    assert store.get_job(old.id) is None
    assert store.get_job(pending.id) is not None


def test_search_is_case_insensitive_and_newest_first(store):
    for video_id in ("a", "b", "c"):
        register_video(store, video_id)
    run_to_completion(store, "a", "The Quick brown fox")
    run_to_completion(store, "b", "nothing to see")
    run_to_completion(store, "c", "a QUICK reply")

    hits = store.search_transcripts("quick")

    assert [t.video_id for t in hits] == ["c", "a"]
    assert store.search_transcripts("100%") == []
    assert len(store.search_transcripts("quick", limit=1)) == 1


def test_transcripts_by_status_and_word_count(store):
    register_video(store, "a")
    register_video(store, "b")
    run_to_completion(store, "a", "one two three")
    run_to_completion(store, "b", "four five")

    assert len(store.find_transcripts_by_status(TranscriptStatus.COMPLETED)) == 2
    assert store.find_transcripts_by_status(TranscriptStatus.FAILED) == []
    assert store.total_word_count() == 5


def test_returned_objects_do_not_alias_stored_state(memory_store):
    register_video(memory_store)
    job = new_job(memory_store)

    job.status = JobStatus.COMPLETED

    assert memory_store.get_job(job.id).status == JobStatus.PENDING
