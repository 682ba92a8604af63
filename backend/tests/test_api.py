import pytest
from fastapi.testclient import TestClient

from vidscribe.bootstrap import Container
from vidscribe.config import Settings
from vidscribe.main import create_app
from vidscribe.models import ProcessingJob
from vidscribe.services.notion import NotionSyncService
from vidscribe.services.pipeline import TranscriptionPipeline
from vidscribe.services.queue import TranscriptionQueue
from vidscribe.services.transcription import TranscriptionResult
from vidscribe.services.transcription_service import TranscriptionService

from .conftest import register_video
from .test_notion import DATABASE_ID, FakeNotion, make_client


def build_container(store, extractor, transcriber, notion=None) -> Container:
    pipeline = TranscriptionPipeline(extractor, transcriber, store)
    queue = TranscriptionQueue(pipeline, store, stall_check_interval=3600)
    service = TranscriptionService(store, queue, notion)
    return Container(Settings(), store, extractor, pipeline, queue, service, notion)


@pytest.fixture
def container(memory_store, extractor, transcriber) -> Container:
    return build_container(memory_store, extractor, transcriber)


@pytest.fixture
def client(container) -> TestClient:
    # Not used as a context manager: start-up (and the queue workers) never run
    return TestClient(create_app(container))


def enqueue(client, video_id="video-1"):
    return client.post("/api/transcription", json={
        "video_id": video_id,
        "video_path": f"/uploads/{video_id}.mp4",
        "original_name": "talk.mp4",
        "size_bytes": 4096,
    })


def complete(store, job_id, text="hello world"):
    store.start_attempt(job_id)
    store.complete_job(job_id, 1, TranscriptionResult(text=text, language="en", confidence=0.9))


def test_enqueue_and_job_status(client):
    response = enqueue(client)

    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "queued"
    job_id = body["job_id"]

    status = client.get(f"/api/transcription/jobs/{job_id}")
    assert status.status_code == 200
    data = status.json()
    assert data["status"] == "pending"
    assert data["queue_state"] == "waiting"
    assert data["video_id"] == "video-1"

    jobs = client.get("/api/jobs").json()
    assert [j["job_id"] for j in jobs] == [job_id]
    assert client.get(f"/api/jobs/{job_id}").json()["job_id"] == job_id


def test_duplicate_enqueue_conflicts(client):
    enqueue(client)

    response = enqueue(client)

    assert response.status_code == 409
    assert "already" in response.json()["detail"]


def test_invalid_payload_is_rejected(client):
    response = client.post("/api/transcription", json={"video_id": "", "video_path": "/x.mp4"})

    assert response.status_code == 422


def test_unknown_job_and_video(client):
    assert client.get("/api/transcription/jobs/missing").status_code == 404
    assert client.get("/api/jobs/missing").status_code == 404
    assert client.get("/api/transcription/videos/missing").status_code == 404
    assert client.post("/api/transcription/videos/missing/retry").status_code == 404


def test_video_transcription_and_search(client, container):
    job_id = enqueue(client).json()["job_id"]
    complete(container.store, job_id)

    response = client.get("/api/transcription/videos/video-1")

    assert response.status_code == 200
    body = response.json()
    assert body["video"]["status"] == "completed"
    assert body["job"]["status"] == "completed"
    assert body["job"]["progress"] == 100
    assert body["transcript"]["content"] == "hello world"
    assert body["transcript"]["word_count"] == 2

    hits = client.get("/api/transcription/search", params={"q": "HELLO"}).json()
    assert [h["video_id"] for h in hits] == ["video-1"]
    assert client.get("/api/transcription/search", params={"q": ""}).status_code == 422

    stats = client.get("/api/transcription/stats").json()
    assert stats["jobs"]["completed"] == 1
    assert stats["total_words"] == 2


def test_retry_only_failed_jobs(client, container):
    job_id = enqueue(client).json()["job_id"]

    assert client.post("/api/transcription/videos/video-1/retry").status_code == 409

    container.store.start_attempt(job_id)
    container.store.fail_job(job_id, 1, "Invalid OpenAI API key")
    response = client.post("/api/transcription/videos/video-1/retry")

    assert response.status_code == 202
    assert response.json() == {"job_id": job_id, "video_id": "video-1", "status": "requeued"}
    assert client.get("/api/transcription/queue/stats").json()["waiting"] == 1


def test_notion_endpoints_without_key(client):
    assert client.get("/api/notion/test-connection").status_code == 400
    assert client.get("/api/notion/status").json() == {"configured": False, "error": "Notion API key not configured"}
    assert client.get("/api/notion/sync/status/video-1").json()["synced"] is False


def test_notion_sync_through_api(memory_store, extractor, transcriber):
    fake = FakeNotion()
    notion = NotionSyncService(make_client(fake), memory_store)
    container = build_container(memory_store, extractor, transcriber, notion)
    client = TestClient(create_app(container))
    job_id = enqueue(client).json()["job_id"]
    complete(memory_store, job_id)

    first = client.post("/api/notion/sync/transcript/video-1", json={"database_id": DATABASE_ID}).json()
    second = client.post("/api/notion/sync/transcript/video-1", json={"database_id": DATABASE_ID}).json()

    assert first["success"] is True and first["duplicate"] is False
    assert second["duplicate"] is True and second["page_id"] == first["page_id"]

    status = client.get("/api/notion/sync/status/video-1", params={"database_id": DATABASE_ID}).json()
    assert status == {"synced": True, "page_id": first["page_id"]}
    assert client.get("/api/notion/databases/missing").status_code == 404
    assert client.get("/api/notion/databases").json()["databases"][0]["id"] == DATABASE_ID
    # No body and no configured default database
    assert client.post("/api/notion/sync/transcript/video-1").status_code == 400

    batch = client.post("/api/notion/sync/batch", json={"video_ids": ["video-1", "ghost"], "database_id": DATABASE_ID})
    assert batch.json()["summary"] == {"total": 2, "successful": 1, "failed": 1}


def test_notion_api_errors_map_to_bad_gateway(memory_store, extractor, transcriber):
    notion = NotionSyncService(make_client(FakeNotion(), token="revoked"), memory_store)
    client = TestClient(create_app(build_container(memory_store, extractor, transcriber, notion)))

    response = client.post("/api/notion/databases", json={"parent_page_id": "page-1"})

    assert response.status_code == 502
    assert response.json()["error_kind"] == "unauthorized"


def test_job_created_outside_queue_reports_store_state(client, container):
    register_video(container.store)
    job = container.store.create_job(ProcessingJob.new("video-1"))

    data = client.get(f"/api/transcription/jobs/{job.id}").json()

    assert data["status"] == "pending"
    assert data["queue_state"] == "waiting"
