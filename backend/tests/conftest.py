from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from vidscribe.db.database import create_tables, make_engine, make_session_factory
from vidscribe.errors import PipelineError
from vidscribe.models import Video
from vidscribe.services.audio_extraction import AudioMetadata, ExtractedAudio
from vidscribe.services.sql_store import SqlJobStore
from vidscribe.services.store import InMemoryJobStore
from vidscribe.services.transcription import TranscriptionResult, TranscriptionSegment
from vidscribe.utils.storage import remove_file


class FakeExtractor:
    """Writes a dummy audio file instead of running ffmpeg."""

    def __init__(self, out_dir: Path, size: int = 200 * 1024, duration: float = 30.0, error: PipelineError | None = None):
        self.out_dir = out_dir
        self.size = size
        self.duration = duration
        self.error = error
        self.calls = 0
        self.produced: list[Path] = []
        self.video_paths: list[str] = []

    async def extract_audio(self, video_path, options=None) -> ExtractedAudio:
        self.calls += 1
        self.video_paths.append(str(video_path))
        if self.error is not None:
            raise self.error
        path = self.out_dir / f"audio_{self.calls}.mp3"
        path.write_bytes(b"\0" * self.size)
        self.produced.append(path)
        metadata = AudioMetadata(duration=self.duration, sample_rate=16000, channels=1, bit_rate="64k", format="mp3", size=self.size)
        return ExtractedAudio(path=path, metadata=metadata)

    def cleanup_audio_file(self, audio_path) -> bool:
        return remove_file(Path(audio_path))


class FakeTranscriber:
    """Returns ``result`` once the queued ``errors`` are used up."""

    def __init__(self, result: TranscriptionResult | None = None, errors=(), always: PipelineError | None = None, delay: float = 0.0):
        self.result = result or hello_world_result()
        self.errors = list(errors)
        self.always = always
        self.delay = delay
        self.calls = 0
        self.running = 0
        self.max_running = 0

    async def transcribe_audio(self, audio_path, options=None) -> TranscriptionResult:
        self.calls += 1
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.always is not None:
                raise self.always
            if self.errors:
                raise self.errors.pop(0)
            return self.result
        finally:
            self.running -= 1


def hello_world_result() -> TranscriptionResult:
    return TranscriptionResult(
        text="hello world",
        language="en",
        duration=30.0,
        segments=[TranscriptionSegment(start=0.0, end=30.0, text="hello world", avg_logprob=0.0)],
        confidence=1.0,
    )


def register_video(store, video_id: str = "video-1", path: str = "/uploads/video-1.mp4", name: str = "talk.mp4") -> Video:
    return store.register_video(Video(
        id=video_id,
        filename=Path(path).name,
        original_name=name,
        upload_path=path,
        size_bytes=1024,
    ))


@pytest.fixture
def memory_store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def sql_store() -> SqlJobStore:
    engine = make_engine("sqlite://")
    create_tables(engine)
    yield SqlJobStore(make_session_factory(engine))
    engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def store(request):
    """Every store test runs against both implementations."""
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture
def audio_dir(tmp_path: Path) -> Path:
    path = tmp_path / "audio"
    path.mkdir()
    return path


@pytest.fixture
def extractor(audio_dir: Path) -> FakeExtractor:
    return FakeExtractor(audio_dir)


@pytest.fixture
def transcriber() -> FakeTranscriber:
    return FakeTranscriber()
