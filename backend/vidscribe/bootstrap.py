"""Wires the services together from :mod:`vidscribe.config`.

This is the one place that reads ``settings``; everything below it receives
plain constructor arguments.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from vidscribe.config import Settings, settings as default_settings
from vidscribe.db.database import create_tables, make_engine, make_session_factory
from vidscribe.services.audio_extraction import AudioExtractionOptions, AudioExtractor
from vidscribe.services.notion import NotionClient, NotionSyncService
from vidscribe.services.pipeline import TranscriptionPipeline
from vidscribe.services.queue import TranscriptionQueue
from vidscribe.services.sql_store import SqlJobStore
from vidscribe.services.store import InMemoryJobStore, JobStore
from vidscribe.services.transcription import TranscriptionOptions, WhisperTranscriber
from vidscribe.services.transcription_service import TranscriptionService
from vidscribe.utils.ratelimit import TokenBucket

logger = logging.getLogger(__name__)


@dataclass
class Container:
    settings: Settings
    store: JobStore
    extractor: AudioExtractor
    pipeline: TranscriptionPipeline
    queue: Any
    service: TranscriptionService
    notion: Optional[NotionSyncService] = None


def build_store(config: Settings) -> JobStore:
    if config.DATABASE_URL == "memory":
        logger.warning("Using the in-memory job store; state is lost on restart")
        return InMemoryJobStore()
    engine = make_engine(config.DATABASE_URL, echo=config.DB_ECHO)
    create_tables(engine)
    return SqlJobStore(make_session_factory(engine))


def build_extractor(config: Settings) -> AudioExtractor:
    return AudioExtractor(
        temp_dir=Path(config.TEMP_AUDIO_DIR),
        ffmpeg_path=config.FFMPEG_PATH,
        ffprobe_path=config.FFPROBE_PATH,
        timeout_seconds=config.FFMPEG_TIMEOUT_SECONDS,
        max_output_bytes=config.MAX_AUDIO_FILE_BYTES,
    )


def build_pipeline(config: Settings, store: JobStore, extractor: AudioExtractor | None = None) -> TranscriptionPipeline:
    transcriber = WhisperTranscriber(
        api_key=config.OPENAI_API_KEY,
        base_url=config.OPENAI_BASE_URL,
        timeout_seconds=config.TRANSCRIPTION_TIMEOUT_SECONDS,
        max_attempts=config.TRANSCRIPTION_MAX_RETRIES,
        base_delay=config.TRANSCRIPTION_RETRY_BASE_DELAY,
        max_file_bytes=config.MAX_AUDIO_FILE_BYTES,
        rate_limiter=TokenBucket(rate=config.TRANSCRIPTION_REQUESTS_PER_SECOND, capacity=1),
    )
    return TranscriptionPipeline(
        extractor=extractor or build_extractor(config),
        transcriber=transcriber,
        store=store,
        extraction_options=AudioExtractionOptions(),
        transcription_options=TranscriptionOptions(model=config.WHISPER_MODEL),
    )


def build_notion(config: Settings, store: JobStore) -> Optional[NotionSyncService]:
    if not config.notion_enabled:
        logger.warning("Notion API key not configured - Notion integration disabled")
        return None
    client = NotionClient(
        api_key=config.NOTION_API_KEY,
        base_url=config.NOTION_BASE_URL,
        version=config.NOTION_VERSION,
        rate_limiter=TokenBucket(rate=config.NOTION_REQUESTS_PER_SECOND, capacity=1),
    )
    return NotionSyncService(client, store)


def build_queue(config: Settings, pipeline: TranscriptionPipeline, store: JobStore):
    if config.QUEUE_BACKEND == "celery":
        # Imported here: the worker module builds its own container through this one
        from vidscribe.workers.tasks import CeleryTranscriptionQueue

        return CeleryTranscriptionQueue(store, max_attempts=config.JOB_MAX_ATTEMPTS)
    return TranscriptionQueue(
        pipeline,
        store,
        concurrency=config.MAX_CONCURRENT_JOBS,
        max_attempts=config.JOB_MAX_ATTEMPTS,
        retry_base_delay=config.JOB_RETRY_BASE_DELAY,
        stalled_after=config.STALLED_JOB_SECONDS,
    )


def build_container(config: Settings | None = None) -> Container:
    config = config or default_settings
    store = build_store(config)
    extractor = build_extractor(config)
    pipeline = build_pipeline(config, store, extractor)
    queue = build_queue(config, pipeline, store)
    notion = build_notion(config, store)
    service = TranscriptionService(store, queue, notion, default_database_id=config.NOTION_DATABASE_ID)
    logger.info("Services wired (queue backend: %s)", config.QUEUE_BACKEND)
    return Container(config, store, extractor, pipeline, queue, service, notion)


_container: Optional[Container] = None


def get_container() -> Container:
    """Process-wide container, built on first use."""
    global _container
    if _container is None:
        _container = build_container()
    return _container
