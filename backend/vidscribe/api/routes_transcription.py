"""Endpoints for queueing transcriptions and reading their results.

* POST /transcription                        - queue a stored video
* GET  /transcription/jobs/{job_id}          - job status
* GET  /transcription/videos/{video_id}      - video, latest job & transcript
* POST /transcription/videos/{video_id}/retry
* GET  /transcription/queue/stats
* GET  /transcription/search?q=...
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from vidscribe.api.deps import get_service
from vidscribe.api.routes_jobs import JobInfo
from vidscribe.models import Transcript, Video
from vidscribe.services.transcription_service import JobStatusView, TranscriptionService

router = APIRouter()
logger = logging.getLogger(__name__)


class EnqueueRequest(BaseModel):
    video_id: str = Field(..., min_length=1)
    video_path: str = Field(..., min_length=1)
    original_name: str = Field(..., min_length=1)
    size_bytes: int = Field(0, ge=0)
    mime_type: Optional[str] = None


class EnqueueResponse(BaseModel):
    job_id: str
    video_id: str
    status: str = "queued"


class VideoInfo(BaseModel):
    id: str
    original_name: str
    filename: str
    size_bytes: int
    duration: Optional[float] = None
    status: str
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, video: Video) -> "VideoInfo":
        return cls(
            id=video.id,
            original_name=video.original_name,
            filename=video.filename,
            size_bytes=video.size_bytes or 0,
            duration=video.duration,
            status=video.status,
            error_message=video.error_message,
            created_at=video.created_at,
        )


class TranscriptInfo(BaseModel):
    id: str
    video_id: str
    content: str
    language: Optional[str] = None
    confidence: float
    word_count: int
    duration: Optional[float] = None
    status: str
    segments: Optional[List[Dict[str, Any]]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, transcript: Transcript, include_segments: bool = True) -> "TranscriptInfo":
        return cls(
            id=transcript.id,
            video_id=transcript.video_id,
            content=transcript.content,
            language=transcript.language,
            confidence=transcript.confidence,
            word_count=transcript.word_count,
            duration=transcript.duration,
            status=transcript.status,
            segments=transcript.segments if include_segments else None,
            created_at=transcript.created_at,
            updated_at=transcript.updated_at,
        )


class VideoTranscriptionResponse(BaseModel):
    video: VideoInfo
    job: Optional[JobInfo] = None
    transcript: Optional[TranscriptInfo] = None


@router.post("", response_model=EnqueueResponse, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_transcription(
    payload: EnqueueRequest,
    service: TranscriptionService = Depends(get_service),
) -> EnqueueResponse:
    job_id = service.enqueue_transcription(
        payload.video_id,
        payload.video_path,
        payload.original_name,
        size_bytes=payload.size_bytes,
        mime_type=payload.mime_type,
    )
    return EnqueueResponse(job_id=job_id, video_id=payload.video_id)


@router.get("/jobs/{job_id}", response_model=JobInfo)
async def get_job_status(job_id: str, service: TranscriptionService = Depends(get_service)) -> JobInfo:
    return JobInfo.from_view(service.get_job_status(job_id))


@router.get("/videos/{video_id}", response_model=VideoTranscriptionResponse)
async def get_video_transcription(
    video_id: str,
    service: TranscriptionService = Depends(get_service),
) -> VideoTranscriptionResponse:
    result = service.get_transcription_for_video(video_id)
    return VideoTranscriptionResponse(
        video=VideoInfo.from_model(result.video),
        job=JobInfo.from_view(JobStatusView.from_job(result.job)) if result.job else None,
        transcript=TranscriptInfo.from_model(result.transcript) if result.transcript else None,
    )


@router.post("/videos/{video_id}/retry", response_model=EnqueueResponse, status_code=status.HTTP_202_ACCEPTED)
async def retry_transcription(video_id: str, service: TranscriptionService = Depends(get_service)) -> EnqueueResponse:
    job_id = service.retry_transcription(video_id)
    return EnqueueResponse(job_id=job_id, video_id=video_id, status="requeued")


@router.get("/queue/stats")
async def queue_stats(service: TranscriptionService = Depends(get_service)) -> Dict[str, int]:
    return service.get_queue_stats()


@router.get("/stats")
async def statistics(service: TranscriptionService = Depends(get_service)) -> Dict[str, Any]:
    return service.get_statistics()


@router.get("/search", response_model=List[TranscriptInfo])
async def search_transcripts(
    q: str = Query(..., min_length=1),
    limit: int = Query(50, ge=1, le=200),
    service: TranscriptionService = Depends(get_service),
) -> List[TranscriptInfo]:
    return [TranscriptInfo.from_model(t, include_segments=False) for t in service.search_transcripts(q, limit)]
