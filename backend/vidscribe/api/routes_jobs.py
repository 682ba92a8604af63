from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from vidscribe.api.deps import get_service
from vidscribe.services.transcription_service import JobStatusView, TranscriptionService

router = APIRouter()
logger = logging.getLogger(__name__)


class JobInfo(BaseModel):
    job_id: str
    video_id: Optional[str] = None
    status: str
    progress: int
    stage: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None
    attempts: int
    max_attempts: int
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    queue_state: Optional[str] = None

    @classmethod
    def from_view(cls, view: JobStatusView) -> "JobInfo":
        return cls(**view.to_dict())


@router.get("", response_model=List[JobInfo])
async def list_jobs(
    limit: int = Query(100, ge=1, le=1000),
    service: TranscriptionService = Depends(get_service),
) -> List[JobInfo]:
    """Return processing jobs, newest first."""
    return [JobInfo.from_view(view) for view in service.list_jobs(limit)]


@router.get("/{job_id}", response_model=JobInfo)
async def get_job(job_id: str, service: TranscriptionService = Depends(get_service)) -> JobInfo:
    """Return a single processing job by ID."""
    return JobInfo.from_view(service.get_job_status(job_id))
