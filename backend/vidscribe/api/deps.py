"""FastAPI dependencies resolving services from ``app.state.container``."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from vidscribe.bootstrap import Container
from vidscribe.services.notion import NotionSyncService
from vidscribe.services.transcription_service import TranscriptionService


def get_container(request: Request) -> Container:
    return request.app.state.container


def get_service(request: Request) -> TranscriptionService:
    return get_container(request).service


def get_notion(request: Request) -> NotionSyncService:
    notion = get_container(request).notion
    if notion is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Notion API key not configured")
    return notion
