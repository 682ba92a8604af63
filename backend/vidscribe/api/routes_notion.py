"""Notion workspace endpoints (connection test, databases, sync)."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from vidscribe.api.deps import get_container, get_notion, get_service
from vidscribe.services.notion import NotionSyncService
from vidscribe.services.transcription_service import TranscriptionService

router = APIRouter()
logger = logging.getLogger(__name__)


class CreateDatabaseRequest(BaseModel):
    parent_page_id: str = Field(..., min_length=1)
    title: str = "Video Transcripts"


class SyncRequest(BaseModel):
    database_id: Optional[str] = None


class BatchSyncRequest(BaseModel):
    video_ids: List[str] = Field(..., min_length=1)
    database_id: Optional[str] = None


def _database_id(request: Request, database_id: Optional[str]) -> str:
    database_id = database_id or get_container(request).settings.NOTION_DATABASE_ID
    if not database_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Database ID is required")
    return database_id


@router.get("/test-connection")
async def test_connection(notion: NotionSyncService = Depends(get_notion)) -> Dict[str, Any]:
    return await notion.test_connection()


@router.get("/databases")
async def list_databases(
    search: Optional[str] = None,
    notion: NotionSyncService = Depends(get_notion),
) -> Dict[str, Any]:
    return {"success": True, "databases": await notion.search_databases(search)}


@router.get("/databases/{database_id}")
async def get_database(database_id: str, notion: NotionSyncService = Depends(get_notion)) -> Dict[str, Any]:
    database = await notion.get_database(database_id)
    if database is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Database not found or not accessible")
    return {"success": True, "database": database}


@router.post("/databases")
async def create_database(
    payload: CreateDatabaseRequest,
    notion: NotionSyncService = Depends(get_notion),
) -> Dict[str, Any]:
    database = await notion.create_transcript_database(payload.parent_page_id, payload.title)
    return {"success": True, "database": database}


@router.post("/sync/transcript/{video_id}")
async def sync_transcript(
    video_id: str,
    request: Request,
    payload: Optional[SyncRequest] = None,
    service: TranscriptionService = Depends(get_service),
    _notion: NotionSyncService = Depends(get_notion),
) -> Dict[str, Any]:
    result = await service.sync_transcript_to_external(video_id, _database_id(request, payload.database_id if payload else None))
    return result.to_dict()


@router.post("/sync/batch")
async def sync_batch(
    request: Request,
    payload: BatchSyncRequest,
    notion: NotionSyncService = Depends(get_notion),
) -> Dict[str, Any]:
    batch = await notion.sync_batch(payload.video_ids, _database_id(request, payload.database_id if payload else None))
    return {"success": True, **batch.to_dict()}


@router.get("/sync/status/{video_id}")
async def sync_status(video_id: str, request: Request, database_id: Optional[str] = None) -> Dict[str, Any]:
    notion = get_container(request).notion
    if notion is None:
        return {"synced": False, "reason": "Notion not configured"}
    database_id = database_id or get_container(request).settings.NOTION_DATABASE_ID
    if not database_id:
        return {"synced": False, "reason": "Database ID required"}
    return await notion.sync_status(video_id, database_id)


@router.get("/status")
async def notion_status(request: Request) -> Dict[str, Any]:
    notion = get_container(request).notion
    if notion is None:
        return {"configured": False, "error": "Notion API key not configured"}
    return {"configured": True, "rateLimiter": notion.rate_limiter_status()}
