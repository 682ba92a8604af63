"""Publishing transcripts to a Notion database.

:class:`NotionClient` is a thin REST wrapper over ``httpx.AsyncClient``; every
call first takes a token from a shared :class:`~vidscribe.utils.ratelimit.TokenBucket`
(Notion allows about 3 requests per second per integration).

:class:`NotionSyncService` turns a stored transcript into a database page.  The
target database schema is read first and only properties that exist with the
expected type are written, so a user-made database missing e.g. "Duration"
still syncs.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional

import httpx

from vidscribe.errors import ErrorKind
from vidscribe.services.store import JobStore
from vidscribe.utils.ratelimit import TokenBucket
from vidscribe.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

# Notion rejects rich text longer than 2000 characters; keep a margin
MAX_BLOCK_CHARS = 1900
# Maximum children per create / append request
MAX_BLOCKS_PER_REQUEST = 100

VIDEO_ID_PROPERTY = "Video ID"
STATUS_SYNCED = "Synced"
STATUS_UPDATED = "Updated"

LANGUAGE_NAMES = {
    "en": "English",
    "es": "Spanish",
    "fr": "French",
    "de": "German",
    "it": "Italian",
    "pt": "Portuguese",
    "nl": "Dutch",
    "ja": "Japanese",
    "zh": "Chinese",
}

TRANSCRIPT_DATABASE_SCHEMA: dict[str, Any] = {
    "Title": {"title": {}},
    "Video File": {"rich_text": {}},
    "Duration": {"number": {"format": "number"}},
    "Confidence": {"number": {"format": "percent"}},
    "Language": {
        "select": {
            "options": [
                {"name": "English", "color": "blue"},
                {"name": "Spanish", "color": "green"},
                {"name": "French", "color": "yellow"},
                {"name": "German", "color": "orange"},
                {"name": "Other", "color": "gray"},
            ]
        }
    },
    "Upload Date": {"date": {}},
    "Transcription Date": {"date": {}},
    VIDEO_ID_PROPERTY: {"rich_text": {}},
    "Status": {
        "select": {
            "options": [
                {"name": STATUS_SYNCED, "color": "green"},
                {"name": STATUS_UPDATED, "color": "blue"},
                {"name": "Error", "color": "red"},
            ]
        }
    },
}


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

_CODE_KINDS = {
    "object_not_found": ErrorKind.NOT_FOUND,
    "unauthorized": ErrorKind.UNAUTHORIZED,
    "restricted_resource": ErrorKind.UNAUTHORIZED,
    "rate_limited": ErrorKind.RATE_LIMITED,
    "validation_error": ErrorKind.VALIDATION,
    "invalid_json": ErrorKind.VALIDATION,
    "invalid_request": ErrorKind.VALIDATION,
    "invalid_request_url": ErrorKind.VALIDATION,
}

_STATUS_KINDS = {
    400: ErrorKind.VALIDATION,
    401: ErrorKind.UNAUTHORIZED,
    403: ErrorKind.UNAUTHORIZED,
    404: ErrorKind.NOT_FOUND,
    429: ErrorKind.RATE_LIMITED,
}


class NotionAPIError(Exception):
    """Error response (or transport failure, ``status == 0``) from the Notion API."""

    def __init__(self, status: int, code: str, message: str) -> None:
        super().__init__(f"{status} {code}: {message}")
        self.status = status
        self.code = code
        self.message = message

    @classmethod
    def from_response(cls, response: httpx.Response) -> "NotionAPIError":
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        return cls(response.status_code, body.get("code") or "unknown", body.get("message") or response.text[:300])

    @property
    def kind(self) -> ErrorKind:
        return _CODE_KINDS.get(self.code) or _STATUS_KINDS.get(self.status, ErrorKind.UNKNOWN)


def describe_error(exc: NotionAPIError) -> str:
    """Actionable message for a Notion failure."""
    kind = exc.kind
    if kind == ErrorKind.NOT_FOUND:
        return (
            "Database or page not found. Make sure it exists and is shared with the integration "
            "(open it in Notion, then Share > Add connections)."
        )
    if kind == ErrorKind.UNAUTHORIZED:
        return (
            "Invalid Notion API key or insufficient permissions. Check NOTION_API_KEY and that the "
            "database is shared with the integration."
        )
    if kind == ErrorKind.RATE_LIMITED:
        return "Too many requests. Please try again in a moment."
    if exc.code == "invalid_json":
        return "Invalid data format sent to Notion."
    if kind == ErrorKind.VALIDATION:
        return f"Validation error: {exc.message}"
    return exc.message or "Unknown Notion API error occurred"


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class NotionClient:
    """Minimal async client for the endpoints the sync needs."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.notion.com/v1",
        version: str = "2022-06-28",
        rate_limiter: TokenBucket | None = None,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.version = version
        self.rate_limiter = rate_limiter or TokenBucket(rate=3, capacity=1)
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Notion-Version": self.version,
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(self.timeout_seconds),
            transport=self._transport,
        )

    async def request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        await self.rate_limiter.acquire()
        logger.debug("Notion %s %s", method, path)
        try:
            async with self._client() as client:
                response = await client.request(method, path, json=json, params=params)
        except httpx.RequestError as exc:
            raise NotionAPIError(0, "network_error", f"Could not reach Notion: {exc}") from exc

        if response.status_code >= 400:
            error = NotionAPIError.from_response(response)
            logger.error("Notion %s %s failed: %s", method, path, error)
            raise error
        return response.json()

    async def users_me(self) -> dict[str, Any]:
        return await self.request("GET", "/users/me")

    async def search(self, query: str | None = None, object_type: str = "database", page_size: int = 100) -> list[dict]:
        body: dict[str, Any] = {
            "filter": {"value": object_type, "property": "object"},
            "page_size": page_size,
        }
        if query:
            body["query"] = query
        response = await self.request("POST", "/search", json=body)
        return [r for r in response.get("results", []) if r.get("object") == object_type]

    async def retrieve_database(self, database_id: str) -> dict[str, Any]:
        return await self.request("GET", f"/databases/{database_id}")

    async def create_database(self, parent_page_id: str, title: str, properties: dict[str, Any]) -> dict[str, Any]:
        return await self.request("POST", "/databases", json={
            "parent": {"type": "page_id", "page_id": parent_page_id},
            "title": [{"type": "text", "text": {"content": title}}],
            "properties": properties,
        })

    async def query_database(
        self, database_id: str, filter: dict[str, Any] | None = None, page_size: int = 100
    ) -> list[dict]:
        body: dict[str, Any] = {"page_size": page_size}
        if filter:
            body["filter"] = filter
        response = await self.request("POST", f"/databases/{database_id}/query", json=body)
        return response.get("results", [])

    async def create_page(self, database_id: str, properties: dict[str, Any], children: list[dict]) -> dict[str, Any]:
        first, rest = children[:MAX_BLOCKS_PER_REQUEST], children[MAX_BLOCKS_PER_REQUEST:]
        page = await self.request("POST", "/pages", json={
            "parent": {"database_id": database_id},
            "properties": properties,
            "children": first,
        })
        if rest:
            await self.append_block_children(page["id"], rest)
        return page

    async def update_page(self, page_id: str, properties: dict[str, Any]) -> dict[str, Any]:
        return await self.request("PATCH", f"/pages/{page_id}", json={"properties": properties})

    async def list_block_children(self, block_id: str) -> list[dict]:
        blocks: list[dict] = []
        cursor: Optional[str] = None
        while True:
            params: dict[str, Any] = {"page_size": 100}
            if cursor:
                params["start_cursor"] = cursor
            response = await self.request("GET", f"/blocks/{block_id}/children", params=params)
            blocks.extend(response.get("results", []))
            if not response.get("has_more"):
                return blocks
            cursor = response.get("next_cursor")

    async def delete_block(self, block_id: str) -> dict[str, Any]:
        return await self.request("DELETE", f"/blocks/{block_id}")

    async def append_block_children(self, block_id: str, children: list[dict]) -> None:
        for start in range(0, len(children), MAX_BLOCKS_PER_REQUEST):
            await self.request(
                "PATCH",
                f"/blocks/{block_id}/children",
                json={"children": children[start:start + MAX_BLOCKS_PER_REQUEST]},
            )


# ---------------------------------------------------------------------------
# Page building
# ---------------------------------------------------------------------------


def chunk_text(text: str, max_length: int = MAX_BLOCK_CHARS) -> list[str]:
    """Split ``text`` into pieces of at most ``max_length`` characters.

    Splits happen at whitespace; a single word longer than ``max_length`` is
    cut into ``max_length`` slices.  Blank input gives no chunks.
    """
    if not text or not text.strip():
        return []
    if len(text) <= max_length:
        return [text]

    chunks: list[str] = []
    current = ""
    for word in text.split():
        while len(word) > max_length:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(word[:max_length])
            word = word[max_length:]
        candidate = f"{current} {word}" if current else word
        if len(candidate) > max_length:
            chunks.append(current)
            current = word
        else:
            current = candidate
    if current:
        chunks.append(current)
    return chunks


def language_name(code: str | None) -> Optional[str]:
    if not code or code == "unknown":
        return None
    return LANGUAGE_NAMES.get(code.lower(), code[:1].upper() + code[1:].lower())


@dataclass
class TranscriptPageData:
    title: str
    content: str
    video_id: str
    video_filename: str
    upload_date: datetime
    transcription_date: datetime
    duration: Optional[float] = None
    confidence: Optional[float] = None
    language: Optional[str] = None

    @classmethod
    def from_records(cls, video, transcript) -> "TranscriptPageData":
        return cls(
            title=f"Transcript: {video.original_name}",
            content=transcript.content,
            video_id=video.id,
            video_filename=video.original_name,
            upload_date=video.created_at or utcnow(),
            transcription_date=transcript.updated_at or transcript.created_at or utcnow(),
            duration=video.duration or transcript.duration,
            confidence=transcript.confidence,
            language=transcript.language,
        )


def _text(content: str) -> list[dict]:
    return [{"type": "text", "text": {"content": content}}]


def _block(block_type: str, content: str) -> dict:
    return {"object": "block", "type": block_type, block_type: {"rich_text": _text(content)}}


def build_page_blocks(data: TranscriptPageData) -> list[dict]:
    details = [
        f"File: {data.video_filename}",
        f"Video ID: {data.video_id}",
        f"Upload Date: {data.upload_date.date().isoformat()}",
        f"Transcription Date: {data.transcription_date.date().isoformat()}",
    ]
    if data.duration:
        details.append(f"Duration: {round(data.duration)} seconds")
    if data.confidence is not None:
        details.append(f"Confidence: {data.confidence * 100:.1f}%")
    name = language_name(data.language)
    if name:
        details.append(f"Language: {name}")

    blocks = [
        _block("heading_2", "Video Information"),
        _block("paragraph", "\n".join(details)[:MAX_BLOCK_CHARS]),
        _block("heading_2", "Transcript"),
    ]
    blocks.extend(_block("paragraph", chunk) for chunk in chunk_text(data.content))
    return blocks


def _has_property(schema: dict[str, Any], name: str, prop_type: str) -> bool:
    prop = schema.get(name)
    return isinstance(prop, dict) and prop.get("type") == prop_type


def build_properties(schema: dict[str, Any], data: TranscriptPageData, status: str) -> dict[str, Any]:
    """Page properties for ``data`` restricted to what ``schema`` offers."""
    properties: dict[str, Any] = {}

    title_name = next((name for name, prop in schema.items() if prop.get("type") == "title"), None)
    if title_name:
        properties[title_name] = {"title": _text(data.title[:MAX_BLOCK_CHARS])}

    if _has_property(schema, "Video File", "rich_text"):
        properties["Video File"] = {"rich_text": _text(data.video_filename)}
    if data.duration and _has_property(schema, "Duration", "number"):
        properties["Duration"] = {"number": round(data.duration)}
    if data.confidence is not None and _has_property(schema, "Confidence", "number"):
        # The column uses Notion's percent format, which expects a 0..1 fraction
        properties["Confidence"] = {"number": round(data.confidence, 4)}
    name = language_name(data.language)
    if name and _has_property(schema, "Language", "select"):
        properties["Language"] = {"select": {"name": name}}
    if _has_property(schema, "Upload Date", "date"):
        properties["Upload Date"] = {"date": {"start": data.upload_date.date().isoformat()}}
    if _has_property(schema, "Transcription Date", "date"):
        properties["Transcription Date"] = {"date": {"start": data.transcription_date.date().isoformat()}}
    if _has_property(schema, VIDEO_ID_PROPERTY, "rich_text"):
        properties[VIDEO_ID_PROPERTY] = {"rich_text": _text(data.video_id)}
    if _has_property(schema, "Status", "select"):
        properties["Status"] = {"select": {"name": status}}
    return properties


def database_title(database: dict[str, Any]) -> str:
    title = database.get("title") or []
    if title:
        first = title[0]
        return first.get("plain_text") or (first.get("text") or {}).get("content") or "Untitled Database"
    return "Untitled Database"


def summarize_database(database: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": database.get("id"),
        "title": database_title(database),
        "url": database.get("url"),
        "properties": database.get("properties") or {},
    }


# ---------------------------------------------------------------------------
# Sync service
# ---------------------------------------------------------------------------


@dataclass
class SyncResult:
    success: bool
    page_id: Optional[str] = None
    page_url: Optional[str] = None
    duplicate: bool = False
    error: Optional[str] = None
    error_kind: Optional[str] = None

    @classmethod
    def failure(cls, kind: ErrorKind, error: str) -> "SyncResult":
        return cls(success=False, error=error, error_kind=kind.value)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class BatchSyncResult:
    results: list[dict[str, Any]] = field(default_factory=list)

    @property
    def summary(self) -> dict[str, int]:
        successful = sum(1 for r in self.results if r["success"])
        return {"total": len(self.results), "successful": successful, "failed": len(self.results) - successful}

    def to_dict(self) -> dict[str, Any]:
        return {"summary": self.summary, "results": self.results}


class NotionSyncService:
    """Creates or refreshes one Notion page per transcribed video."""

    def __init__(self, client: NotionClient, store: JobStore) -> None:
        self.client = client
        self.store = store

    async def sync(self, video_id: str, database_id: str) -> SyncResult:
        video = self.store.get_video(video_id)
        if video is None:
            return SyncResult.failure(ErrorKind.NOT_FOUND, "Video not found")
        transcript = self.store.get_transcript(video_id)
        if transcript is None or not transcript.content:
            return SyncResult.failure(ErrorKind.NOT_FOUND, "Transcript not found")

        data = TranscriptPageData.from_records(video, transcript)
        try:
            return await self.sync_page(database_id, data)
        except NotionAPIError as exc:
            message = describe_error(exc)
            logger.error("Failed to sync transcript for video %s: %s", video_id, message)
            return SyncResult.failure(exc.kind, message)

    async def sync_page(self, database_id: str, data: TranscriptPageData) -> SyncResult:
        """Create the page, or refresh it in place when one already carries the video id.

        Raises:
            NotionAPIError
        """
        database = await self.client.retrieve_database(database_id)
        schema = database.get("properties") or {}
        missing = [name for name in TRANSCRIPT_DATABASE_SCHEMA if name != "Title" and name not in schema]
        if missing:
            logger.info("Database %s lacks properties %s; they will be skipped", database_id, ", ".join(missing))

        existing = None
        if _has_property(schema, VIDEO_ID_PROPERTY, "rich_text"):
            existing = await self._find_page(database_id, data.video_id)

        blocks = build_page_blocks(data)
        if existing is not None:
            page_id = existing["id"]
            logger.info("Transcript for video %s already in Notion (page %s), updating", data.video_id, page_id)
            await self.client.update_page(page_id, build_properties(schema, data, STATUS_UPDATED))
            for block in await self.client.list_block_children(page_id):
                await self.client.delete_block(block["id"])
            await self.client.append_block_children(page_id, blocks)
            return SyncResult(success=True, page_id=page_id, page_url=existing.get("url"), duplicate=True)

        page = await self.client.create_page(database_id, build_properties(schema, data, STATUS_SYNCED), blocks)
        logger.info("Created Notion page %s for video %s", page.get("id"), data.video_id)
        return SyncResult(success=True, page_id=page.get("id"), page_url=page.get("url"), duplicate=False)

    async def _find_page(self, database_id: str, video_id: str) -> Optional[dict]:
        pages = await self.client.query_database(
            database_id,
            filter={"property": VIDEO_ID_PROPERTY, "rich_text": {"equals": video_id}},
            page_size=1,
        )
        return pages[0] if pages else None

    async def sync_batch(self, video_ids: list[str], database_id: str) -> BatchSyncResult:
        """Sync several videos one after another (the rate limit is shared anyway)."""
        batch = BatchSyncResult()
        for video_id in video_ids:
            result = await self.sync(video_id, database_id)
            batch.results.append({"video_id": video_id, **result.to_dict()})
        logger.info("Batch sync finished: %s", batch.summary)
        return batch

    async def sync_status(self, video_id: str, database_id: str) -> dict[str, Any]:
        try:
            page = await self._find_page(database_id, video_id)
        except NotionAPIError as exc:
            return {"synced": False, "error": describe_error(exc)}
        return {"synced": page is not None, "page_id": page["id"] if page else None}

    async def test_connection(self) -> dict[str, Any]:
        try:
            me = await self.client.users_me()
        except NotionAPIError as exc:
            message = describe_error(exc)
            logger.error("Notion connection test failed: %s", message)
            return {"success": False, "error": message}
        logger.info("Notion connection test successful (user %s)", me.get("name") or me.get("id"))
        return {"success": True, "user": me.get("name")}

    async def search_databases(self, query: str | None = None) -> list[dict[str, Any]]:
        databases = [summarize_database(db) for db in await self.client.search(query)]
        logger.info("Found %d accessible database(s)", len(databases))
        return databases

    async def get_database(self, database_id: str) -> Optional[dict[str, Any]]:
        try:
            return summarize_database(await self.client.retrieve_database(database_id))
        except NotionAPIError as exc:
            if exc.kind == ErrorKind.NOT_FOUND:
                return None
            raise

    async def create_transcript_database(self, parent_page_id: str, title: str = "Video Transcripts") -> dict[str, Any]:
        database = await self.client.create_database(parent_page_id, title, TRANSCRIPT_DATABASE_SCHEMA)
        logger.info("Created transcript database %s", database.get("id"))
        return summarize_database(database)

    def rate_limiter_status(self) -> dict[str, float]:
        return {"tokensRemaining": self.client.rate_limiter.tokens_remaining}
