"""Speech-to-text through the OpenAI Whisper HTTP API."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable

import httpx

from vidscribe.errors import ErrorKind, TranscriptionFailed
from vidscribe.utils.ratelimit import TokenBucket
from vidscribe.utils.timeutils import format_timestamp_clock, format_timestamp_srt

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "whisper-1"
MAX_FILE_BYTES = 25 * 1024 * 1024
SUPPORTED_FORMATS = ["mp3", "mp4", "mpeg", "mpga", "m4a", "wav", "webm", "flac", "ogg"]
JSON_FORMATS = ("json", "verbose_json")

AUDIO_MIME_TYPES = {
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".flac": "audio/flac",
    ".m4a": "audio/mp4",
    ".ogg": "audio/ogg",
    ".webm": "audio/webm",
}


@dataclass
class TranscriptionOptions:
    model: str = DEFAULT_MODEL
    language: str | None = None
    prompt: str | None = None
    response_format: str = "verbose_json"
    # Lower temperature gives more consistent results
    temperature: float = 0.2


@dataclass
class TranscriptionSegment:
    start: float
    end: float
    text: str
    avg_logprob: float = 0.0
    id: int | None = None
    no_speech_prob: float | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TranscriptionSegment":
        return cls(
            id=data.get("id"),
            start=float(data.get("start") or 0.0),
            end=float(data.get("end") or 0.0),
            text=(data.get("text") or "").strip(),
            avg_logprob=float(data.get("avg_logprob") or 0.0),
            no_speech_prob=data.get("no_speech_prob"),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TranscriptionResult:
    text: str
    language: str = "unknown"
    duration: float = 0.0
    segments: list[TranscriptionSegment] = field(default_factory=list)
    confidence: float = 0.0


def calculate_confidence(segments: list[TranscriptionSegment]) -> float:
    """Mean of ``exp(avg_logprob)`` over all segments, 0 when there are none.

    A provider returning a positive log-probability would push a term above 1,
    so the mean is clamped into [0, 1].
    """
    if not segments:
        return 0.0
    mean = sum(math.exp(segment.avg_logprob) for segment in segments) / len(segments)
    return max(0.0, min(1.0, mean))


def parse_response(payload: dict[str, Any] | str, response_format: str) -> TranscriptionResult:
    if response_format not in JSON_FORMATS or isinstance(payload, str):
        text = payload if isinstance(payload, str) else payload.get("text", "")
        return TranscriptionResult(text=text.strip())

    segments = [TranscriptionSegment.from_dict(s) for s in payload.get("segments") or []]
    return TranscriptionResult(
        text=(payload.get("text") or "").strip(),
        language=payload.get("language") or "unknown",
        duration=float(payload.get("duration") or 0.0),
        segments=segments,
        confidence=calculate_confidence(segments),
    )


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:300] if response.text else f"HTTP {response.status_code}"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("message") or str(error)
    return str(error or body)[:300]


def classify_status(status_code: int, message: str) -> TranscriptionFailed:
    """Map a provider HTTP error onto the transcription failure taxonomy."""
    if status_code == 429:
        return TranscriptionFailed(ErrorKind.RATE_LIMITED, f"Rate limit exceeded. Please try again later. ({message})")
    if status_code == 413:
        return TranscriptionFailed(ErrorKind.OVERSIZED_INPUT, "File too large for transcription")
    if status_code in (401, 403):
        return TranscriptionFailed(ErrorKind.UNAUTHORIZED, f"Unauthorized: {message}")
    if 400 <= status_code < 500:
        return TranscriptionFailed(ErrorKind.INVALID_REQUEST, f"Invalid request: {message}")
    if status_code >= 500:
        return TranscriptionFailed(ErrorKind.PROVIDER_ERROR, f"Provider error {status_code}: {message}")
    return TranscriptionFailed(ErrorKind.UNKNOWN, f"Unexpected response {status_code}: {message}")


class WhisperTranscriber:
    """Sends audio files to the Whisper API with rate limiting and retries.

    Transient failures (network errors, 5xx, 429) are retried up to
    ``max_attempts`` times with exponential backoff starting at
    ``base_delay``.  Invalid requests, bad credentials and oversized uploads
    propagate immediately.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 60.0,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_file_bytes: int = MAX_FILE_BYTES,
        rate_limiter: TokenBucket | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_file_bytes = max_file_bytes
        # ~3 requests per second, evenly spaced
        self.rate_limiter = rate_limiter or TokenBucket(rate=3, capacity=1)
        self._transport = transport
        self._sleep = sleep
        logger.info("WhisperTranscriber initialized for %s", self.base_url)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=httpx.Timeout(self.timeout_seconds),
            transport=self._transport,
        )

    async def transcribe_audio(
        self,
        audio_path: Path | str,
        options: TranscriptionOptions | None = None,
    ) -> TranscriptionResult:
        """
        Transcribes an audio file.

        Raises:
            TranscriptionFailed: with ``reason`` set to the failure kind.
        """
        options = options or TranscriptionOptions()
        audio_path = Path(audio_path)

        if not audio_path.is_file():
            logger.error("Audio input file for transcription not found: %s", audio_path)
            raise TranscriptionFailed(ErrorKind.RESOURCE, f"Audio input file not found: {audio_path}")

        size = audio_path.stat().st_size
        if size > self.max_file_bytes:
            logger.error("Audio file %s is %d bytes, limit is %d", audio_path, size, self.max_file_bytes)
            raise TranscriptionFailed(
                ErrorKind.OVERSIZED_INPUT,
                f"File size {size} exceeds maximum limit of {self.max_file_bytes} bytes",
            )

        if not self.api_key:
            raise TranscriptionFailed(ErrorKind.UNAUTHORIZED, "OPENAI_API_KEY is not configured")

        logger.info("Starting transcription for: %s (%d bytes)", audio_path, size)
        started = time.monotonic()
        audio_bytes = await asyncio.to_thread(audio_path.read_bytes)
        payload = await self._request_with_retry(audio_path.name, audio_bytes, options)
        result = parse_response(payload, options.response_format)

        logger.info(
            "Transcription completed in %.0fms: %d chars, language=%s, confidence=%.3f, duration=%.1fs",
            (time.monotonic() - started) * 1000,
            len(result.text),
            result.language,
            result.confidence,
            result.duration,
        )
        return result

    async def _request_with_retry(
        self, filename: str, audio_bytes: bytes, options: TranscriptionOptions
    ) -> dict[str, Any] | str:
        for attempt in range(1, self.max_attempts + 1):
            await self.rate_limiter.acquire()
            try:
                return await self._post(filename, audio_bytes, options)
            except TranscriptionFailed as exc:
                if not exc.kind.retryable:
                    raise
                if attempt == self.max_attempts:
                    logger.error("Transcription failed after %d attempts: %s", attempt, exc)
                    raise
                delay = self.base_delay * (2 ** (attempt - 1))
                logger.warning(
                    "Transcription attempt %d/%d failed (%s), retrying in %.1fs",
                    attempt,
                    self.max_attempts,
                    exc.kind.value,
                    delay,
                )
                await self._sleep(delay)
        raise TranscriptionFailed(ErrorKind.UNKNOWN, "Transcription request exhausted retries")

    async def _post(self, filename: str, audio_bytes: bytes, options: TranscriptionOptions) -> dict[str, Any] | str:
        data: dict[str, str] = {
            "model": options.model,
            "response_format": options.response_format,
            "temperature": str(options.temperature),
        }
        if options.language:
            data["language"] = options.language
        if options.prompt:
            data["prompt"] = options.prompt

        mime = AUDIO_MIME_TYPES.get(Path(filename).suffix.lower(), "application/octet-stream")
        try:
            async with self._client() as client:
                response = await client.post(
                    "/audio/transcriptions",
                    data=data,
                    files={"file": (filename, audio_bytes, mime)},
                )
        except httpx.TimeoutException as exc:
            raise TranscriptionFailed(ErrorKind.NETWORK, f"Transcription request timed out: {exc}") from exc
        except httpx.RequestError as exc:
            raise TranscriptionFailed(ErrorKind.NETWORK, f"Network error contacting transcription provider: {exc}") from exc

        if response.status_code != 200:
            message = _error_message(response)
            logger.error("Transcription provider returned %s: %s", response.status_code, message)
            raise classify_status(response.status_code, message)

        if options.response_format in JSON_FORMATS:
            try:
                return response.json()
            except ValueError as exc:
                raise TranscriptionFailed(ErrorKind.PROVIDER_ERROR, "Failed to parse transcription response JSON") from exc
        return response.text

    # ------------------------------------------------------------------
    # Auxiliary helpers
    # ------------------------------------------------------------------

    async def validate_api_key(self) -> bool:
        """Cheap authenticated call to check the key."""
        if not self.api_key:
            return False
        try:
            async with self._client() as client:
                response = await client.get("/models")
        except httpx.RequestError as exc:
            logger.error("API key validation failed: %s", exc)
            return False
        return response.status_code == 200

    def get_model_info(self) -> dict[str, Any]:
        return {
            "model": DEFAULT_MODEL,
            "max_file_size": self.max_file_bytes,
            "supported_formats": SUPPORTED_FORMATS,
        }


def format_for_display(result: TranscriptionResult) -> str:
    """One ``[HH:MM:SS - HH:MM:SS] text`` line per segment."""
    if not result.segments:
        return result.text
    return "\n".join(
        f"[{format_timestamp_clock(s.start)} - {format_timestamp_clock(s.end)}] {s.text}"
        for s in result.segments
    )


def format_as_srt(result: TranscriptionResult) -> str:
    if not result.segments:
        return f"1\n00:00:00,000 --> 00:00:30,000\n{result.text}\n"
    entries = []
    for index, segment in enumerate(result.segments, start=1):
        entries.append(
            f"{index}\n{format_timestamp_srt(segment.start)} --> {format_timestamp_srt(segment.end)}\n{segment.text}\n"
        )
    return "\n".join(entries)
