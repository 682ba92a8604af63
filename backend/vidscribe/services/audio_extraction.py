"""Audio extraction from uploaded videos using FFmpeg.

The defaults produce a mono 16 kHz 64 kbit/s MP3: Whisper gains nothing from a
richer signal and small files upload faster and stay under the provider's
25 MB request ceiling.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import asdict, dataclass
from pathlib import Path

import ffmpeg

from vidscribe.errors import AudioExtractionError, ErrorKind
from vidscribe.utils.storage import cleanup_old_files, ensure_dir_exists, remove_file, unique_output_path

logger = logging.getLogger(__name__)

AUDIO_CODECS = {
    "mp3": "libmp3lame",
    "wav": "pcm_s16le",
    "flac": "flac",
}

# Keep at most this much of ffmpeg's stderr on the job record
MAX_STDERR_CHARS = 2000


@dataclass
class AudioExtractionOptions:
    output_format: str = "mp3"
    sample_rate: int = 16000
    channels: int = 1
    bit_rate: str = "64k"
    max_duration: float | None = None

    @property
    def codec(self) -> str:
        return AUDIO_CODECS.get(self.output_format, AUDIO_CODECS["mp3"])


@dataclass
class AudioMetadata:
    duration: float
    sample_rate: int
    channels: int
    bit_rate: str
    format: str
    size: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ExtractedAudio:
    path: Path
    metadata: AudioMetadata
    exceeds_size_limit: bool = False


class AudioExtractor:
    """Converts a video into a speech-optimised audio file in a scratch directory.

    The produced file belongs to the caller: this class never deletes it on
    success, use :meth:`cleanup_audio_file` once it is no longer needed.
    """

    def __init__(
        self,
        temp_dir: Path,
        ffmpeg_path: str = "ffmpeg",
        ffprobe_path: str = "ffprobe",
        timeout_seconds: float = 600,
        max_output_bytes: int = 25 * 1024 * 1024,
    ) -> None:
        self.temp_dir = Path(temp_dir)
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.timeout_seconds = timeout_seconds
        self.max_output_bytes = max_output_bytes

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    async def extract_audio(
        self,
        video_path: Path | str,
        options: AudioExtractionOptions | None = None,
    ) -> ExtractedAudio:
        """
        Extracts the audio track of ``video_path`` into the scratch directory.

        Raises:
            AudioExtractionError: RESOURCE kind when the input is missing or
                unreadable, ffmpeg is missing, exits non-zero or times out.
        """
        options = options or AudioExtractionOptions()
        video_path = Path(video_path)

        if not video_path.is_file() or not os.access(video_path, os.R_OK):
            logger.error("Video file not found or unreadable: %s", video_path)
            raise AudioExtractionError(ErrorKind.RESOURCE, f"Video file not found or unreadable: {video_path}")

        ensure_dir_exists(self.temp_dir)
        audio_path = unique_output_path(self.temp_dir, video_path, options.output_format)
        cmd = self.build_command(video_path, audio_path, options)

        logger.info("Starting audio extraction: %s -> %s", video_path, audio_path)
        started = time.monotonic()
        await self._run_ffmpeg(cmd, audio_path)

        metadata = await self.get_audio_metadata(audio_path)
        oversized = metadata.size > self.max_output_bytes
        if oversized:
            logger.warning(
                "Extracted audio %s is %d bytes, above the %d byte transcription limit",
                audio_path,
                metadata.size,
                self.max_output_bytes,
            )

        logger.info(
            "Audio extraction completed in %.0fms: %s (%.1fs, %d bytes)",
            (time.monotonic() - started) * 1000,
            audio_path,
            metadata.duration,
            metadata.size,
        )
        return ExtractedAudio(path=audio_path, metadata=metadata, exceeds_size_limit=oversized)

    def build_command(self, input_path: Path, output_path: Path, options: AudioExtractionOptions) -> list[str]:
        """Compile the ffmpeg argument list (executable first)."""
        output_kwargs = {
            "vn": None,  # no video
            "acodec": options.codec,
            "ar": options.sample_rate,
            "ac": options.channels,
            "audio_bitrate": options.bit_rate,
            "f": options.output_format,
            "threads": 0,
        }
        if options.max_duration:
            output_kwargs["t"] = options.max_duration

        stream = ffmpeg.input(str(input_path))
        stream = ffmpeg.output(stream, str(output_path), **output_kwargs)
        stream = stream.global_args("-hide_banner", "-loglevel", "error")
        return ffmpeg.compile(stream, cmd=self.ffmpeg_path, overwrite_output=True)

    async def _run_ffmpeg(self, cmd: list[str], output_path: Path) -> None:
        logger.debug("Running FFmpeg: %s", " ".join(cmd))
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            logger.error("FFmpeg executable not found: %s", self.ffmpeg_path)
            raise AudioExtractionError(ErrorKind.RESOURCE, f"FFmpeg executable not found: {self.ffmpeg_path}") from exc

        try:
            _stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            remove_file(output_path)
            logger.error("FFmpeg timed out after %ss and was killed", self.timeout_seconds)
            raise AudioExtractionError(
                ErrorKind.RESOURCE, f"FFmpeg process timed out after {self.timeout_seconds:.0f}s"
            )

        if process.returncode != 0:
            error_details = (stderr or b"").decode("utf8", errors="replace").strip() or "No stderr details from FFmpeg."
            logger.error("FFmpeg exited with code %s. Details: %s", process.returncode, error_details)
            remove_file(output_path)
            raise AudioExtractionError(
                ErrorKind.RESOURCE,
                f"FFmpeg failed with code {process.returncode}: {error_details[:MAX_STDERR_CHARS]}",
            )

        if not output_path.exists():
            raise AudioExtractionError(ErrorKind.RESOURCE, f"FFmpeg reported success but produced no file at {output_path}")

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    async def get_audio_metadata(self, audio_path: Path) -> AudioMetadata:
        """Probe ``audio_path``; falls back to size-only metadata if ffprobe fails."""
        size = audio_path.stat().st_size
        try:
            data = await asyncio.to_thread(ffmpeg.probe, str(audio_path), cmd=self.ffprobe_path)
        except (ffmpeg.Error, FileNotFoundError, ValueError) as exc:
            stderr = getattr(exc, "stderr", None)
            detail = stderr.decode("utf8", errors="replace") if isinstance(stderr, bytes) else str(exc)
            logger.error("Failed to get audio metadata for %s: %s", audio_path, detail)
            return AudioMetadata(duration=0.0, sample_rate=0, channels=1, bit_rate="0k", format="unknown", size=size)

        return parse_probe(data, size)

    async def validate_audio_file(self, audio_path: Path) -> bool:
        if not audio_path.exists():
            return False
        metadata = await self.get_audio_metadata(audio_path)
        return metadata.size > 0 and metadata.duration > 0

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def cleanup_audio_file(self, audio_path: Path) -> bool:
        return remove_file(Path(audio_path))

    def cleanup_old_files(self, max_age_seconds: float = 24 * 60 * 60) -> int:
        return cleanup_old_files(self.temp_dir, max_age_seconds)


def parse_probe(data: dict, size: int) -> AudioMetadata:
    """Turn ``ffprobe -show_format -show_streams`` JSON into :class:`AudioMetadata`."""
    fmt = data.get("format") or {}
    audio_stream = next((s for s in data.get("streams", []) if s.get("codec_type") == "audio"), {})

    bit_rate = audio_stream.get("bit_rate") or fmt.get("bit_rate")
    return AudioMetadata(
        duration=float(fmt.get("duration") or audio_stream.get("duration") or 0),
        sample_rate=int(audio_stream.get("sample_rate") or 0),
        channels=int(audio_stream.get("channels") or 1),
        bit_rate=f"{round(int(bit_rate) / 1000)}k" if bit_rate else "0k",
        format=fmt.get("format_name") or "unknown",
        size=size,
    )
