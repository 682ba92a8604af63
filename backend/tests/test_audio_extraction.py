import asyncio
from pathlib import Path
from unittest.mock import patch

import ffmpeg
import pytest

from vidscribe.errors import AudioExtractionError, ErrorKind
from vidscribe.services.audio_extraction import (
    AudioExtractionOptions,
    AudioExtractor,
    AudioMetadata,
    parse_probe,
)

PROBE_RESULT = {
    "format": {"duration": "30.5", "format_name": "mp3", "bit_rate": "64000"},
    "streams": [{"codec_type": "audio", "sample_rate": "16000", "channels": 1, "bit_rate": "64000"}],
}


class FakeProcess:
    def __init__(self, output: Path | None, returncode: int = 0, stderr: bytes = b"", hang: bool = False, size: int = 2048):
        self.output = output
        self.returncode = returncode
        self.stderr = stderr
        self.hang = hang
        self.size = size
        self.killed = False

    async def communicate(self):
        if self.hang:
            await asyncio.sleep(10)
        if self.output is not None and self.returncode == 0:
            self.output.write_bytes(b"\0" * self.size)
        return b"", self.stderr

    def kill(self):
        self.killed = True

    async def wait(self):
        return self.returncode


def _output_arg(cmd) -> Path:
    return Path(next(arg for arg in cmd if arg.endswith((".mp3", ".wav", ".flac"))))


def fake_exec(processes: list, **process_kwargs):
    async def _exec(*cmd, **_kwargs):
        process = FakeProcess(_output_arg(cmd), **process_kwargs)
        processes.append(process)
        return process

    return _exec


@pytest.fixture
def video_file(tmp_path: Path) -> Path:
    path = tmp_path / "talk.mp4"
    path.write_bytes(b"not really a video")
    return path


@pytest.fixture
def audio_extractor(tmp_path: Path) -> AudioExtractor:
    return AudioExtractor(temp_dir=tmp_path / "temp", timeout_seconds=5)


def test_build_command_uses_speech_defaults(audio_extractor: AudioExtractor, tmp_path: Path):
    cmd = audio_extractor.build_command(tmp_path / "in.mp4", tmp_path / "out.mp3", AudioExtractionOptions())

    assert cmd[0] == "ffmpeg"
    assert "-vn" in cmd
    assert cmd[cmd.index("-acodec") + 1] == "libmp3lame"
    assert cmd[cmd.index("-ar") + 1] == "16000"
    assert cmd[cmd.index("-ac") + 1] == "1"
    assert cmd[cmd.index("-b:a") + 1] == "64k"
    assert cmd[cmd.index("-f") + 1] == "mp3"
    assert "-y" in cmd
    assert "-t" not in cmd


def test_build_command_with_wav_and_duration_cap(audio_extractor: AudioExtractor, tmp_path: Path):
    options = AudioExtractionOptions(output_format="wav", max_duration=120)

    cmd = audio_extractor.build_command(tmp_path / "in.mp4", tmp_path / "out.wav", options)

    assert cmd[cmd.index("-acodec") + 1] == "pcm_s16le"
    assert cmd[cmd.index("-t") + 1] == "120"


@pytest.mark.asyncio
async def test_extract_audio_success(audio_extractor: AudioExtractor, video_file: Path):
    processes = []
    with patch("asyncio.create_subprocess_exec", new=fake_exec(processes)), \
         patch("ffmpeg.probe", return_value=PROBE_RESULT):
        extracted = await audio_extractor.extract_audio(video_file)

    assert extracted.path.exists()
    assert extracted.path.parent == audio_extractor.temp_dir
    assert extracted.path.name.startswith("talk_")
    assert extracted.metadata.duration == pytest.approx(30.5)
    assert extracted.metadata.sample_rate == 16000
    assert extracted.metadata.size == 2048
    assert extracted.exceeds_size_limit is False
    assert len(processes) == 1


@pytest.mark.asyncio
async def test_oversized_output_is_flagged_not_failed(tmp_path: Path, video_file: Path):
    extractor = AudioExtractor(temp_dir=tmp_path / "temp", max_output_bytes=1000)
    with patch("asyncio.create_subprocess_exec", new=fake_exec([], size=2000)), \
         patch("ffmpeg.probe", return_value=PROBE_RESULT):
        extracted = await extractor.extract_audio(video_file)

    assert extracted.exceeds_size_limit is True
    assert extracted.path.exists()


@pytest.mark.asyncio
async def test_missing_input_is_a_resource_error(audio_extractor: AudioExtractor, tmp_path: Path):
    with pytest.raises(AudioExtractionError) as excinfo:
        await audio_extractor.extract_audio(tmp_path / "missing.mp4")

    assert excinfo.value.kind == ErrorKind.RESOURCE
    assert "not found" in str(excinfo.value)


@pytest.mark.asyncio
async def test_nonzero_exit_surfaces_stderr(audio_extractor: AudioExtractor, video_file: Path):
    stderr = b"Invalid data found when processing input"
    with patch("asyncio.create_subprocess_exec", new=fake_exec([], returncode=1, stderr=stderr)):
        with pytest.raises(AudioExtractionError) as excinfo:
            await audio_extractor.extract_audio(video_file)

    assert excinfo.value.kind == ErrorKind.RESOURCE
    assert "Invalid data found when processing input" in excinfo.value.detail
    assert list(audio_extractor.temp_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_timeout_kills_process(tmp_path: Path, video_file: Path):
    extractor = AudioExtractor(temp_dir=tmp_path / "temp", timeout_seconds=0.05)
    processes = []
    with patch("asyncio.create_subprocess_exec", new=fake_exec(processes, hang=True)):
        with pytest.raises(AudioExtractionError) as excinfo:
            await extractor.extract_audio(video_file)

    assert "timed out" in excinfo.value.detail
    assert processes[0].killed is True


@pytest.mark.asyncio
async def test_missing_ffmpeg_binary(audio_extractor: AudioExtractor, video_file: Path):
    async def _missing(*_cmd, **_kwargs):
        raise FileNotFoundError("ffmpeg")

    with patch("asyncio.create_subprocess_exec", new=_missing):
        with pytest.raises(AudioExtractionError) as excinfo:
            await audio_extractor.extract_audio(video_file)

    assert excinfo.value.kind == ErrorKind.RESOURCE
    assert "FFmpeg executable not found" in excinfo.value.detail


@pytest.mark.asyncio
async def test_metadata_falls_back_when_probe_fails(audio_extractor: AudioExtractor, tmp_path: Path):
    audio = tmp_path / "a.mp3"
    audio.write_bytes(b"\0" * 10)

    with patch("ffmpeg.probe", side_effect=ffmpeg.Error("ffprobe", b"", b"moov atom not found")):
        metadata = await audio_extractor.get_audio_metadata(audio)

    assert metadata == AudioMetadata(duration=0.0, sample_rate=0, channels=1, bit_rate="0k", format="unknown", size=10)


def test_parse_probe_without_audio_stream():
    metadata = parse_probe({"format": {"duration": "12.0", "format_name": "wav"}, "streams": []}, 99)

    assert metadata.duration == 12.0
    assert metadata.sample_rate == 0
    assert metadata.channels == 1
    assert metadata.bit_rate == "0k"
    assert metadata.size == 99


def test_cleanup_helpers(audio_extractor: AudioExtractor, tmp_path: Path):
    audio_extractor.temp_dir.mkdir(parents=True)
    audio = audio_extractor.temp_dir / "x.mp3"
    audio.write_bytes(b"1")

    assert audio_extractor.cleanup_old_files(max_age_seconds=0) == 1
    assert not audio.exists()
    # Already gone counts as cleaned up
    assert audio_extractor.cleanup_audio_file(audio) is True


@pytest.mark.asyncio
async def test_validate_audio_file(audio_extractor: AudioExtractor, tmp_path: Path):
    audio = tmp_path / "ok.mp3"
    audio.write_bytes(b"\0" * 10)

    with patch("ffmpeg.probe", return_value=PROBE_RESULT):
        assert await audio_extractor.validate_audio_file(audio) is True
    assert await audio_extractor.validate_audio_file(tmp_path / "gone.mp3") is False
