"""Timestamp helpers shared by the models and the transcript formatters."""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC now; the database columns store UTC without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def format_timestamp_srt(seconds: float) -> str:
    """Converts seconds to SRT time format (HH:MM:SS,ms)"""
    assert seconds >= 0, "non-negative timestamp expected"
    milliseconds = round(seconds * 1000.0)

    hours = milliseconds // 3_600_000
    milliseconds -= hours * 3_600_000

    minutes = milliseconds // 60_000
    milliseconds -= minutes * 60_000

    secs = milliseconds // 1_000
    milliseconds -= secs * 1_000

    return f"{hours:02d}:{minutes:02d}:{secs:02d},{milliseconds:03d}"


def format_timestamp_clock(seconds: float) -> str:
    """Converts seconds to a display clock (HH:MM:SS), dropping fractions."""
    total = int(max(seconds, 0))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"
