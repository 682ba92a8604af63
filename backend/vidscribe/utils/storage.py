"""Filesystem helpers for the scratch audio directory."""

import logging
import time
import uuid
from pathlib import Path

logger = logging.getLogger(__name__)


def ensure_dir_exists(path: Path) -> Path:
    """Ensure that the given directory exists, creating it if necessary."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def unique_output_path(directory: Path, source: Path, suffix: str) -> Path:
    """Build a collision-free path in ``directory`` named after ``source``.

    Concurrent jobs share the scratch directory, so the name carries a random
    component on top of the source stem.
    """
    stem = source.stem or "audio"
    return directory / f"{stem}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}.{suffix.lstrip('.')}"


def remove_file(path: Path) -> bool:
    """Best-effort delete. Failures are logged and reported as ``False``."""
    try:
        path.unlink()
    except FileNotFoundError:
        logger.debug("File already gone: %s", path)
        return True
    except OSError as exc:
        logger.error("Could not remove file %s: %s", path, exc)
        return False
    logger.info("Removed file %s", path)
    return True


def cleanup_old_files(directory: Path, max_age_seconds: float) -> int:
    """Delete regular files in ``directory`` older than ``max_age_seconds``.

    Returns the number of files removed.
    """
    if not directory.exists():
        return 0

    now = time.time()
    removed = 0
    for entry in directory.iterdir():
        if not entry.is_file():
            continue
        try:
            age = now - entry.stat().st_mtime
        except OSError as exc:
            logger.warning("Could not stat %s: %s", entry, exc)
            continue
        if age >= max_age_seconds and remove_file(entry):
            removed += 1
    logger.info("Cleaned up %d file(s) older than %.0fs in %s", removed, max_age_seconds, directory)
    return removed
