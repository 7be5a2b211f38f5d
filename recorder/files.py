"""Durable file writes and best-effort file removal for captured media."""

import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import BinaryIO, Callable, Optional

from .errors import StorageFailure

logger = logging.getLogger(__name__)


def dated_dir(base: Path, when: datetime) -> Path:
    """``base/YYYY/MM/DD`` for ``when`` in local time, created if needed."""
    local = when.astimezone()
    path = Path(base) / f"{local.year:04d}" / f"{local.month:02d}" / f"{local.day:02d}"
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise StorageFailure(f"Cannot create directory {path}: {e}") from e
    return path


def write_atomically(path: Path, writer: Callable[[BinaryIO], None]) -> int:
    """Write a file so that it either exists completely or not at all.

    ``writer`` receives an open binary file in the target directory; the data
    is fsynced and then renamed over ``path``.

    Returns:
        Size of the written file in bytes.

    Raises:
        StorageFailure: If the file cannot be written
    """
    path = Path(path)
    fd, tmp_name = tempfile.mkstemp(prefix=".tmp-", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            writer(f)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except OSError as e:
        _discard(tmp_name)
        raise StorageFailure(f"Failed to write {path}: {e}") from e
    except BaseException:
        _discard(tmp_name)
        raise
    return path.stat().st_size


def remove_file(path: Optional[str]) -> Optional[str]:
    """Delete ``path`` if it exists.

    Returns:
        None on success (or if there was nothing to delete), otherwise an
        error message describing why the file could not be removed.
    """
    if not path:
        return None
    try:
        Path(path).unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"Failed to delete file {path}: {e}")
        return f"{path}: {e}"
    return None


def _discard(name: str) -> None:
    try:
        os.unlink(name)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove temporary file {name}: {e}")
