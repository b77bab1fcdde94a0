"""Filesystem primitives shared by workers and the daemon."""

import fcntl
import json
import logging
import os
import tempfile
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from grotto.errors import TransientIOError

logger = logging.getLogger(__name__)


def atomic_write(path: Path, content: str) -> None:
    """Write via temp file + rename so readers never see a torn file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def atomic_write_json(path: Path, data) -> None:
    atomic_write(path, json.dumps(data, indent=2) + "\n")


def exclusive_create(path: Path, content: str = "") -> bool:
    """Create path only if absent. Returns False when another writer got there first."""
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError:
        return False
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(content)
        f.flush()
        os.fsync(f.fileno())
    return True


@contextmanager
def file_lock(path: Path) -> Iterator[None]:
    """Exclusive advisory lock held across processes for the body of the block."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a+", encoding="utf-8") as fh:
        fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(fh.fileno(), fcntl.LOCK_UN)


def append_line(path: Path, line: str) -> int:
    """Append one record with a single write. Returns the end offset of the record."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = (line.rstrip("\n") + "\n").encode("utf-8")
    fd = os.open(path, os.O_CREAT | os.O_APPEND | os.O_WRONLY, 0o644)
    try:
        os.write(fd, data)
        os.fsync(fd)
        return os.lseek(fd, 0, os.SEEK_CUR)
    finally:
        os.close(fd)


def read_text(path: Path, attempts: int = 3, backoff: float = 0.05) -> str | None:
    """Read a file that may be mid-write. None if it does not exist.

    Retries transient failures with exponential backoff and raises
    TransientIOError once attempts are exhausted.
    """
    last_error: Exception | None = None
    for attempt in range(attempts):
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            last_error = e
            logger.debug(f"Retrying read of {path}: {e}")
        if attempt < attempts - 1:
            time.sleep(backoff * (2**attempt))
    raise TransientIOError(f"{path} unreadable after {attempts} attempts: {last_error}")
