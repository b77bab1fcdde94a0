"""Incremental reads of append-only newline-delimited JSON files."""

import json
import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)


def read_complete_lines(path: Path, position: int = 0) -> tuple[list[tuple[int, str]], int]:
    """Read whole lines appended after `position`.

    Returns (lines, new_position) where each line is paired with the byte
    offset just past its newline. A trailing record without a newline is
    still being written and is left for the next read.
    """
    try:
        size = os.path.getsize(path)
    except FileNotFoundError:
        return [], position

    if size < position:
        logger.warning(f"{path} shrank from {position} to {size} bytes; resuming at end")
        return [], size
    if size == position:
        return [], position

    with open(path, "rb") as f:
        f.seek(position)
        chunk = f.read(size - position)

    last_newline = chunk.rfind(b"\n")
    if last_newline == -1:
        return [], position

    lines: list[tuple[int, str]] = []
    offset = position
    for raw in chunk[: last_newline + 1].split(b"\n")[:-1]:
        offset += len(raw) + 1
        text = raw.decode("utf-8", errors="replace").strip()
        if text:
            lines.append((offset, text))
    return lines, position + last_newline + 1


def parse_line(path: Path, text: str) -> dict | None:
    """Decode one record; corrupt records are logged and skipped."""
    try:
        value = json.loads(text)
    except json.JSONDecodeError as e:
        logger.warning(f"Skipping unparseable record in {path.name}: {e}")
        return None
    if not isinstance(value, dict):
        logger.warning(f"Skipping non-object record in {path.name}")
        return None
    return value


def ends_with_newline(path: Path) -> bool:
    try:
        with open(path, "rb") as f:
            f.seek(0, os.SEEK_END)
            if f.tell() == 0:
                return True
            f.seek(-1, os.SEEK_END)
            return f.read(1) == b"\n"
    except FileNotFoundError:
        return True
