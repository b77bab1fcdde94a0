"""Worker journal: the raw NDJSON event file workers append to."""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from grotto.lib import fs, paths
from grotto.models import now_iso

from .ndjson import parse_line, read_complete_lines

logger = logging.getLogger(__name__)


def log_event(
    gdir: Path,
    event_type: str,
    agent_id: str | None = None,
    task_id: str | None = None,
    message: str | None = None,
    data: dict[str, Any] | None = None,
) -> int:
    """Append one record to the journal. Returns the record's end offset."""
    record = {
        "timestamp": now_iso(),
        "event_type": event_type,
        "agent_id": agent_id,
        "task_id": task_id,
        "message": message,
        "data": data or {},
    }
    return fs.append_line(paths.journal(gdir), json.dumps(record))


@dataclass
class JournalRecord:
    end_offset: int
    fields: dict[str, Any]

    @property
    def event_type(self) -> str | None:
        value = self.fields.get("event_type") or self.fields.get("type")
        return value if isinstance(value, str) else None


class JournalReader:
    """Tails the journal from a durable byte offset."""

    def __init__(self, path: Path, position: int = 0):
        self.path = path
        self.position = position

    def read_new(self) -> list[JournalRecord]:
        lines, end = read_complete_lines(self.path, self.position)
        records = []
        for line_end, text in lines:
            fields = parse_line(self.path, text)
            if fields is None:
                continue
            record = JournalRecord(line_end, fields)
            if record.event_type is None:
                logger.warning(f"Skipping journal record without event_type at offset {line_end}")
                continue
            records.append(record)
        self.position = end
        return records
