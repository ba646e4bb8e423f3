"""
Server-sent event record parsing.

The hub sends newline-delimited records terminated by a blank line:

    id: urn:uuid:...
    event: message
    topic: /chats/17
    data: {"id": 1,
    data:  "chatId": 17}

``data:`` lines are joined with a newline before JSON decoding. ``topic:``
lines are explicit routing hints; ``id:`` and ``event:`` are kept for logging.
"""

from __future__ import annotations

from dataclasses import dataclass, field

RECORD_SEPARATOR = "\n\n"


@dataclass
class SseRecord:
    data: str | None = None
    topics: list[str] = field(default_factory=list)
    event_id: str | None = None
    event_type: str | None = None


def parse_record(raw: str) -> SseRecord:
    """Parse one raw record (without its terminating blank line)."""
    data_lines: list[str] = []
    record = SseRecord()

    for line in raw.split("\n"):
        line = line.strip()
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
        elif line.startswith("id:"):
            record.event_id = line[3:].strip()
        elif line.startswith("event:"):
            record.event_type = line[6:].strip()
        elif line.startswith("topic:"):
            record.topics.append(line[6:].strip())

    if data_lines:
        record.data = "\n".join(data_lines)
    return record


class SseBuffer:
    """Accumulates decoded text and yields complete raw records."""

    def __init__(self):
        self._buffer = ""

    def feed(self, text: str) -> list[str]:
        # CRLF streams are normalized so the blank-line separator is uniform
        self._buffer += text.replace("\r\n", "\n")
        records = []
        while RECORD_SEPARATOR in self._buffer:
            raw, self._buffer = self._buffer.split(RECORD_SEPARATOR, 1)
            records.append(raw)
        return records

    @property
    def pending(self) -> str:
        return self._buffer
