"""Record framing for the chat hub socket.

Every record is a JSON object terminated by the ASCII record separator. A
socket message may carry several records, and a record may in principle be
split across messages, so decoding keeps the unterminated tail buffered.
"""

from __future__ import annotations

import json
import logging

logger = logging.getLogger(__name__)

DELIMITER = "\x1e"


def serialize(record: dict) -> str:
    """Encode one record, delimiter included."""
    return json.dumps(record, separators=(",", ":")) + DELIMITER


def split_records(raw: str) -> list[dict]:
    """Decode every record in a complete buffer.

    Blank fragments (such as the one after the trailing delimiter) are
    discarded.

    Raises:
        json.JSONDecodeError: If a fragment is not valid JSON.
    """
    return [json.loads(part) for part in raw.split(DELIMITER) if part.strip()]


class RecordDecoder:
    """Incremental decoder for a stream of delimited records."""

    def __init__(self):
        self.buffer = ""

    def feed(self, data: str | bytes) -> list[dict]:
        """Add received data and return the records it completed.

        Args:
            data: Text (or UTF-8 bytes) received from the socket.

        Returns:
            Complete records, in order.
        """
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        if not data:
            return []

        self.buffer += data
        parts = self.buffer.split(DELIMITER)
        # Keep the last (unterminated) fragment in buffer
        self.buffer = parts[-1]
        return [json.loads(part) for part in parts[:-1] if part.strip()]
