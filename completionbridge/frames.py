"""Reassemble upstream event-stream bytes into complete protocol events.

The transport may split the stream anywhere, including inside a multi-byte
character or between the two line breaks that close a frame. Bytes stay in
the buffer until a full frame delimiter has arrived; only then is the frame
removed, decoded, and parsed.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from .json_helpers import loads_object

LOG = logging.getLogger(__name__)

# Blank line between frames; tolerates CRLF producers.
_FRAME_DELIMITER_RE = re.compile(rb"\r?\n\r?\n")


@dataclass(frozen=True)
class UpstreamEvent:
    """One parsed upstream event."""

    type: str
    payload: dict[str, Any]


def _field_value(line: str, name: str) -> str | None:
    """Return the value of an SSE `name:` line, or None for other lines."""
    prefix = f"{name}:"
    if not line.startswith(prefix):
        return None
    value = line[len(prefix) :]
    if value.startswith(" "):
        value = value[1:]
    return value


def parse_frame(raw: bytes) -> UpstreamEvent | None:
    """Parse one complete frame; return None when it carries no usable event."""
    text = raw.decode("utf-8", errors="replace")
    event_type: str | None = None
    data_lines: list[str] = []
    for line in text.split("\n"):
        line = line.rstrip("\r")
        if not line or line.startswith(":"):
            continue
        value = _field_value(line, "event")
        if value is not None:
            event_type = value.strip()
            continue
        value = _field_value(line, "data")
        if value is not None:
            data_lines.append(value)

    payload = loads_object("\n".join(data_lines))
    if payload is None:
        LOG.debug("dropping frame without JSON object payload frame=%r", text[:200])
        return None
    if not event_type:
        fallback_type = payload.get("type")
        if not isinstance(fallback_type, str) or not fallback_type:
            LOG.debug("dropping frame without event type frame=%r", text[:200])
            return None
        event_type = fallback_type
    return UpstreamEvent(type=event_type, payload=payload)


class FrameReassembler:
    """Accumulate raw bytes and cut them into complete frames."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    @property
    def pending(self) -> bytes:
        """Bytes received but not yet part of a complete frame."""
        return bytes(self._buffer)

    def append(self, data: bytes) -> None:
        """Buffer bytes without scanning for frames."""
        self._buffer.extend(data)

    def feed(self, data: bytes) -> list[UpstreamEvent]:
        """Append `data` and return every event completed by it, in order."""
        if data:
            self._buffer.extend(data)
        events: list[UpstreamEvent] = []
        while True:
            match = _FRAME_DELIMITER_RE.search(self._buffer)
            if match is None:
                break
            raw_frame = bytes(self._buffer[: match.start()])
            del self._buffer[: match.end()]
            if not raw_frame.strip():
                continue
            event = parse_frame(raw_frame)
            if event is not None:
                events.append(event)
        return events
