"""Per-request stream state: reassembly, mapping, and terminal handling."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from .errors import UpstreamProtocolError
from .event_mapping import EventChunkMapper, upstream_error_message
from .frames import FrameReassembler, parse_frame
from .json_helpers import loads_object
from .stream_chunks import DONE_SENTINEL, encode_output_chunk, error_chunk, sse_data

LOG = logging.getLogger(__name__)


def new_completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex[:24]}"


class StreamSession:
    """Explicit state for one client stream.

    Raw upstream bytes go in through `feed`; encoded client frames come out.
    Once the sentinel has been produced every further call returns nothing.
    """

    def __init__(self, *, model: str, completion_id: str | None = None) -> None:
        self.completion_id = completion_id or new_completion_id()
        self.model = model
        self.created = int(datetime.now(timezone.utc).timestamp())
        self.reassembler = FrameReassembler()
        self.mapper = EventChunkMapper(self.completion_id)
        self.closed = False
        self.chunks_emitted = 0

    @property
    def role_chunk_emitted(self) -> bool:
        return self.mapper.role_chunk_emitted

    def feed(self, data: bytes) -> list[bytes]:
        """Consume upstream bytes and return the client frames they complete."""
        if self.closed:
            return []
        frames: list[bytes] = []
        for event in self.reassembler.feed(data):
            try:
                chunks = self.mapper.handle(event)
            except UpstreamProtocolError as exc:
                LOG.warning(
                    "upstream error event completion_id=%s error=%s",
                    self.completion_id,
                    exc,
                )
                frames.extend(self.fail(str(exc)))
                return frames
            for chunk in chunks:
                frames.append(encode_output_chunk(chunk, model=self.model, created=self.created))
                self.chunks_emitted += 1
            if self.mapper.finished:
                frames.append(self._close())
                return frames
        return frames

    def fail(self, message: str) -> list[bytes]:
        """Return one error frame followed by the sentinel, unless already closed."""
        if self.closed:
            return []
        payload = error_chunk(
            completion_id=self.completion_id,
            model=self.model,
            created=self.created,
            message=message,
        )
        return [sse_data(payload), self._close()]

    def upstream_status_failure(self, status_code: int) -> list[bytes]:
        """Resolve a non-success upstream status using whatever body is buffered."""
        pending = self.reassembler.pending
        body = loads_object(pending)
        if body is None:
            # Some gateways answer errors with a single SSE error frame.
            event = parse_frame(pending.strip())
            body = event.payload if event is not None else None
        message = upstream_error_message(body) if body is not None else None
        return self.fail(message or f"upstream returned status {status_code}")

    def _close(self) -> bytes:
        self.closed = True
        return DONE_SENTINEL
