import pytest

from completionbridge.errors import UpstreamProtocolError
from completionbridge.event_mapping import EventChunkMapper, OutputChunk, map_stop_reason
from completionbridge.frames import UpstreamEvent


def _event(event_type: str, **payload: object) -> UpstreamEvent:
    return UpstreamEvent(type=event_type, payload={"type": event_type, **payload})


def _text(text: str) -> UpstreamEvent:
    return _event("content_block_delta", index=0, delta={"type": "text_delta", "text": text})


def test_message_start_emits_role_chunk_once() -> None:
    mapper = EventChunkMapper("chatcmpl-1")
    assert mapper.handle(_event("message_start")) == [
        OutputChunk(completion_id="chatcmpl-1", delta={"role": "assistant", "content": ""})
    ]
    assert mapper.handle(_event("message_start")) == []
    assert mapper.role_chunk_emitted is True


def test_text_deltas_are_emitted_immediately_and_in_order() -> None:
    mapper = EventChunkMapper("chatcmpl-1")
    emitted: list[str] = []
    for text in ["Hel", "lo", ", ", "world"]:
        chunks = mapper.handle(_text(text))
        assert len(chunks) == 1
        emitted.append(chunks[0].delta["content"])
    assert "".join(emitted) == "Hello, world"


def test_empty_text_delta_is_skipped() -> None:
    assert EventChunkMapper("c").handle(_text("")) == []


def test_non_text_deltas_are_ignored() -> None:
    mapper = EventChunkMapper("c")
    event = _event("content_block_delta", index=1, delta={"type": "input_json_delta", "partial_json": "{"})
    assert mapper.handle(event) == []


@pytest.mark.parametrize("event_type", ["content_block_start", "content_block_stop", "ping", "brand_new_event"])
def test_bookkeeping_and_unknown_events_are_ignored(event_type: str) -> None:
    assert EventChunkMapper("c").handle(_event(event_type)) == []


@pytest.mark.parametrize(
    ("stop_reason", "finish_reason"),
    [("end_turn", "stop"), ("max_tokens", "max_tokens"), ("stop_sequence", "stop_sequence"), ("tool_use", "tool_use")],
)
def test_message_delta_maps_stop_reason(stop_reason: str, finish_reason: str) -> None:
    chunks = EventChunkMapper("c").handle(_event("message_delta", delta={"stop_reason": stop_reason}))
    assert chunks == [OutputChunk(completion_id="c", delta={}, finish_reason=finish_reason)]


def test_missing_stop_reason_defaults_to_stop() -> None:
    assert map_stop_reason(None) == "stop"
    chunks = EventChunkMapper("c").handle(_event("message_delta", delta={}))
    assert chunks[0].finish_reason == "stop"


def test_only_first_message_delta_carries_finish_reason() -> None:
    mapper = EventChunkMapper("c")
    assert len(mapper.handle(_event("message_delta", delta={"stop_reason": "end_turn"}))) == 1
    assert mapper.handle(_event("message_delta", delta={"stop_reason": "max_tokens"})) == []


def test_message_stop_finishes_and_blocks_later_events() -> None:
    mapper = EventChunkMapper("c")
    assert mapper.handle(_event("message_stop")) == []
    assert mapper.finished is True
    assert mapper.handle(_text("late")) == []
    assert mapper.handle(_event("message_start")) == []


def test_error_event_raises_protocol_error_with_upstream_message() -> None:
    mapper = EventChunkMapper("c")
    with pytest.raises(UpstreamProtocolError, match="Overloaded"):
        mapper.handle(_event("error", error={"type": "overloaded_error", "message": "Overloaded"}))
