import json

from cozegate.adapters.openai_compat.stream_utils import (
    _extract_sse_data_payload,
    _stream_chunk,
    _stream_done_sse_chunk,
    _stream_error_sse_chunk,
    make_completion_id,
)


def test_extract_sse_data_payload():
    assert _extract_sse_data_payload('data:{"event":"done"}') == '{"event":"done"}'
    assert _extract_sse_data_payload('  data: {"a":1}\r') == '{"a":1}'
    assert _extract_sse_data_payload("event:message") is None
    assert _extract_sse_data_payload("data: [DONE]") is None
    assert _extract_sse_data_payload("") is None


def test_stream_chunk_shape():
    raw = _stream_chunk("m", {"content": "中文"}, None, now=1700000000.25).decode("utf-8")
    assert raw.startswith("data: ") and raw.endswith("\n\n")
    assert "中文" in raw
    payload = json.loads(raw[len("data: "):])
    assert payload == {
        "id": "chatcmpl-1700000000250",
        "object": "chat.completion.chunk",
        "created": 1700000000,
        "model": "m",
        "choices": [{"index": 0, "delta": {"content": "中文"}, "finish_reason": None}],
    }


def test_stream_error_sse_chunk_uses_structured_error_payload():
    payload = _stream_error_sse_chunk("quota exceeded", code="4011").decode("utf-8")
    body = json.loads(payload[len("data: "):])
    assert body == {"error": {"message": "quota exceeded", "type": "upstream_error", "code": "4011"}}


def test_stream_error_sse_chunk_defaults():
    body = json.loads(_stream_error_sse_chunk("", code=None).decode("utf-8")[len("data: "):])
    assert body["error"]["message"] == "upstream_error"
    assert body["error"]["code"] == "upstream_error"


def test_done_sentinel():
    assert _stream_done_sse_chunk() == b"data: [DONE]\n\n"


def test_make_completion_id_is_millisecond_based():
    assert make_completion_id(1.5) == "chatcmpl-1500"
