"""
流式 SSE 帧构建与上游 data 行解析。从 bridge/router 拆出，便于维护与单测。
"""

from __future__ import annotations

import json
import time
from typing import Any, AsyncIterable, Iterable

from fastapi.responses import StreamingResponse

UPSTREAM_DATA_MARKER = "data:"
SSE_DONE = b"data: [DONE]\n\n"


def _encode_sse(payload: dict[str, Any]) -> bytes:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def make_completion_id(now: float | None = None) -> str:
    """Millisecond-based id; collisions are tolerated since ids are not correlated."""
    ts = time.time() if now is None else now
    return f"chatcmpl-{int(ts * 1000)}"


def build_chunk_payload(
    model: str,
    delta: dict[str, Any],
    finish_reason: str | None,
    now: float | None = None,
) -> dict[str, Any]:
    ts = time.time() if now is None else now
    return {
        "id": make_completion_id(ts),
        "object": "chat.completion.chunk",
        "created": int(ts),
        "model": model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }


def _stream_chunk(model: str, delta: dict[str, Any], finish_reason: str | None = None, now: float | None = None) -> bytes:
    return _encode_sse(build_chunk_payload(model, delta, finish_reason, now))


def _stream_error_sse_chunk(message: str, code: str | None = None) -> bytes:
    """SSE 错误帧，与 chunk 结构不同，客户端需视为终止。"""
    detail = (message or "upstream_error").strip() or "upstream_error"
    payload: dict[str, Any] = {
        "error": {
            "message": detail,
            "type": "upstream_error",
            "code": (code or "upstream_error").strip() or "upstream_error",
        }
    }
    return _encode_sse(payload)


def _stream_done_sse_chunk() -> bytes:
    return SSE_DONE


def _extract_sse_data_payload(line: str) -> str | None:
    """Return the JSON object text of an upstream ``data:`` line, else None."""
    stripped = line.strip()
    if not stripped.startswith(UPSTREAM_DATA_MARKER):
        return None
    payload = stripped[len(UPSTREAM_DATA_MARKER):].strip()
    if not payload.startswith("{"):
        return None
    return payload


def _build_streaming_response(generator: Iterable[bytes] | AsyncIterable[bytes]) -> StreamingResponse:
    return StreamingResponse(
        generator,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )
