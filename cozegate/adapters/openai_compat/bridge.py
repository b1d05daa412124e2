"""Upstream response -> OpenAI chat-completion response.

``render_chat_completion`` handles the single-document reply.
``StreamBridge`` re-frames the upstream event stream into OpenAI SSE chunks:

    AWAITING_FRAMES --first chunk--> EMITTING --done/error/close--> TERMINATED

Bytes go in through ``feed``; every call returns the SSE frames that became
ready, in upstream line order. Once TERMINATED the bridge ignores input.
"""

from __future__ import annotations

import codecs
import json
import time
from enum import Enum
from typing import Any, Callable, Mapping

from cozegate.adapters.openai_compat.stream_utils import (
    _extract_sse_data_payload,
    _stream_chunk,
    _stream_done_sse_chunk,
    _stream_error_sse_chunk,
    make_completion_id,
)
from cozegate.config.settings import settings
from cozegate.core.errors import UpstreamApplicationError, UpstreamProtocolError
from cozegate.core.models import EVENT_DONE, EVENT_ERROR, EVENT_MESSAGE, EVENT_PING, UpstreamEvent
from cozegate.util.logger import logger


def _is_answer_message(message: Mapping[str, Any]) -> bool:
    return message.get("role") == "assistant" and (
        message.get("type") == "answer" or message.get("content_type") == "image"
    )


def _image_envelope(image: Mapping[str, Any], placeholder: str, default_image_type: str) -> dict[str, Any]:
    return {
        "content": placeholder,
        "image": {
            "url": image.get("url"),
            "type": image.get("type") or default_image_type,
        },
    }


def find_answer_message(upstream_body: Mapping[str, Any]) -> Mapping[str, Any] | None:
    messages = upstream_body.get("messages")
    if not isinstance(messages, list):
        raise UpstreamProtocolError("upstream response has no messages list", code="upstream_missing_messages")
    for message in messages:
        if isinstance(message, Mapping) and _is_answer_message(message):
            return message
    return None


def render_chat_completion(
    upstream_body: Mapping[str, Any],
    model: str,
    *,
    now: float | None = None,
) -> dict[str, Any]:
    code = upstream_body.get("code", 0)
    if code not in (0, "0", None):
        message = str(upstream_body.get("msg") or upstream_body.get("message") or f"upstream code {code}")
        raise UpstreamApplicationError(message, code=str(code))

    answer = find_answer_message(upstream_body)
    if answer is None:
        raise UpstreamProtocolError("No answer message found.", code="upstream_no_answer")

    image = answer.get("image")
    if answer.get("content_type") == "image" and isinstance(image, Mapping):
        # 图片回答只回传 url，不重新拉取或转码
        content: Any = json.dumps(
            _image_envelope(image, settings.image_placeholder, settings.default_image_type),
            ensure_ascii=False,
        )
    else:
        content = answer.get("content") or ""

    ts = time.time() if now is None else now
    document: dict[str, Any] = {
        "id": make_completion_id(ts),
        "object": "chat.completion",
        "created": int(ts),
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "logprobs": None,
                "finish_reason": "stop",
            }
        ],
        "usage": {
            "prompt_tokens": settings.usage_prompt_tokens,
            "completion_tokens": settings.usage_completion_tokens,
            "total_tokens": settings.usage_prompt_tokens + settings.usage_completion_tokens,
        },
    }
    if settings.system_fingerprint:
        document["system_fingerprint"] = settings.system_fingerprint
    return document


class BridgeState(str, Enum):
    AWAITING_FRAMES = "awaiting_frames"
    EMITTING = "emitting"
    TERMINATED = "terminated"


class StreamBridge:
    # 事件类型 -> 处理方法；未知类型按空操作处理
    _EVENT_HANDLERS: dict[str, str] = {
        EVENT_MESSAGE: "_on_message",
        EVENT_DONE: "_on_done",
        EVENT_ERROR: "_on_error",
        EVENT_PING: "_on_ping",
    }

    def __init__(
        self,
        model: str,
        *,
        placeholder: str | None = None,
        default_image_type: str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.model = model
        self.placeholder = settings.image_placeholder if placeholder is None else placeholder
        self.default_image_type = default_image_type or settings.default_image_type
        self.state = BridgeState.AWAITING_FRAMES
        self.chunks_emitted = 0
        self._clock = clock
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    @property
    def terminated(self) -> bool:
        return self.state is BridgeState.TERMINATED

    def feed(self, data: bytes) -> list[bytes]:
        if self.terminated:
            return []
        self._buffer += self._decoder.decode(data)
        lines = self._buffer.split("\n")
        # 最后一段可能不完整，留作新的缓冲
        self._buffer = lines.pop()
        frames: list[bytes] = []
        for line in lines:
            frames.extend(self._handle_line(line))
            if self.terminated:
                break
        return frames

    def finish(self) -> list[bytes]:
        """Upstream closed the stream."""
        if not self.terminated:
            logger.warning(
                "upstream stream closed without done event model=%s chunks=%d pending_bytes=%d",
                self.model,
                self.chunks_emitted,
                len(self._buffer),
            )
            self._terminate()
        return []

    def abort(self, reason: str) -> None:
        """Transport failure or client disconnect: stop without further frames."""
        if not self.terminated:
            logger.info("stream bridge aborted model=%s reason=%s chunks=%d", self.model, reason, self.chunks_emitted)
            self._terminate()

    def dispatch(self, event: UpstreamEvent) -> list[bytes]:
        if self.terminated:
            return []
        handler_name = self._EVENT_HANDLERS.get(event.kind)
        if handler_name is None:
            return []
        return getattr(self, handler_name)(event)

    def _terminate(self) -> None:
        self.state = BridgeState.TERMINATED
        self._buffer = ""

    def _handle_line(self, line: str) -> list[bytes]:
        payload_text = _extract_sse_data_payload(line)
        if payload_text is None:
            return []
        try:
            payload = json.loads(payload_text)
        except (ValueError, RecursionError):
            # 嵌套过深的 JSON 会触发 RecursionError，同样按坏帧丢弃
            logger.debug("drop malformed upstream frame excerpt=%s", payload_text[:200])
            return []
        if not isinstance(payload, dict):
            return []
        return self.dispatch(UpstreamEvent.from_payload(payload))

    def _chunk(self, delta: dict[str, Any], finish_reason: str | None = None) -> bytes:
        return _stream_chunk(self.model, delta, finish_reason, now=self._clock())

    def _on_message(self, event: UpstreamEvent) -> list[bytes]:
        if not event.is_answer():
            return []
        if event.content_type == "image" and event.image is not None:
            if not event.image.get("url"):
                return []
            delta = _image_envelope(event.image, self.placeholder, self.default_image_type)
        else:
            if event.content == "":
                return []
            delta = {"content": event.content}
        self.state = BridgeState.EMITTING
        self.chunks_emitted += 1
        return [self._chunk(delta)]

    def _on_ping(self, event: UpstreamEvent) -> list[bytes]:
        return []

    def _on_done(self, event: UpstreamEvent) -> list[bytes]:
        frames = [self._chunk({}, finish_reason="stop"), _stream_done_sse_chunk()]
        logger.debug("stream bridge done model=%s chunks=%d", self.model, self.chunks_emitted)
        self._terminate()
        return frames

    def _on_error(self, event: UpstreamEvent) -> list[bytes]:
        code = "" if event.code is None else str(event.code)
        message = event.detail or f"{code} {event.message}".strip()
        logger.error("upstream stream error model=%s code=%s message=%s", self.model, code, message)
        frames = [_stream_error_sse_chunk(message, code=code or None), _stream_done_sse_chunk()]
        self._terminate()
        return frames
