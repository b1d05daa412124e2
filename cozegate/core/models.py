"""Internal transport models."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


Role = Literal["user", "assistant", "system"]
Modality = Literal["text", "image"]
ImageTransport = Literal["url", "file_id", "inline"]

EVENT_MESSAGE = "message"
EVENT_DONE = "done"
EVENT_ERROR = "error"
EVENT_PING = "ping"


class ImageRef(BaseModel):
    """Where an image lives and how upstream should reach it.

    ``inline`` references hold the decoded bytes in ``data`` and a data URL
    in ``location``; they are exchanged for a ``file_id`` reference before
    the chat call when handle-based transport is enabled.
    """

    transport: ImageTransport
    location: str
    mime_type: str
    data: bytes | None = Field(default=None, repr=False)

    def to_upstream(self) -> dict[str, str]:
        if self.transport == "file_id":
            return {"file_id": self.location, "type": self.mime_type}
        return {"url": self.location, "type": self.mime_type}


class ChatMessage(BaseModel):
    role: Role
    modality: Modality
    text: str | None = None
    image: ImageRef | None = None
    # 多段 content 中同时带了文字和图片时，文字随图片保留
    caption: str | None = None

    @model_validator(mode="after")
    def _exactly_one_payload(self) -> "ChatMessage":
        if self.modality == "text" and (self.text is None or self.image is not None):
            raise ValueError("text message must carry text and no image")
        if self.modality == "image" and (self.image is None or self.text is not None):
            raise ValueError("image message must carry an image and no text")
        return self

    @classmethod
    def text_message(cls, role: Role, text: str) -> "ChatMessage":
        return cls(role=role, modality="text", text=text)

    @classmethod
    def image_message(cls, role: Role, image: ImageRef, caption: str | None = None) -> "ChatMessage":
        return cls(role=role, modality="image", image=image, caption=caption)

    @property
    def is_image(self) -> bool:
        return self.modality == "image"

    def to_history_entry(self) -> dict[str, Any]:
        if self.image is not None:
            entry: dict[str, Any] = {
                "role": self.role,
                "content_type": "image",
                "image": self.image.to_upstream(),
            }
            if self.caption:
                entry["content"] = self.caption
            return entry
        return {"role": self.role, "content": self.text, "content_type": "text"}


class NormalizedRequest(BaseModel):
    identity: str
    model: str = ""
    history: list[ChatMessage] = Field(default_factory=list)
    query: ChatMessage
    streaming: bool = False
    caller: str

    @property
    def has_image(self) -> bool:
        return self.query.is_image or any(item.is_image for item in self.history)

    def iter_messages(self):
        yield from self.history
        yield self.query

    def to_upstream_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "user": self.caller,
            "bot_id": self.identity,
            "chat_history": [item.to_history_entry() for item in self.history],
            "stream": self.streaming,
        }
        if self.query.image is not None:
            body["image"] = self.query.image.to_upstream()
        else:
            body["query"] = self.query.text
        return body


class InboundChatRequest(BaseModel):
    """Raw OpenAI-style chat-completion payload, before normalization."""

    model_config = ConfigDict(extra="ignore")

    model: str = ""
    messages: list[Any] = Field(default_factory=list)
    user: str | None = None
    stream: bool | None = None


class UpstreamEvent(BaseModel):
    """One decoded upstream stream frame.

    ``kind`` keeps the raw event name so kinds this gateway does not know
    about pass through dispatch as no-ops instead of failing validation.
    """

    kind: str
    role: str = ""
    type: str = ""
    content: str = ""
    content_type: str = "text"
    image: dict[str, Any] | None = None
    code: Any = None
    message: str = ""
    detail: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "UpstreamEvent":
        kind = str(payload.get("event") or "").strip().lower()
        if kind == EVENT_MESSAGE:
            body = payload.get("message")
            if not isinstance(body, dict):
                body = {}
            image = body.get("image")
            content = body.get("content")
            return cls(
                kind=kind,
                role=str(body.get("role") or ""),
                type=str(body.get("type") or ""),
                content=content if isinstance(content, str) else "",
                content_type=str(body.get("content_type") or "text"),
                image=image if isinstance(image, dict) else None,
            )
        if kind == EVENT_ERROR:
            info = payload.get("error_information")
            detail = info.get("err_msg") if isinstance(info, dict) else None
            return cls(
                kind=kind,
                code=payload.get("code"),
                message=str(payload.get("message") or ""),
                detail=str(detail) if detail else None,
            )
        return cls(kind=kind)

    def is_answer(self) -> bool:
        return self.role == "assistant" and (self.type == "answer" or self.content_type == "image")
