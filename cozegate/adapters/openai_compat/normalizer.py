"""OpenAI chat request -> upstream chat request.

Each inbound message is classified into exactly one content shape before
conversion; a message matching none of them is rejected instead of being
flattened to text.
"""

from __future__ import annotations

import base64
import binascii
import mimetypes
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping

from pydantic import ValidationError as PydanticValidationError

from cozegate.config.bot_table import BotTable
from cozegate.config.settings import settings
from cozegate.core.errors import ValidationError
from cozegate.core.models import ChatMessage, ImageRef, InboundChatRequest, NormalizedRequest, Role
from cozegate.util.logger import logger


_ROLE_ALIASES: dict[str, Role] = {
    "user": "user",
    "assistant": "assistant",
    "system": "system",
    "developer": "system",
}
_TEXT_PART_TYPES = {"text", "input_text"}
_IMAGE_PART_TYPES = {"image_url", "input_image", "image"}
# 仅由 multipart 附件生成，不接受客户端在 JSON 里直接提交
_UPLOADED_FILE_KEY = "uploaded_file"


class ContentShape(str, Enum):
    TEXT = "text"
    IMAGE_OBJECT = "image_object"
    PART_LIST = "part_list"
    UPLOADED_FILE = "uploaded_file"


def classify_message(raw: Any) -> ContentShape:
    """Derive the content shape from which fields are present."""
    if not isinstance(raw, Mapping):
        raise ValidationError("each message must be an object", code="invalid_message")
    if isinstance(raw.get(_UPLOADED_FILE_KEY), Mapping):
        return ContentShape.UPLOADED_FILE
    content_type = raw.get("content_type")
    if content_type == "image":
        return ContentShape.IMAGE_OBJECT
    if content_type not in (None, "", "text"):
        raise ValidationError(f"unsupported content_type: {content_type}", code="unsupported_content_type")
    content = raw.get("content")
    if isinstance(content, str):
        return ContentShape.TEXT
    if isinstance(content, list):
        return ContentShape.PART_LIST
    raise ValidationError("message content must be a string or a list of parts", code="invalid_message_content")


def _parse_role(raw: Mapping[str, Any]) -> Role:
    value = str(raw.get("role") or "user").strip().lower()
    role = _ROLE_ALIASES.get(value)
    if role is None:
        raise ValidationError(f"unsupported message role: {value}", code="invalid_role")
    return role


def _guess_mime_type(url: str) -> str:
    guessed, _ = mimetypes.guess_type(url.split("?", 1)[0])
    if guessed and guessed.startswith("image/"):
        return guessed
    return settings.default_image_type


def _decode_base64(data: str) -> bytes:
    cleaned = "".join(data.split())
    try:
        decoded = base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError("image payload is not valid base64", code="invalid_image_data") from exc
    if not decoded:
        raise ValidationError("image payload is empty", code="invalid_image_data")
    return decoded


def parse_data_url(value: str) -> tuple[str, bytes]:
    """``data:image/png;base64,....`` -> (mime_type, bytes)."""
    header, sep, data = value.partition(",")
    if not sep or not header.lower().startswith("data:"):
        raise ValidationError("malformed data url", code="invalid_data_url")
    params = header[5:].split(";")
    if "base64" not in (p.strip().lower() for p in params[1:]):
        raise ValidationError("only base64 data urls are supported", code="invalid_data_url")
    mime_type = params[0].strip().lower() or settings.default_image_type
    return mime_type, _decode_base64(data)


def _inline_image(mime_type: str, data: bytes, location: str | None = None) -> ImageRef:
    if location is None:
        location = f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"
    return ImageRef(transport="inline", location=location, mime_type=mime_type, data=data)


def image_from_url(url: str, mime_type: str | None = None) -> ImageRef:
    candidate = (url or "").strip()
    if candidate.lower().startswith("data:"):
        parsed_mime, data = parse_data_url(candidate)
        return _inline_image(mime_type or parsed_mime, data, location=candidate)
    if candidate.lower().startswith(("http://", "https://")):
        return ImageRef(transport="url", location=candidate, mime_type=mime_type or _guess_mime_type(candidate))
    raise ValidationError("image url must be http(s) or a base64 data url", code="invalid_image_url")


def _from_text(raw: Mapping[str, Any]) -> ChatMessage:
    return ChatMessage.text_message(_parse_role(raw), raw["content"])


def _from_image_object(raw: Mapping[str, Any]) -> ChatMessage:
    role = _parse_role(raw)
    mime_type = str(raw.get("image_type") or "").strip() or None
    image_url = raw.get("image_url")
    if isinstance(image_url, Mapping):
        image_url = image_url.get("url")
    if isinstance(image_url, str) and image_url.strip():
        return ChatMessage.image_message(role, image_from_url(image_url, mime_type))
    image_data = raw.get("image_data")
    if isinstance(image_data, str) and image_data.strip():
        if image_data.strip().lower().startswith("data:"):
            return ChatMessage.image_message(role, image_from_url(image_data, mime_type))
        resolved_mime = mime_type or settings.default_image_type
        return ChatMessage.image_message(role, _inline_image(resolved_mime, _decode_base64(image_data)))
    raise ValidationError("image message requires image_url or image_data", code="missing_image")


def _part_image_url(part: Mapping[str, Any]) -> str | None:
    for key in ("image_url", "image", "url"):
        value = part.get(key)
        if isinstance(value, Mapping):
            value = value.get("url")
        if isinstance(value, str) and value.strip():
            return value
    return None


def _from_part_list(raw: Mapping[str, Any]) -> ChatMessage:
    role = _parse_role(raw)
    text: str | None = None
    image_url: str | None = None
    # 只取第一段文字和第一张图片，其余忽略
    for part in raw["content"]:
        if not isinstance(part, Mapping):
            continue
        part_type = str(part.get("type") or "").strip().lower()
        if part_type in _TEXT_PART_TYPES and text is None and isinstance(part.get("text"), str):
            text = part["text"]
        elif part_type in _IMAGE_PART_TYPES and image_url is None:
            image_url = _part_image_url(part)
    if image_url is not None:
        return ChatMessage.image_message(role, image_from_url(image_url), caption=text or None)
    if text is not None:
        return ChatMessage.text_message(role, text)
    raise ValidationError("content list has no text or image part", code="invalid_message_content")


def _from_uploaded_file(raw: Mapping[str, Any]) -> ChatMessage:
    upload = raw[_UPLOADED_FILE_KEY]
    url = upload.get("url")
    if not isinstance(url, str) or not url.strip():
        raise ValidationError("uploaded file has no public url", code="missing_image")
    mime_type = str(upload.get("mime_type") or "").strip() or settings.default_image_type
    return ChatMessage.image_message(_parse_role(raw), ImageRef(transport="url", location=url, mime_type=mime_type))


_CONVERTERS: dict[ContentShape, Callable[[Mapping[str, Any]], ChatMessage]] = {
    ContentShape.TEXT: _from_text,
    ContentShape.IMAGE_OBJECT: _from_image_object,
    ContentShape.PART_LIST: _from_part_list,
    ContentShape.UPLOADED_FILE: _from_uploaded_file,
}


def to_chat_message(raw: Any, *, attachment: bool = False) -> ChatMessage:
    """``attachment=True`` only for the multipart file; inbound JSON may not use that shape."""
    shape = classify_message(raw)
    if shape is ContentShape.UPLOADED_FILE and not attachment:
        raise ValidationError("uploaded_file is only accepted as a multipart attachment", code="invalid_message")
    if attachment and shape is not ContentShape.UPLOADED_FILE:
        raise ValidationError("attachment must be an uploaded file", code="invalid_message")
    return _CONVERTERS[shape](raw)


def uploaded_file_message(image_url: str, mime_type: str) -> ChatMessage:
    """The multipart attachment becomes a user image message served by URL."""
    raw = {"role": "user", _UPLOADED_FILE_KEY: {"url": image_url, "mime_type": mime_type}}
    return to_chat_message(raw, attachment=True)


def parse_inbound(payload: Mapping[str, Any] | InboundChatRequest) -> InboundChatRequest:
    if isinstance(payload, InboundChatRequest):
        return payload
    if not isinstance(payload, Mapping):
        raise ValidationError("request body must be a JSON object", code="invalid_body")
    try:
        return InboundChatRequest.model_validate(payload)
    except PydanticValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(item) for item in first.get("loc", ()))
        raise ValidationError(
            f"invalid field {location}: {first.get('msg', 'invalid value')}",
            code="invalid_body",
        ) from exc


def normalize_request(
    payload: Mapping[str, Any] | InboundChatRequest,
    *,
    bot_table: BotTable,
    attachment: ChatMessage | None = None,
    default_user: str | None = None,
) -> NormalizedRequest:
    """Build the canonical upstream request. Pure: no I/O, no mutation of ``payload``."""
    inbound = parse_inbound(payload)
    messages = [to_chat_message(item) for item in inbound.messages]
    if attachment is not None:
        messages.append(attachment)

    if messages:
        history, query = messages[:-1], messages[-1]
    else:
        history, query = [], ChatMessage.text_message("user", "")

    caller = (inbound.user or "").strip() or default_user or settings.default_user
    normalized = NormalizedRequest(
        identity=bot_table.resolve(inbound.model),
        model=inbound.model,
        history=history,
        query=query,
        streaming=bool(inbound.stream),
        caller=caller,
    )
    logger.debug(
        "request normalized model=%s history=%d query_modality=%s has_image=%s stream=%s",
        normalized.model,
        len(normalized.history),
        normalized.query.modality,
        normalized.has_image,
        normalized.streaming,
    )
    return normalized


ImageUploader = Callable[[ImageRef], Awaitable[str]]


async def resolve_inline_images(request: NormalizedRequest, upload: ImageUploader) -> NormalizedRequest:
    """Swap every inline image for an upstream file handle (one upload per image)."""

    async def resolve(message: ChatMessage) -> ChatMessage:
        if message.image is None or message.image.transport != "inline":
            return message
        file_id = await upload(message.image)
        handle = ImageRef(transport="file_id", location=file_id, mime_type=message.image.mime_type)
        return message.model_copy(update={"image": handle})

    if not any(item.image is not None and item.image.transport == "inline" for item in request.iter_messages()):
        return request

    history = [await resolve(item) for item in request.history]
    query = await resolve(request.query)
    return request.model_copy(update={"history": history, "query": query})
