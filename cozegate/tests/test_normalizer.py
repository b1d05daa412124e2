import asyncio
import base64
from types import MappingProxyType

import pytest

from cozegate.adapters.openai_compat.normalizer import (
    ContentShape,
    classify_message,
    normalize_request,
    parse_data_url,
    resolve_inline_images,
    uploaded_file_message,
)
from cozegate.config.bot_table import BotTable
from cozegate.core.errors import ConfigurationError, ValidationError

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image-bytes"
PNG_B64 = base64.b64encode(PNG_BYTES).decode("ascii")
DATA_URL = f"data:image/png;base64,{PNG_B64}"

TABLE = BotTable(entries=MappingProxyType({"gpt-4o": "bot-vision"}), default_bot_id="bot-default")


def test_classify_message_shapes():
    assert classify_message({"role": "user", "content": "hi"}) is ContentShape.TEXT
    assert classify_message({"role": "user", "content_type": "text", "content": "hi"}) is ContentShape.TEXT
    assert classify_message({"role": "user", "content_type": "image", "image_url": "https://x/a.png"}) is ContentShape.IMAGE_OBJECT
    assert classify_message({"role": "user", "content": [{"type": "text", "text": "hi"}]}) is ContentShape.PART_LIST


@pytest.mark.parametrize(
    "raw",
    [
        "just a string",
        {"role": "user"},
        {"role": "user", "content": 42},
        {"role": "user", "content_type": "audio", "content": "x"},
    ],
)
def test_classify_message_rejects_unknown_shapes(raw):
    with pytest.raises(ValidationError):
        classify_message(raw)


def test_history_is_all_but_last_message():
    payload = {
        "model": "unknown-model",
        "messages": [
            {"role": "system", "content": "be nice"},
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
            {"role": "user", "content": "how are you"},
        ],
    }
    req = normalize_request(payload, bot_table=TABLE)

    assert [m.text for m in req.history] == ["be nice", "hi", "hello"]
    assert [m.role for m in req.history] == ["system", "user", "assistant"]
    assert req.query.text == "how are you"
    assert req.identity == "bot-default"
    assert req.caller == "apiuser"
    assert req.streaming is False

    body = req.to_upstream_body()
    assert body["query"] == "how are you"
    assert "image" not in body
    assert body["chat_history"][0] == {"role": "system", "content": "be nice", "content_type": "text"}


def test_empty_message_list_gives_empty_text_query():
    req = normalize_request({"model": "gpt-4o", "messages": []}, bot_table=TABLE)
    assert req.history == []
    assert req.query.modality == "text"
    assert req.query.text == ""
    assert req.identity == "bot-vision"


def test_user_and_stream_are_passed_through():
    req = normalize_request(
        {"model": "gpt-4o", "user": "alice", "stream": True, "messages": [{"role": "user", "content": "hi"}]},
        bot_table=TABLE,
    )
    assert req.caller == "alice"
    assert req.streaming is True
    assert req.to_upstream_body()["user"] == "alice"


def test_normalization_is_idempotent():
    payload = {
        "model": "gpt-4o",
        "messages": [
            {"role": "user", "content": [{"type": "text", "text": "look"}, {"type": "image_url", "image_url": {"url": DATA_URL}}]},
            {"role": "user", "content": "and?"},
        ],
    }
    first = normalize_request(payload, bot_table=TABLE)
    second = normalize_request(payload, bot_table=TABLE)
    assert first == second
    assert first.model_dump() == second.model_dump()


def test_image_object_with_url_becomes_image_query_on_vision_route():
    req = normalize_request(
        {
            "model": "gpt-4o",
            "messages": [
                {"role": "user", "content": "what is this"},
                {"role": "user", "content_type": "image", "image_url": "https://cdn.example.com/cat.png", "image_type": "image/png"},
            ],
        },
        bot_table=TABLE,
    )
    assert req.has_image is True
    assert req.query.is_image
    assert req.query.text is None
    body = req.to_upstream_body()
    assert body["image"] == {"url": "https://cdn.example.com/cat.png", "type": "image/png"}
    assert "query" not in body


def test_history_image_is_preserved_as_image_entry():
    req = normalize_request(
        {
            "model": "gpt-4o",
            "messages": [
                {"role": "user", "content_type": "image", "image_url": "https://cdn.example.com/cat.jpg"},
                {"role": "user", "content": "describe it"},
            ],
        },
        bot_table=TABLE,
    )
    assert req.has_image is True
    body = req.to_upstream_body()
    assert body["chat_history"] == [
        {"role": "user", "content_type": "image", "image": {"url": "https://cdn.example.com/cat.jpg", "type": "image/jpeg"}}
    ]
    assert body["query"] == "describe it"


def test_part_list_first_text_and_first_image_win():
    req = normalize_request(
        {
            "model": "x",
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": "first"},
                        {"type": "image_url", "image_url": {"url": "https://cdn.example.com/one.png"}},
                        {"type": "text", "text": "second"},
                        {"type": "image_url", "image_url": {"url": "https://cdn.example.com/two.png"}},
                    ],
                },
                {"role": "user", "content": "next"},
            ],
        },
        bot_table=TABLE,
    )
    merged = req.history[0]
    assert merged.is_image
    assert merged.image.location == "https://cdn.example.com/one.png"
    assert merged.caption == "first"
    assert req.to_upstream_body()["chat_history"][0]["content"] == "first"


def test_part_list_text_only_is_text_message():
    req = normalize_request(
        {"model": "x", "messages": [{"role": "user", "content": [{"type": "text", "text": "hello"}]}]},
        bot_table=TABLE,
    )
    assert req.query.modality == "text"
    assert req.query.text == "hello"


def test_part_list_without_usable_parts_is_rejected():
    with pytest.raises(ValidationError):
        normalize_request({"model": "x", "messages": [{"role": "user", "content": [{"type": "audio"}]}]}, bot_table=TABLE)


def test_data_url_is_decoded_inline():
    req = normalize_request(
        {"model": "x", "messages": [{"role": "user", "content": [{"type": "image_url", "image_url": {"url": DATA_URL}}]}]},
        bot_table=TABLE,
    )
    assert req.query.image.transport == "inline"
    assert req.query.image.data == PNG_BYTES
    assert req.query.image.mime_type == "image/png"


def test_raw_base64_image_data_is_decoded():
    req = normalize_request(
        {"model": "x", "messages": [{"role": "user", "content_type": "image", "image_data": PNG_B64, "image_type": "image/png"}]},
        bot_table=TABLE,
    )
    assert req.query.image.transport == "inline"
    assert req.query.image.data == PNG_BYTES


def test_invalid_base64_is_validation_error():
    with pytest.raises(ValidationError):
        parse_data_url("data:image/png;base64,@@@not-base64@@@")
    with pytest.raises(ValidationError):
        parse_data_url("data:image/png,plain")


def test_image_message_without_location_is_rejected():
    with pytest.raises(ValidationError):
        normalize_request({"model": "x", "messages": [{"role": "user", "content_type": "image"}]}, bot_table=TABLE)


def test_unknown_role_is_rejected():
    with pytest.raises(ValidationError):
        normalize_request({"model": "x", "messages": [{"role": "tool", "content": "x"}]}, bot_table=TABLE)


def test_messages_must_be_a_list():
    with pytest.raises(ValidationError):
        normalize_request({"model": "x", "messages": "hello"}, bot_table=TABLE)


def test_missing_bot_configuration_raises():
    with pytest.raises(ConfigurationError):
        normalize_request({"model": "x", "messages": []}, bot_table=BotTable())


def test_uploaded_attachment_becomes_final_image_message():
    attachment = uploaded_file_message("http://127.0.0.1:3000/uploads/image-1-2.png", "image/png")
    req = normalize_request(
        {"model": "x", "messages": [{"role": "user", "content": "what is in the picture"}]},
        bot_table=TABLE,
        attachment=attachment,
    )
    assert len(req.history) == 1
    assert req.query.is_image
    assert req.to_upstream_body()["image"] == {"url": "http://127.0.0.1:3000/uploads/image-1-2.png", "type": "image/png"}


def test_resolve_inline_images_uploads_once_per_image_and_drops_base64():
    payload = {
        "model": "x",
        "messages": [
            {"role": "user", "content_type": "image", "image_data": PNG_B64},
            {"role": "user", "content": [{"type": "text", "text": "and this"}, {"type": "image_url", "image_url": {"url": DATA_URL}}]},
        ],
    }
    req = normalize_request(payload, bot_table=TABLE)
    uploaded = []

    async def fake_upload(image):
        uploaded.append(image.data)
        return f"file-{len(uploaded)}"

    resolved = asyncio.run(resolve_inline_images(req, fake_upload))

    assert uploaded == [PNG_BYTES, PNG_BYTES]
    assert resolved.history[0].image.to_upstream() == {"file_id": "file-1", "type": "image/jpeg"}
    assert resolved.query.image.to_upstream() == {"file_id": "file-2", "type": "image/png"}
    assert PNG_B64 not in str(resolved.to_upstream_body())
    # 原请求不被修改
    assert req.query.image.transport == "inline"


def test_resolve_inline_images_is_noop_without_inline_images():
    req = normalize_request({"model": "x", "messages": [{"role": "user", "content": "hi"}]}, bot_table=TABLE)

    async def fail_upload(image):
        raise AssertionError("upload must not be called")

    assert asyncio.run(resolve_inline_images(req, fail_upload)) is req


def test_uploaded_file_is_its_own_content_shape():
    raw = {"role": "user", "uploaded_file": {"url": "http://h/uploads/image-1-2.png", "mime_type": "image/png"}}
    assert classify_message(raw) is ContentShape.UPLOADED_FILE

    message = uploaded_file_message("http://h/uploads/image-1-2.png", "")
    assert message.is_image
    assert message.image.to_upstream() == {"url": "http://h/uploads/image-1-2.png", "type": "image/jpeg"}


def test_uploaded_file_shape_is_rejected_in_json_messages():
    raw = {"role": "user", "uploaded_file": {"url": "http://h/uploads/x.png"}}
    with pytest.raises(ValidationError):
        normalize_request({"model": "x", "messages": [raw]}, bot_table=TABLE)
