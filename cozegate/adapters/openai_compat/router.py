"""OpenAI-compatible routes."""

from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Any, AsyncGenerator, Mapping

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask
from starlette.datastructures import UploadFile

from cozegate.adapters.openai_compat.bridge import StreamBridge, render_chat_completion
from cozegate.adapters.openai_compat.normalizer import (
    normalize_request,
    resolve_inline_images,
    uploaded_file_message,
)
from cozegate.adapters.openai_compat.stream_utils import _build_streaming_response
from cozegate.adapters.openai_compat.upstream import iter_stream_bytes, open_chat_stream, post_chat, upload_file
from cozegate.config.bot_table import get_bot_table
from cozegate.config.settings import settings
from cozegate.core.errors import AuthError, CozeGateError, UpstreamError, ValidationError
from cozegate.core.models import NormalizedRequest
from cozegate.observability.logging import log_event
from cozegate.storage.uploads import StoredUpload, public_base_url, save_upload
from cozegate.util.debug_excerpt import debug_log_original
from cozegate.util.logger import logger


router = APIRouter()

_DEBUG_REQUEST_BODY_MAX_CHARS = 32000
_DEBUG_HEADERS_REDACT = frozenset({"authorization", "cookie", "proxy-authorization"})
_TRUE_VALUES = {"1", "true", "yes", "on"}


def _log_request_if_debug(request: Request, payload: Mapping[str, Any], request_id: str) -> None:
    """DEBUG 下打印请求概要（method/path/headers）；正文按 log_full_request_body 决定是否打印。"""
    if not logger.isEnabledFor(logging.DEBUG):
        return
    headers_safe = {
        k: ("***" if k.lower() in _DEBUG_HEADERS_REDACT or "token" in k.lower() else v)
        for k, v in request.headers.items()
    }
    try:
        body_str = json.dumps(payload, ensure_ascii=False)
    except (TypeError, ValueError):
        body_str = str(payload)
    logger.debug(
        "incoming request request_id=%s method=%s path=%s headers=%s body_size=%d",
        request_id,
        request.method,
        request.url.path,
        headers_safe,
        len(body_str),
    )
    if settings.log_full_request_body:
        logger.debug("incoming request body request_id=%s:\n%s", request_id, body_str[:_DEBUG_REQUEST_BODY_MAX_CHARS])


def _error_response(exc: CozeGateError) -> JSONResponse:
    detail = (exc.message or "").strip() or exc.error_type
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"message": detail, "type": exc.error_type, "code": exc.code}},
    )


def _auth_error_response(exc: AuthError) -> JSONResponse:
    return JSONResponse(status_code=401, content={"code": 401, "errmsg": exc.message})


def _extract_bearer_token(request: Request) -> str:
    header = request.headers.get("authorization", "")
    if not header.startswith("Bearer "):
        raise AuthError("Invalid authorization format. Expected 'Bearer <token>'.")
    token = header[len("Bearer "):].strip()
    if not token:
        raise AuthError("Missing token.")
    return token


def _form_bool(value: Any) -> bool | None:
    if value is None:
        return None
    return str(value).strip().lower() in _TRUE_VALUES


async def _read_multipart(request: Request) -> tuple[dict[str, Any], StoredUpload | None]:
    try:
        form = await request.form()
    except Exception as exc:
        logger.warning("multipart parse failed path=%s error=%s", request.url.path, exc)
        raise ValidationError("图片解析失败", code="invalid_multipart") from exc

    payload: dict[str, Any] = {"model": str(form.get("model") or "")}
    if form.get("user") is not None:
        payload["user"] = str(form.get("user"))
    stream = _form_bool(form.get("stream"))
    if stream is not None:
        payload["stream"] = stream
    raw_messages = form.get("messages")
    if isinstance(raw_messages, str) and raw_messages.strip():
        try:
            payload["messages"] = json.loads(raw_messages)
        except json.JSONDecodeError as exc:
            raise ValidationError("messages form field must be a JSON array", code="invalid_messages") from exc
    else:
        payload["messages"] = []

    upload = form.get(settings.upload_field_name)
    if isinstance(upload, UploadFile):
        return payload, await save_upload(upload, settings.upload_field_name)
    return payload, None


async def _read_inbound(request: Request) -> tuple[dict[str, Any], StoredUpload | None]:
    content_type = request.headers.get("content-type", "")
    if "multipart/form-data" in content_type.lower():
        return await _read_multipart(request)
    try:
        payload = await request.json()
    except Exception as exc:
        raise ValidationError("request body is not valid JSON", code="invalid_json") from exc
    if not isinstance(payload, dict):
        raise ValidationError("request body must be a JSON object", code="invalid_body")
    return payload, None


async def _execute_chat_once(normalized: NormalizedRequest, token: str, request_id: str) -> JSONResponse:
    upstream_body = await post_chat(normalized.to_upstream_body(), token, has_image=normalized.has_image)
    document = render_chat_completion(upstream_body, normalized.model)
    debug_log_original("answer_text", str(document["choices"][0]["message"]["content"]), request_id=request_id)
    log_event("chat_completion_done", request_id=request_id, model=normalized.model, stream=False)
    return JSONResponse(content=document)


async def _execute_chat_stream_once(
    normalized: NormalizedRequest,
    token: str,
    request_id: str,
    upload: StoredUpload | None,
) -> StreamingResponse:
    upstream_response = await open_chat_stream(normalized.to_upstream_body(), token, has_image=normalized.has_image)
    bridge = StreamBridge(normalized.model)

    async def cleanup() -> None:
        await upstream_response.aclose()
        if upload is not None:
            await upload.release()

    async def bridge_generator() -> AsyncGenerator[bytes, None]:
        started = time.monotonic()
        try:
            async for data in iter_stream_bytes(upstream_response):
                for frame in bridge.feed(data):
                    yield frame
                if bridge.terminated:
                    break
            else:
                bridge.finish()
        except UpstreamError as exc:
            logger.error("chat stream upstream failure request_id=%s error=%s", request_id, exc.message)
            bridge.abort(exc.code)
        finally:
            if not bridge.terminated:
                bridge.abort("client_disconnected")
            await cleanup()
            log_event(
                "chat_completion_done",
                request_id=request_id,
                model=normalized.model,
                stream=True,
                chunks=bridge.chunks_emitted,
                elapsed_ms=int((time.monotonic() - started) * 1000),
            )

    response = _build_streaming_response(bridge_generator())
    # 生成器未被迭代就断开时，由 background 兜底释放（release 幂等）
    response.background = BackgroundTask(cleanup)
    return response


@router.post("/chat/completions")
async def chat_completions(request: Request):
    request_id = f"req-{uuid.uuid4().hex[:12]}"
    upload: StoredUpload | None = None
    try:
        token = _extract_bearer_token(request)
        payload, upload = await _read_inbound(request)
        _log_request_if_debug(request, payload, request_id)

        attachment = None
        if upload is not None:
            attachment = uploaded_file_message(upload.public_url(public_base_url(request)), upload.mime_type)
        normalized = normalize_request(payload, bot_table=get_bot_table(), attachment=attachment)
        if settings.upload_inline_images:

            async def uploader(image):
                return await upload_file(image, token)

            normalized = await resolve_inline_images(normalized, uploader)

        if normalized.query.text is not None:
            debug_log_original("query_text", normalized.query.text, request_id=request_id)
        log_event(
            "chat_completion_start",
            request_id=request_id,
            model=normalized.model,
            stream=normalized.streaming,
            history=len(normalized.history),
            has_image=normalized.has_image,
        )

        if normalized.streaming:
            response = await _execute_chat_stream_once(normalized, token, request_id, upload)
            # 所有权交给流式生成器，由其 finally 释放
            upload = None
            return response
        return await _execute_chat_once(normalized, token, request_id)
    except AuthError as exc:
        logger.warning("chat completion auth rejected request_id=%s reason=%s", request_id, exc.message)
        return _auth_error_response(exc)
    except CozeGateError as exc:
        logger.warning(
            "chat completion failed request_id=%s type=%s status=%s detail=%s",
            request_id,
            exc.error_type,
            exc.status_code,
            exc.message,
        )
        return _error_response(exc)
    finally:
        if upload is not None:
            await upload.release()
