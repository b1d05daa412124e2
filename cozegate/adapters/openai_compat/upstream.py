"""
上游 HTTP 调用：共享 httpx.AsyncClient、URL 拼装、对话（JSON / 流式）与文件上传。
httpx 的异常只在本模块捕获，统一转换为 cozegate.core.errors 中的上游错误类型。
"""

from __future__ import annotations

import asyncio
import json
import mimetypes
from typing import Any, AsyncGenerator, Awaitable, Mapping
from urllib.parse import urlparse, urlunparse

import httpx

from cozegate.config.settings import settings
from cozegate.core.errors import (
    UpstreamApplicationError,
    UpstreamProtocolError,
    UpstreamTimeoutError,
    UpstreamTransportError,
)
from cozegate.core.models import ImageRef
from cozegate.util.logger import logger

_upstream_async_client: httpx.AsyncClient | None = None
_upstream_client_lock: asyncio.Lock | None = None


def _upstream_http_limits() -> httpx.Limits:
    return httpx.Limits(
        max_connections=max(10, int(settings.upstream_max_connections)),
        max_keepalive_connections=max(5, int(settings.upstream_max_keepalive_connections)),
    )


def _bounded_timeout() -> httpx.Timeout:
    return httpx.Timeout(float(settings.upstream_timeout_seconds), connect=float(settings.upstream_connect_timeout_seconds))


def _stream_timeout() -> httpx.Timeout:
    # 流式读取不设上限，只限制建连
    connect = float(settings.upstream_connect_timeout_seconds)
    return httpx.Timeout(connect=connect, read=None, write=connect, pool=connect)


async def _get_upstream_async_client() -> httpx.AsyncClient:
    global _upstream_async_client, _upstream_client_lock
    if _upstream_async_client is not None:
        return _upstream_async_client
    if _upstream_client_lock is None:
        _upstream_client_lock = asyncio.Lock()
    async with _upstream_client_lock:
        if _upstream_async_client is None:
            _upstream_async_client = httpx.AsyncClient(
                http2=False,
                timeout=_bounded_timeout(),
                limits=_upstream_http_limits(),
            )
    return _upstream_async_client


async def close_upstream_async_client() -> None:
    global _upstream_async_client
    if _upstream_async_client is not None:
        await _upstream_async_client.aclose()
        _upstream_async_client = None


def _normalize_upstream_base(raw_base: str) -> str:
    candidate = raw_base.strip()
    if not candidate:
        raise ValueError("missing_upstream_base")
    if "://" not in candidate:
        candidate = f"https://{candidate}"
    parsed = urlparse(candidate)
    if parsed.scheme not in {"http", "https"}:
        raise ValueError("invalid_upstream_scheme")
    if not parsed.netloc:
        raise ValueError("invalid_upstream_host")
    cleaned_path = parsed.path.rstrip("/")
    return urlunparse((parsed.scheme, parsed.netloc, cleaned_path, "", "", ""))


def _build_upstream_url(path: str) -> str:
    route_path = path if path.startswith("/") else f"/{path}"
    return f"{_normalize_upstream_base(settings.upstream_api_base)}{route_path}"


def chat_url(has_image: bool) -> str:
    return _build_upstream_url(settings.upstream_vision_chat_path if has_image else settings.upstream_chat_path)


def file_upload_url() -> str:
    return _build_upstream_url(settings.upstream_file_upload_path)


def _build_forward_headers(token: str, *, json_body: bool = True) -> dict[str, str]:
    headers = {"Authorization": f"Bearer {token}"}
    if json_body:
        headers["Content-Type"] = "application/json"
    return headers


def _decode_json_or_text(body: bytes) -> dict[str, Any] | str:
    text = body.decode("utf-8", errors="replace")
    if not text:
        return ""
    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
        return text
    except json.JSONDecodeError:
        return text


def _safe_error_detail(payload: dict[str, Any] | str) -> str:
    if isinstance(payload, str):
        return payload[:600]
    for key in ("msg", "message", "error"):
        if isinstance(payload.get(key), str) and payload[key]:
            return payload[key][:600]
    return json.dumps(payload, ensure_ascii=False)[:600]


def _transport_error(exc: httpx.HTTPError, url: str) -> UpstreamTransportError | UpstreamTimeoutError:
    detail = (str(exc) or "").strip() or exc.__class__.__name__
    if isinstance(exc, httpx.TimeoutException):
        logger.warning("upstream timeout url=%s error=%s", url, detail)
        return UpstreamTimeoutError(f"upstream timed out: {detail}", code="upstream_timeout")
    logger.warning("upstream http_error url=%s error=%s", url, detail)
    return UpstreamTransportError(f"upstream unreachable: {detail}", code="upstream_unreachable")


def _raise_for_status(status_code: int, body: bytes, url: str) -> None:
    if status_code < 400:
        return
    detail = _safe_error_detail(_decode_json_or_text(body))
    logger.warning("upstream http error url=%s status=%s detail=%s", url, status_code, detail)
    raise UpstreamTransportError(detail or f"upstream returned {status_code}", status_code=status_code, code="upstream_http_error")


async def _within_deadline(call: Awaitable[httpx.Response], url: str) -> httpx.Response:
    """httpx 的 timeout 只限制单次读写，这里给整个调用（含响应体）加总时限。"""
    deadline = float(settings.upstream_timeout_seconds)
    try:
        return await asyncio.wait_for(call, timeout=deadline)
    except asyncio.TimeoutError as exc:
        logger.warning("upstream deadline exceeded url=%s deadline=%ss", url, deadline)
        raise UpstreamTimeoutError(f"upstream did not answer within {deadline:g}s", code="upstream_timeout") from exc


def _check_application_code(body: Mapping[str, Any]) -> None:
    code = body.get("code", 0)
    if code in (0, "0", None):
        return
    message = str(body.get("msg") or body.get("message") or f"upstream code {code}")
    logger.warning("upstream application error code=%s msg=%s", code, message)
    raise UpstreamApplicationError(message, code=str(code))


async def post_chat(body: dict[str, Any], token: str, *, has_image: bool) -> dict[str, Any]:
    """Non-streaming chat call, bounded by ``upstream_timeout_seconds``."""
    url = chat_url(has_image)
    content = json.dumps(body, ensure_ascii=False).encode("utf-8")
    logger.debug("chat upstream start url=%s payload_bytes=%d", url, len(content))
    client = await _get_upstream_async_client()
    try:
        response = await _within_deadline(
            client.post(url, content=content, headers=_build_forward_headers(token), timeout=_bounded_timeout()),
            url,
        )
    except httpx.HTTPError as exc:
        raise _transport_error(exc, url) from exc
    logger.debug("chat upstream done url=%s status=%s", url, response.status_code)
    _raise_for_status(response.status_code, response.content, url)
    parsed = _decode_json_or_text(response.content)
    if not isinstance(parsed, dict):
        raise UpstreamProtocolError("upstream response is not a JSON object", code="upstream_invalid_json")
    return parsed


async def open_chat_stream(body: dict[str, Any], token: str, *, has_image: bool) -> httpx.Response:
    """Send the streaming chat call and return once headers arrive.

    Non-2xx responses, and 2xx responses carrying a JSON document instead of
    an event stream, are raised here, before any SSE header is committed to
    the client. The caller owns the returned response and must ``aclose`` it.
    """
    url = chat_url(has_image)
    content = json.dumps(body, ensure_ascii=False).encode("utf-8")
    logger.debug("chat stream start url=%s payload_bytes=%d", url, len(content))
    client = await _get_upstream_async_client()
    request = client.build_request("POST", url, content=content, headers=_build_forward_headers(token), timeout=_stream_timeout())
    try:
        response = await client.send(request, stream=True)
    except httpx.HTTPError as exc:
        raise _transport_error(exc, url) from exc
    logger.debug("chat stream connected url=%s status=%s", url, response.status_code)
    is_json = "application/json" in response.headers.get("content-type", "").lower()
    if response.status_code >= 400 or is_json:
        try:
            raw = await response.aread()
        except httpx.HTTPError:
            raw = b""
        finally:
            await response.aclose()
        _raise_for_status(response.status_code, raw, url)
        # 鉴权失败等应用层错误以 200 + JSON 返回，而非事件流
        parsed = _decode_json_or_text(raw)
        if not isinstance(parsed, dict):
            raise UpstreamProtocolError("upstream stream response is not a JSON object", code="upstream_invalid_json")
        _check_application_code(parsed)
        raise UpstreamProtocolError("upstream answered a streaming call with a JSON document", code="upstream_not_streaming")
    return response


async def iter_stream_bytes(response: httpx.Response) -> AsyncGenerator[bytes, None]:
    """Raw upstream body bytes as they arrive; chunk boundaries are arbitrary."""
    try:
        async for data in response.aiter_bytes():
            if data:
                yield data
    except httpx.HTTPError as exc:
        raise _transport_error(exc, str(response.request.url)) from exc


def _upload_filename(mime_type: str) -> str:
    ext = mimetypes.guess_extension(mime_type or "") or ".bin"
    if ext == ".jpe":
        ext = ".jpg"
    return f"image{ext}"


async def upload_file(image: ImageRef, token: str) -> str:
    """Exchange inline image bytes for an upstream file handle."""
    if image.data is None:
        raise ValueError("upload_file requires inline image bytes")
    url = file_upload_url()
    files = {"file": (_upload_filename(image.mime_type), image.data, image.mime_type)}
    logger.debug("file upload start url=%s bytes=%d mime=%s", url, len(image.data), image.mime_type)
    client = await _get_upstream_async_client()
    try:
        response = await _within_deadline(
            client.post(url, files=files, headers=_build_forward_headers(token, json_body=False), timeout=_bounded_timeout()),
            url,
        )
    except httpx.HTTPError as exc:
        raise _transport_error(exc, url) from exc
    _raise_for_status(response.status_code, response.content, url)
    parsed = _decode_json_or_text(response.content)
    if not isinstance(parsed, dict):
        raise UpstreamProtocolError("file upload response is not a JSON object", code="upstream_invalid_json")
    _check_application_code(parsed)
    data = parsed.get("data")
    file_id = data.get("id") if isinstance(data, dict) else None
    if not file_id:
        raise UpstreamProtocolError("file upload response has no data.id", code="upstream_missing_file_id")
    logger.info("file upload done file_id=%s", file_id)
    return str(file_id)
