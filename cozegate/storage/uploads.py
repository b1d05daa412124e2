"""
上传图片的临时存储：multipart 上传的图片落盘到 upload_dir，经 /uploads 静态路由
暴露给上游拉取，请求结束后（成功、上游失败、客户端断开）统一尽力删除。
"""

from __future__ import annotations

import asyncio
import random
import re
import time
from dataclasses import dataclass, field
from pathlib import Path

from starlette.datastructures import UploadFile
from starlette.requests import Request

from cozegate.config.settings import settings
from cozegate.core.errors import PayloadTooLargeError
from cozegate.util.logger import logger

_READ_CHUNK_BYTES = 1024 * 1024
_SAFE_EXT_RE = re.compile(r"^\.[A-Za-z0-9]{1,8}$")


def upload_root() -> Path:
    return Path(settings.upload_dir).resolve()


def ensure_upload_dir() -> Path:
    root = upload_root()
    root.mkdir(parents=True, exist_ok=True)
    return root


def make_upload_name(original_filename: str | None, field_name: str) -> str:
    """时间戳 + 随机后缀，保证并发上传不会重名。"""
    ext = Path(original_filename or "").suffix
    if not _SAFE_EXT_RE.match(ext):
        ext = ""
    unique_suffix = f"{int(time.time() * 1000)}-{random.randint(0, 999_999_999)}"
    return f"{field_name}-{unique_suffix}{ext.lower()}"


def _sanitize_public_host(raw_host: str) -> str:
    host = (raw_host or "").strip()
    if not host or re.search(r"[^A-Za-z0-9.\-:\[\]]", host):
        return f"127.0.0.1:{settings.port}"
    lowered = host.lower()
    if lowered in {"0.0.0.0", "::", "[::]"}:
        return f"127.0.0.1:{settings.port}"
    if lowered.startswith("0.0.0.0:") or lowered.startswith("[::]:"):
        return f"127.0.0.1:{host.rsplit(':', 1)[1]}"
    return host


def public_base_url(request: Request) -> str:
    if settings.public_base_url.strip():
        return settings.public_base_url.strip().rstrip("/")
    forwarded_proto = (request.headers.get("x-forwarded-proto") or "").split(",")[0].strip().lower()
    scheme = forwarded_proto if forwarded_proto in {"http", "https"} else request.url.scheme or "http"
    forwarded_host = (request.headers.get("x-forwarded-host") or "").split(",")[0].strip()
    host_header = (request.headers.get("host") or "").strip()
    host = _sanitize_public_host(forwarded_host or host_header)
    return f"{scheme}://{host}"


@dataclass(slots=True)
class StoredUpload:
    path: Path
    mime_type: str
    size: int = 0
    _released: bool = field(default=False, repr=False)

    @property
    def filename(self) -> str:
        return self.path.name

    def public_url(self, base_url: str) -> str:
        prefix = "/" + settings.upload_url_prefix.strip("/")
        return f"{base_url.rstrip('/')}{prefix}/{self.filename}"

    async def release(self) -> None:
        """删除临时文件；只尝试一次，失败只记日志。"""
        if self._released:
            return
        self._released = True
        try:
            await asyncio.to_thread(self.path.unlink, True)
            logger.debug("upload released path=%s", self.path)
        except OSError as exc:
            logger.warning("upload cleanup failed path=%s error=%s", self.path, exc)


async def save_upload(upload: UploadFile, field_name: str | None = None) -> StoredUpload:
    root = ensure_upload_dir()
    target = root / make_upload_name(upload.filename, field_name or settings.upload_field_name)
    limit = int(settings.max_upload_bytes)
    written = 0
    try:
        with target.open("wb") as fh:
            while True:
                chunk = await upload.read(_READ_CHUNK_BYTES)
                if not chunk:
                    break
                written += len(chunk)
                if limit > 0 and written > limit:
                    raise PayloadTooLargeError(
                        f"uploaded file exceeds {limit} bytes",
                        code="upload_too_large",
                    )
                fh.write(chunk)
    except BaseException:
        target.unlink(missing_ok=True)
        raise
    finally:
        await upload.close()

    mime_type = (upload.content_type or "").strip() or settings.default_image_type
    logger.info("upload stored name=%s size=%d mime=%s", target.name, written, mime_type)
    return StoredUpload(path=target, mime_type=mime_type, size=written)
