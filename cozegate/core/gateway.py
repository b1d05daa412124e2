"""FastAPI app entry."""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.staticfiles import StaticFiles

from cozegate.adapters.openai_compat.router import router as openai_router
from cozegate.adapters.openai_compat.upstream import close_upstream_async_client
from cozegate.config.bot_table import get_bot_table
from cozegate.config.settings import settings
from cozegate.storage.uploads import ensure_upload_dir
from cozegate.util.logger import logger

_INDEX_HTML = """
<html>
  <head>
    <title>COZE2OPENAI</title>
  </head>
  <body>
    <h1>Coze2OpenAI</h1>
    <p>支持文本和图片的AI服务</p>
  </body>
</html>
"""

app = FastAPI(title=settings.app_name)
app.include_router(openai_router, prefix="/v1")
app.mount(
    "/" + settings.upload_url_prefix.strip("/"),
    StaticFiles(directory=str(ensure_upload_dir())),
    name="uploads",
)


def _blocked_response(status_code: int, reason: str, detail: str | None = None) -> JSONResponse:
    detail_text = (detail or reason).strip() or reason
    return JSONResponse(
        status_code=status_code,
        content={"error": {"message": detail_text, "type": "cozegate_error", "code": reason}},
    )


@app.middleware("http")
async def request_boundary_middleware(request: Request, call_next):
    logger.info("request method=%s path=%s", request.method, request.url.path)

    content_length_header = request.headers.get("content-length", "").strip()
    if settings.max_request_body_bytes > 0 and request.method.upper() in {"POST", "PUT", "PATCH"} and content_length_header:
        try:
            content_length = int(content_length_header)
        except ValueError:
            logger.warning("boundary reject invalid content-length path=%s", request.url.path)
            return _blocked_response(status_code=400, reason="invalid_content_length")
        if content_length > settings.max_request_body_bytes:
            logger.warning(
                "boundary reject oversize request content_length=%s max=%s path=%s",
                content_length,
                settings.max_request_body_bytes,
                request.url.path,
            )
            return _blocked_response(
                status_code=413,
                reason="request_body_too_large",
                detail=f"请求体过大，请上传小于{settings.max_request_body_bytes // (1024 * 1024)}MB的文件。",
            )

    try:
        return await call_next(request)
    except Exception as exc:  # pragma: no cover - fail-safe
        logger.exception("gateway unhandled exception path=%s", request.url.path)
        return _blocked_response(
            status_code=500,
            reason="gateway_internal_error",
            detail=f"gateway internal error: {exc}",
        )


@app.get("/", response_class=HTMLResponse)
def index() -> str:
    return _INDEX_HTML


@app.get("/health")
def health() -> dict:
    logger.info("health check")
    return {"status": "ok"}


@app.on_event("startup")
async def startup_load_config() -> None:
    ensure_upload_dir()
    try:
        get_bot_table()
    except Exception as exc:  # pragma: no cover
        logger.error("bot table load on startup failed: %s", exc)
        raise
    logger.info(
        "%s ready upstream=%s port=%s",
        settings.app_name,
        settings.upstream_api_base,
        settings.port,
    )


@app.on_event("shutdown")
async def shutdown_cleanup() -> None:
    await close_upstream_async_client()


# CORS 在最外层，OPTIONS 预检不进入路由
if settings.enable_cors:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[item.strip() for item in settings.cors_allow_origins.split(",") if item.strip()] or ["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "DNT",
            "User-Agent",
            "X-Requested-With",
            "If-Modified-Since",
            "Cache-Control",
            "Content-Type",
            "Range",
            "Authorization",
        ],
        max_age=86400,
    )


def main() -> None:
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
