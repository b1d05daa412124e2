"""
调试用对话文本摘要：用户 query 与上游回答在 DEBUG 日志里压成单行，超长时保留首尾。
仅在 COZEGATE_LOG_LEVEL=debug 时输出。
"""

from __future__ import annotations

import logging
import re

from cozegate.util.logger import logger

DEFAULT_EXCERPT_MAX_LEN = 500
_WHITESPACE_RE = re.compile(r"\s+")


def excerpt_for_debug(text: str, max_len: int = DEFAULT_EXCERPT_MAX_LEN) -> str:
    if not text:
        return ""
    flat = _WHITESPACE_RE.sub(" ", str(text)).strip()
    if len(flat) <= max_len:
        return flat
    head = max_len * 2 // 3
    tail = max_len - head
    return f"{flat[:head]} ... {flat[-tail:]} [{len(flat)} chars]"


def debug_log_original(
    label: str,
    original_text: str,
    *,
    request_id: str = "-",
    max_len: int = DEFAULT_EXCERPT_MAX_LEN,
) -> None:
    """label: "query_text" / "answer_text"."""
    if not logger.isEnabledFor(logging.DEBUG):
        return
    logger.debug("%s request_id=%s excerpt=%s", label, request_id, excerpt_for_debug(original_text, max_len=max_len))
