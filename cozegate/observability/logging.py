"""Request lifecycle log lines."""

from __future__ import annotations

from cozegate.util.logger import logger


def log_event(event: str, request_id: str = "-", **fields: object) -> None:
    """One INFO line per lifecycle step: ``event=<name> request_id=<id> k=v ...``; None values are skipped."""
    rendered = " ".join(f"{key}={value}" for key, value in sorted(fields.items()) if value is not None)
    logger.info("event=%s request_id=%s %s", event, request_id, rendered)
